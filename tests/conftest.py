"""Shared fixtures: synthetic Mach-O files and staging trees."""

from pathlib import Path

import pytest

from machobuilder import MH_DYLIB, build_macho


@pytest.fixture(autouse=True)
def no_dev_id(monkeypatch):
    """Keep a DEV_ID from the developer's shell out of the tests."""
    monkeypatch.delenv("DEV_ID", raising=False)


@pytest.fixture
def make_macho():
    """Factory writing a synthetic Mach-O file and returning its path."""

    def _make(path: Path, filetype: int = MH_DYLIB, **kwargs: object) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_macho(filetype, **kwargs))
        return path

    return _make


@pytest.fixture
def staging(tmp_path: Path) -> Path:
    """An empty staging bundle with the default directory layout."""
    root = tmp_path / "staging" / "Test.app"
    (root / "Contents" / "MacOS").mkdir(parents=True)
    (root / "Contents" / "Resources" / "python" / "bin").mkdir(parents=True)
    (root / "Contents" / "Resources" / "python" / "lib").mkdir(parents=True)
    (root / "Contents" / "Resources" / "venv" / "bin").mkdir(parents=True)
    (root / "Contents" / "Resources" / "venv" / "lib").mkdir(parents=True)
    return root.resolve()


@pytest.fixture
def vendor_dir(tmp_path: Path) -> Path:
    """A directory outside the staging tree playing the build machine's prefix."""
    path = tmp_path / "opt" / "lib"
    path.mkdir(parents=True)
    return path.resolve()
