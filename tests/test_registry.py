"""Tests for the vendoring registry."""

import threading
from unittest.mock import patch

import pytest

import macvendor
from machobuilder import MH_DYLIB
from macvendor import (
    StagingError,
    UnresolvedDependencyError,
    VendoringRegistry,
)


@pytest.fixture
def registry(staging):
    return VendoringRegistry(
        staging / "Contents" / "libs",
        shared_dirs=[staging / "Contents" / "Resources" / "python" / "lib"],
    )


class TestVendor:
    """Tests for VendoringRegistry.vendor()."""

    def test_copies_first_existing_candidate(self, registry, vendor_dir, make_macho):
        """Test that the first candidate found is copied into the libs directory."""
        source = make_macho(vendor_dir / "libfoo.dylib", MH_DYLIB)
        missing = vendor_dir / "elsewhere" / "libfoo.dylib"

        entry, created = registry.vendor("libfoo.dylib", [missing, source])

        assert created is True
        assert entry.copied is True
        assert entry.in_bundle is False
        assert entry.resolved_source_path == source
        assert entry.destination_path == registry.libs_dir / "libfoo.dylib"
        assert entry.destination_path.read_bytes() == source.read_bytes()
        assert "libfoo.dylib" in registry
        assert len(registry) == 1

    def test_candidate_order_is_respected(self, registry, vendor_dir, make_macho):
        """Test that an earlier candidate wins over a later one."""
        first = make_macho(vendor_dir / "a" / "libfoo.dylib", MH_DYLIB, install_name="first")
        second = make_macho(vendor_dir / "b" / "libfoo.dylib", MH_DYLIB, install_name="second")

        entry, _ = registry.vendor("libfoo.dylib", [first, second])
        assert entry.resolved_source_path == first

    def test_deduplicates_by_basename(self, registry, vendor_dir, make_macho):
        """Test that a second request returns the existing entry without copying."""
        source = make_macho(vendor_dir / "libfoo.dylib", MH_DYLIB)
        entry, created = registry.vendor("libfoo.dylib", [source])

        with patch("macvendor.shutil.copy2") as copy2:
            again, created_again = registry.vendor("libfoo.dylib", [source])

        assert created is True
        assert created_again is False
        assert again is entry
        copy2.assert_not_called()

    def test_collision_keeps_first(self, registry, vendor_dir, make_macho, caplog):
        """Test that a same-named library elsewhere does not replace the first copy."""
        first = make_macho(vendor_dir / "a" / "libfoo.dylib", MH_DYLIB)
        other = make_macho(vendor_dir / "b" / "libfoo.dylib", MH_DYLIB)
        entry, _ = registry.vendor("libfoo.dylib", [first])

        again, created = registry.vendor("libfoo.dylib", [other])

        assert created is False
        assert again.resolved_source_path == first
        assert "keeping" in caplog.text

    def test_follows_symlinks(self, registry, vendor_dir, make_macho):
        """Test that a versioned symlink is copied under the referenced name."""
        real = make_macho(vendor_dir / "libfoo.1.2.dylib", MH_DYLIB)
        link = vendor_dir / "libfoo.dylib"
        link.symlink_to(real.name)

        entry, _ = registry.vendor("libfoo.dylib", [link])

        assert entry.resolved_source_path == real
        assert entry.destination_path.name == "libfoo.dylib"
        assert not entry.destination_path.is_symlink()

    def test_copy_is_writable(self, registry, vendor_dir, make_macho):
        """Test that read-only sources yield writable copies."""
        source = make_macho(vendor_dir / "libfoo.dylib", MH_DYLIB)
        source.chmod(0o444)
        entry, _ = registry.vendor("libfoo.dylib", [source])
        assert entry.destination_path.stat().st_mode & 0o200

    def test_no_temporary_files_left(self, registry, vendor_dir, make_macho):
        """Test that only the final copy remains in the libs directory."""
        source = make_macho(vendor_dir / "libfoo.dylib", MH_DYLIB)
        registry.vendor("libfoo.dylib", [source])
        assert [p.name for p in registry.libs_dir.iterdir()] == ["libfoo.dylib"]


class TestUnresolved:
    """Tests for libraries that cannot be found."""

    def test_nothing_found(self, registry, vendor_dir):
        """Test that missing candidates raise with what was searched."""
        candidates = [vendor_dir / "libmissing.dylib", vendor_dir / ".private-libs" / "libmissing.dylib"]
        with pytest.raises(UnresolvedDependencyError) as excinfo:
            registry.vendor("libmissing.dylib", candidates)

        assert excinfo.value.basename == "libmissing.dylib"
        assert excinfo.value.candidates == candidates
        assert "libmissing.dylib" not in registry
        assert not registry.libs_dir.exists()

    def test_not_a_binary(self, registry, vendor_dir):
        """Test that a linker text stub is not vendored."""
        stub = vendor_dir / "libfoo.dylib"
        stub.write_text("--- !tapi-tbd\n")
        with pytest.raises(UnresolvedDependencyError):
            registry.vendor("libfoo.dylib", [stub])

    def test_unresolved_is_not_cached(self, registry, vendor_dir, make_macho):
        """Test that a later consumer with a valid location still succeeds."""
        with pytest.raises(UnresolvedDependencyError):
            registry.vendor("libfoo.dylib", [vendor_dir / "libfoo.dylib"])

        source = make_macho(vendor_dir / "pkg" / ".private-libs" / "libfoo.dylib", MH_DYLIB)
        entry, created = registry.vendor("libfoo.dylib", [source])
        assert created is True
        assert entry.copied is True


class TestInBundle:
    """Tests for libraries already inside the staging tree."""

    def test_runtime_library_used_in_place(self, registry, staging, make_macho):
        """Test that a library directly in the runtime lib directory is not copied."""
        source = make_macho(
            staging / "Contents" / "Resources" / "python" / "lib" / "libpython3.12.dylib",
            MH_DYLIB,
        )
        entry, created = registry.vendor("libpython3.12.dylib", [source])

        assert created is True
        assert entry.in_bundle is True
        assert entry.copied is False
        assert entry.destination_path == source
        assert not registry.libs_dir.exists()

    def test_private_libs_copied(self, registry, staging, make_macho):
        """Test that a package's private library is copied into the libs directory."""
        source = make_macho(
            staging / "Contents" / "Resources" / "venv" / "lib" / "pkg" / ".private-libs" / "libbar.dylib",
            MH_DYLIB,
        )
        entry, created = registry.vendor("libbar.dylib", [source])

        assert created is True
        assert entry.in_bundle is False
        assert entry.copied is True
        assert entry.resolved_source_path == source
        assert entry.destination_path == registry.libs_dir / "libbar.dylib"
        assert entry.destination_path.read_bytes() == source.read_bytes()
        assert source.is_file()

    def test_executable_dir_copied(self, registry, staging, make_macho):
        """Test that a library beside the main executable is copied too."""
        source = make_macho(staging / "Contents" / "MacOS" / ".private-libs" / "libfoo.dylib", MH_DYLIB)
        entry, _ = registry.vendor("libfoo.dylib", [source])

        assert entry.copied is True
        assert (registry.libs_dir / "libfoo.dylib").is_file()

    def test_nested_runtime_library_copied(self, registry, staging, make_macho):
        """Test that only the top of the runtime lib directory is used in place."""
        source = make_macho(
            staging / "Contents" / "Resources" / "python" / "lib" / "python3.12"
            / "site-packages" / "pkg" / ".private-libs" / "libbaz.dylib",
            MH_DYLIB,
        )
        entry, _ = registry.vendor("libbaz.dylib", [source])

        assert entry.in_bundle is False
        assert entry.destination_path == registry.libs_dir / "libbaz.dylib"
        assert entry.destination_path.is_file()

    def test_without_shared_dirs(self, staging, make_macho):
        """Test that with no shared directories every library is copied."""
        registry = VendoringRegistry(staging / "Contents" / "libs")
        source = make_macho(
            staging / "Contents" / "Resources" / "python" / "lib" / "libpython3.12.dylib",
            MH_DYLIB,
        )
        entry, _ = registry.vendor("libpython3.12.dylib", [source])
        assert entry.copied is True
        assert entry.in_bundle is False


class TestStagingFailures:
    """Tests for hard failures writing the staging tree."""

    def test_copy_failure_aborts(self, registry, vendor_dir, make_macho):
        source = make_macho(vendor_dir / "libfoo.dylib", MH_DYLIB)
        with patch("macvendor.shutil.copy2", side_effect=OSError("disk full")):
            with pytest.raises(StagingError):
                registry.vendor("libfoo.dylib", [source])
        assert "libfoo.dylib" not in registry
        assert list(registry.libs_dir.iterdir()) == []


class TestConcurrentVendoring:
    """Tests for the per-basename locking."""

    def test_same_basename_copied_once(self, registry, vendor_dir, make_macho):
        """Test that racing consumers share one copy."""
        source = make_macho(vendor_dir / "libshared.dylib", MH_DYLIB)
        results = []
        barrier = threading.Barrier(8)
        real_copy = macvendor.shutil.copy2
        copies = []

        def counting_copy(src, dst):
            copies.append(src)
            return real_copy(src, dst)

        def worker():
            barrier.wait()
            results.append(registry.vendor("libshared.dylib", [source]))

        with patch("macvendor.shutil.copy2", side_effect=counting_copy):
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert len(copies) == 1
        assert sum(1 for _, created in results if created) == 1
        assert len({id(entry) for entry, _ in results}) == 1

    def test_different_basenames(self, registry, vendor_dir, make_macho):
        """Test that distinct libraries are all vendored."""
        sources = [make_macho(vendor_dir / f"lib{i}.dylib", MH_DYLIB) for i in range(6)]
        threads = [
            threading.Thread(target=registry.vendor, args=(s.name, [s]))
            for s in sources
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert [e.basename for e in registry.entries()] == sorted(s.name for s in sources)
        assert sorted(p.name for p in registry.libs_dir.iterdir()) == sorted(s.name for s in sources)
