#!/usr/bin/env python3
"""macvendor - vendor and relink the dynamic libraries of a macOS staging bundle.

Given a staging directory holding an application bundle layout (a main
executable, an interpreter runtime tree and an isolated environment with
compiled extension modules), macvendor makes the tree self-contained:

1. every Mach-O binary reachable from the roots is scanned for the dynamic
   libraries it loads,
2. libraries that cannot be assumed present on the target machine are
   copied ("vendored") into a shared library directory inside the bundle,
3. the consuming binaries are patched to reach the vendored copies through
   ``@loader_path``-relative references,
4. the process repeats for the vendored copies until no new library appears,
5. every modified binary is re-signed.

Load commands are read and written with macholib; ``otool`` and
``install_name_tool`` are never invoked. Only code signing shells out to
``codesign``.

Usage (CLI):
    macvendor build/MyApp.app
    macvendor build/MyApp.app --libs Contents/Frameworks --report relink.json

Usage (API):
    from macvendor import Relinker, Signer, StagingLayout

    layout = StagingLayout("build/MyApp.app")
    report = Relinker(layout, signer=Signer(dev_id="-")).run()
    if not report.ok:
        report.summary()
"""

import argparse
import datetime
import enum
import json
import logging
import os
import re
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, NamedTuple

from macholib import mach_o
from macholib.MachO import MachO
from macholib.ptypes import sizeof

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Path markers understood by dyld
LOADER_PATH = "@loader_path"
EXECUTABLE_PATH = "@executable_path"
RPATH = "@rpath"

# References under these prefixes are present on every macOS installation
SYSTEM_PREFIXES = (
    "/usr/lib/",
    "/System/Library/",
    "/System/Volumes/Preboot/Cryptexes/",
)

# Side directory where packages keep their private copies of native libraries
PRIVATE_LIBS_DIRNAME = ".private-libs"

# Default staging layout, relative to the staging root
DEFAULT_LIBS_DIR = "Contents/libs"
DEFAULT_RUNTIME_DIR = "Contents/Resources/python"
DEFAULT_VENV_DIR = "Contents/Resources/venv"
DEFAULT_EXECUTABLE_DIR = "Contents/MacOS"

DEFAULT_JOBS = min(8, os.cpu_count() or 1)

# Environment variable names
ENV_DEV_ID = "DEV_ID"

# Load commands naming a library the binary depends on
DYLIB_LOAD_COMMANDS = (
    mach_o.LC_LOAD_DYLIB,
    mach_o.LC_LOAD_WEAK_DYLIB,
    mach_o.LC_REEXPORT_DYLIB,
    mach_o.LC_LOAD_UPWARD_DYLIB,
    mach_o.LC_LAZY_LOAD_DYLIB,
)

# ----------------------------------------------------------------------------
# Optional dotenv support (zero production dependencies beyond macholib)


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macvendor.toml in current directory
    3. macvendor.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .macvendor.toml:
        [relink]
        libs = "Contents/Frameworks"
        runtime = "Contents/Resources/python"
        venv = "Contents/Resources/venv"
        jobs = "4"

        [sign]
        dev_id = "John Doe"
    """
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib  # type: ignore[import-not-found]
        except ImportError:
            return {}

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macvendor.toml",
            cwd / "macvendor.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError):
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class VendorError(Exception):
    """Base exception class for macvendor errors."""


class CommandError(VendorError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(VendorError):
    """Exception raised when a file operation fails."""


class StagingError(FileError):
    """The staging directory itself cannot be read or written.

    This is the only condition that aborts a run: no output produced after
    it could be trusted.
    """


class ConfigurationError(VendorError):
    """Exception raised when configuration is invalid."""


class ValidationError(VendorError):
    """Exception raised when validation fails."""


class CorruptBinaryError(VendorError):
    """A file carries a Mach-O magic number but its load commands are unreadable."""


class UnresolvedDependencyError(VendorError):
    """No candidate location holds the library a binary depends on."""

    def __init__(self, basename: str, candidates: list[Path]):
        self.basename = basename
        self.candidates = list(candidates)
        searched = ", ".join(str(c) for c in self.candidates) or "nothing"
        super().__init__(f"Cannot find {basename} (searched: {searched})")


class RewriteError(VendorError):
    """A load command could not be patched in place."""


class CodesignError(VendorError):
    """Exception raised when codesigning fails."""


# ----------------------------------------------------------------------------
# File and certificate validation

# Maximum size of a library we are willing to vendor (1GB)
MAX_FILE_SIZE = 1024 * 1024 * 1024

# Thin Mach-O magic numbers as they appear on disk, mapped to struct byte order
THIN_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce": ">",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe": "<",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf": ">",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe": "<",  # MH_CIGAM_64 (64-bit, reverse byte order)
}

# Universal binary magic numbers; fat headers are always big-endian
FAT_MAGIC = b"\xca\xfe\xba\xbe"
FAT_MAGIC_64 = b"\xca\xfe\xba\xbf"

MACHO_MAGIC_NUMBERS = set(THIN_MAGIC_NUMBERS) | {FAT_MAGIC, FAT_MAGIC_64}

# Java class files share FAT_MAGIC; their "arch count" is the class version
MAX_FAT_ARCHS = 30

# Developer ID format: "Name" or "Name (TEAM_ID)" where TEAM_ID is 10 alphanumeric chars
DEVELOPER_ID_PATTERN = re.compile(
    r"^[A-Za-z][A-Za-z0-9\s\.\-\,\']+(?:\s+\([A-Z0-9]{10}\))?$"
)


def validate_file(
    path: Pathlike,
    check_macho: bool = False,
    max_size: int = MAX_FILE_SIZE,
) -> None:
    """Validate a library before copying it into the bundle.

    Args:
        path: Path to the file to validate (symlinks already resolved)
        check_macho: If True, verify the file starts with a Mach-O magic number
        max_size: Maximum allowed file size in bytes

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")

    if size > max_size:
        raise ValidationError(
            f"File exceeds maximum size ({size} > {max_size} bytes): {path}"
        )

    if check_macho:
        try:
            with open(path, "rb") as f:
                magic = f.read(4)
        except OSError as e:
            raise ValidationError(f"Cannot read file {path}: {e}") from e

        if magic not in MACHO_MAGIC_NUMBERS:
            raise ValidationError(f"File is not a Mach-O binary: {path}")


def validate_developer_id(dev_id: str) -> None:
    """Validate Developer ID string format.

    Accepted forms are "John Doe" and "John Doe (ABCD123456)". The full
    identity "Developer ID Application: ..." is built by the Signer.

    Raises:
        ValidationError: If the Developer ID format is invalid
    """
    if not dev_id or not dev_id.strip():
        raise ValidationError("Developer ID cannot be empty")

    dev_id = dev_id.strip()

    if len(dev_id) < 2:
        raise ValidationError(f"Developer ID is too short: '{dev_id}'")

    if len(dev_id) > 100:
        raise ValidationError(
            f"Developer ID is too long (max 100 characters): '{dev_id}'"
        )

    if not DEVELOPER_ID_PATTERN.match(dev_id):
        raise ValidationError(
            f"Developer ID has invalid format: '{dev_id}'. "
            "Expected format: 'Name' or 'Name (TEAM_ID)' where TEAM_ID is 10 alphanumeric characters"
        )


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Logging formatter showing elapsed time, with optional colors."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: color.grey,
        logging.INFO: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    PLAIN_FMT = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _template(self, levelno: int) -> str:
        if not self.use_color:
            return self.PLAIN_FMT
        c = self.color
        level_color = self.LEVEL_COLORS.get(levelno, c.white)
        return (
            f"{c.white}%(delta)s{c.reset} - "
            f"{level_color}%(levelname)s{c.reset} - "
            f"{c.white}%(name)s.%(funcName)s{c.reset} - "
            f"{c.grey}%(message)s{c.reset}"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(self._template(record.levelno)).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the command-line tool.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False. A missing tool is reported like a failed one so callers
    only have to handle CommandError.

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


def make_writable(path: Pathlike) -> None:
    """Add the owner write bit (packaged libraries are often read-only)."""
    mode = os.stat(path).st_mode
    if not mode & stat.S_IWUSR:
        os.chmod(path, mode | stat.S_IWUSR)


class KeyedLocks:
    """Hands out one lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[object, threading.Lock] = {}

    def __call__(self, key: object) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


# ----------------------------------------------------------------------------
# Binary classification


class Role(enum.Enum):
    """What a file is, as far as the relinker cares."""

    EXECUTABLE = "executable"
    SHARED_LIBRARY = "shared-library"
    EXTENSION_MODULE = "extension-module"
    NOT_MACHO = "not-macho"


FILETYPE_ROLES = {
    mach_o.MH_EXECUTE: Role.EXECUTABLE,
    mach_o.MH_DYLIB: Role.SHARED_LIBRARY,
    mach_o.MH_BUNDLE: Role.EXTENSION_MODULE,
}


def classify_binary(path: Pathlike) -> Role:
    """Tell whether a file is a Mach-O binary the relinker should scan.

    Reads only the (fat) header. Never raises: missing, unreadable,
    truncated and non-Mach-O files, symlinks, and Mach-O kinds other than
    executables, dylibs and bundles (object files, dSYMs...) are all
    ``Role.NOT_MACHO``. For universal binaries the first slice decides.
    """
    path = Path(path)
    try:
        if path.is_symlink() or not path.is_file():
            return Role.NOT_MACHO
        with open(path, "rb") as f:
            magic = f.read(4)
            if magic in (FAT_MAGIC, FAT_MAGIC_64):
                (nfat_arch,) = struct.unpack(">I", f.read(4))
                if not 0 < nfat_arch <= MAX_FAT_ARCHS:
                    return Role.NOT_MACHO
                if magic == FAT_MAGIC_64:
                    (offset,) = struct.unpack(">8xQ16x", f.read(32))
                else:
                    (offset,) = struct.unpack(">8xI8x", f.read(20))
                f.seek(offset)
                magic = f.read(4)
            endian = THIN_MAGIC_NUMBERS.get(magic)
            if endian is None:
                return Role.NOT_MACHO
            (filetype,) = struct.unpack(endian + "8xI", f.read(12))
    except (OSError, struct.error):
        return Role.NOT_MACHO
    return FILETYPE_ROLES.get(filetype, Role.NOT_MACHO)


class Binary:
    """A Mach-O file taking part in a relink run.

    Args:
        path: Current location of the file inside the staging tree
        role: Role reported by classify_binary()
        origin: Where the file came from; differs from path for vendored
            copies and anchors their relative lookups
    """

    def __init__(
        self, path: Pathlike, role: Role, origin: Pathlike | None = None
    ):
        self.path = Path(path)
        self.role = role
        self.origin = Path(origin) if origin is not None else self.path
        self.touched = False

    @classmethod
    def from_path(cls, path: Pathlike) -> "Binary":
        return cls(path, classify_binary(path))

    @property
    def relocated(self) -> bool:
        """True for copies whose original lives elsewhere."""
        return self.origin != self.path

    def __repr__(self) -> str:
        return f"Binary({str(self.path)!r}, {self.role.value})"


# ----------------------------------------------------------------------------
# Load command reading


class DependencyReference(NamedTuple):
    """One library reference as recorded in a binary's load commands."""

    raw_path: str
    consumer: Binary


class MachOInfo(NamedTuple):
    """The load commands of a binary that matter for relinking."""

    install_name: str | None
    references: list[DependencyReference]
    rpaths: list[str]


def _load_macho(path: Path) -> MachO:
    try:
        return MachO(str(path))
    except Exception as e:
        raise CorruptBinaryError(
            f"Cannot parse Mach-O load commands of {path}: {e}"
        ) from e


def _command_string(
    lc: object, cmd: object, data: bytes, offset: int
) -> str:
    """Extract the NUL-terminated string an lc_str field points at."""
    start = offset - sizeof(lc.__class__) - sizeof(cmd.__class__)
    end = data.find(b"\x00", start)
    if end == -1:
        end = len(data)
    return os.fsdecode(data[start:end])


def read_macho_info(binary: Binary) -> MachOInfo:
    """Read the identity, library references and rpaths of a binary.

    macholib branches on the magic number, so thin 32/64-bit binaries of
    either byte order and universal binaries are all handled. References are
    returned in load-command order, de-duplicated across architecture
    slices.

    Raises:
        CorruptBinaryError: If the header or load commands are malformed
    """
    macho = _load_macho(binary.path)
    install_name = None
    references: list[DependencyReference] = []
    rpaths: list[str] = []
    seen: set[str] = set()
    try:
        for header in macho.headers:
            for lc, cmd, data in header.commands:
                if lc.cmd in DYLIB_LOAD_COMMANDS:
                    name = _command_string(lc, cmd, data, cmd.name)
                    if name not in seen:
                        seen.add(name)
                        references.append(DependencyReference(name, binary))
                elif lc.cmd == mach_o.LC_ID_DYLIB and install_name is None:
                    install_name = _command_string(lc, cmd, data, cmd.name)
                elif lc.cmd == mach_o.LC_RPATH:
                    rpath = _command_string(lc, cmd, data, cmd.path)
                    if rpath not in rpaths:
                        rpaths.append(rpath)
    except (AttributeError, TypeError, ValueError) as e:
        raise CorruptBinaryError(
            f"Malformed load command in {binary.path}: {e}"
        ) from e
    return MachOInfo(install_name, references, rpaths)


def read_dependencies(binary: Binary) -> list[DependencyReference]:
    """Return the libraries a binary loads, in load-command order."""
    return read_macho_info(binary).references


# ----------------------------------------------------------------------------
# Reference classification and resolution


class Classification(enum.Enum):
    """How a library reference has to be treated."""

    SYSTEM = "system"
    ALREADY_RELATIVE = "already-relative"
    VENDORABLE = "vendorable"


def classify_reference(raw_path: str) -> Classification:
    """Classify a library reference by its prefix.

    Total: anything that is neither an OS location nor anchored at the
    loading binary is vendorable.
    """
    if raw_path.startswith(SYSTEM_PREFIXES):
        return Classification.SYSTEM
    if raw_path.startswith((LOADER_PATH, EXECUTABLE_PATH)):
        return Classification.ALREADY_RELATIVE
    return Classification.VENDORABLE


def reference_basename(raw_path: str) -> str:
    """The name dyld ends up resolving a reference by."""
    return raw_path.rstrip("/").rsplit("/", 1)[-1]


def _strip_marker(raw_path: str, marker: str) -> str:
    return raw_path[len(marker) :].lstrip("/")


def anchor_rpath(
    rpath: str, origin_dir: Path, executable_dir: Path | None = None
) -> Path | None:
    """Turn an LC_RPATH entry into a directory, the way dyld would."""
    if rpath.startswith(LOADER_PATH):
        return origin_dir / _strip_marker(rpath, LOADER_PATH)
    if rpath.startswith(EXECUTABLE_PATH):
        base = executable_dir if executable_dir is not None else origin_dir
        return base / _strip_marker(rpath, EXECUTABLE_PATH)
    if rpath.startswith("/"):
        return Path(rpath)
    return None


def candidate_sources(
    raw_path: str,
    origin: Path,
    rpaths: list[str] | tuple[str, ...] = (),
    executable_dir: Path | None = None,
) -> list[Path]:
    """List, in search order, where the file behind a reference may live.

    1. the reference itself when it is absolute,
    2. ``@rpath/`` references expanded against the consumer's rpaths,
       ``@loader_path/`` references against the consumer's original
       directory (only relevant for relocated copies),
    3. ``.private-libs`` beside the consumer's original location,
    4. ``.private-libs`` one directory up, beside the owning package.

    Args:
        raw_path: The reference as recorded in the consumer
        origin: Original location of the consumer
        rpaths: LC_RPATH entries of the consumer
        executable_dir: Directory @executable_path stands for
    """
    basename = reference_basename(raw_path)
    origin_dir = origin.parent
    candidates: list[Path] = []

    if raw_path.startswith("/"):
        candidates.append(Path(raw_path))
    elif raw_path.startswith(RPATH):
        suffix = _strip_marker(raw_path, RPATH)
        for rpath in rpaths:
            directory = anchor_rpath(rpath, origin_dir, executable_dir)
            if directory is not None:
                candidates.append(directory / suffix)
    elif raw_path.startswith(LOADER_PATH):
        candidates.append(origin_dir / _strip_marker(raw_path, LOADER_PATH))

    candidates.append(origin_dir / PRIVATE_LIBS_DIRNAME / basename)
    candidates.append(origin_dir.parent / PRIVATE_LIBS_DIRNAME / basename)
    return candidates


def normalize(path: Pathlike) -> Path:
    """Collapse ``..`` lexically, without following symlinks."""
    return Path(os.path.normpath(path))


# ----------------------------------------------------------------------------
# Vendoring registry


class VendoredEntry:
    """A library the bundle provides, keyed by basename.

    Args:
        basename: Name the library is referenced by
        resolved_source_path: Real file the library was found at
        destination_path: Where consumers find it inside the bundle
        in_bundle: The source is one of the runtime's own top-level
            libraries and is used in place instead of being copied
    """

    def __init__(
        self,
        basename: str,
        resolved_source_path: Path,
        destination_path: Path,
        in_bundle: bool = False,
    ):
        self.basename = basename
        self.resolved_source_path = resolved_source_path
        self.destination_path = destination_path
        self.in_bundle = in_bundle
        self.copied = False

    def to_dict(self) -> dict[str, object]:
        return {
            "basename": self.basename,
            "source": str(self.resolved_source_path),
            "destination": str(self.destination_path),
            "copied": self.copied,
            "in_bundle": self.in_bundle,
        }

    def __repr__(self) -> str:
        return (
            f"VendoredEntry({self.basename!r}, "
            f"{str(self.resolved_source_path)!r} -> "
            f"{str(self.destination_path)!r})"
        )


class VendoringRegistry:
    """Maps library basenames to the single copy the bundle ships.

    Each basename is resolved and copied at most once per run. Work on one
    basename is serialized by a per-basename lock; different basenames are
    vendored concurrently.

    Every resolved library is copied into libs_dir, including libraries
    found inside the staging tree (``.private-libs`` folders, the
    executable directory). The one exception is a library sitting directly
    in one of shared_dirs: the runtime's lib directory already ships
    libpython and friends as roots of their own, so those are used in place.

    Args:
        libs_dir: Shared library directory inside the bundle
        shared_dirs: Directories whose immediate files are used in place
    """

    def __init__(
        self, libs_dir: Pathlike, shared_dirs: Iterable[Pathlike] = ()
    ):
        self.libs_dir = Path(libs_dir)
        self.shared_dirs = {Path(d).resolve() for d in shared_dirs}
        self._entries: dict[str, VendoredEntry] = {}
        self._entries_lock = threading.Lock()
        self._locks = KeyedLocks()
        self.log = logging.getLogger(self.__class__.__name__)

    def __contains__(self, basename: str) -> bool:
        return self.get(basename) is not None

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    def get(self, basename: str) -> VendoredEntry | None:
        with self._entries_lock:
            return self._entries.get(basename)

    def entries(self) -> list[VendoredEntry]:
        """All entries, sorted by basename."""
        with self._entries_lock:
            return [self._entries[k] for k in sorted(self._entries)]

    def vendor(
        self, basename: str, candidate_source_paths: list[Path]
    ) -> tuple[VendoredEntry, bool]:
        """Make the library named basename available inside the bundle.

        Returns:
            The entry, and whether this call created it (a new file for the
            caller to scan)

        Raises:
            UnresolvedDependencyError: If no candidate exists
            StagingError: If the shared library directory cannot be written
        """
        with self._locks(basename):
            entry = self.get(basename)
            if entry is not None:
                self._check_collision(entry, candidate_source_paths)
                return entry, False

            source = self._resolve(basename, candidate_source_paths)
            if source.parent in self.shared_dirs:
                self.log.debug("%s shipped by runtime at %s", basename, source)
                entry = VendoredEntry(basename, source, source, in_bundle=True)
            else:
                entry = VendoredEntry(
                    basename, source, self.libs_dir / basename
                )
                self._copy(entry)

            with self._entries_lock:
                self._entries[basename] = entry
            return entry, True

    def _first_existing(self, candidates: list[Path]) -> Path | None:
        for candidate in candidates:
            if candidate.is_file():
                return candidate.resolve()
        return None

    def _resolve(self, basename: str, candidates: list[Path]) -> Path:
        source = self._first_existing(candidates)
        if source is None:
            raise UnresolvedDependencyError(basename, candidates)
        try:
            validate_file(source, check_macho=True)
        except ValidationError as e:
            self.log.warning("rejecting %s: %s", source, e)
            raise UnresolvedDependencyError(basename, candidates) from e
        return source

    def _check_collision(
        self, entry: VendoredEntry, candidates: list[Path]
    ) -> None:
        source = self._first_existing(candidates)
        if source is not None and source != entry.resolved_source_path:
            self.log.warning(
                "%s also found at %s; keeping %s",
                entry.basename,
                source,
                entry.resolved_source_path,
            )

    def _copy(self, entry: VendoredEntry) -> None:
        """Copy atomically so a concurrent reader never sees a partial file."""
        try:
            self.libs_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{entry.basename}.", dir=self.libs_dir
            )
            os.close(fd)
            try:
                shutil.copy2(entry.resolved_source_path, tmp_name)
                make_writable(tmp_name)
                os.replace(tmp_name, entry.destination_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StagingError(
                f"Cannot copy {entry.resolved_source_path} to "
                f"{entry.destination_path}: {e}"
            ) from e
        entry.copied = True
        self.log.info(
            "vendored %s from %s", entry.basename, entry.resolved_source_path
        )


# ----------------------------------------------------------------------------
# Reference rewriting


def loader_relative_path(consumer: Pathlike, target: Pathlike) -> str:
    """Express target relative to the directory of consumer for dyld."""
    relative = os.path.relpath(target, Path(consumer).parent)
    return f"{LOADER_PATH}/{Path(relative).as_posix()}"


def _replace_command_data(header: object, idx: int, data: bytes) -> bool:
    """Replace the string payload of one load command.

    Load commands sit between the Mach-O header and the first section, so
    the region can only grow into the padding before that section. Returns
    False, leaving the command untouched, when the new payload does not fit.
    """
    lc, cmd, _old_data = header.commands[idx]
    fixed_size = sizeof(lc.__class__) + sizeof(cmd.__class__)
    # macholib NUL-pads the payload to the next 8 byte boundary
    padded = len(data) + 8 - len(data) % 8
    growth = fixed_size + padded - lc.cmdsize
    if header.total_size + header.sizediff + growth > header.low_offset:
        return False
    header.rewriteDataForCommand(idx, data)
    return True


class ReferenceRewriter:
    """Patches library references and install names of binaries in place.

    Each binary is patched under its own lock; different binaries may be
    patched concurrently.
    """

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self.log = logging.getLogger(self.__class__.__name__)

    def rewrite(
        self, consumer: Binary, old_reference: str, vendored: VendoredEntry
    ) -> str:
        """Point old_reference in consumer at the vendored library.

        Returns:
            The new loader-relative reference

        Raises:
            RewriteError: If the reference cannot be patched
        """
        new_reference = loader_relative_path(
            consumer.path, vendored.destination_path
        )
        self.change_reference(consumer, old_reference, new_reference)
        return new_reference

    def change_reference(
        self, binary: Binary, old_reference: str, new_reference: str
    ) -> bool:
        """Replace every load command naming old_reference."""
        return self._patch(
            binary, DYLIB_LOAD_COMMANDS, old_reference, new_reference
        )

    def change_install_name(self, binary: Binary, install_name: str) -> bool:
        """Replace the LC_ID_DYLIB of a shared library."""
        return self._patch(
            binary, (mach_o.LC_ID_DYLIB,), None, install_name
        )

    def _patch(
        self,
        binary: Binary,
        commands: tuple[int, ...],
        old: str | None,
        new: str,
    ) -> bool:
        encoded = os.fsencode(new)
        with self._locks(binary.path):
            try:
                macho = _load_macho(binary.path)
            except CorruptBinaryError as e:
                raise RewriteError(str(e)) from e

            found = changed = False
            for header in macho.headers:
                for idx, (lc, cmd, data) in enumerate(header.commands):
                    if lc.cmd not in commands:
                        continue
                    current = _command_string(lc, cmd, data, cmd.name)
                    if old is not None and current != old:
                        continue
                    found = True
                    if current == new:
                        continue
                    if not _replace_command_data(header, idx, encoded):
                        raise RewriteError(
                            f"No room in the load command area of "
                            f"{binary.path} for {new!r}"
                        )
                    changed = True

            if not found:
                wanted = old if old is not None else "an install name"
                raise RewriteError(f"{binary.path} has no {wanted}")
            if not changed:
                return False

            try:
                make_writable(binary.path)
                with open(binary.path, "rb+") as f:
                    macho.write(f)
            except (OSError, ValueError) as e:
                raise RewriteError(f"Cannot write {binary.path}: {e}") from e

        binary.touched = True
        self.log.info(
            "%s: %s -> %s", binary.path.name, old or "id", new
        )
        return True


# ----------------------------------------------------------------------------
# Code signing


class Signer:
    """Re-signs binaries whose signature was invalidated by patching.

    Args:
        dev_id: Developer ID name (None, "-" or "" for ad-hoc signing)
        enabled: Whether to sign at all
        dry_run: Log codesign commands without running them

    Environment Variables:
        DEV_ID: Developer ID (fallback if dev_id not provided)
    """

    def __init__(
        self,
        dev_id: str | None = None,
        enabled: bool = True,
        dry_run: bool = False,
    ):
        self.enabled = enabled
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        if dev_id is None:
            dev_id = os.getenv(ENV_DEV_ID)
        self.authority: str | None
        if dev_id is not None and dev_id not in ("-", ""):
            validate_developer_id(dev_id)
            self.authority = f"Developer ID Application: {dev_id.strip()}"
        else:
            self.authority = None

    @property
    def identity(self) -> str:
        return self.authority if self.authority else "-"

    def command(self, path: Path) -> list[str]:
        cmd = [
            "codesign",
            "--force",
            "--preserve-metadata=entitlements,requirements,flags,runtime",
            "--sign",
            self.identity,
        ]
        if self.authority:
            cmd.append("--timestamp")
        cmd.append(str(path))
        return cmd

    def sign(self, path: Path) -> None:
        """Sign one file, retrying once on a fresh inode.

        The kernel caches code signatures per inode; a binary patched in
        place can keep failing until it is copied to a new file.

        Raises:
            CodesignError: If both attempts fail
        """
        command = self.command(path)
        try:
            run_command(command, dry_run=self.dry_run, log=self.log)
            return
        except CommandError as e:
            self.log.debug("codesign failed for %s (%s), retrying", path, e)

        try:
            with tempfile.TemporaryDirectory(prefix="macvendor.") as tmp:
                temp_file = Path(tmp) / path.name
                shutil.copy2(path, temp_file)
                shutil.move(temp_file, path)
            run_command(command, dry_run=self.dry_run, log=self.log)
        except (CommandError, OSError) as e:
            raise CodesignError(f"Failed to sign {path}: {e}") from e

    def resign(self, binary: Binary) -> str | None:
        """Re-sign a touched binary.

        Returns:
            None on success, otherwise the warning to report
        """
        if not self.enabled or not binary.touched:
            return None
        self.log.info("codesign %s", binary.path)
        try:
            self.sign(binary.path)
        except CodesignError as e:
            self.log.warning("%s", e)
            return str(e)
        return None


# ----------------------------------------------------------------------------
# Staging layout


class StagingLayout:
    """Locations inside a staging directory.

    Relative arguments are taken relative to the staging root.

    Args:
        root: The staging directory (typically the .app bundle)
        libs: Shared library directory receiving vendored copies
        runtime: Interpreter runtime tree (with bin/ and lib/)
        venv: Isolated environment tree (with bin/ and lib/)
        executable_dir: Directory holding the main executable(s)
    """

    def __init__(
        self,
        root: Pathlike,
        libs: Pathlike = DEFAULT_LIBS_DIR,
        runtime: Pathlike = DEFAULT_RUNTIME_DIR,
        venv: Pathlike = DEFAULT_VENV_DIR,
        executable_dir: Pathlike = DEFAULT_EXECUTABLE_DIR,
    ):
        self.root = Path(root).resolve()
        self.libs_dir = self._inside(libs)
        self.runtime_dir = self._inside(runtime)
        self.venv_dir = self._inside(venv)
        self.executable_dir = self._inside(executable_dir)
        self.log = logging.getLogger(self.__class__.__name__)

    def _inside(self, path: Pathlike) -> Path:
        return normalize(self.root / path)

    def contains(self, path: Pathlike) -> bool:
        return normalize(path).is_relative_to(self.root)

    def check(self) -> None:
        """Make sure the staging tree can be worked on.

        Raises:
            StagingError: If the root is missing or not writable
        """
        if not self.root.is_dir():
            raise StagingError(f"Staging directory not found: {self.root}")
        if not os.access(self.root, os.R_OK | os.W_OK | os.X_OK):
            raise StagingError(f"Staging directory not writable: {self.root}")
        if self.libs_dir.exists() and not self.libs_dir.is_dir():
            raise StagingError(
                f"Shared library path is not a directory: {self.libs_dir}"
            )

    def _machos_in(self, directory: Path, recursive: bool) -> list[Path]:
        if not directory.is_dir():
            return []
        if recursive:
            paths = (
                Path(root) / name
                for root, _folders, files in os.walk(directory)
                for name in files
            )
        else:
            paths = directory.iterdir()
        return [p for p in paths if classify_binary(p) is not Role.NOT_MACHO]

    def discover_roots(self) -> list[Path]:
        """Binaries the closure starts from, sorted.

        The main executable(s), the runtime and environment interpreters,
        and every Mach-O file under the runtime and environment lib trees
        (extension modules and the runtime's own libraries).
        """
        found: set[Path] = set()
        for directory in (
            self.executable_dir,
            self.runtime_dir / "bin",
            self.venv_dir / "bin",
        ):
            found.update(self._machos_in(directory, recursive=False))
        for directory in (self.runtime_dir / "lib", self.venv_dir / "lib"):
            found.update(self._machos_in(directory, recursive=True))
        roots = sorted(found)
        self.log.debug("%d roots under %s", len(roots), self.root)
        return roots


# ----------------------------------------------------------------------------
# Run report


class RelinkReport:
    """What a run did and what may fail at load time on the target."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.passes = 0
        self.vendored: list[VendoredEntry] = []
        self.touched: list[Path] = []
        self.corrupt: list[tuple[Path, str]] = []
        self.unresolved: list[tuple[Path, str]] = []
        self.rewrite_failures: list[tuple[Path, str, str]] = []
        self.leftovers: list[tuple[Path, str, str]] = []
        self.signature_warnings: list[tuple[Path, str]] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def add(self, category: str, *item: object) -> None:
        with self._lock:
            getattr(self, category).append(item)

    def sort(self) -> None:
        with self._lock:
            for category in (
                "corrupt",
                "unresolved",
                "rewrite_failures",
                "leftovers",
                "signature_warnings",
            ):
                getattr(self, category).sort(key=lambda t: tuple(map(str, t)))
            self.touched.sort()

    @property
    def ok(self) -> bool:
        """No known reason for the bundle to fail loading on a clean machine."""
        return not (self.unresolved or self.rewrite_failures or self.leftovers)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "passes": self.passes,
            "vendored": [e.to_dict() for e in self.vendored],
            "touched": [str(p) for p in self.touched],
            "corrupt": [
                {"binary": str(p), "error": msg} for p, msg in self.corrupt
            ],
            "unresolved": [
                {"consumer": str(p), "reference": ref}
                for p, ref in self.unresolved
            ],
            "rewrite_failures": [
                {"consumer": str(p), "reference": ref, "error": msg}
                for p, ref, msg in self.rewrite_failures
            ],
            "leftovers": [
                {"binary": str(p), "reference": ref, "reason": reason}
                for p, ref, reason in self.leftovers
            ],
            "signature_warnings": [
                {"binary": str(p), "warning": msg}
                for p, msg in self.signature_warnings
            ],
        }

    def summary(self) -> None:
        """Log a human readable summary."""
        copied = sum(1 for e in self.vendored if e.copied)
        self.log.info(
            "%d libraries vendored, %d binaries modified in %d passes",
            copied,
            len(self.touched),
            self.passes,
        )
        for path, ref in self.unresolved:
            self.log.warning(
                "UNRESOLVED %s needed by %s (will fail to load)", ref, path
            )
        for path, ref, msg in self.rewrite_failures:
            self.log.warning("NOT PATCHED %s in %s: %s", ref, path, msg)
        for path, ref, reason in self.leftovers:
            self.log.warning("LEFTOVER %s in %s: %s", ref, path, reason)
        for path, msg in self.corrupt:
            self.log.warning("SKIPPED %s: %s", path, msg)
        for path, msg in self.signature_warnings:
            self.log.warning("UNSIGNED %s: %s", path, msg)


# ----------------------------------------------------------------------------
# Closure driver


class State(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DRAINING = "draining"
    DONE = "done"


class Relinker:
    """Vendors the transitive closure of a staging tree's libraries.

    Works in passes: every binary in the worklist is scanned on a thread
    pool, vendorable references are copied into the shared library
    directory and rewritten, and the freshly copied libraries form the next
    worklist. The run ends when a pass copies nothing new; touched binaries
    are then checked once more and re-signed.

    Args:
        layout: The staging tree to work on
        signer: Signer for touched binaries (ad-hoc by default)
        jobs: Number of worker threads per pass

    Example:
        layout = StagingLayout("build/MyApp.app")
        report = Relinker(layout).run()
        report.summary()
    """

    def __init__(
        self,
        layout: StagingLayout,
        signer: Signer | None = None,
        jobs: int = DEFAULT_JOBS,
    ):
        if jobs < 1:
            raise ConfigurationError(f"jobs must be at least 1, got {jobs}")
        self.layout = layout
        self.signer = signer if signer is not None else Signer()
        self.jobs = jobs
        self.registry = VendoringRegistry(
            layout.libs_dir, shared_dirs=[layout.runtime_dir / "lib"]
        )
        self.rewriter = ReferenceRewriter()
        self.report = RelinkReport()
        self.binaries: dict[Path, Binary] = {}
        self.worklist: list[Binary] = []
        self.state = State.IDLE
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self) -> RelinkReport:
        """Relink the staging tree.

        Raises:
            StagingError: If the staging tree cannot be read or written
        """
        if self.state is not State.IDLE:
            raise VendorError(f"Relinker already ran (state {self.state.value})")

        self.layout.check()
        self.prepare_venv_interpreters()
        self.worklist = [self._register(p) for p in self.layout.discover_roots()]
        self.log.info("%d root binaries in %s", len(self.worklist), self.layout.root)

        self.state = State.SCANNING
        while self.worklist:
            self.report.passes += 1
            batch, self.worklist = self.worklist, []
            self.log.info(
                "pass %d: scanning %d binaries", self.report.passes, len(batch)
            )
            self.worklist = self._scan_pass(batch)

        self.state = State.DRAINING
        self._confirm_portable()

        self.state = State.DONE
        self.report.vendored = self.registry.entries()
        self.report.touched = [b.path for b in self.touched_binaries()]
        self._finalize_signatures()
        self.report.sort()
        return self.report

    def touched_binaries(self) -> list[Binary]:
        return sorted(
            (b for b in self.binaries.values() if b.touched),
            key=lambda b: b.path,
        )

    def _register(self, path: Path, origin: Path | None = None) -> Binary:
        binary = self.binaries.get(path)
        if binary is None:
            binary = Binary(path, classify_binary(path), origin)
            self.binaries[path] = binary
        return binary

    def _scan_pass(self, batch: list[Binary]) -> list[Binary]:
        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            results = list(pool.map(self.scan, batch))

        discovered = []
        for new_binaries in results:
            for binary in new_binaries:
                if binary.path in self.binaries:
                    continue
                self.binaries[binary.path] = binary
                discovered.append(binary)
        return sorted(discovered, key=lambda b: b.path)

    def scan(self, binary: Binary) -> list[Binary]:
        """Vendor and rewrite the references of one binary.

        Returns:
            Binaries that became part of the bundle because of this one
        """
        if binary.role is Role.NOT_MACHO:
            return []
        try:
            info = read_macho_info(binary)
        except CorruptBinaryError as e:
            self.log.warning("skipping %s: %s", binary.path, e)
            self.report.add("corrupt", binary.path, str(e))
            return []

        if binary.role is Role.SHARED_LIBRARY and info.install_name:
            self._fix_install_name(binary, info.install_name)

        discovered = []
        for reference in info.references:
            vendored = self._vendor_reference(binary, reference.raw_path, info)
            if vendored is None:
                continue
            entry, created = vendored
            if created:
                new_binary = Binary(
                    entry.destination_path,
                    classify_binary(entry.destination_path),
                    origin=entry.resolved_source_path,
                )
                new_binary.touched = entry.copied
                if new_binary.role is not Role.NOT_MACHO:
                    discovered.append(new_binary)
            try:
                self.rewriter.rewrite(binary, reference.raw_path, entry)
            except RewriteError as e:
                self.log.warning("leaving %s in %s: %s", reference.raw_path, binary.path, e)
                self.report.add(
                    "rewrite_failures", binary.path, reference.raw_path, str(e)
                )
        return discovered

    def _needs_vendoring(self, binary: Binary, raw_path: str) -> bool:
        kind = classify_reference(raw_path)
        if kind is Classification.VENDORABLE:
            return True
        if kind is Classification.ALREADY_RELATIVE and binary.relocated:
            # a relocated copy's @loader_path no longer points where it did
            if raw_path.startswith(LOADER_PATH):
                rest = _strip_marker(raw_path, LOADER_PATH)
                return not (binary.path.parent / rest).exists()
        return False

    def _vendor_reference(
        self, binary: Binary, raw_path: str, info: MachOInfo
    ) -> tuple[VendoredEntry, bool] | None:
        if not self._needs_vendoring(binary, raw_path):
            self.log.debug("%s: keeping %s", binary.path.name, raw_path)
            return None

        basename = reference_basename(raw_path)
        candidates = candidate_sources(
            raw_path, binary.origin, info.rpaths, self.layout.executable_dir
        )
        try:
            return self.registry.vendor(basename, candidates)
        except UnresolvedDependencyError as e:
            self.log.warning("%s needed by %s: %s", raw_path, binary.path, e)
            self.report.add("unresolved", binary.path, raw_path)
            return None

    def _fix_install_name(self, binary: Binary, install_name: str) -> None:
        wanted = f"{LOADER_PATH}/{binary.path.name}"
        if install_name == wanted:
            return
        try:
            self.rewriter.change_install_name(binary, wanted)
        except RewriteError as e:
            self.log.warning("keeping install name of %s: %s", binary.path, e)
            self.report.add("rewrite_failures", binary.path, install_name, str(e))

    def _confirm_portable(self) -> None:
        """Re-read touched binaries and flag references leaving the bundle."""
        for binary in self.touched_binaries():
            try:
                info = read_macho_info(binary)
            except CorruptBinaryError as e:
                self.log.warning("cannot re-read %s: %s", binary.path, e)
                continue
            for reference in info.references:
                raw_path = reference.raw_path
                kind = classify_reference(raw_path)
                reason = None
                if kind is Classification.VENDORABLE:
                    reason = "reference outside the bundle"
                elif raw_path.startswith(LOADER_PATH):
                    target = normalize(
                        binary.path.parent / _strip_marker(raw_path, LOADER_PATH)
                    )
                    if not self.layout.contains(target):
                        reason = "loader-relative reference leaves the bundle"
                    elif not target.exists():
                        reason = "loader-relative reference is dangling"
                if reason:
                    self.log.warning("%s: %s (%s)", binary.path, raw_path, reason)
                    self.report.add("leftovers", binary.path, raw_path, reason)

    def _finalize_signatures(self) -> None:
        if self.state is not State.DONE:
            raise VendorError("Signatures can only be finalized once relinking is done")
        for binary in self.touched_binaries():
            warning = self.signer.resign(binary)
            if warning:
                self.report.add("signature_warnings", binary.path, warning)

    # ------------------------------------------------------------------------
    # Environment interpreters

    def prepare_venv_interpreters(self) -> None:
        """Make the environment's interpreters usable inside the bundle.

        A ``python*`` symlink pointing outside the staging tree is replaced
        by a copy of the runtime interpreter, and ``@executable_path``
        references that only resolve from the runtime's bin directory are
        re-anchored on the runtime files.
        """
        venv_bin = self.layout.venv_dir / "bin"
        runtime_bin = self.layout.runtime_dir / "bin"
        if not venv_bin.is_dir():
            return

        for entry in sorted(venv_bin.iterdir()):
            if not entry.name.startswith("python"):
                continue
            if entry.is_symlink():
                target = entry.resolve()
                if target.exists() and self.layout.contains(target):
                    continue
                binary = self._materialize_interpreter(entry, runtime_bin)
                if binary is None:
                    continue
            else:
                if classify_binary(entry) is not Role.EXECUTABLE:
                    continue
                binary = self._register(entry)
            self._reanchor_executable_references(binary, venv_bin, runtime_bin)

    def _materialize_interpreter(
        self, link: Path, runtime_bin: Path
    ) -> Binary | None:
        replacement = runtime_bin / link.name
        if not replacement.is_file():
            replacement = runtime_bin / "python3"
        if classify_binary(replacement.resolve()) is not Role.EXECUTABLE:
            self.log.warning(
                "%s points outside the bundle and no runtime interpreter "
                "replaces it",
                link,
            )
            return None
        try:
            link.unlink()
            shutil.copy2(replacement, link)
            make_writable(link)
        except OSError as e:
            raise StagingError(f"Cannot replace {link}: {e}") from e
        self.log.info("replaced %s with a copy of %s", link, replacement)
        binary = self._register(link)
        binary.touched = True
        return binary

    def _reanchor_executable_references(
        self, binary: Binary, venv_bin: Path, runtime_bin: Path
    ) -> None:
        try:
            info = read_macho_info(binary)
        except CorruptBinaryError as e:
            self.log.warning("skipping %s: %s", binary.path, e)
            return
        for reference in info.references:
            raw_path = reference.raw_path
            if not raw_path.startswith(EXECUTABLE_PATH):
                continue
            rest = _strip_marker(raw_path, EXECUTABLE_PATH)
            if (venv_bin / rest).exists():
                continue
            target = normalize(runtime_bin / rest)
            if not target.exists():
                continue
            try:
                self.rewriter.change_reference(
                    binary, raw_path, loader_relative_path(binary.path, target)
                )
            except RewriteError as e:
                self.report.add("rewrite_failures", binary.path, raw_path, str(e))


def relink(
    staging: Pathlike,
    libs: Pathlike = DEFAULT_LIBS_DIR,
    runtime: Pathlike = DEFAULT_RUNTIME_DIR,
    venv: Pathlike = DEFAULT_VENV_DIR,
    executable_dir: Pathlike = DEFAULT_EXECUTABLE_DIR,
    dev_id: str | None = None,
    codesign: bool = True,
    jobs: int = DEFAULT_JOBS,
    dry_run: bool = False,
) -> RelinkReport:
    """Relink a staging tree in one call.

    With dry_run the tree is still relinked but codesign commands are only
    logged.

    Returns:
        The run report
    """
    layout = StagingLayout(
        staging,
        libs=libs,
        runtime=runtime,
        venv=venv,
        executable_dir=executable_dir,
    )
    signer = Signer(dev_id=dev_id, enabled=codesign, dry_run=dry_run)
    return Relinker(layout, signer=signer, jobs=jobs).run()


# ----------------------------------------------------------------------------
# Command-line interface


def _setting(
    value: str | None, config: dict[str, object], section: str, key: str, default: str
) -> str:
    """Command line beats config file beats default."""
    if value is not None:
        return value
    return get_config_value(config, section, key, default) or default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macvendor",
        description=(
            "Vendor the dynamic libraries of a macOS staging bundle and "
            "relink its binaries to load them relative to themselves."
        ),
        epilog=(
            "Examples:\n"
            "  macvendor build/MyApp.app\n"
            "  macvendor build/MyApp.app --libs Contents/Frameworks -j 4\n"
            "  macvendor build/MyApp.app --report relink.json --strict\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "staging",
        help="staging directory to relink in place",
    )
    parser.add_argument(
        "--libs",
        metavar="DIR",
        help=f"shared library directory (default: {DEFAULT_LIBS_DIR})",
    )
    parser.add_argument(
        "--runtime",
        metavar="DIR",
        help=f"interpreter runtime tree (default: {DEFAULT_RUNTIME_DIR})",
    )
    parser.add_argument(
        "--venv",
        metavar="DIR",
        help=f"isolated environment tree (default: {DEFAULT_VENV_DIR})",
    )
    parser.add_argument(
        "--executable-dir",
        metavar="DIR",
        help=f"main executable directory (default: {DEFAULT_EXECUTABLE_DIR})",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        metavar="N",
        help=f"worker threads per pass (default: {DEFAULT_JOBS})",
    )
    parser.add_argument(
        "-i",
        "--dev-id",
        metavar="ID",
        help="Developer ID name (or set DEV_ID env var; default: ad-hoc)",
    )
    parser.add_argument(
        "--no-sign",
        action="store_true",
        help="do not re-sign modified binaries",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="log codesign commands without running them",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        help="write a JSON report of the run",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="exit with status 2 if any library is left unresolved",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="configuration file (default: ./.macvendor.toml or ./macvendor.toml)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def _run_cli(args: argparse.Namespace) -> RelinkReport:
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        config = load_config(config_path)
    else:
        config = get_config()

    jobs_setting = _setting(args.jobs, config, "relink", "jobs", str(DEFAULT_JOBS))
    try:
        jobs = int(jobs_setting)
    except ValueError as e:
        raise ConfigurationError(f"Invalid job count: {jobs_setting!r}") from e

    dev_id = args.dev_id
    if dev_id is None:
        dev_id = get_config_value(config, "sign", "dev_id")

    report = relink(
        args.staging,
        libs=_setting(args.libs, config, "relink", "libs", DEFAULT_LIBS_DIR),
        runtime=_setting(
            args.runtime, config, "relink", "runtime", DEFAULT_RUNTIME_DIR
        ),
        venv=_setting(args.venv, config, "relink", "venv", DEFAULT_VENV_DIR),
        executable_dir=_setting(
            args.executable_dir,
            config,
            "relink",
            "executable_dir",
            DEFAULT_EXECUTABLE_DIR,
        ),
        dev_id=dev_id,
        codesign=not args.no_sign,
        jobs=jobs,
        dry_run=args.dry_run,
    )
    report.summary()

    if args.report:
        try:
            with open(args.report, "w", encoding="utf-8") as f:
                json.dump(report.to_dict(), f, indent=2)
        except OSError as e:
            raise FileError(f"Cannot write report {args.report}: {e}") from e
    return report


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macvendor."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    try:
        report = _run_cli(args)
    except VendorError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)

    if args.strict and not report.ok:
        sys.exit(2)


if __name__ == "__main__":
    main()
