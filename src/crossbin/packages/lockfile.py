"""Locked dependency model.

Loads a project's ``Cargo.lock`` into an ordered, immutable set of
DependencyLockEntry values. Only registry packages need fetching; local
workspace members carry no ``source`` and are skipped.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import toml

from ..config.ini_parser import DEFAULT_REGISTRY_MIRROR
from ..errors import ConfigurationError


class LockfileError(ConfigurationError):
    """Raised when a lockfile is missing or malformed."""

    pass


class UnsupportedSourceError(LockfileError):
    """Raised for lock entries whose source cannot be fetched offline-safely."""

    pass


# Sources served by the default crates.io mirror
CRATES_IO_SOURCES = (
    "registry+https://github.com/rust-lang/crates.io-index",
    "sparse+https://index.crates.io/",
)


@dataclass(frozen=True)
class DependencyLockEntry:
    """One locked dependency."""

    name: str
    version: str
    source_locator: str
    integrity_hash: str

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class Lockfile:
    """The full locked dependency set of a project revision."""

    path: Path
    digest: str
    entries: Tuple[DependencyLockEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def load(cls, path: Path, mirror: str = DEFAULT_REGISTRY_MIRROR) -> "Lockfile":
        """Parse a Cargo.lock file.

        Args:
            path: Path to Cargo.lock
            mirror: Download URL template with {name} and {version} fields

        Returns:
            Lockfile with one entry per registry package

        Raises:
            LockfileError: If the file is missing or not valid TOML
            UnsupportedSourceError: For git sources, foreign registries or
                registry packages without a checksum
        """
        path = Path(path)
        if not path.exists():
            raise LockfileError(f"Lockfile not found: {path}")

        raw = path.read_bytes()
        try:
            data = toml.loads(raw.decode("utf-8"))
        except (toml.TomlDecodeError, UnicodeDecodeError) as e:
            raise LockfileError(f"Failed to parse {path}: {e}") from e

        entries = []
        for package in data.get("package", []):
            entry = cls._entry_from_package(package, mirror)
            if entry is not None:
                entries.append(entry)

        entries.sort(key=lambda e: (e.name, e.version))
        return cls(
            path=path,
            digest=hashlib.sha256(raw).hexdigest(),
            entries=tuple(entries),
        )

    @staticmethod
    def _entry_from_package(package: dict, mirror: str):
        name = package.get("name")
        version = package.get("version")
        source = package.get("source")
        if not name or not version:
            raise LockfileError(f"Lock entry without name/version: {package!r}")
        if source is None:
            return None  # workspace member

        if source.startswith("git+"):
            raise UnsupportedSourceError(
                f"{name} {version} comes from a git source ({source}). "
                + "Only registry dependencies can be fetched and verified."
            )
        if source not in CRATES_IO_SOURCES:
            raise UnsupportedSourceError(
                f"{name} {version} comes from an unsupported registry: {source}"
            )

        checksum = package.get("checksum")
        if not checksum:
            raise UnsupportedSourceError(
                f"{name} {version} has no checksum in the lockfile"
            )

        return DependencyLockEntry(
            name=name,
            version=version,
            source_locator=mirror.format(name=name, version=version),
            integrity_hash=checksum.lower(),
        )
