"""Cache management for crossbin builds.

This module provides the persistent cache structure shared by all build
pipelines, and the CacheManager that hands out scoped access to named
cache regions according to their sharing mode.

Cache Structure:
    .crossbin/
    ├── cache/
    │   ├── dependency-fetch/       # LOCKED: downloaded crates + vendor tree
    │   │   ├── crates/
    │   │   │   └── {name}-{version}.crate
    │   │   └── vendor/
    │   │       └── {name}-{version}/
    │   ├── compiler-object/        # CONCURRENT_SAFE: content-addressed objects
    │   ├── package-manager/        # EXCLUSIVE: CARGO_HOME state
    │   └── package-manager.private/
    │       └── {pid}-{n}/          # scratch mounts for concurrent holders
    └── build/
        └── {triple}/               # CARGO_TARGET_DIR per target triple

Regions are created on first use and never removed by crossbin; retention
is an external policy.
"""

import enum
import fcntl
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "CROSSBIN_CACHE_DIR"
LOCK_FILENAME = ".crossbin.lock"


class CacheConfigurationError(ConfigurationError):
    """Raised when a cache region is declared with conflicting sharing modes."""

    pass


class SharingMode(enum.Enum):
    """How concurrent pipelines may use a cache region."""

    EXCLUSIVE = "exclusive"
    LOCKED = "locked"
    CONCURRENT_SAFE = "concurrent"

    @classmethod
    def parse(cls, value: str) -> "SharingMode":
        aliases = {
            "exclusive": cls.EXCLUSIVE,
            "private": cls.EXCLUSIVE,
            "locked": cls.LOCKED,
            "concurrent": cls.CONCURRENT_SAFE,
            "concurrent_safe": cls.CONCURRENT_SAFE,
            "concurrent-safe": cls.CONCURRENT_SAFE,
            "shared": cls.CONCURRENT_SAFE,
        }
        try:
            return aliases[value.strip().lower()]
        except KeyError:
            raise CacheConfigurationError(
                f"Unknown cache sharing mode '{value}'. "
                + "Expected one of: exclusive, locked, concurrent"
            ) from None


@dataclass(frozen=True)
class CacheRegion:
    """One persistent cache directory category."""

    name: str
    mount_path: Path
    sharing_mode: SharingMode


class Cache:
    """Manages the crossbin cache directory structure.

    The cache can be located in the project directory (.crossbin/cache) or in
    a global location specified by the CROSSBIN_CACHE_DIR environment variable.
    """

    DEPENDENCY_FETCH = "dependency-fetch"
    COMPILER_OBJECT = "compiler-object"
    PACKAGE_MANAGER = "package-manager"

    def __init__(self, project_dir: Optional[Path] = None, cache_root: Optional[Path] = None):
        """Initialize cache layout.

        Args:
            project_dir: Project directory. If None, uses current directory.
            cache_root: Explicit cache root (e.g. from crossbin.ini)
        """
        if project_dir is None:
            project_dir = Path.cwd()

        self.project_dir = Path(project_dir).resolve()

        cache_env = os.environ.get(CACHE_DIR_ENV)
        if cache_env:
            self.cache_root = Path(cache_env).resolve()
        elif cache_root is not None:
            self.cache_root = Path(cache_root).resolve()
        else:
            self.cache_root = self.project_dir / ".crossbin" / "cache"

        self.build_root = self.project_dir / ".crossbin" / "build"

    def region_path(self, name: str) -> Path:
        """Directory backing a named cache region."""
        return self.cache_root / name

    def region(self, name: str, sharing_mode: SharingMode) -> CacheRegion:
        return CacheRegion(name=name, mount_path=self.region_path(name), sharing_mode=sharing_mode)

    def dependency_fetch_region(self) -> CacheRegion:
        return self.region(self.DEPENDENCY_FETCH, SharingMode.LOCKED)

    def compiler_object_region(self) -> CacheRegion:
        return self.region(self.COMPILER_OBJECT, SharingMode.CONCURRENT_SAFE)

    def package_manager_region(self) -> CacheRegion:
        return self.region(self.PACKAGE_MANAGER, SharingMode.EXCLUSIVE)

    def standard_regions(self) -> list[CacheRegion]:
        """The regions every build pipeline declares."""
        return [
            self.dependency_fetch_region(),
            self.compiler_object_region(),
            self.package_manager_region(),
        ]

    def get_build_dir(self, triple: str) -> Path:
        """Get the build directory for a target triple.

        Args:
            triple: Canonical triple string (e.g. 'arm64-unknown-linux-musl')

        Returns:
            Path to the triple's build directory
        """
        return self.build_root / triple

    def ensure_build_directories(self, triple: str) -> None:
        self.get_build_dir(triple).mkdir(parents=True, exist_ok=True)

    def clean_build(self, triple: str) -> None:
        """Remove all build artifacts for a target triple."""
        build_dir = self.get_build_dir(triple)
        if build_dir.exists():
            shutil.rmtree(build_dir)


class ScopedHandle:
    """Scoped access to a cache region.

    Use as a context manager; the region is released on every exit path,
    including exceptions and KeyboardInterrupt.
    """

    def __init__(self, manager: "CacheManager", region: CacheRegion):
        self.manager = manager
        self.region = region
        self.path: Optional[Path] = None
        self.is_private = False
        self._lock_file = None
        self._thread_lock: Optional[threading.Lock] = None
        self._private_slot: Optional[int] = None

    def __enter__(self) -> "ScopedHandle":
        self.manager._enter(self)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def held(self) -> bool:
        return self.path is not None

    def release(self) -> None:
        if self.path is None:
            return
        self.manager._exit(self)
        self.path = None


class CacheManager:
    """Hands out scoped access to cache regions.

    Sharing modes:
        EXCLUSIVE: one holder of the shared directory at a time; a concurrent
            acquirer gets a private scratch mount instead of waiting.
        LOCKED: holders are serialized and every waiter proceeds in turn.
        CONCURRENT_SAFE: no coordination; content is partitioned by hash.

    A region's sharing mode is fixed once declared. Declaring the same region
    name with another mode is a configuration error raised at startup.
    """

    def __init__(self, cache: Cache):
        self.cache = cache
        self._registry_lock = threading.Lock()
        self._regions: Dict[str, CacheRegion] = {}
        self._region_locks: Dict[str, threading.Lock] = {}
        self._shared_holders: set = set()
        self._private_slots: Dict[str, set] = {}

    def declare(self, region: CacheRegion) -> CacheRegion:
        """Register a region, checking its sharing mode is consistent.

        Raises:
            CacheConfigurationError: If the region was declared with another mode
        """
        with self._registry_lock:
            existing = self._regions.get(region.name)
            if existing is not None:
                if existing.sharing_mode != region.sharing_mode:
                    raise CacheConfigurationError(
                        f"Cache region '{region.name}' requested as "
                        + f"{region.sharing_mode.value} but already declared as "
                        + f"{existing.sharing_mode.value}"
                    )
                return existing
            self._regions[region.name] = region
            self._region_locks[region.name] = threading.Lock()
            return region

    def declare_all(self, regions: Iterable[CacheRegion]) -> None:
        for region in regions:
            self.declare(region)

    def acquire(self, region: CacheRegion) -> ScopedHandle:
        """Get a scoped handle for a region.

        The handle is acquired when its ``with`` block is entered.
        """
        return ScopedHandle(self, self.declare(region))

    def _enter(self, handle: ScopedHandle) -> None:
        region = handle.region
        mode = region.sharing_mode

        if mode is SharingMode.CONCURRENT_SAFE:
            region.mount_path.mkdir(parents=True, exist_ok=True)
            handle.path = region.mount_path
        elif mode is SharingMode.LOCKED:
            self._enter_locked(handle)
        else:
            self._enter_exclusive(handle)

        logger.debug(f"Acquired cache region {region.name} ({mode.value}) at {handle.path}")

    def _enter_locked(self, handle: ScopedHandle) -> None:
        region = handle.region
        thread_lock = self._region_locks[region.name]
        thread_lock.acquire()
        try:
            region.mount_path.mkdir(parents=True, exist_ok=True)
            handle._lock_file = self._lock_path(region.mount_path)
        except BaseException:
            thread_lock.release()
            raise
        handle._thread_lock = thread_lock
        handle.path = region.mount_path

    def _enter_exclusive(self, handle: ScopedHandle) -> None:
        region = handle.region
        with self._registry_lock:
            claimed = region.name not in self._shared_holders
            if claimed:
                self._shared_holders.add(region.name)

        try:
            if claimed:
                region.mount_path.mkdir(parents=True, exist_ok=True)
                lock_file = self._lock_path(region.mount_path, blocking=False)
                if lock_file is not None:
                    handle._lock_file = lock_file
                    handle.path = region.mount_path
                    return
                # Held by another process
                with self._registry_lock:
                    self._shared_holders.discard(region.name)

            with self._registry_lock:
                slots = self._private_slots.setdefault(region.name, set())
                slot = 1
                while slot in slots:
                    slot += 1
                slots.add(slot)
                handle._private_slot = slot

            private = region.mount_path.with_name(region.mount_path.name + ".private")
            path = private / f"{os.getpid()}-{slot}"
            path.mkdir(parents=True, exist_ok=True)
            handle.path = path
            handle.is_private = True
            logger.info(f"Cache region {region.name} is busy, using private mount {path}")
        except BaseException:
            self._release_exclusive(handle)
            raise

    def _exit(self, handle: ScopedHandle) -> None:
        region = handle.region
        mode = region.sharing_mode
        if mode is SharingMode.LOCKED:
            try:
                self._unlock_path(handle._lock_file)
            finally:
                handle._lock_file = None
                if handle._thread_lock is not None:
                    handle._thread_lock.release()
                    handle._thread_lock = None
        elif mode is SharingMode.EXCLUSIVE:
            self._release_exclusive(handle)
        logger.debug(f"Released cache region {region.name}")

    def _release_exclusive(self, handle: ScopedHandle) -> None:
        name = handle.region.name
        try:
            self._unlock_path(handle._lock_file)
        finally:
            handle._lock_file = None
            with self._registry_lock:
                if handle._private_slot is None:
                    self._shared_holders.discard(name)
                else:
                    self._private_slots.get(name, set()).discard(handle._private_slot)
                    handle._private_slot = None

    @staticmethod
    def _lock_path(mount_path: Path, blocking: bool = True):
        """Take the cross-process lock file of a region.

        Returns:
            The open lock file, or None when non-blocking and already held
        """
        lock_file = open(mount_path / LOCK_FILENAME, "a+")
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(lock_file.fileno(), flags)
        except BlockingIOError:
            lock_file.close()
            return None
        except BaseException:
            lock_file.close()
            raise
        return lock_file

    @staticmethod
    def _unlock_path(lock_file) -> None:
        if lock_file is None:
            return
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()
