"""Package management for crossbin.

This module handles the cache hierarchy, toolchain resolution, and fetching
and vendoring of locked dependencies.
"""

from .cache import (
    Cache,
    CacheConfigurationError,
    CacheManager,
    CacheRegion,
    ScopedHandle,
    SharingMode,
)
from .dependency_fetcher import DependencyFetcher, DependencyGraph, FetchError
from .downloader import ChecksumError, DownloadError, ExtractionError, PackageDownloader
from .lockfile import DependencyLockEntry, Lockfile, LockfileError, UnsupportedSourceError
from .platform_utils import PlatformDetector, PlatformError
from .toolchain import ToolchainResolver, ToolchainSpec, UnsupportedTargetError

__all__ = [
    "Cache",
    "CacheManager",
    "CacheRegion",
    "CacheConfigurationError",
    "ScopedHandle",
    "SharingMode",
    "DependencyFetcher",
    "DependencyGraph",
    "FetchError",
    "PackageDownloader",
    "DownloadError",
    "ChecksumError",
    "ExtractionError",
    "DependencyLockEntry",
    "Lockfile",
    "LockfileError",
    "UnsupportedSourceError",
    "PlatformDetector",
    "PlatformError",
    "ToolchainResolver",
    "ToolchainSpec",
    "UnsupportedTargetError",
]
