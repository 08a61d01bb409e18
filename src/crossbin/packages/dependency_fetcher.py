"""Dependency fetching into the shared dependency cache.

This module materializes the locked dependency graph of a project into the
``dependency-fetch`` cache region so the compile stage can run without
network access.

Design:
    - Each crate archive is stored once, keyed by name and version
    - An archive already in the cache whose SHA256 matches the lock entry is a
      cache hit and costs no network call
    - Archives are unpacked into a vendor tree Cargo can use as a source
      replacement (``.cargo-checksum.json`` per crate)
    - Transport failures are retried with exponential backoff; integrity
      failures are fatal immediately
    - The whole fetch runs under the region's LOCKED sharing mode so concurrent
      pipelines never corrupt the shared index state
"""

import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import NetworkError
from .cache import CacheManager, CacheRegion
from .downloader import DownloadError, ExtractionError, PackageDownloader, sha256_file
from .lockfile import DependencyLockEntry, Lockfile

logger = logging.getLogger(__name__)

VENDOR_SOURCE_NAME = "crossbin-vendor"


class FetchError(NetworkError):
    """Raised when a dependency could not be fetched after all retries."""

    pass


@dataclass(frozen=True)
class DependencyGraph:
    """The materialized dependency set of one project revision."""

    lockfile_digest: str
    entries: Tuple[DependencyLockEntry, ...]
    vendor_dir: Path
    locations: Tuple[Tuple[str, Path], ...]

    def location(self, key: str) -> Path:
        """Vendored directory for an entry key (``name-version``)."""
        for entry_key, path in self.locations:
            if entry_key == key:
                return path
        raise KeyError(key)

    def source_replacement_args(self) -> List[str]:
        """Cargo ``--config`` arguments redirecting crates.io to the vendor tree."""
        return [
            "--config",
            f'source.crates-io.replace-with="{VENDOR_SOURCE_NAME}"',
            "--config",
            f'source.{VENDOR_SOURCE_NAME}.directory="{self.vendor_dir.as_posix()}"',
        ]


class DependencyFetcher:
    """Fetches locked dependencies into the dependency cache region.

    Example usage:
        fetcher = DependencyFetcher(manager, cache.dependency_fetch_region())
        graph = fetcher.fetch(Lockfile.load(project / "Cargo.lock"))
    """

    def __init__(
        self,
        cache_manager: CacheManager,
        region: CacheRegion,
        downloader: Optional[PackageDownloader] = None,
        max_retries: int = 3,
        backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        show_progress: bool = True,
    ):
        """
        Initialize dependency fetcher.

        Args:
            cache_manager: Shared cache manager
            region: The LOCKED dependency-fetch region
            downloader: Downloader to use (created if omitted)
            max_retries: Retries after the first failed download of an entry
            backoff: Base delay in seconds, doubled for each retry
            sleep: Sleep function (injectable for tests)
            show_progress: Whether to show download progress bars
        """
        self.cache_manager = cache_manager
        self.region = region
        self.downloader = downloader if downloader is not None else PackageDownloader()
        self.max_retries = max_retries
        self.backoff = backoff
        self.sleep = sleep
        self.show_progress = show_progress
        self._graphs: Dict[str, DependencyGraph] = {}
        self._graphs_lock = threading.Lock()

    def fetch(self, lockfile: Lockfile) -> DependencyGraph:
        """
        Materialize every entry of a lockfile.

        Args:
            lockfile: Parsed lockfile

        Returns:
            DependencyGraph pointing at the vendored sources

        Raises:
            FetchError: If an entry cannot be downloaded after retries
            ChecksumError: If a downloaded archive does not match its hash
            ExtractionError: If an archive cannot be unpacked
        """
        cached = self._cached_graph(lockfile.digest)
        if cached is not None:
            return cached

        with self.cache_manager.acquire(self.region) as handle:
            cached = self._cached_graph(lockfile.digest)
            if cached is not None:
                return cached

            root = handle.path
            crates_dir = root / "crates"
            vendor_dir = root / "vendor"
            crates_dir.mkdir(parents=True, exist_ok=True)
            vendor_dir.mkdir(parents=True, exist_ok=True)

            locations = []
            downloaded = 0
            for entry in lockfile.entries:
                crate_path, was_downloaded = self._ensure_archive(entry, crates_dir)
                downloaded += int(was_downloaded)
                locations.append((entry.key, self._ensure_vendored(entry, crate_path, vendor_dir)))

            logger.info(
                f"Dependencies ready: {len(lockfile.entries)} locked, "
                + f"{downloaded} downloaded, {len(lockfile.entries) - downloaded} cached"
            )

            graph = DependencyGraph(
                lockfile_digest=lockfile.digest,
                entries=lockfile.entries,
                vendor_dir=vendor_dir,
                locations=tuple(locations),
            )

        with self._graphs_lock:
            self._graphs[lockfile.digest] = graph
        return graph

    def _cached_graph(self, digest: str) -> Optional[DependencyGraph]:
        with self._graphs_lock:
            return self._graphs.get(digest)

    def _ensure_archive(self, entry: DependencyLockEntry, crates_dir: Path) -> Tuple[Path, bool]:
        archive = crates_dir / f"{entry.key}.crate"
        if archive.exists():
            if sha256_file(archive) == entry.integrity_hash:
                logger.debug(f"Cache hit: {entry.key}")
                return archive, False
            logger.warning(f"Cached archive {archive.name} is corrupt, refetching")
            archive.unlink()

        self._download_with_retry(entry, archive)
        return archive, True

    def _download_with_retry(self, entry: DependencyLockEntry, archive: Path) -> Path:
        attempt = 0
        while True:
            try:
                return self.downloader.download(
                    entry.source_locator,
                    archive,
                    checksum=entry.integrity_hash,
                    show_progress=self.show_progress,
                )
            except DownloadError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise FetchError(
                        f"Failed to fetch {entry.name} {entry.version} "
                        + f"after {attempt + 1} attempt(s): {e}"
                    ) from e
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    f"Fetching {entry.key} failed ({e}); retrying in {delay:.1f}s "
                    + f"[{attempt + 1}/{self.max_retries}]"
                )
                self.sleep(delay)
                attempt += 1

    def _ensure_vendored(self, entry: DependencyLockEntry, archive: Path, vendor_dir: Path) -> Path:
        dest = vendor_dir / entry.key
        marker = dest / ".cargo-checksum.json"
        if marker.exists():
            return dest

        staging = vendor_dir / f".{entry.key}.tmp"
        if staging.exists():
            shutil.rmtree(staging)
        try:
            self.downloader.extract_archive(archive, staging)
            extracted = staging / entry.key
            if not extracted.is_dir():
                raise ExtractionError(f"{archive.name} does not contain {entry.key}/")

            # Cargo checks listed files only; the package hash ties it to the lock entry
            (extracted / ".cargo-checksum.json").write_text(
                json.dumps({"files": {}, "package": entry.integrity_hash}),
                encoding="utf-8",
            )
            if dest.exists():
                shutil.rmtree(dest)
            extracted.rename(dest)
        finally:
            if staging.exists():
                shutil.rmtree(staging)
        return dest
