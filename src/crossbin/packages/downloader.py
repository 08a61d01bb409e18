"""Package downloader with progress tracking and checksum verification.

This module handles downloading dependency archives from URLs, extracting
them, and verifying integrity with SHA256 checksums.
"""

import hashlib
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from ..errors import IntegrityError, NetworkError

logger = logging.getLogger(__name__)


class DownloadError(NetworkError):
    """Raised when download fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Client errors other than 408/429 will not succeed on retry."""
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


class ChecksumError(IntegrityError):
    """Raised when checksum verification fails."""

    pass


class ExtractionError(IntegrityError):
    """Raised when archive extraction fails."""

    pass


def sha256_file(file_path: Path, chunk_size: int = 8192) -> str:
    """Compute the SHA256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


class PackageDownloader:
    """Downloads and extracts packages with progress tracking."""

    def __init__(
        self,
        chunk_size: int = 8192,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ):
        """Initialize downloader.

        Args:
            chunk_size: Size of chunks for downloading and hashing
            session: HTTP session to reuse connections (created if omitted)
            timeout: Per-request timeout in seconds
        """
        self.chunk_size = chunk_size
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def download(
        self,
        url: str,
        dest_path: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
    ) -> Path:
        """Download a file from a URL.

        The file is written to a temporary sibling and renamed into place
        only after the checksum has been verified.

        Args:
            url: URL to download from
            dest_path: Destination file path
            checksum: Optional SHA256 checksum for verification
            show_progress: Whether to show progress bar

        Returns:
            Path to the downloaded file

        Raises:
            DownloadError: If download fails
            ChecksumError: If checksum verification fails
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        temp_file = dest_path.with_suffix(dest_path.suffix + ".tmp")

        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get("content-length", 0))

            progress_bar = None
            if show_progress and total_size > 0:
                filename = Path(urlparse(url).path).name
                progress_bar = tqdm(
                    total=total_size,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc=f"Downloading {filename}",
                    leave=False,
                )

            sha256 = hashlib.sha256()

            try:
                with open(temp_file, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            f.write(chunk)
                            sha256.update(chunk)
                            if progress_bar:
                                progress_bar.update(len(chunk))
            finally:
                if progress_bar:
                    progress_bar.close()

            if checksum:
                actual_checksum = sha256.hexdigest()
                if actual_checksum.lower() != checksum.lower():
                    raise ChecksumError(
                        f"Checksum mismatch for {url}\n"
                        + f"Expected: {checksum}\n"
                        + f"Got: {actual_checksum}"
                    )

            temp_file.replace(dest_path)
            logger.debug(f"Downloaded {url} -> {dest_path}")
            return dest_path

        except requests.RequestException as e:
            response = getattr(e, "response", None)
            status_code = response.status_code if response is not None else None
            raise DownloadError(f"Failed to download {url}: {e}", status_code) from e

        finally:
            if temp_file.exists():
                temp_file.unlink()

    def extract_archive(self, archive_path: Path, dest_dir: Path) -> Path:
        """Extract an archive file.

        Supports gzip/bzip2/xz tarballs (including ``.crate`` files) and zip.

        Args:
            archive_path: Path to the archive file
            dest_dir: Destination directory for extraction

        Returns:
            Path to the extraction directory

        Raises:
            ExtractionError: If extraction fails
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir)

        if not archive_path.exists():
            raise ExtractionError(f"Archive not found: {archive_path}")

        dest_dir.mkdir(parents=True, exist_ok=True)

        try:
            if archive_path.suffix == ".zip":
                self._extract_zip(archive_path, dest_dir)
            elif tarfile.is_tarfile(archive_path):
                self._extract_tar(archive_path, dest_dir)
            else:
                raise ExtractionError(f"Unsupported archive format: {archive_path.name}")
            return dest_dir

        except ExtractionError:
            raise
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e

    def _extract_tar(self, archive_path: Path, dest_dir: Path) -> None:
        """Extract a tar archive, refusing members that escape dest_dir."""
        root = dest_dir.resolve()
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                target = (root / member.name).resolve()
                if target != root and root not in target.parents:
                    raise ExtractionError(
                        f"Archive member escapes destination: {member.name}"
                    )
                if member.issym() or member.islnk():
                    raise ExtractionError(f"Archive contains a link: {member.name}")
            tar.extractall(dest_dir)

    def _extract_zip(self, archive_path: Path, dest_dir: Path) -> None:
        with zipfile.ZipFile(archive_path, "r") as zip_file:
            zip_file.extractall(dest_dir)
