# zendloader/managers/archive_manager.py

import shutil
import tarfile
import tempfile
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import requests
import urllib3

from ..core import config
from ..core.errors import FatalInstallError, DownloadError, ExtractionError

logger = logging.getLogger(__name__)


# --- Scoped Working Directory ---
@contextmanager
def scoped_temp_dir(parent_dir: Optional[Path] = None) -> Iterator[Path]:
    """
    Creates a private working directory and removes it on exit, whether the
    block finished normally or raised.
    """
    if parent_dir is not None and not config.ensure_dir(Path(parent_dir)):
        raise FatalInstallError(f"Failed to create temporary directory parent '{parent_dir}'.")
    try:
        work_dir = Path(tempfile.mkdtemp(prefix=config.TEMP_DIR_PREFIX, dir=parent_dir))
    except OSError as e:
        raise FatalInstallError(f"Failed to create temporary directory: {e}") from e
    logger.info(f"ARCHIVE_MANAGER: Created temporary directory: {work_dir}")
    try:
        yield work_dir
    finally:
        logger.info(f"ARCHIVE_MANAGER: Cleaning up temporary directory: {work_dir}")
        shutil.rmtree(work_dir, ignore_errors=True)


# --- Download ---
def download_archive(url: str, dest_path: Path, timeout: float = config.DOWNLOAD_TIMEOUT,
                     session: Optional[requests.Session] = None) -> Path:
    """Streams `url` to `dest_path`. Raises DownloadError on any failure."""
    logger.info(f"ARCHIVE_MANAGER: Downloading loader archive from {url}...")
    http = session or requests
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            if response.status_code != 200:
                raise DownloadError(
                    f"Failed to download loader archive: HTTP {response.status_code} from {url}",
                    status_code=response.status_code
                )
            total_size = int(response.headers.get('Content-Length', 0) or 0)
            downloaded = 0
            with open(dest_path, 'wb') as f:
                # Undecoded bytes, Content-Length counts the body as sent
                for chunk in response.raw.stream(config.DOWNLOAD_CHUNK_SIZE, decode_content=False):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
    except (requests.RequestException, urllib3.exceptions.HTTPError) as e:
        raise DownloadError(f"Failed to download loader archive from {url}: {e}") from e
    except OSError as e:
        raise DownloadError(f"Failed to write loader archive to {dest_path}: {e}", suggestion=None) from e

    if total_size and downloaded != total_size:
        raise DownloadError(f"Incomplete download: got {downloaded} of {total_size} bytes from {url}")
    logger.info(f"ARCHIVE_MANAGER: Downloaded {downloaded} bytes to {dest_path}")
    return dest_path


# --- Extraction ---
def _is_within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extracts a .tar.gz into dest_dir. Raises ExtractionError on corrupt or unsafe archives."""
    logger.info(f"ARCHIVE_MANAGER: Extracting {archive_path.name}...")
    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()
            for member in members:
                if not _is_within(dest_dir, dest_dir / member.name):
                    raise ExtractionError(f"Refusing to extract '{member.name}': path escapes {dest_dir}.")
            if hasattr(tarfile, 'data_filter'):
                tar.extractall(dest_dir, members=members, filter='data')
            else:
                tar.extractall(dest_dir, members=members)
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ExtractionError(
            f"Failed to extract loader archive: {e}",
            suggestion="The downloaded file might be corrupt or incomplete"
        ) from e
    logger.debug(f"ARCHIVE_MANAGER: Extracted {len(members)} entries into {dest_dir}")
    return dest_dir


# --- InstallManifest ---
class InstallManifest:
    """
    Read-only view of the extracted loaders: maps each PHP version to the
    loader file expected for it under the archive's loader directory.
    """

    def __init__(self, root_dir: Path, artifacts: Dict[str, str]):
        self.root_dir = Path(root_dir)
        self._artifacts = dict(artifacts)

    @classmethod
    def from_extracted(cls, extract_dir: Path, installer_config) -> 'InstallManifest':
        root_dir = Path(extract_dir) / installer_config.archive_subdir
        if not root_dir.is_dir():
            logger.warning(f"ARCHIVE_MANAGER: Loader directory '{installer_config.archive_subdir}' not found in archive.")
        artifacts = {v: installer_config.loader_filename(v) for v in installer_config.versions}
        return cls(root_dir, artifacts)

    @property
    def versions(self) -> List[str]:
        return list(self._artifacts)

    def artifact_filename(self, version: str) -> Optional[str]:
        return self._artifacts.get(version)

    def artifact_path(self, version: str) -> Optional[Path]:
        """Path of the loader for `version`, or None if the archive does not carry it."""
        filename = self.artifact_filename(version)
        if not filename:
            return None
        path = self.root_dir / filename
        return path if path.is_file() else None

    def missing_versions(self) -> List[str]:
        return [v for v in self._artifacts if self.artifact_path(v) is None]

    def __repr__(self):
        return f"InstallManifest(root_dir={str(self.root_dir)!r}, versions={self.versions!r})"


def prepare_artifacts(installer_config, work_dir: Path,
                      session: Optional[requests.Session] = None) -> InstallManifest:
    """Downloads and extracts the loader archive once for the whole run."""
    archive_path = work_dir / config.ARCHIVE_FILENAME
    download_archive(installer_config.download_url, archive_path,
                     timeout=installer_config.download_timeout, session=session)
    extract_archive(archive_path, work_dir)
    manifest = InstallManifest.from_extracted(work_dir, installer_config)
    missing = manifest.missing_versions()
    if missing:
        logger.info(f"ARCHIVE_MANAGER: Archive has no loader for PHP {', '.join(missing)}.")
    return manifest
