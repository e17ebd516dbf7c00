"""Extraction of package archives into an installation root"""

import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple
from urllib.parse import urlparse

from compak.core.packages.downloader import URLDownloader, is_url
from compak.core.packages.exceptions import ExtractionError

logger = logging.getLogger(__name__)

# Archive file suffixes recognised as packages
PACKAGE_SUFFIXES = (".cpk", ".zip")


def _post(writer, text: str) -> None:
    if writer is not None:
        writer.print(text)


def extract_zip(zip_path: Path, target_dir: Path, suffixes: Optional[Tuple[str, ...]] = None) -> int:
    """
    Extract zip to target directory with path traversal protection

    Args:
        zip_path: Path to zip file
        target_dir: Target directory for extraction
        suffixes: Extract only files whose name ends with one of these
            (case-insensitive); directories are created as needed

    Returns:
        Number of bytes extracted

    Raises:
        ExtractionError: If extraction fails
    """
    total_bytes = 0
    try:
        target_dir_resolved = target_dir.resolve()

        with zipfile.ZipFile(zip_path, "r") as zf:
            for info in zf.infolist():
                member = info.filename

                if ".." in PurePosixPath(member).parts:
                    raise ExtractionError(f"Path traversal detected in archive: {member}")

                if member.startswith("/") or PurePosixPath(member).is_absolute() or ":" in member.split("/")[0]:
                    raise ExtractionError(f"Absolute path detected in archive: {member}")

                target_path = target_dir / member

                # Ensure target path is within target directory
                try:
                    target_path.resolve().relative_to(target_dir_resolved)
                except ValueError:
                    raise ExtractionError(f"Archive extraction would escape target directory: {member}")

                if member.endswith("/"):
                    if suffixes is None:
                        target_path.mkdir(parents=True, exist_ok=True)
                    continue

                if suffixes is not None and not member.lower().endswith(suffixes):
                    continue

                target_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as source, open(target_path, "wb") as target:
                    shutil.copyfileobj(source, target)
                total_bytes += info.file_size

    except ExtractionError:
        raise
    except (OSError, zipfile.BadZipFile, RuntimeError) as e:
        raise ExtractionError(f"Failed to extract {zip_path}: {e}")

    return total_bytes


def extract_package(
    location: str,
    target_dir: Path,
    writer=None,
    downloader: Optional[URLDownloader] = None,
    suffixes: Optional[Tuple[str, ...]] = None
) -> Path:
    """
    Extract a package archive, local or remote, into target_dir

    A remote archive is first copied into target_dir and removed once it has
    been extracted.

    Args:
        location: Local archive path or http(s) URL
        target_dir: Package root to extract into (created with parents)
        writer: Optional message writer for progress lines
        downloader: Downloader to use for URLs
        suffixes: Extract only files with these suffixes

    Returns:
        Absolute target directory

    Raises:
        ExtractionError: If the archive is missing, unreadable or cannot be extracted
    """
    if not location:
        raise ExtractionError("No package location given")

    target_dir = Path(target_dir).absolute()
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExtractionError(f"cannot create directory {target_dir}: {e}")

    local_copy: Optional[Path] = None
    archive_path = Path(location)

    if not archive_path.is_file():
        if not is_url(location):
            raise ExtractionError(f"Package file not found: {location}")

        file_name = PurePosixPath(urlparse(location).path).name or "package.cpk"
        local_copy = target_dir / file_name
        _post(writer, f"[InstallationController]: copying {location} to {target_dir}")
        own_downloader = downloader is None
        downloader = downloader or URLDownloader()
        try:
            downloader.download(location, local_copy, writer=writer)
        finally:
            if own_downloader:
                downloader.close()
        archive_path = local_copy

    _post(writer, f"[InstallationController]: extracting {archive_path.absolute()}")
    logger.info(f"Extracting {archive_path} to {target_dir}")

    try:
        total_bytes = extract_zip(archive_path, target_dir, suffixes)
    finally:
        if local_copy is not None and local_copy.exists():
            try:
                local_copy.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove downloaded archive {local_copy}: {e}")

    _post(writer, f"[InstallationController]: {total_bytes} bytes extracted")
    logger.info(f"Extraction complete: {target_dir} ({total_bytes} bytes)")
    return target_dir
