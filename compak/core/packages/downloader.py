"""Download of remote package archives over http(s)"""

import logging
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from compak.core.packages.exceptions import DownloadError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 200 * 1024 * 1024  # 200MB
DEFAULT_TIMEOUT = 300
CHUNK_SIZE = 64 * 1024
PROGRESS_STEP = 1024 * 1024


def is_url(location: str) -> bool:
    return urlparse(str(location)).scheme in ("http", "https")


class URLDownloader:
    """Fetches package archives with a retrying requests session"""

    def __init__(self, max_retries: int = 3, timeout: int = DEFAULT_TIMEOUT, max_size: int = DEFAULT_MAX_SIZE):
        self.timeout = timeout
        self.max_size = max_size
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def download(self, url: str, target_path: Path, writer=None) -> int:
        """
        Copy the archive at url to target_path

        The body is streamed into '<target>.part' and renamed once complete, so
        an interrupted download never leaves a truncated archive behind.

        Args:
            url: http(s) URL of the archive
            target_path: Local file to create
            writer: Optional message writer; gets a line per downloaded MB

        Returns:
            Number of bytes written

        Raises:
            DownloadError: On a bad URL, an HTTP error, an oversized body or a
                local write error
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DownloadError(f"Not a downloadable URL: {url}")

        target_path = Path(target_path)
        part_path = target_path.with_name(target_path.name + ".part")
        logger.info(f"Downloading {url}")

        received = 0
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                declared = int(response.headers.get("Content-Length") or 0)
                if declared > self.max_size:
                    raise DownloadError(f"Archive too large: {declared} bytes (max {self.max_size})")

                next_report = PROGRESS_STEP
                with open(part_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        received += len(chunk)
                        if received > self.max_size:
                            raise DownloadError(f"Archive exceeds {self.max_size} bytes: {url}")
                        if writer is not None and received >= next_report:
                            writer.print(f"[InstallationController]: {received} bytes downloaded")
                            next_report += PROGRESS_STEP

            part_path.replace(target_path)
        except requests.RequestException as e:
            raise DownloadError(f"Download failed: {url}: {e}")
        except OSError as e:
            raise DownloadError(f"Cannot write {target_path}: {e}")
        finally:
            if part_path.exists():
                part_path.unlink()

        logger.info(f"Downloaded {received} bytes to {target_path}")
        return received

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
