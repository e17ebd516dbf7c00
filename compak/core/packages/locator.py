"""Package location and installation monitoring interfaces

Both are narrow capability protocols injected into an InstallationController.
"""

import logging
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from compak.core.packages.archive import PACKAGE_SUFFIXES
from compak.core.packages.manifest import MANIFEST_FILE_PATH
from compak.core.packages.models import InstallationStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class PackageLocator(Protocol):
    """Finds installed packages and package archives by component id"""

    def find_installed_root(self, component_id: str) -> Optional[Path]:
        """Root directory of an installed package, or None"""
        ...

    def find_archive_source(self, component_id: str) -> Optional[str]:
        """Local archive path or http(s) URL of a package, or None"""
        ...


@runtime_checkable
class InstallationMonitor(Protocol):
    """Receives installation progress for each component"""

    def on_status(self, component_id: str, status: InstallationStatus) -> None:
        ...

    def on_location(self, component_id: str, root_path: str) -> None:
        ...


class DirectoryPackageLocator:
    """
    Locator backed by local directories

    An installed package <id> is a directory <search_dir>/<id> that contains a
    manifest. An archive is <archive_dir>/<id>.cpk or <archive_dir>/<id>.zip.
    When no local archive exists and url_template is set, the template is
    formatted with component_id to give a download URL.
    """

    def __init__(
        self,
        search_dirs: Sequence[Path] = (),
        archive_dirs: Sequence[Path] = (),
        url_template: Optional[str] = None
    ):
        self.search_dirs: List[Path] = [Path(d) for d in search_dirs]
        self.archive_dirs: List[Path] = [Path(d) for d in archive_dirs]
        self.url_template = url_template

    def find_installed_root(self, component_id: str) -> Optional[Path]:
        for search_dir in self.search_dirs:
            candidate = search_dir / component_id
            if (candidate / MANIFEST_FILE_PATH).is_file():
                logger.debug(f"Found installed {component_id} at {candidate}")
                return candidate.absolute()
        return None

    def find_archive_source(self, component_id: str) -> Optional[str]:
        for archive_dir in self.archive_dirs:
            for suffix in PACKAGE_SUFFIXES:
                candidate = archive_dir / f"{component_id}{suffix}"
                if candidate.is_file():
                    return str(candidate.absolute())
        if self.url_template:
            return self.url_template.format(component_id=component_id)
        return None


class NullInstallationMonitor:
    """Monitor that ignores every notification"""

    def on_status(self, component_id: str, status: InstallationStatus) -> None:
        pass

    def on_location(self, component_id: str, root_path: str) -> None:
        pass


class LoggingInstallationMonitor:
    """Monitor that logs every notification"""

    def on_status(self, component_id: str, status: InstallationStatus) -> None:
        logger.info(f"{component_id}: {status.value}")

    def on_location(self, component_id: str, root_path: str) -> None:
        logger.info(f"{component_id}: installed in {root_path}")
