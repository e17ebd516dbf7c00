"""Local installation agent

Re-localizes a package that was installed elsewhere and copied, unprocessed,
into place: its conf/ and desc/ files still contain root macros. The roots come
from metadata/package.properties. Every localized file is backed up as
'<name>.$' so the localization can be undone.
"""

import logging
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from compak.core.config import InstallerConfig
from compak.core.packages import artifacts, environment
from compak.core.packages.exceptions import ArtifactError
from compak.core.packages.macros import MAIN_ROOT, delegate_root_macro
from compak.core.packages.manifest import MANIFEST_FILE_PATH, ManifestHandler
from compak.core.packages.models import Manifest, TestStatus
from compak.core.packages.processor import substitute_macros_in_file
from compak.core.verification import runner

logger = logging.getLogger(__name__)

BACKUP_FILE_SUFFIX = ".$"


def check_package_config(package_config: Mapping[str, str], manifest: Manifest) -> bool:
    """True if the config names the main root and the root of every delegate"""
    if package_config.get(MAIN_ROOT) is None:
        return False
    return all(
        package_config.get(delegate_root_macro(component_id)) is not None
        for component_id in manifest.delegate_components
    )


def _delegate_roots(package_config: Mapping[str, str], manifest: Manifest) -> Dict[str, str]:
    return {
        component_id: package_config[delegate_root_macro(component_id)]
        for component_id in manifest.delegate_components
        if package_config.get(delegate_root_macro(component_id)) is not None
    }


def localize_manifest(manifest: Manifest, package_config: Mapping[str, str]) -> None:
    manifest.set_main_component_root(package_config[MAIN_ROOT])
    for component_id, root in _delegate_roots(package_config, manifest).items():
        manifest.set_delegate_component_root(component_id, root)


def backup_path(file_path: Path) -> Path:
    return file_path.with_name(file_path.name + BACKUP_FILE_SUFFIX)


class LocalInstallationAgent:
    """Localizes, verifies and restores one installed package"""

    def __init__(self, main_root, config: Optional[InstallerConfig] = None):
        self.main_root = Path(main_root).absolute()
        self.config = config or InstallerConfig()
        self.package_config: Dict[str, str] = {}
        self._manifest: Optional[Manifest] = None
        self._localized_files: List[Path] = []
        self._lock = threading.RLock()
        logger.info(f"Local installation agent for {self.main_root} (OS - {self.config.os_name})")

    @property
    def manifest(self) -> Optional[Manifest]:
        return self._manifest

    @property
    def localized_files(self) -> List[Path]:
        return list(self._localized_files)

    def localize_component(self) -> bool:
        """
        Substitute root macros in conf/ and desc/ files and in the manifest

        Returns:
            False if package.properties does not name every required root

        Raises:
            ManifestError: If the manifest cannot be loaded
            ArtifactError: If package.properties is missing or unreadable
        """
        with self._lock:
            self._manifest = ManifestHandler.load_from_package_root(self.main_root)
            logger.info("Loaded installation manifest")

            package_config = artifacts.load_package_config(self.main_root)
            if not package_config:
                raise ArtifactError(f"No package configuration in {self.main_root}")
            self.package_config = package_config
            logger.info("Loaded package configuration")

            if not check_package_config(self.package_config, self._manifest):
                logger.error("Package properties do not match the installation manifest")
                return False

            self._localized_files = self._localize_files()
            localize_manifest(self._manifest, self.package_config)
            return True

    def _localize_files(self) -> List[Path]:
        main_root = self.package_config[MAIN_ROOT]
        roots = _delegate_roots(self.package_config, self._manifest)
        localized: List[Path] = []
        for dir_name in (environment.PACKAGE_CONF_DIR, environment.PACKAGE_DESC_DIR):
            target_dir = self.main_root / dir_name
            if not target_dir.is_dir():
                continue
            for file_path in sorted(target_dir.rglob("*")):
                if not file_path.is_file() or file_path.name.endswith(BACKUP_FILE_SUFFIX):
                    continue
                shutil.copy2(file_path, backup_path(file_path))
                substitute_macros_in_file(file_path, main_root, roots)
                localized.append(file_path)
        logger.info(f"Localized {len(localized)} files")
        return localized

    def undo_localization(self) -> bool:
        """
        Restore every localized file from its backup

        Returns:
            True if all files were restored
        """
        with self._lock:
            restored = 0
            for file_path in self._localized_files:
                backup = backup_path(file_path)
                try:
                    shutil.copy2(backup, file_path)
                    backup.unlink()
                    restored += 1
                except OSError as e:
                    logger.error(f"Failed to undo changes for {file_path}: {e}")
            completed = restored == len(self._localized_files)
            if completed:
                self._localized_files = []
            return completed

    # ----- Verification -----

    def _delegate_packages(self) -> List[environment.PackageEnv]:
        packages: List[environment.PackageEnv] = []
        for component_id, root in _delegate_roots(self.package_config, self._manifest).items():
            manifest_file = Path(root) / MANIFEST_FILE_PATH
            if not manifest_file.is_file():
                logger.warning(f"Delegate {component_id} not found at {root}")
                continue
            packages.append((root, ManifestHandler.load(manifest_file)))
        return packages

    def build_component_module_path(self) -> Optional[str]:
        if self._manifest is None:
            return None
        main = (str(self.main_root), self._manifest)
        return environment.compose_module_path(main, self._delegate_packages())

    def build_component_library_path(self) -> Optional[str]:
        if self._manifest is None:
            return None
        main = (str(self.main_root), self._manifest)
        return environment.compose_library_path(main, self._delegate_packages())

    def build_environment_table(self) -> Optional[Dict[str, str]]:
        if self._manifest is None:
            return None
        return environment.compose_environment_table(
            self._manifest, [manifest for _, manifest in self._delegate_packages()]
        )

    def verify_localized_component(self) -> TestStatus:
        """Run the verification harness against the localized package"""
        with self._lock:
            status = runner.verify_installation(self, config=self.config)
            if status.succeeded:
                logger.info("Localized component verified")
            else:
                logger.error(f"Localization test failed: {status.message}")
            return status
