"""
Installation controller: install and verify one package and its delegates

Installation of a package runs these steps in order:
    1. report INSTALLATION_IN_PROGRESS
    2. extract the archive into the package root
    3. load the manifest from the extracted root
    4. resolve each delegate: reuse an installed root found by the locator or
       install it with a child controller in the same installation directory
    5. process the manifest (root macros, actions, conf/ and desc/ files)
    6. save the manifest
    7. write metadata/package.properties, metadata/setenv.txt and <id>_cpk.yaml
    8. report INSTALLATION_COMPLETED

A controller tree (the root controller plus every child created for a
delegate) shares one MessageRouter. Only the controller that created the
router terminates it.
"""

import logging
import shutil
import threading
import traceback
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set

from compak.core.config import InstallerConfig
from compak.core.packages import artifacts, environment
from compak.core.packages.archive import extract_package
from compak.core.packages.browser import PackageBrowser, SETENV_FILE
from compak.core.packages.exceptions import (
    DelegateInstallationError,
    ExtractionError,
    ManifestError,
)
from compak.core.packages.locator import (
    DirectoryPackageLocator,
    InstallationMonitor,
    NullInstallationMonitor,
    PackageLocator,
)
from compak.core.packages.macros import normalize_path
from compak.core.packages.manifest import ManifestHandler
from compak.core.packages.models import (
    FailureKind,
    InstallationStatus,
    InstallFailure,
    InstallOutcome,
    Manifest,
    TestStatus,
)
from compak.core.packages.processor import InstallationProcessor
from compak.core.packages.router import ChannelListener, MessageRouter, StdChannelListener
from compak.core.verification import runner

logger = logging.getLogger(__name__)

MSG_PREFIX = "[InstallationController]: "

# Files extracted by a descriptor-only installation
DESCRIPTOR_SUFFIXES = (".yaml", ".yml")


def failure_kind(error: BaseException) -> FailureKind:
    if isinstance(error, DelegateInstallationError):
        return FailureKind.DELEGATE
    if isinstance(error, ExtractionError):
        return FailureKind.EXTRACTION
    if isinstance(error, ManifestError):
        return FailureKind.MANIFEST
    return FailureKind.UNEXPECTED


class InstallationController:
    """
    Installs one package, with its delegate packages, and verifies it

    Failures never escape install_component() and verify_component(): they are
    kept on the controller (failure, installation_message, verification_message)
    and reported to the monitor and the 'err' channel.
    """

    def __init__(
        self,
        component_id: str,
        installation_dir,
        *,
        install_in_root_dir: bool = False,
        package_file=None,
        locator: Optional[PackageLocator] = None,
        monitor: Optional[InstallationMonitor] = None,
        config: Optional[InstallerConfig] = None,
        listener: Optional[ChannelListener] = None,
        router: Optional[MessageRouter] = None
    ):
        """
        Args:
            component_id: Id of the main component
            installation_dir: Parent directory of the package root, or the
                package root itself when install_in_root_dir is True
            install_in_root_dir: Install directly into installation_dir
            package_file: Local archive path or URL; resolved through the
                locator when omitted
            locator: Finds installed delegates and package archives
            monitor: Receives status and location notifications
            config: Installer configuration
            listener: Channel listener added to the router
            router: Router shared with a parent controller
        """
        self.component_id = component_id
        self.config = config or InstallerConfig()

        if install_in_root_dir:
            self.main_root = Path(installation_dir).absolute()
            self.installation_dir = self.main_root.parent
        else:
            self.installation_dir = Path(installation_dir).absolute()
            self.main_root = self.installation_dir / component_id

        self.package_file = str(package_file) if package_file else None
        self.locator = locator or DirectoryPackageLocator(
            search_dirs=[self.installation_dir],
            archive_dirs=[self.installation_dir]
        )
        self.monitor = monitor or NullInstallationMonitor()

        self._owns_router = router is None
        self.router = router or MessageRouter(max_queue_size=self.config.router_queue_size)
        if listener is None and self._owns_router:
            listener = StdChannelListener()
        if listener is not None:
            self.router.add_channel_listener(listener)

        self._lock = threading.RLock()
        self._manifest: Optional[Manifest] = None
        self._installation_table: Dict[str, str] = {}
        self._delegate_manifests: Dict[str, Manifest] = {}
        self._children: List["InstallationController"] = []
        self._failure: Optional[InstallFailure] = None
        self._installation_message: Optional[str] = None
        self._verification_message: Optional[str] = None

        if self._owns_router:
            self.out_writer.print(f"{MSG_PREFIX}OS - {self.config.os_name}, Host - {self.config.host_address}")
            if self.config.use_local_archive_source:
                self.out_writer.print(f"{MSG_PREFIX}working in 'local' mode")

    # ----- Messages -----

    @property
    def out_writer(self):
        return self.router.out_writer()

    @property
    def err_writer(self):
        return self.router.err_writer()

    def add_listener(self, listener: ChannelListener) -> None:
        self.router.add_channel_listener(listener)

    def remove_listener(self, listener: ChannelListener) -> None:
        self.router.remove_channel_listener(listener)

    def terminate(self) -> None:
        """Stop the router's dispatch thread (child controllers leave it running)"""
        if self._owns_router:
            self.router.terminate()

    # ----- State -----

    @property
    def manifest(self) -> Optional[Manifest]:
        """Manifest of the installed package, None until installation succeeded"""
        return self._manifest

    @property
    def installation_table(self) -> Mapping[str, str]:
        """Delegate id -> installed root, in manifest order"""
        return MappingProxyType(self._installation_table)

    @property
    def children(self) -> List["InstallationController"]:
        """Child controllers created for delegates, in creation order"""
        return list(self._children)

    @property
    def failure(self) -> Optional[InstallFailure]:
        return self._failure

    @property
    def installation_message(self) -> Optional[str]:
        return self._installation_message

    @property
    def verification_message(self) -> Optional[str]:
        return self._verification_message

    # ----- Installation -----

    def install_component(self) -> Optional[Manifest]:
        """
        Install the package and its delegates

        Returns:
            Manifest of the installed package, or None on failure (see failure
            and installation_message)
        """
        return self.install().manifest

    def install(self) -> InstallOutcome:
        with self._lock:
            self._failure = None
            self._installation_message = None
            self._manifest = None
            self.monitor.on_status(self.component_id, InstallationStatus.INSTALLATION_IN_PROGRESS)
            try:
                manifest = self._install()
            except Exception as e:
                self._record_installation_error(e)
                self.monitor.on_status(self.component_id, InstallationStatus.INSTALLATION_FAILED)
                return InstallOutcome(failure=self._failure)

            self.monitor.on_location(self.component_id, normalize_path(self.main_root))
            self.monitor.on_status(self.component_id, InstallationStatus.INSTALLATION_COMPLETED)
            return InstallOutcome(manifest=manifest)

    def install_component_descriptors(self) -> Optional[Manifest]:
        """
        Install only the descriptor files of the package and its delegates

        Extracts the '*.yaml' files (the manifest and the component
        descriptors), installs the descriptors of every delegate with a child
        controller and processes the manifest. Library and binary files are
        not extracted and no setenv.txt, package.properties or run specifier
        is written, so the result is for inspecting descriptors, not for
        running the component. Installed delegates are not reused.

        Returns:
            Processed manifest, or None on failure (see failure and
            installation_message)
        """
        with self._lock:
            self._failure = None
            self._installation_message = None
            self._manifest = None
            try:
                return self._install_descriptors()
            except Exception as e:
                self._record_installation_error(e)
                return None

    def _record_installation_error(self, error: Exception) -> None:
        trace = traceback.format_exc()
        self.err_writer.print(f"Error in InstallationController: {error!r}")
        self.err_writer.write(trace)
        logger.error(f"Installation of {self.component_id} failed: {error}")
        self._manifest = None
        self._installation_message = trace
        self._failure = InstallFailure(kind=failure_kind(error), message=str(error) or type(error).__name__)

    def _resolve_package_location(self) -> str:
        if self.package_file:
            return self.package_file
        location = self.locator.find_archive_source(self.component_id)
        if not location:
            raise ExtractionError(f"No package source found for {self.component_id}")
        self.package_file = str(location)
        return self.package_file

    def _install(self) -> Manifest:
        location = self._resolve_package_location()
        logger.info(f"Installing {self.component_id} from {location} into {self.main_root}")
        extract_package(location, self.main_root, writer=self.out_writer)

        manifest = ManifestHandler.load_from_package_root(self.main_root)
        if manifest.main_component_id != self.component_id:
            logger.warning(
                f"Package {location} declares component {manifest.main_component_id}, "
                f"installing it as {self.component_id}"
            )
        self._install_delegates(manifest)

        processor = InstallationProcessor(self.main_root, self._installation_table, writer=self.out_writer)
        manifest = processor.process()
        ManifestHandler.save(manifest)
        self._manifest = manifest

        artifacts.generate_package_config(self.main_root, self.component_id, self._installation_table)
        artifacts.generate_setenv_file(
            self.main_root,
            self.component_id,
            self.build_component_module_path(),
            self.build_component_library_path(),
            self.build_environment_table(),
        )
        artifacts.generate_run_specifier(self.main_root, self.component_id)

        self.out_writer.print(
            f"{MSG_PREFIX}the {SETENV_FILE.lstrip('/')} file contains required "
            f"environment variables for this component"
        )
        self.out_writer.print(f"{MSG_PREFIX}component {self.component_id} installation completed.")
        logger.info(f"Installed {self.component_id} in {self.main_root}")
        return manifest

    def _install_descriptors(self) -> Manifest:
        location = self._resolve_package_location()
        logger.info(f"Installing descriptors of {self.component_id} from {location} into {self.main_root}")
        extract_package(location, self.main_root, writer=self.out_writer, suffixes=DESCRIPTOR_SUFFIXES)

        manifest = ManifestHandler.load_from_package_root(self.main_root)
        self._installation_table.clear()
        self._delegate_manifests.clear()
        self._children.clear()
        for component_id in manifest.delegate_components:
            child = self._create_child(component_id)
            child_manifest = child.install_component_descriptors()
            if child_manifest is None:
                self.err_writer.print(f"{MSG_PREFIX}failed to install descriptors for dlg component {component_id}")
                raise DelegateInstallationError(
                    component_id, f"failed to install descriptors for dlg component {component_id}"
                )
            self._installation_table[component_id] = normalize_path(child_manifest.main_component_root)
            self._delegate_manifests[component_id] = child_manifest

        processor = InstallationProcessor(
            self.main_root, self._installation_table, writer=self.out_writer, skip_missing_files=True
        )
        manifest = processor.process()
        ManifestHandler.save(manifest)
        self._manifest = manifest

        self.out_writer.print(f"{MSG_PREFIX}component {self.component_id} descriptors installation completed.")
        return manifest

    def _create_child(self, component_id: str) -> "InstallationController":
        child = InstallationController(
            component_id,
            self.installation_dir,
            install_in_root_dir=False,
            locator=self.locator,
            monitor=self.monitor,
            config=self.config,
            router=self.router,
        )
        self._children.append(child)
        return child

    def _find_installed_root(self, component_id: str) -> Optional[str]:
        try:
            root = self.locator.find_installed_root(component_id)
        except Exception as e:
            logger.warning(f"Failed to query {component_id} location: {e}")
            self.err_writer.print(f"{MSG_PREFIX}failed to query {component_id} location - {e}")
            return None
        return normalize_path(root) if root else None

    def _install_delegates(self, manifest: Manifest) -> None:
        """Resolve delegates one at a time, in manifest order"""
        self._installation_table.clear()
        self._delegate_manifests.clear()
        self._children.clear()

        for component_id in manifest.delegate_components:
            root = self._find_installed_root(component_id)
            if root is None:
                child = self._create_child(component_id)
                child_manifest = child.install_component()
                if child_manifest is None:
                    self.err_writer.print(f"{MSG_PREFIX}failed to install dlg component {component_id}")
                    raise DelegateInstallationError(component_id, f"failed to install dlg component {component_id}")
                self._installation_table[component_id] = normalize_path(child_manifest.main_component_root)
                self._delegate_manifests[component_id] = child_manifest
            else:
                logger.info(f"Reusing installed delegate {component_id} at {root}")
                self._installation_table[component_id] = root
                delegate_manifest = PackageBrowser(Path(root)).get_manifest()
                if delegate_manifest is None:
                    logger.warning(f"Installed delegate {component_id} at {root} has no manifest")
                else:
                    self._delegate_manifests[component_id] = delegate_manifest

    # ----- Environment -----

    def _load_delegate_manifest(self, component_id: str, root: str) -> Optional[Manifest]:
        manifest = self._delegate_manifests.get(component_id)
        if manifest is not None:
            return manifest
        try:
            manifest = PackageBrowser(Path(root)).get_manifest()
        except ManifestError as e:
            logger.warning(f"Cannot read manifest of delegate {component_id}: {e}")
            return None
        if manifest is not None:
            self._delegate_manifests[component_id] = manifest
        return manifest

    def delegate_packages(self) -> List[environment.PackageEnv]:
        """
        (root, manifest) of every delegate in the dependency tree

        Direct delegates come first, in installation order, followed by the
        delegates they declare. Each package appears once.
        """
        packages: List[environment.PackageEnv] = []
        seen: Set[str] = {self.component_id}
        pending = list(self._installation_table.items())
        while pending:
            component_id, root = pending.pop(0)
            if component_id in seen or not root:
                continue
            seen.add(component_id)
            manifest = self._load_delegate_manifest(component_id, root)
            if manifest is None:
                continue
            packages.append((root, manifest))
            pending.extend(manifest.delegate_components.items())
        return packages

    def _main_package(self) -> environment.PackageEnv:
        return normalize_path(self.main_root), self._manifest

    def build_component_module_path(self, include_library_archives: bool = True) -> Optional[str]:
        """Module path of the package followed by those of its delegates"""
        if self._manifest is None:
            return None
        return environment.compose_module_path(
            self._main_package(), self.delegate_packages(), include_library_archives
        )

    def build_component_library_path(self) -> Optional[str]:
        if self._manifest is None:
            return None
        return environment.compose_library_path(self._main_package(), self.delegate_packages())

    def build_environment_table(self) -> Optional[Dict[str, str]]:
        if self._manifest is None:
            return None
        return environment.compose_environment_table(
            self._manifest, [manifest for _, manifest in self.delegate_packages()]
        )

    # ----- Verification -----

    def verify_component(self) -> bool:
        return self.verify().succeeded

    def verify(self) -> TestStatus:
        """
        Run the installed component in a separate process

        Returns:
            TestStatus: 0 completed, negative failed, anything else cancelled
        """
        with self._lock:
            self.monitor.on_status(self.component_id, InstallationStatus.VERIFICATION_IN_PROGRESS)
            try:
                status = runner.verify_installation(self, config=self.config)
            except Exception as e:
                logger.exception(f"Verification of {self.component_id} failed")
                self._verification_message = str(e)
                self._failure = InstallFailure(kind=FailureKind.VERIFICATION, message=str(e))
                self.monitor.on_status(self.component_id, InstallationStatus.VERIFICATION_FAILED)
                return TestStatus(return_code=-1, message=str(e))

            if status.succeeded:
                self._verification_message = None
                self.monitor.on_status(self.component_id, InstallationStatus.VERIFICATION_COMPLETED)
            elif status.failed:
                self._verification_message = status.message
                self._failure = InstallFailure(kind=FailureKind.VERIFICATION, message=status.message)
                self.monitor.on_status(self.component_id, InstallationStatus.VERIFICATION_FAILED)
            else:
                self._verification_message = None
                self.monitor.on_status(self.component_id, InstallationStatus.VERIFICATION_CANCELLED)
            return status


def delete_installed_files(
    component_id: str,
    parent_dir,
    include_delegates: bool = False,
    _visited: Optional[Set[str]] = None
) -> bool:
    """
    Remove the installed package <parent_dir>/<component_id>

    Args:
        component_id: Id of the installed package
        parent_dir: Installation directory holding the package root
        include_delegates: Also remove the delegates its manifest lists,
            when they are installed in the same parent directory

    Returns:
        True if everything was removed; False if the package is not installed
        or a directory could not be removed

    Raises:
        ManifestError: If include_delegates is set and the manifest is unreadable
    """
    visited = _visited if _visited is not None else set()
    if component_id in visited:
        return True
    visited.add(component_id)

    root = Path(parent_dir) / component_id
    if not root.is_dir():
        return False

    done = True
    if include_delegates:
        manifest = ManifestHandler.load_from_package_root(root)
        for delegate_id in manifest.delegate_components:
            if not delete_installed_files(delegate_id, parent_dir, True, visited):
                done = False

    try:
        shutil.rmtree(root)
        logger.info(f"Removed {root}")
    except OSError as e:
        logger.warning(f"Failed to remove {root}: {e}")
        done = False
    return done
