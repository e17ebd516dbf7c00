"""compak package installation

Installs self-contained component packages (zip archives with a
metadata/install.yaml manifest) into a local directory, resolving the delegate
packages they depend on, and composes the environment needed to run them.

Components:
- manifest / models: manifest model, loading and saving
- browser: index and per-package environment of one package
- environment: module path, library path and variable composition
- router: asynchronous 'out'/'err' message delivery
- controller: installation and verification of a package tree
- processor: root macro substitution after extraction
- artifacts: setenv.txt, run specifier and package.properties
- locator: package location and monitoring interfaces
- agent: re-localization of an installed package
"""

from compak.core.packages.exceptions import (
    PackageError,
    ExtractionError,
    DownloadError,
    ManifestError,
    DelegateInstallationError,
    ArtifactError,
    VerificationError,
    LauncherNotFoundError,
)
from compak.core.packages.models import (
    ActionInfo,
    ActionType,
    DeploymentKind,
    EnvironmentAction,
    FailureKind,
    InstallationStatus,
    InstallFailure,
    InstallOutcome,
    Manifest,
    TestStatus,
)
from compak.core.packages.manifest import ManifestHandler
from compak.core.packages.browser import PackageBrowser, PackageIndex
from compak.core.packages.router import (
    LoggingChannelListener,
    MessageRouter,
    StdChannelListener,
)
from compak.core.packages.locator import (
    DirectoryPackageLocator,
    InstallationMonitor,
    LoggingInstallationMonitor,
    NullInstallationMonitor,
    PackageLocator,
)
from compak.core.packages.processor import InstallationProcessor
from compak.core.packages.controller import InstallationController, delete_installed_files
from compak.core.packages.agent import LocalInstallationAgent

__all__ = [
    # Exceptions
    "PackageError",
    "ExtractionError",
    "DownloadError",
    "ManifestError",
    "DelegateInstallationError",
    "ArtifactError",
    "VerificationError",
    "LauncherNotFoundError",
    # Models
    "ActionInfo",
    "ActionType",
    "DeploymentKind",
    "EnvironmentAction",
    "FailureKind",
    "InstallationStatus",
    "InstallFailure",
    "InstallOutcome",
    "Manifest",
    "TestStatus",
    # Components
    "ManifestHandler",
    "PackageBrowser",
    "PackageIndex",
    "LoggingChannelListener",
    "MessageRouter",
    "StdChannelListener",
    "DirectoryPackageLocator",
    "InstallationMonitor",
    "LoggingInstallationMonitor",
    "NullInstallationMonitor",
    "PackageLocator",
    "InstallationProcessor",
    "InstallationController",
    "delete_installed_files",
    "LocalInstallationAgent",
]
