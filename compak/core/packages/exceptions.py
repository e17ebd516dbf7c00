"""Exception classes for the package installer"""


class PackageError(Exception):
    """Base exception for all package-related errors"""
    pass


class ExtractionError(PackageError):
    """Raised when a package archive cannot be located, read or extracted"""
    pass


class DownloadError(ExtractionError):
    """Raised when a package archive download fails"""
    pass


class ManifestError(PackageError):
    """Raised when an installation manifest is missing or cannot be parsed"""
    pass


class DelegateInstallationError(PackageError):
    """Raised when a delegate package cannot be installed"""

    def __init__(self, component_id: str, message: str):
        super().__init__(message)
        self.component_id = component_id


class ArtifactError(PackageError):
    """Raised when a derived installation file cannot be written"""
    pass


class VerificationError(PackageError):
    """Raised when an installation verification cannot be prepared"""
    pass


class LauncherNotFoundError(VerificationError):
    """Raised when no usable interpreter is found for the verification process"""
    pass
