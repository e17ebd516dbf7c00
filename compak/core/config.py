"""
Centralized Configuration Management for compak

Provides pydantic-based configuration with:
- Environment variable loading (.env support)
- Type validation
- Default values

Every InstallationController receives its own InstallerConfig, so two
controller trees in one process can run with different settings. The module
level get_config() cache exists for the command line only.

Usage:
    from compak.core.config import InstallerConfig

    config = InstallerConfig(use_local_archive_source=True)
    controller = InstallationController("my.component", "/opt/components", config=config)
"""

import logging
import platform
import socket
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def _default_host_address() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class InstallerConfig(BaseSettings):
    """
    Configuration for one installation controller tree

    All settings can be overridden via environment variables with COMPAK_ prefix.
    For example: COMPAK_PYTHON_EXECUTABLE, COMPAK_MAX_MEMORY, etc.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="COMPAK_",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # Host Configuration
    # ============================================

    use_local_archive_source: bool = Field(
        default=False,
        description="Install from a local package file instead of resolving the component id"
    )

    host_address: str = Field(
        default_factory=_default_host_address,
        description="IP address of this host, reported when the controller starts"
    )

    os_name: str = Field(
        default_factory=platform.system,
        description="Operating system name, reported when the controller starts"
    )

    # ============================================
    # Verification Configuration
    # ============================================

    framework_home: Optional[Path] = Field(
        default=None,
        description="Directory holding the compak package, added to the verification module path"
    )

    python_executable: Optional[Path] = Field(
        default=None,
        description="Interpreter used to launch the verification harness"
    )

    max_memory: str = Field(
        default="512M",
        description="Address space limit applied inside the verification process"
    )

    verification_harness: str = Field(
        default="compak.core.verification.harness",
        description="Module run with 'python -m' to verify an installed component"
    )

    # ============================================
    # Application Configuration
    # ============================================

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    always_exit_zero: bool = Field(
        default=False,
        description="Exit with status 0 from the command line even when installation fails"
    )

    router_queue_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of undelivered messages held by a message router"
    )

    # ============================================
    # Validators
    # ============================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(
                f"log_level must be one of: {', '.join(valid_levels)}"
            )
        return v.upper()

    @field_validator("max_memory")
    @classmethod
    def validate_max_memory(cls, v: str) -> str:
        """Validate memory limit format (e.g. '512M', '2G', '1048576')"""
        value = v.strip().upper()
        digits = value[:-1] if value[-1:] in ("K", "M", "G") else value
        if not digits.isdigit():
            raise ValueError("max_memory must be a number optionally followed by K, M or G")
        return value


# Global config instance
_config: Optional[InstallerConfig] = None


def get_config(force_reload: bool = False) -> InstallerConfig:
    """
    Get the global configuration instance

    Args:
        force_reload: Force reload configuration from environment

    Returns:
        InstallerConfig instance
    """
    global _config

    if _config is None or force_reload:
        _config = InstallerConfig()

    return _config
