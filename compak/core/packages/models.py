"""Data models for the package installer"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from compak.core.packages.macros import normalize_path, substitute_main_root

# Reserved variable names, matched case-insensitively
MODULE_PATH_VAR = "PYTHONPATH"
LIBRARY_PATH_VAR = "PATH"
LD_LIBRARY_PATH_VAR = "LD_LIBRARY_PATH"

# Action parameter names
VAR_NAME = "var_name"
VAR_VALUE = "var_value"
FILE = "file"
FIND_STRING = "find_string"
REPLACE_WITH = "replace_with"
COMMENTS = "comments"


class DeploymentKind(str, Enum):
    """How the main component is deployed"""
    STANDALONE = "standalone"
    NETWORK = "network"


class ActionType(str, Enum):
    """Installation actions a manifest can declare"""
    SET_ENV_VARIABLE = "set_env_variable"
    FIND_AND_REPLACE_PATH = "find_and_replace_path"


class InstallationStatus(str, Enum):
    """Status values reported to an installation monitor"""
    INSTALLATION_IN_PROGRESS = "installation_in_progress"
    INSTALLATION_FAILED = "installation_failed"
    INSTALLATION_COMPLETED = "installation_completed"
    VERIFICATION_IN_PROGRESS = "verification_in_progress"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_CANCELLED = "verification_cancelled"


class FailureKind(str, Enum):
    """Stage at which an installation failed"""
    EXTRACTION = "extraction"
    MANIFEST = "manifest"
    DELEGATE = "delegate"
    VERIFICATION = "verification"
    UNEXPECTED = "unexpected"


class ActionInfo(BaseModel):
    """One installation action declared in a manifest"""
    name: ActionType
    params: Dict[str, str] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def stringify_params(cls, v):
        """YAML may hand us numbers or booleans; actions work on strings"""
        if v is None:
            return {}
        return {str(key): "" if value is None else str(value) for key, value in v.items()}


class EnvironmentAction(BaseModel):
    """A 'set variable' action: {name, value}"""
    model_config = ConfigDict(frozen=True)

    name: str
    value: str


class Manifest(BaseModel):
    """Installation manifest (metadata/install.yaml) of one package"""

    main_component_id: str = Field(description="Stable component identifier (e.g. 'text.tokenizer')")
    main_component_name: Optional[str] = Field(default=None, description="Human-readable component name")
    main_component_root: Optional[str] = Field(default=None, description="Installed root, unresolved until installation")
    main_component_desc: Optional[str] = Field(default=None, description="Path to the component runtime descriptor")
    deployment: DeploymentKind = Field(default=DeploymentKind.STANDALONE, description="Deployment kind")
    delegate_components: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Delegate package id -> installed root (None until resolved)"
    )
    actions: List[ActionInfo] = Field(default_factory=list, description="Installation actions")
    network_params: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="Named network parameter groups"
    )
    manifest_file: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("main_component_id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate component ID format"""
        if not v or not v.strip():
            raise ValueError("Component ID cannot be empty")
        if not all(c.isalnum() or c in "._-" for c in v):
            raise ValueError("Component ID can only contain alphanumeric characters, dots, underscores, and hyphens")
        return v

    @field_validator("delegate_components", mode="before")
    @classmethod
    def normalize_delegates(cls, v):
        """Accept a plain list of ids as well as an id -> root mapping"""
        if v is None:
            return {}
        if isinstance(v, (list, tuple)):
            return {str(item): None for item in v}
        return v

    @field_validator("network_params", mode="before")
    @classmethod
    def stringify_network_params(cls, v):
        if v is None:
            return {}
        return {
            str(group): {str(key): "" if value is None else str(value) for key, value in (params or {}).items()}
            for group, params in v.items()
        }

    @property
    def is_network_service(self) -> bool:
        return self.deployment == DeploymentKind.NETWORK

    def set_main_component_root(self, root_path) -> None:
        """Set the installed root and resolve $main_root in the descriptor path"""
        self.main_component_root = normalize_path(root_path)
        if self.main_component_desc:
            self.main_component_desc = substitute_main_root(self.main_component_desc, self.main_component_root)

    def set_delegate_component_root(self, component_id: str, root_path) -> None:
        self.delegate_components[component_id] = normalize_path(root_path)

    def get_actions(self, action_type: ActionType) -> List[ActionInfo]:
        return [action for action in self.actions if action.name == action_type]

    def environment_actions(self) -> List[EnvironmentAction]:
        """Ordered 'set_env_variable' actions with both name and value present"""
        result = []
        for action in self.get_actions(ActionType.SET_ENV_VARIABLE):
            name = action.params.get(VAR_NAME)
            value = action.params.get(VAR_VALUE)
            if name is not None and value is not None:
                result.append(EnvironmentAction(name=name, value=value))
        return result


class TestStatus(BaseModel):
    """Outcome of one verification run

    return_code 0 means success, a negative value means failure (message holds
    the captured diagnostics), any other value means the run was cancelled.
    """
    __test__ = False

    model_config = ConfigDict(frozen=True)

    return_code: int
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.return_code == 0

    @property
    def failed(self) -> bool:
        return self.return_code < 0

    @property
    def cancelled(self) -> bool:
        return self.return_code > 0


class InstallFailure(BaseModel):
    """Typed installation failure"""
    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    message: str


class InstallOutcome(BaseModel):
    """Result of InstallationController.install(): a manifest or a failure"""
    manifest: Optional[Manifest] = None
    failure: Optional[InstallFailure] = None

    @property
    def success(self) -> bool:
        return self.failure is None and self.manifest is not None
