"""Files derived from an installed package

Written into the package root at the end of a successful installation:

    metadata/setenv.txt         environment variables needed to run the component
    <id>_cpk.yaml               run specifier recording the installed root
    metadata/package.properties main root and delegate roots, merged with any
                                existing file
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from compak.core.packages.browser import PACKAGE_CONFIG_FILE, RUN_SPECIFIER_SUFFIX, SETENV_FILE
from compak.core.packages.exceptions import ArtifactError
from compak.core.packages.macros import MAIN_ROOT, delegate_root_macro, normalize_path
from compak.core.packages.models import LIBRARY_PATH_VAR, MODULE_PATH_VAR

logger = logging.getLogger(__name__)

SETENV_HEADER = (
    "### Add the following environment variables",
    "### to appropriate existing environment variables",
    "### to run the {component_id} component",
)


def _root_file(root: Path, relative_form: str) -> Path:
    return Path(root) / relative_form.lstrip("/")


# ----- package.properties -----

def read_properties(path: Path) -> Dict[str, str]:
    """
    Read a key=value file

    Blank lines and lines starting with '#' or '!' are ignored. The first '='
    or ':' separates key and value.
    """
    properties: Dict[str, str] = {}
    for raw_line in Path(path).read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line[0] in "#!":
            continue
        separators = [i for i in (line.find("="), line.find(":")) if i >= 0]
        if not separators:
            properties[line] = ""
            continue
        index = min(separators)
        properties[line[:index].strip()] = line[index + 1:].strip()
    return properties


def write_properties(path: Path, properties: Mapping[str, str], header: Optional[str] = None) -> None:
    lines = []
    if header:
        lines.append(f"#{header}")
    lines.append(f"#{datetime.now().strftime('%a %b %d %H:%M:%S %Y')}")
    lines.extend(f"{key}={value}" for key, value in properties.items())
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def load_package_config(root: Path) -> Dict[str, str]:
    """package.properties of an installed package, empty if absent"""
    config_file = _root_file(root, PACKAGE_CONFIG_FILE)
    if not config_file.is_file():
        return {}
    try:
        return read_properties(config_file)
    except (OSError, UnicodeDecodeError) as e:
        raise ArtifactError(f"Cannot read {config_file}: {e}")


def generate_package_config(
    root: Path,
    component_id: str,
    installation_table: Mapping[str, str]
) -> Path:
    """
    Create or update metadata/package.properties

    Existing keys are kept; $main_root and one $<id>$root key per delegate are
    set to the resolved roots.

    Raises:
        ArtifactError: If the file cannot be read or written
    """
    config_file = _root_file(root, PACKAGE_CONFIG_FILE)
    properties = load_package_config(root)
    properties[MAIN_ROOT] = normalize_path(root)
    for delegate_id, delegate_root in installation_table.items():
        properties[delegate_root_macro(delegate_id)] = normalize_path(delegate_root)

    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        write_properties(config_file, properties, header=component_id)
    except OSError as e:
        raise ArtifactError(f"Cannot write {config_file}: {e}")

    logger.debug(f"Package config written: {config_file}")
    return config_file


# ----- setenv.txt -----

def generate_setenv_file(
    root: Path,
    component_id: str,
    module_path: str,
    library_path: str,
    env_vars: Mapping[str, str]
) -> Path:
    """
    Write metadata/setenv.txt

    Raises:
        ArtifactError: If the file cannot be written
    """
    setenv_file = _root_file(root, SETENV_FILE)
    lines = [line.format(component_id=component_id) for line in SETENV_HEADER]
    lines.append("")
    if module_path:
        lines.append(f"{MODULE_PATH_VAR}={module_path}")
    if library_path:
        lines.append(f"{LIBRARY_PATH_VAR}={library_path}")

    reserved = {MODULE_PATH_VAR.lower(), LIBRARY_PATH_VAR.lower()}
    for name, value in env_vars.items():
        if name and value and name.lower() not in reserved:
            lines.append(f"{name}={value}")

    try:
        setenv_file.parent.mkdir(parents=True, exist_ok=True)
        setenv_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as e:
        raise ArtifactError(f"Cannot write {setenv_file}: {e}")

    logger.debug(f"Environment file written: {setenv_file}")
    return setenv_file


# ----- <id>_cpk.yaml -----

def run_specifier_path(root: Path, component_id: str) -> Path:
    return Path(root) / f"{component_id}{RUN_SPECIFIER_SUFFIX}"


def generate_run_specifier(root: Path, component_id: str) -> Path:
    """
    Write <id>_cpk.yaml, overwriting any existing one

    Raises:
        ArtifactError: If the file cannot be written
    """
    specifier_file = run_specifier_path(root, component_id)
    content = {
        "package_specifier": {
            "component_id": component_id,
            "package_root": normalize_path(root),
        }
    }
    try:
        with open(specifier_file, "w", encoding="utf-8") as f:
            yaml.safe_dump(content, f, sort_keys=False)
    except OSError as e:
        raise ArtifactError(f"Cannot write {specifier_file}: {e}")
    return specifier_file


def read_run_specifier(path: Path) -> str:
    """
    Installed package root recorded in a run specifier

    Raises:
        ArtifactError: If the file is unreadable or has no package_root
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ArtifactError(f"Cannot read run specifier {path}: {e}")
    root = (data or {}).get("package_specifier", {}).get("package_root") if isinstance(data, dict) else None
    if not root:
        raise ArtifactError(f"No package_root in run specifier {path}")
    return root
