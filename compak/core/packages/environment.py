"""Environment composition for installed packages

Pure functions that turn a package root plus its manifest into the module
search path, the library path and the table of other environment variables the
package needs, and that merge those contributions across a dependency tree.

Ordering rules:
- a package's own library archives come before its declared PYTHONPATH values
- its bin/ directory comes before its declared PATH values
- the main package comes before its delegates, delegates in installation order
- empty contributions never produce leading, trailing or doubled separators
"""

import os
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from compak.core.packages.macros import normalize_path
from compak.core.packages.models import LIBRARY_PATH_VAR, MODULE_PATH_VAR, Manifest

# Standard package directories
PACKAGE_METADATA_DIR = "metadata"
PACKAGE_BIN_DIR = "bin"
PACKAGE_CONF_DIR = "conf"
PACKAGE_DATA_DIR = "data"
PACKAGE_DESC_DIR = "desc"
PACKAGE_DOC_DIR = "doc"
PACKAGE_LIB_DIR = "lib"
PACKAGE_RESOURCES_DIR = "resources"
PACKAGE_SOURCES_DIR = "src"

# Files in lib/ that are importable archives
LIBRARY_ARCHIVE_SUFFIXES = (".whl", ".egg", ".zip", ".jar")

# A (root, manifest) pair for one installed package
PackageEnv = Tuple[str, Manifest]


def join_paths(*parts: Optional[str]) -> str:
    """Join search-path fragments with os.pathsep, dropping empty entries"""
    entries: List[str] = []
    for part in parts:
        if not part:
            continue
        entries.extend(entry for entry in part.split(os.pathsep) if entry)
    return os.pathsep.join(entries)


def append_path(current: str, addition: Optional[str]) -> str:
    return join_paths(current, addition)


def list_library_archives(lib_dir: Path) -> List[str]:
    """Absolute paths of library archives directly under lib_dir, sorted"""
    lib_dir = Path(lib_dir)
    if not lib_dir.is_dir():
        return []
    return [
        normalize_path(item.absolute())
        for item in sorted(lib_dir.iterdir())
        if item.is_file() and item.name.lower().endswith(LIBRARY_ARCHIVE_SUFFIXES)
    ]


def _declared_values(manifest: Manifest, var_name: str) -> List[str]:
    return [
        normalize_path(action.value)
        for action in manifest.environment_actions()
        if action.name.lower() == var_name.lower()
    ]


def build_component_module_path(
    root: str,
    manifest: Manifest,
    include_library_archives: bool = True
) -> str:
    """
    Module search path of a single package

    Args:
        root: Package root directory
        manifest: Package manifest
        include_library_archives: Add the archives found in lib/; False gives the
            runtime path for hosts that already provide those libraries

    Returns:
        os.pathsep-joined path (possibly empty)
    """
    parts: List[str] = []
    if include_library_archives:
        parts.extend(list_library_archives(Path(root) / PACKAGE_LIB_DIR))
    parts.extend(_declared_values(manifest, MODULE_PATH_VAR))
    return join_paths(*parts)


def build_component_library_path(root: str, manifest: Manifest) -> str:
    """bin/ directory (if present) followed by declared PATH values"""
    parts: List[str] = []
    bin_dir = Path(root) / PACKAGE_BIN_DIR
    if bin_dir.is_dir():
        parts.append(normalize_path(bin_dir.absolute()))
    parts.extend(_declared_values(manifest, LIBRARY_PATH_VAR))
    return join_paths(*parts)


def build_environment_table(manifest: Manifest) -> Dict[str, str]:
    """
    Declared environment variables other than PYTHONPATH and PATH

    A variable declared more than once accumulates its values in declaration
    order, joined with os.pathsep.
    """
    reserved = {MODULE_PATH_VAR.lower(), LIBRARY_PATH_VAR.lower()}
    table: Dict[str, str] = {}
    for action in manifest.environment_actions():
        if action.name.lower() in reserved:
            continue
        if action.name in table:
            table[action.name] = join_paths(table[action.name], action.value)
        else:
            table[action.name] = action.value
    return table


def merge_environment_tables(base: Mapping[str, str], extra: Mapping[str, str]) -> Dict[str, str]:
    """Copy of base with extra's values appended (or added when new)"""
    merged = dict(base)
    for name, value in extra.items():
        if name in merged:
            merged[name] = join_paths(merged[name], value)
        else:
            merged[name] = value
    return merged


def compose_module_path(
    main: PackageEnv,
    delegates: Iterable[PackageEnv] = (),
    include_library_archives: bool = True
) -> str:
    path = build_component_module_path(main[0], main[1], include_library_archives)
    for root, manifest in delegates:
        path = append_path(path, build_component_module_path(root, manifest, include_library_archives))
    return path


def compose_library_path(main: PackageEnv, delegates: Iterable[PackageEnv] = ()) -> str:
    path = build_component_library_path(main[0], main[1])
    for root, manifest in delegates:
        path = append_path(path, build_component_library_path(root, manifest))
    return path


def compose_environment_table(main: Manifest, delegates: Iterable[Manifest] = ()) -> Dict[str, str]:
    table = build_environment_table(main)
    for manifest in delegates:
        table = merge_environment_tables(table, build_environment_table(manifest))
    return table


def build_network_params(manifest: Manifest) -> List[str]:
    """'key=value' strings for every non-empty network parameter"""
    params: List[str] = []
    for group in manifest.network_params.values():
        for key, value in group.items():
            if value and value.strip():
                params.append(f"{key.strip()}={value.strip()}")
    return params
