"""Post-extraction processing of an installed package

Resolves the macros described in compak.core.packages.macros:
- in the manifest: the main root, every delegate root and the 'file',
  'replace_with' and 'var_value' parameters of every action
- on disk: every file under conf/ and desc/, plus the files named by
  'find_and_replace_path' actions
"""

import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from compak.core.packages import environment
from compak.core.packages.macros import normalize_path, substitute_all
from compak.core.packages.manifest import ManifestHandler
from compak.core.packages.models import (
    FILE,
    FIND_STRING,
    REPLACE_WITH,
    VAR_VALUE,
    ActionInfo,
    ActionType,
    Manifest,
)

logger = logging.getLogger(__name__)

SUBSTITUTED_PARAMS = (FILE, REPLACE_WITH, VAR_VALUE)


def replace_string_in_file(file_path: Path, old: str, new: str) -> bool:
    """
    Replace every occurrence of old with new in a text file

    Returns:
        True if the file changed. Files that are not UTF-8 text are left alone.
    """
    try:
        content = file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.debug(f"Skipping non-text file {file_path}")
        return False
    if old not in content:
        return False
    file_path.write_text(content.replace(old, new), encoding="utf-8")
    return True


def substitute_macros_in_file(
    file_path: Path,
    main_root: str,
    roots: Mapping[str, str]
) -> bool:
    try:
        content = file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.debug(f"Skipping non-text file {file_path}")
        return False
    updated = substitute_all(content, main_root, roots, base_dir=file_path.parent)
    if updated == content:
        return False
    file_path.write_text(updated, encoding="utf-8")
    return True


class InstallationProcessor:
    """Completes installation of an extracted package"""

    def __init__(
        self,
        main_root: Path,
        installation_table: Mapping[str, str],
        writer=None,
        skip_missing_files: bool = False
    ):
        """
        Args:
            main_root: Root the package was extracted into
            installation_table: Delegate id -> installed root
            writer: Optional message writer for progress lines
            skip_missing_files: Ignore find_and_replace_path actions whose file
                was not extracted (descriptor-only installation)
        """
        self.main_root = normalize_path(Path(main_root).absolute())
        self.installation_table: Dict[str, str] = {
            component_id: normalize_path(root) for component_id, root in installation_table.items()
        }
        self.writer = writer
        self.skip_missing_files = skip_missing_files
        self._manifest: Optional[Manifest] = None

    @property
    def manifest(self) -> Optional[Manifest]:
        """Processed manifest, available once process() completed"""
        return self._manifest

    def process(self) -> Manifest:
        """
        Load the manifest from disk, resolve it and run its actions

        Returns:
            The processed manifest (not yet saved)

        Raises:
            ManifestError: If the manifest cannot be loaded
            OSError: If a file action fails
        """
        self._manifest = None
        manifest = ManifestHandler.load_from_package_root(Path(self.main_root))

        if self.writer is not None:
            self.writer.print(f"[InstallationProcessor]: start processing manifest - {manifest.manifest_file}")
        logger.info(f"Processing manifest of {manifest.main_component_id} in {self.main_root}")

        manifest.set_main_component_root(self.main_root)
        for component_id in list(manifest.delegate_components):
            root = self.installation_table.get(component_id)
            if root is not None:
                manifest.set_delegate_component_root(component_id, root)

        for action in manifest.actions:
            self.substitute_action_params(action)
            if action.name == ActionType.FIND_AND_REPLACE_PATH:
                self.find_and_replace_path(action)

        for dir_name in (environment.PACKAGE_CONF_DIR, environment.PACKAGE_DESC_DIR):
            target_dir = Path(self.main_root) / dir_name
            if target_dir.is_dir():
                self.substitute_macros_in_dir(target_dir)

        self._manifest = manifest
        return manifest

    def substitute_action_params(self, action: ActionInfo) -> None:
        for name in SUBSTITUTED_PARAMS:
            value = action.params.get(name)
            if value is None:
                continue
            if name == VAR_VALUE:
                # manifests use ';' as the portable path separator
                value = value.replace(";", os.pathsep)
            value = substitute_all(value, self.main_root, self.installation_table)
            action.params[name] = value.strip().replace("\\", "/")

    def find_and_replace_path(self, action: ActionInfo) -> None:
        """
        Run a 'find_and_replace_path' action

        Raises:
            ValueError: If a required parameter is missing
        """
        for name in (FILE, FIND_STRING, REPLACE_WITH):
            if action.params.get(name) is None:
                raise ValueError(f"no {name} defined in {action.name.value} action")
        file_path = Path(action.params[FILE])
        if self.skip_missing_files and not file_path.is_file():
            logger.debug(f"Skipping {action.name.value} on missing {file_path}")
            return
        replace_string_in_file(file_path, action.params[FIND_STRING], action.params[REPLACE_WITH])

    def substitute_macros_in_dir(self, directory: Path) -> None:
        for file_path in sorted(directory.rglob("*")):
            if file_path.is_file():
                substitute_macros_in_file(file_path, self.main_root, self.installation_table)
