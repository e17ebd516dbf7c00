"""Package browser: index and environment of a single package

A PackageBrowser looks at one package, either an installed root directory or
an unopened archive. It indexes every file and directory once, at construction
time, and answers lookups from that index. Files created afterwards are not
seen until a new browser is built.
"""

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional, Tuple

from compak.core.packages import environment
from compak.core.packages.exceptions import ManifestError
from compak.core.packages.macros import normalize_path
from compak.core.packages.manifest import MANIFEST_FILE_PATH, ManifestHandler
from compak.core.packages.models import Manifest

logger = logging.getLogger(__name__)

# Standard directories (relative forms)
BINARY_DIR = "/" + environment.PACKAGE_BIN_DIR
CONFIGURATION_DIR = "/" + environment.PACKAGE_CONF_DIR
DATA_DIR = "/" + environment.PACKAGE_DATA_DIR
DESCRIPTORS_DIR = "/" + environment.PACKAGE_DESC_DIR
DOCUMENTATION_DIR = "/" + environment.PACKAGE_DOC_DIR
LIBRARY_DIR = "/" + environment.PACKAGE_LIB_DIR
METADATA_DIR = "/" + environment.PACKAGE_METADATA_DIR
RESOURCES_DIR = "/" + environment.PACKAGE_RESOURCES_DIR
SOURCES_DIR = "/" + environment.PACKAGE_SOURCES_DIR

# Standard files (relative forms)
MANIFEST_FILE = "/" + MANIFEST_FILE_PATH
PACKAGE_CONFIG_FILE = METADATA_DIR + "/package.properties"
SETENV_FILE = METADATA_DIR + "/setenv.txt"

RUN_SPECIFIER_SUFFIX = "_cpk.yaml"

# Environment variable holding the component data path
DATAPATH_VAR = "COMPAK_DATAPATH"


def _relative_form(path: str) -> str:
    """'/lib/a.whl' style form of a path relative to the package root"""
    text = path.replace("\\", "/").strip("/")
    return "/" + text if text else "/"


@dataclass(frozen=True)
class PackageIndex:
    """Sorted, de-duplicated relative forms of all files and directories"""
    files: Tuple[str, ...]
    directories: Tuple[str, ...]

    @classmethod
    def from_directory(cls, root_dir: Path) -> "PackageIndex":
        files = set()
        dirs = set()
        for item in Path(root_dir).rglob("*"):
            rel = _relative_form(item.relative_to(root_dir).as_posix())
            if item.is_dir():
                dirs.add(rel)
            else:
                files.add(rel)
        return cls(tuple(sorted(files)), tuple(sorted(dirs)))

    @classmethod
    def from_archive(cls, archive: zipfile.ZipFile) -> "PackageIndex":
        files = set()
        dirs = set()
        for name in archive.namelist():
            rel = _relative_form(name)
            if rel == "/":
                continue
            if name.endswith("/"):
                dirs.add(rel)
            else:
                files.add(rel)
            # archives do not always carry entries for intermediate directories
            for parent in PurePosixPath(rel).parents:
                if str(parent) != "/":
                    dirs.add(str(parent))
        return cls(tuple(sorted(files)), tuple(sorted(dirs)))

    @staticmethod
    def match(entries: Iterable[str], pattern: str) -> Tuple[str, ...]:
        """Leading '/' means prefix match, anything else is a substring match"""
        pattern = pattern.replace("\\", "/")
        if pattern.startswith("/"):
            return tuple(entry for entry in entries if entry.startswith(pattern))
        return tuple(entry for entry in entries if pattern in entry)


class PackageBrowser:
    """Browser for an installed package root or an unopened package archive"""

    def __init__(self, root_dir: Path):
        """
        Index an installed package

        Args:
            root_dir: Package root directory
        """
        self._root_dir = Path(root_dir).absolute()
        self._archive_path: Optional[Path] = None
        self._index = PackageIndex.from_directory(self._root_dir)
        logger.debug(
            f"Indexed {self._root_dir}: {len(self._index.files)} files, "
            f"{len(self._index.directories)} directories"
        )

    @classmethod
    def from_archive(cls, archive_path: Path) -> "PackageBrowser":
        """
        Index a package archive without extracting it

        The browser root is the archive path without its suffix.

        Raises:
            OSError: If the archive cannot be read
            zipfile.BadZipFile: If the archive is corrupt
        """
        archive_path = Path(archive_path).absolute()
        browser = cls.__new__(cls)
        browser._archive_path = archive_path
        browser._root_dir = archive_path.with_suffix("")
        with zipfile.ZipFile(archive_path, "r") as zf:
            browser._index = PackageIndex.from_archive(zf)
        return browser

    # ----- Properties -----

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    @property
    def is_archived(self) -> bool:
        return self._archive_path is not None

    @property
    def archive_path(self) -> Optional[Path]:
        return self._archive_path

    @property
    def index(self) -> PackageIndex:
        return self._index

    def _to_path(self, rel: str) -> Path:
        return self._root_dir / rel.lstrip("/")

    def all_files(self) -> Tuple[Path, ...]:
        return tuple(self._to_path(rel) for rel in self._index.files)

    def all_directories(self) -> Tuple[Path, ...]:
        return tuple(self._to_path(rel) for rel in self._index.directories)

    # ----- Lookup -----

    def find_file(self, pattern: str) -> Tuple[Path, ...]:
        return tuple(self._to_path(rel) for rel in PackageIndex.match(self._index.files, pattern))

    def find_directory(self, pattern: str) -> Tuple[Path, ...]:
        return tuple(self._to_path(rel) for rel in PackageIndex.match(self._index.directories, pattern))

    def find_standard_file(self, name: str) -> Optional[Path]:
        rel = _relative_form(name)
        return self._to_path(rel) if rel in self._index.files else None

    def find_standard_directory(self, name: str) -> Optional[Path]:
        rel = _relative_form(name)
        return self._to_path(rel) if rel in self._index.directories else None

    # ----- Manifest -----

    def get_manifest(self) -> Optional[Manifest]:
        """
        Manifest of this package

        For an installed package the main root is set to the browser root.

        Returns:
            Manifest, or None if the package has no manifest file

        Raises:
            ManifestError: If the manifest exists but cannot be parsed
        """
        if self.is_archived:
            if MANIFEST_FILE not in self._index.files:
                return None
            return ManifestHandler.load_from_archive(self._archive_path)

        manifest_file = self.find_standard_file(MANIFEST_FILE)
        if manifest_file is None:
            return None
        manifest = ManifestHandler.load(manifest_file)
        manifest.set_main_component_root(self._root_dir)
        return manifest

    def _require_manifest(self) -> Optional[Manifest]:
        if self.is_archived:
            return None
        return self.get_manifest()

    # ----- Environment -----

    def _relativize(self, value: str, relative: bool) -> str:
        if not relative:
            return value
        return value.replace(normalize_path(self._root_dir), ".")

    def build_module_path(self, include_library_archives: bool = True, relative: bool = False) -> Optional[str]:
        """Module path of this package; None for archives or packages without a manifest"""
        manifest = self._require_manifest()
        if manifest is None:
            return None
        path = environment.build_component_module_path(
            str(self._root_dir), manifest, include_library_archives
        )
        return self._relativize(path, relative)

    def build_runtime_module_path(self) -> Optional[str]:
        """Module path without lib/ archives, for hosts that already provide them"""
        return self.build_module_path(include_library_archives=False)

    def build_library_path(self, relative: bool = False) -> Optional[str]:
        manifest = self._require_manifest()
        if manifest is None:
            return None
        path = environment.build_component_library_path(str(self._root_dir), manifest)
        return self._relativize(path, relative)

    def build_environment_table(self) -> Optional[Dict[str, str]]:
        manifest = self._require_manifest()
        if manifest is None:
            return None
        return environment.build_environment_table(manifest)

    def get_component_data_path(self) -> Optional[str]:
        table = self.build_environment_table() or {}
        return table.get(DATAPATH_VAR)

    def get_component_env_vars(self) -> Dict[str, str]:
        """Declared variables without the data path, which has its own accessor"""
        table = dict(self.build_environment_table() or {})
        table.pop(DATAPATH_VAR, None)
        return table

    def get_run_specifier_path(self) -> Optional[Path]:
        if self.is_archived:
            return None
        manifest = self.get_manifest()
        if manifest is None:
            raise ManifestError(f"No manifest in {self._root_dir}")
        return self._root_dir / f"{manifest.main_component_id}{RUN_SPECIFIER_SUFFIX}"
