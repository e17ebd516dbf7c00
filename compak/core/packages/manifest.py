"""Loading and saving installation manifests"""

import logging
import zipfile
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from compak.core.packages.exceptions import ManifestError
from compak.core.packages.models import Manifest

logger = logging.getLogger(__name__)

# Manifest location inside a package
MANIFEST_FILE_PATH = "metadata/install.yaml"

# Security limits
MAX_MANIFEST_SIZE = 100 * 1024  # 100KB


class ManifestHandler:
    """Converts a manifest file to a Manifest object and back"""

    @staticmethod
    def parse(text: Union[str, bytes], source: str = "<string>") -> Manifest:
        """
        Parse manifest YAML content

        Args:
            text: YAML document
            source: Name used in error messages

        Returns:
            Manifest

        Raises:
            ManifestError: If the content is not a valid manifest
        """
        if len(text) > MAX_MANIFEST_SIZE:
            raise ManifestError(f"Manifest too large: {source} ({len(text)} bytes)")

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in manifest {source}: {e}")

        if not isinstance(data, dict):
            raise ManifestError(f"Manifest {source} must be a mapping, got {type(data).__name__}")

        try:
            return Manifest(**data)
        except PydanticValidationError as e:
            raise ManifestError(f"Invalid manifest {source}: {e}")

    @classmethod
    def load(cls, manifest_path: Path) -> Manifest:
        """
        Load a manifest file

        Args:
            manifest_path: Path to install.yaml

        Returns:
            Manifest with manifest_file set

        Raises:
            ManifestError: If the file is missing or invalid
        """
        manifest_path = Path(manifest_path)
        if not manifest_path.is_file():
            raise ManifestError(f"Manifest not found: {manifest_path}")

        try:
            text = manifest_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot read manifest {manifest_path}: {e}")

        manifest = cls.parse(text, source=str(manifest_path))
        manifest.manifest_file = manifest_path
        logger.debug(f"Loaded manifest {manifest.main_component_id} from {manifest_path}")
        return manifest

    @classmethod
    def load_from_package_root(cls, root_dir: Path) -> Manifest:
        return cls.load(Path(root_dir) / MANIFEST_FILE_PATH)

    @classmethod
    def load_from_archive(cls, archive_path: Path) -> Manifest:
        """
        Read the manifest of a package archive without extracting it

        Raises:
            ManifestError: If the archive has no readable manifest
        """
        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                try:
                    info = zf.getinfo(MANIFEST_FILE_PATH)
                except KeyError:
                    raise ManifestError(f"{MANIFEST_FILE_PATH} not found in {archive_path}")
                if info.file_size > MAX_MANIFEST_SIZE:
                    raise ManifestError(f"Manifest too large in {archive_path}")
                text = zf.read(info).decode("utf-8")
        except ManifestError:
            raise
        except (OSError, zipfile.BadZipFile, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot read manifest from {archive_path}: {e}")

        return cls.parse(text, source=f"{archive_path}!{MANIFEST_FILE_PATH}")

    @staticmethod
    def to_dict(manifest: Manifest) -> Dict[str, Any]:
        return manifest.model_dump(mode="json", exclude_none=False)

    @classmethod
    def save(cls, manifest: Manifest, manifest_path: Path = None) -> Path:
        """
        Write a manifest back to disk

        Args:
            manifest: Manifest to save
            manifest_path: Target file (defaults to manifest.manifest_file)

        Returns:
            Path written

        Raises:
            ManifestError: If no target is known or writing fails
        """
        target = Path(manifest_path) if manifest_path else manifest.manifest_file
        if target is None:
            raise ManifestError(f"No manifest file known for {manifest.main_component_id}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                yaml.safe_dump(cls.to_dict(manifest), f, sort_keys=False, allow_unicode=True)
        except OSError as e:
            raise ManifestError(f"Failed to save manifest {target}: {e}")

        manifest.manifest_file = target
        logger.debug(f"Saved manifest {manifest.main_component_id} to {target}")
        return target
