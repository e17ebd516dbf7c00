import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import pytest
import yaml

from compak.core.config import InstallerConfig


class RecordingListener:
    """Channel listener that keeps every delivered message"""

    def __init__(self):
        self.out: List[str] = []
        self.err: List[str] = []

    def out_msg_posted(self, msg: str) -> None:
        self.out.append(msg)

    def err_msg_posted(self, msg: str) -> None:
        self.err.append(msg)


class RecordingMonitor:
    """Installation monitor that keeps every notification"""

    def __init__(self):
        self.statuses = []
        self.locations = []

    def on_status(self, component_id, status) -> None:
        self.statuses.append((component_id, status))

    def on_location(self, component_id, root_path) -> None:
        self.locations.append((component_id, root_path))


def write_package(
    archive_path: Path,
    manifest: Mapping,
    files: Optional[Mapping[str, Union[str, bytes]]] = None
) -> Path:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path, "w") as zf:
        zf.writestr("metadata/install.yaml", yaml.safe_dump(dict(manifest), sort_keys=False))
        for name, content in (files or {}).items():
            zf.writestr(name, content)
    return archive_path


def env_action(name: str, value: str) -> Dict:
    return {"name": "set_env_variable", "params": {"var_name": name, "var_value": value}}


@pytest.fixture
def archive_dir(tmp_path: Path) -> Path:
    path = tmp_path / "archives"
    path.mkdir()
    return path


@pytest.fixture
def make_package(archive_dir: Path) -> Callable[..., Path]:
    """Build <archive_dir>/<id>.zip with a manifest and the given files"""

    def _make(
        component_id: str,
        delegates: Sequence[str] = (),
        files: Optional[Mapping[str, Union[str, bytes]]] = None,
        actions: Sequence[Mapping] = (),
        **manifest_fields
    ) -> Path:
        manifest = {
            "main_component_id": component_id,
            "main_component_name": component_id.title(),
            "delegate_components": {delegate: None for delegate in delegates},
            "actions": list(actions),
        }
        manifest.update(manifest_fields)
        return write_package(archive_dir / f"{component_id}.zip", manifest, files)

    return _make


@pytest.fixture
def config() -> InstallerConfig:
    return InstallerConfig(host_address="127.0.0.1", os_name="TestOS")


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def monitor() -> RecordingMonitor:
    return RecordingMonitor()
