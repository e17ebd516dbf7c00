import os
import sys
from pathlib import Path

import pytest

from compak.core.verification import harness


@pytest.fixture
def component_dir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setattr(sys, "path", list(sys.path))
    monkeypatch.syspath_prepend(str(tmp_path))
    return tmp_path


def _descriptor(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_memory_limit() -> None:
    assert harness.parse_memory_limit("512M") == 512 * 1024 ** 2
    assert harness.parse_memory_limit("2g") == 2 * 1024 ** 3
    assert harness.parse_memory_limit("4096") == 4096
    with pytest.raises(ValueError):
        harness.parse_memory_limit("lots")


def test_class_entrypoint_is_initialized(component_dir: Path) -> None:
    (component_dir / "harness_comp_cls.py").write_text(
        "class Component:\n"
        "    seen = None\n"
        "    def initialize(self, language):\n"
        "        Component.seen = language\n",
        encoding="utf-8",
    )
    descriptor = _descriptor(
        component_dir / "app.yaml",
        "entrypoint: harness_comp_cls:Component\nparameters:\n  language: en\n",
    )

    assert harness.main([str(descriptor)]) == 0

    import harness_comp_cls
    assert harness_comp_cls.Component.seen == "en"


def test_function_entrypoint_is_called(component_dir: Path) -> None:
    (component_dir / "harness_comp_fn.py").write_text(
        "calls = []\n"
        "def create(**kwargs):\n"
        "    calls.append(kwargs)\n",
        encoding="utf-8",
    )
    target, parameters = harness.load_entrypoint(
        _descriptor(component_dir / "app.yaml", "entrypoint: harness_comp_fn:create\n")
    )
    harness.initialize_component(target, parameters)

    import harness_comp_fn
    assert harness_comp_fn.calls == [{}]


def test_failing_initialize_returns_minus_one(component_dir: Path, capsys) -> None:
    (component_dir / "harness_comp_bad.py").write_text(
        "class Component:\n"
        "    def initialize(self):\n"
        "        raise RuntimeError('model file missing')\n",
        encoding="utf-8",
    )
    descriptor = _descriptor(component_dir / "app.yaml", "entrypoint: harness_comp_bad:Component\n")

    assert harness.main([str(descriptor)]) == -1
    assert "model file missing" in capsys.readouterr().err


def test_descriptor_without_entrypoint(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path / "app.yaml", "name: nothing\n")
    with pytest.raises(ValueError, match="No entrypoint"):
        harness.load_entrypoint(descriptor)


def test_usage_error(capsys) -> None:
    assert harness.main([]) == -1
    assert "usage:" in capsys.readouterr().err


def test_apply_options(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(sys, "path", list(sys.path))
    monkeypatch.setenv("PATH", "/usr/bin")
    monkeypatch.setenv("HARNESS_GREETING", "")
    monkeypatch.delenv("HARNESS_GREETING")
    monkeypatch.setenv("HARNESS_KEEP", "original")

    harness.apply_options({
        "module_path": f"{tmp_path / 'a'}{os.pathsep}{tmp_path / 'b'}",
        "library_path": "/pkg/bin",
        "HARNESS_GREETING": "hello",
        "HARNESS_KEEP": "override",
        "dev": True,
    })

    assert sys.path[:2] == [str(tmp_path / "a"), str(tmp_path / "b")]
    assert os.environ["PATH"] == f"/pkg/bin{os.pathsep}/usr/bin"
    assert os.environ["HARNESS_GREETING"] == "hello"
    assert os.environ["HARNESS_KEEP"] == "original"
