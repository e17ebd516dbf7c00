import logging
import os
from pathlib import Path

from compak.core.packages.artifacts import read_properties, read_run_specifier
from compak.core.packages.controller import InstallationController, delete_installed_files
from compak.core.packages.locator import DirectoryPackageLocator
from compak.core.packages.macros import normalize_path
from compak.core.packages.manifest import MANIFEST_FILE_PATH, ManifestHandler
from compak.core.packages.models import FailureKind, InstallationStatus


def _controller(component_id, out_dir, archive_dir, config, listener=None, monitor=None, **kwargs):
    locator = kwargs.pop("locator", None) or DirectoryPackageLocator(
        search_dirs=[out_dir], archive_dirs=[archive_dir]
    )
    return InstallationController(
        component_id,
        out_dir,
        locator=locator,
        config=config,
        listener=listener,
        monitor=monitor,
        **kwargs,
    )


def test_fresh_install_without_delegates(make_package, archive_dir, tmp_path, config, listener, monitor) -> None:
    make_package("x", files={"lib/a.jar": b"jar"})
    out = tmp_path / "out"
    controller = _controller("x", out, archive_dir, config, listener, monitor)

    manifest = controller.install_component()
    controller.router.flush()

    root = normalize_path(out / "x")
    assert manifest is not None
    assert controller.main_root == out / "x"
    assert manifest.main_component_root == root
    assert controller.build_component_module_path().endswith("/x/lib/a.jar")
    assert controller.installation_table == {}
    assert controller.children == []
    assert controller.failure is None

    saved = ManifestHandler.load(out / "x" / MANIFEST_FILE_PATH)
    assert saved.main_component_root == root
    assert read_properties(out / "x" / "metadata" / "package.properties")["$main_root"] == root
    assert (out / "x" / "metadata" / "setenv.txt").read_text(encoding="utf-8").count("PYTHONPATH=") == 1
    assert read_run_specifier(out / "x" / "x_cpk.yaml") == root

    assert monitor.statuses == [
        ("x", InstallationStatus.INSTALLATION_IN_PROGRESS),
        ("x", InstallationStatus.INSTALLATION_COMPLETED),
    ]
    assert monitor.locations == [("x", root)]
    assert any("component x installation completed." in msg for msg in listener.out)
    assert any("OS - TestOS, Host - 127.0.0.1" in msg for msg in listener.out)
    controller.terminate()


def test_install_in_root_dir(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("x")
    target = tmp_path / "custom"
    controller = _controller("x", target, archive_dir, config, listener, install_in_root_dir=True)

    manifest = controller.install_component()
    controller.terminate()

    assert manifest.main_component_root == normalize_path(target)
    assert controller.installation_dir == tmp_path
    assert (target / MANIFEST_FILE_PATH).is_file()


def test_delegate_is_installed_by_child(make_package, archive_dir, tmp_path, config, listener, monitor) -> None:
    make_package("d", files={"lib/d.jar": b"d", "bin/tool": "#!"})
    make_package(
        "main",
        delegates=["d"],
        files={"lib/m.jar": b"m", "conf/main.ini": "dep=$d$root\n"},
        actions=[{"name": "set_env_variable", "params": {"var_name": "DATA", "var_value": "$d$root/data"}}],
    )
    out = tmp_path / "out"
    controller = _controller("main", out, archive_dir, config, listener, monitor)

    manifest = controller.install_component()
    controller.router.flush()

    d_root = normalize_path(out / "d")
    assert manifest is not None
    assert dict(controller.installation_table) == {"d": d_root}
    assert manifest.delegate_components == {"d": d_root}
    assert [child.component_id for child in controller.children] == ["d"]
    assert controller.children[0].router is controller.router

    entries = controller.build_component_module_path().split(os.pathsep)
    assert entries[0].endswith("/main/lib/m.jar")
    assert entries[1].endswith("/d/lib/d.jar")
    assert controller.build_component_library_path() == f"{d_root}/bin"
    assert controller.build_environment_table() == {"DATA": f"{d_root}/data"}

    assert (out / "main" / "conf" / "main.ini").read_text(encoding="utf-8") == f"dep={d_root}\n"
    assert read_properties(out / "main" / "metadata" / "package.properties")["$d$root"] == d_root
    assert ("d", InstallationStatus.INSTALLATION_COMPLETED) in monitor.statuses
    assert any("component d installation completed." in msg for msg in listener.out)
    controller.terminate()


def test_installed_delegate_is_reused(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("d", files={"lib/d.jar": b"d"})
    make_package("main", delegates=["d"])

    shared = tmp_path / "shared"
    first = InstallationController(
        "d", shared,
        locator=DirectoryPackageLocator(archive_dirs=[archive_dir]),
        config=config, listener=listener,
    )
    assert first.install_component() is not None
    first.terminate()
    d_manifest = shared / "d" / MANIFEST_FILE_PATH
    before = d_manifest.read_bytes()

    out = tmp_path / "out"
    locator = DirectoryPackageLocator(search_dirs=[shared], archive_dirs=[archive_dir])
    controller = _controller("main", out, archive_dir, config, listener, locator=locator)
    manifest = controller.install_component()
    controller.terminate()

    assert manifest is not None
    assert dict(controller.installation_table) == {"d": normalize_path(shared / "d")}
    assert controller.children == []
    assert not (out / "d").exists()
    assert d_manifest.read_bytes() == before
    assert controller.build_component_module_path().endswith("/shared/d/lib/d.jar")


def test_transitive_delegates_are_composed(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("e", files={"lib/e.jar": b"e"})
    make_package("d", delegates=["e"], files={"lib/d.jar": b"d"})
    make_package("main", delegates=["d"], files={"lib/m.jar": b"m"})
    out = tmp_path / "out"
    controller = _controller("main", out, archive_dir, config, listener)

    assert controller.install_component() is not None
    controller.terminate()

    assert list(controller.installation_table) == ["d"]
    assert [c.component_id for c in controller.children[0].children] == ["e"]
    names = [Path(entry).name for entry in controller.build_component_module_path().split(os.pathsep)]
    assert names == ["m.jar", "d.jar", "e.jar"]


def test_extraction_failure(tmp_path, config, listener, monitor) -> None:
    controller = InstallationController(
        "x", tmp_path / "out",
        package_file=tmp_path / "missing.zip",
        config=config, listener=listener, monitor=monitor,
    )

    outcome = controller.install()
    controller.router.flush()

    assert not outcome.success
    assert outcome.failure.kind == FailureKind.EXTRACTION
    assert controller.install_component() is None
    assert controller.failure.kind == FailureKind.EXTRACTION
    assert "Traceback" in controller.installation_message
    assert controller.build_component_module_path() is None
    assert controller.build_environment_table() is None
    assert monitor.statuses[:2] == [
        ("x", InstallationStatus.INSTALLATION_IN_PROGRESS),
        ("x", InstallationStatus.INSTALLATION_FAILED),
    ]
    assert any(msg.startswith("Error in InstallationController") for msg in listener.err)
    controller.terminate()


def test_manifest_failure(archive_dir, tmp_path, config, listener) -> None:
    import zipfile

    archive = archive_dir / "broken.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("lib/a.jar", b"")
    controller = InstallationController("broken", tmp_path / "out", package_file=archive, config=config, listener=listener)

    assert controller.install_component() is None
    assert controller.failure.kind == FailureKind.MANIFEST
    assert (tmp_path / "out" / "broken" / "lib" / "a.jar").exists()
    controller.terminate()


def test_failed_delegate_fails_parent(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("main", delegates=["ghost"])
    controller = _controller("main", tmp_path / "out", archive_dir, config, listener)

    assert controller.install_component() is None
    controller.router.flush()

    assert controller.failure.kind == FailureKind.DELEGATE
    assert [c.component_id for c in controller.children] == ["ghost"]
    assert controller.children[0].failure.kind == FailureKind.EXTRACTION
    assert any("failed to install dlg component ghost" in msg for msg in listener.err)
    controller.terminate()


def test_locator_error_falls_through_to_install(make_package, archive_dir, tmp_path, config, listener, caplog) -> None:
    make_package("d")
    make_package("main", delegates=["d"])

    class FlakyLocator:
        def find_installed_root(self, component_id):
            raise RuntimeError("registry offline")

        def find_archive_source(self, component_id):
            return str(archive_dir / f"{component_id}.zip")

    out = tmp_path / "out"
    controller = _controller("main", out, archive_dir, config, listener, locator=FlakyLocator())
    with caplog.at_level(logging.WARNING, logger="compak.core.packages.controller"):
        manifest = controller.install_component()
    controller.router.flush()

    assert manifest is not None
    assert dict(controller.installation_table) == {"d": normalize_path(out / "d")}
    assert "registry offline" in caplog.text
    assert any("failed to query d location" in msg for msg in listener.err)
    controller.terminate()


def test_listener_management(make_package, archive_dir, tmp_path, config, listener) -> None:
    class Extra:
        def __init__(self):
            self.out = []

        def out_msg_posted(self, msg):
            self.out.append(msg)

        def err_msg_posted(self, msg):
            pass

    make_package("x")
    controller = _controller("x", tmp_path / "out", archive_dir, config, listener)
    extra = Extra()
    controller.add_listener(extra)
    controller.remove_listener(listener)
    controller.install_component()
    controller.terminate()
    controller.terminate()

    assert any("installation completed" in msg for msg in extra.out)
    assert not any("installation completed" in msg for msg in listener.out)


def test_delete_installed_files(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("d")
    make_package("main", delegates=["d"])
    out = tmp_path / "out"
    controller = _controller("main", out, archive_dir, config, listener)
    assert controller.install_component() is not None
    controller.terminate()

    assert delete_installed_files("main", out, include_delegates=True)
    assert not (out / "main").exists()
    assert not (out / "d").exists()
    assert not delete_installed_files("main", out)


def test_delete_without_delegates_keeps_them(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("d")
    make_package("main", delegates=["d"])
    out = tmp_path / "out"
    controller = _controller("main", out, archive_dir, config, listener)
    controller.install_component()
    controller.terminate()

    assert delete_installed_files("main", out)
    assert (out / "d").is_dir()


def test_verify_before_install_fails(tmp_path, config, listener, monitor) -> None:
    controller = InstallationController("x", tmp_path, config=config, listener=listener, monitor=monitor)

    assert controller.verify_component() is False
    assert "null installation manifest" in controller.verification_message
    assert monitor.statuses[-1] == ("x", InstallationStatus.VERIFICATION_FAILED)
    controller.terminate()


def test_install_descriptors_only(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package(
        "x",
        files={
            "lib/a.jar": b"jar",
            "bin/x.so": b"so",
            "desc/x.yaml": "home: $main_root\n",
            "conf/x.ini": "home=$main_root\n",
        },
        actions=[
            {
                "name": "find_and_replace_path",
                "params": {"file": "$main_root/conf/x.ini", "find_string": "home", "replace_with": "base"},
            }
        ],
        main_component_desc="$main_root/desc/x.yaml",
    )
    out = tmp_path / "out"
    controller = _controller("x", out, archive_dir, config, listener)

    manifest = controller.install_component_descriptors()
    controller.router.flush()

    root = normalize_path(out / "x")
    assert manifest is not None
    assert controller.failure is None
    assert manifest.main_component_desc == f"{root}/desc/x.yaml"
    assert (out / "x" / "desc" / "x.yaml").read_text(encoding="utf-8") == f"home: {root}\n"
    assert ManifestHandler.load(out / "x" / MANIFEST_FILE_PATH).main_component_root == root
    assert not (out / "x" / "lib").exists()
    assert not (out / "x" / "bin").exists()
    assert not (out / "x" / "conf").exists()
    assert not (out / "x" / "metadata" / "setenv.txt").exists()
    assert not (out / "x" / "x_cpk.yaml").exists()
    assert any("component x descriptors installation completed." in msg for msg in listener.out)
    controller.terminate()


def test_delegate_descriptors_installed_by_child(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("d", files={"lib/d.jar": b"jar", "desc/d.yaml": "root: $main_root\n"})
    make_package("main", delegates=["d"])
    out = tmp_path / "out"
    installed = _controller("d", out, archive_dir, config)
    assert installed.install_component() is not None
    installed.terminate()
    (out / "d" / "desc" / "d.yaml").unlink()
    controller = _controller("main", out, archive_dir, config, listener)

    manifest = controller.install_component_descriptors()
    controller.router.flush()

    d_root = normalize_path(out / "d")
    assert manifest is not None
    assert [c.component_id for c in controller.children] == ["d"]
    assert dict(controller.installation_table) == {"d": d_root}
    assert (out / "d" / "desc" / "d.yaml").read_text(encoding="utf-8") == f"root: {d_root}\n"
    assert any("component d descriptors installation completed." in msg for msg in listener.out)
    controller.terminate()


def test_failed_delegate_descriptors(make_package, archive_dir, tmp_path, config, listener) -> None:
    make_package("main", delegates=["ghost"])
    controller = _controller("main", tmp_path / "out", archive_dir, config, listener)

    assert controller.install_component_descriptors() is None
    controller.router.flush()

    assert controller.failure.kind == FailureKind.DELEGATE
    assert controller.children[0].failure.kind == FailureKind.EXTRACTION
    assert any("failed to install descriptors for dlg component ghost" in msg for msg in listener.err)
    controller.terminate()
