import zipfile
from pathlib import Path

import pytest

from compak.core.packages.archive import extract_package, extract_zip
from compak.core.packages.exceptions import DownloadError, ExtractionError


def test_extract_package_creates_parents(make_package, tmp_path: Path) -> None:
    archive = make_package("x", files={"lib/a.jar": b"1234"})
    target = tmp_path / "deep" / "out" / "x"

    root = extract_package(str(archive), target)

    assert root == target.absolute()
    assert (target / "lib" / "a.jar").read_bytes() == b"1234"
    assert (target / "metadata" / "install.yaml").is_file()


def test_extract_reports_progress(make_package, tmp_path: Path) -> None:
    class Writer:
        def __init__(self):
            self.lines = []

        def print(self, text=""):
            self.lines.append(text)

    writer = Writer()
    extract_package(str(make_package("x", files={"a.txt": "abc"})), tmp_path / "x", writer=writer)

    assert writer.lines[0].startswith("[InstallationController]: extracting ")
    assert writer.lines[-1].endswith("bytes extracted")


def test_missing_archive_raises(tmp_path: Path) -> None:
    with pytest.raises(ExtractionError, match="not found"):
        extract_package(str(tmp_path / "nope.zip"), tmp_path / "out")


def test_corrupt_archive_raises(tmp_path: Path) -> None:
    bad = tmp_path / "bad.zip"
    bad.write_bytes(b"not a zip")
    with pytest.raises(ExtractionError):
        extract_package(str(bad), tmp_path / "out")


def test_uncreatable_target_raises(make_package, tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(ExtractionError, match="cannot create directory"):
        extract_package(str(make_package("x")), blocker / "x")


def test_path_traversal_is_rejected(tmp_path: Path) -> None:
    evil = tmp_path / "evil.zip"
    with zipfile.ZipFile(evil, "w") as zf:
        zf.writestr("../escape.txt", "x")
    with pytest.raises(ExtractionError, match="traversal"):
        extract_zip(evil, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_url_download_failure_is_an_extraction_error(tmp_path: Path) -> None:
    class FailingDownloader:
        def download(self, url, target_path, writer=None):
            raise DownloadError(f"Download failed: {url}")

        def close(self):
            pass

    with pytest.raises(ExtractionError):
        extract_package("http://packages.invalid/x.zip", tmp_path / "x", downloader=FailingDownloader())


def test_downloaded_copy_is_removed(make_package, tmp_path: Path) -> None:
    archive = make_package("x", files={"a.txt": "abc"})

    class CopyDownloader:
        def download(self, url, target_path, writer=None):
            target_path.write_bytes(archive.read_bytes())

        def close(self):
            pass

    target = tmp_path / "x"
    extract_package("https://packages.example/x.cpk", target, downloader=CopyDownloader())

    assert (target / "a.txt").read_text(encoding="utf-8") == "abc"
    assert not (target / "x.cpk").exists()


def test_extract_only_matching_suffixes(tmp_path: Path) -> None:
    archive = tmp_path / "x.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("metadata/install.yaml", "main_component_id: x\n")
        zf.writestr("desc/X.YML", "k: v\n")
        zf.writestr("lib/", "")
        zf.writestr("lib/a.jar", b"jar")

    total = extract_zip(archive, tmp_path / "out", suffixes=(".yaml", ".yml"))

    assert (tmp_path / "out" / "metadata" / "install.yaml").is_file()
    assert (tmp_path / "out" / "desc" / "X.YML").is_file()
    assert not (tmp_path / "out" / "lib").exists()
    assert total == len("main_component_id: x\n") + len("k: v\n")
