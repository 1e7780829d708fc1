from __future__ import annotations

import errno
import gzip
import io
import os
import shutil
import tarfile

import pytest

from guruguru_cache.archive import Archiver, Manifest
from guruguru_cache.compression import GzipCompressor
from guruguru_cache.errors import ExtractionError
from guruguru_cache.extract import Extractor


def _compressed_archive(paths: list[str]) -> bytes:
    sink = io.BytesIO()
    with GzipCompressor().compress(sink) as stream:
        Archiver().create_archive(paths, stream)
    return sink.getvalue()


def test_extract_lays_out_namespaces(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/foo", "tmp/abc/def"])
    destination = tmp_path / "work"
    count = Extractor().extract(io.BytesIO(payload), destination)

    assert count == 8
    assert (destination / "0000/foo/bar/baz").is_dir()
    assert (destination / "0000/foo/hoge.txt").read_text(encoding="utf-8") == "This is foo!"
    assert os.readlink(destination / "0000/foo/bar/baz/link") == "../../hoge.txt"
    assert (destination / "0001/def/ghe").is_dir()
    assert (destination / "metadata.json").is_file()


def test_extract_then_relocate_round_trips(fixture_tree, tmp_path, assert_fixture_tree) -> None:
    (fixture_tree / "tmp/foo/hoge.txt").chmod(0o600)
    payload = _compressed_archive(["tmp/foo", "tmp/abc/def"])
    shutil.rmtree(fixture_tree / "tmp")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    restored = extractor.relocate(destination)

    assert restored == ["tmp/foo", "tmp/abc/def"]
    assert_fixture_tree(fixture_tree)
    assert (fixture_tree / "tmp/foo/hoge.txt").stat().st_mode & 0o777 == 0o600


def test_relocate_replaces_existing_content(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/foo"])
    (fixture_tree / "tmp/foo/stale.txt").write_text("stale", encoding="utf-8")
    (fixture_tree / "tmp/foo/hoge.txt").write_text("changed", encoding="utf-8")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    extractor.relocate(destination)

    assert not (fixture_tree / "tmp/foo/stale.txt").exists()
    assert (fixture_tree / "tmp/foo/hoge.txt").read_text(encoding="utf-8") == "This is foo!"


def test_relocate_creates_missing_parents(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/abc/def"])
    shutil.rmtree(fixture_tree / "tmp/abc")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    extractor.relocate(destination)

    assert (fixture_tree / "tmp/abc/def/ghe").is_dir()


def test_relocate_into_base_dir(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/foo"])
    destination = tmp_path / "work"
    target_root = tmp_path / "elsewhere"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    extractor.relocate(destination, base_dir=target_root)

    assert (target_root / "tmp/foo/hoge.txt").read_text(encoding="utf-8") == "This is foo!"


def test_relocation_failure_keeps_earlier_paths(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/foo"])
    shutil.rmtree(fixture_tree / "tmp/foo")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    manifest = Manifest(paths=["tmp/foo", "tmp/never-archived"])

    with pytest.raises(ExtractionError) as excinfo:
        extractor.relocate(destination, manifest)
    assert excinfo.value.code == "RELOCATE_FAILED"
    assert (fixture_tree / "tmp/foo/hoge.txt").is_file()


def test_corrupt_stream_is_rejected(tmp_path) -> None:
    with pytest.raises(ExtractionError) as excinfo:
        Extractor().extract(io.BytesIO(b"definitely not gzip"), tmp_path / "work")
    assert excinfo.value.code == "EXTRACT_CORRUPT"


def test_truncated_stream_is_rejected(fixture_tree, tmp_path) -> None:
    payload = _compressed_archive(["tmp/foo"])
    with pytest.raises(ExtractionError) as excinfo:
        Extractor().extract(io.BytesIO(payload[: len(payload) // 2]), tmp_path / "work")
    assert excinfo.value.code == "EXTRACT_CORRUPT"


def test_traversal_member_is_rejected(tmp_path) -> None:
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as tar:
        info = tarfile.TarInfo("../escape.txt")
        info.size = 2
        tar.addfile(info, io.BytesIO(b"hi"))
    payload = gzip.compress(raw.getvalue())

    with pytest.raises(ExtractionError) as excinfo:
        Extractor().extract(io.BytesIO(payload), tmp_path / "work")
    assert excinfo.value.code == "EXTRACT_UNSAFE_MEMBER"
    assert not (tmp_path / "escape.txt").exists()


def test_missing_manifest_is_reported(tmp_path) -> None:
    (tmp_path / "work").mkdir()
    with pytest.raises(ExtractionError) as excinfo:
        Extractor().relocate(tmp_path / "work")
    assert excinfo.value.code == "EXTRACT_MANIFEST_INVALID"


def test_read_only_directories_round_trip(fixture_tree, tmp_path, assert_fixture_tree) -> None:
    bar = fixture_tree / "tmp/foo/bar"
    bar.chmod(0o555)
    payload = _compressed_archive(["tmp/foo", "tmp/abc/def"])
    bar.chmod(0o755)
    shutil.rmtree(fixture_tree / "tmp")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    extractor.relocate(destination)

    try:
        assert bar.stat().st_mode & 0o777 == 0o555
        assert_fixture_tree(fixture_tree)
    finally:
        bar.chmod(0o755)


def test_modification_times_are_restored(fixture_tree, tmp_path) -> None:
    os.utime(fixture_tree / "tmp/foo/hoge.txt", (1600000000, 1600000000))
    os.utime(fixture_tree / "tmp/foo/bar/baz", (1500000000, 1500000000))
    payload = _compressed_archive(["tmp/foo"])
    shutil.rmtree(fixture_tree / "tmp/foo")

    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)
    extractor.relocate(destination)

    assert (fixture_tree / "tmp/foo/hoge.txt").stat().st_mtime == 1600000000
    assert (fixture_tree / "tmp/foo/bar/baz").stat().st_mtime == 1500000000


def test_relocate_copies_across_devices(fixture_tree, tmp_path, assert_fixture_tree, monkeypatch) -> None:
    payload = _compressed_archive(["tmp/foo", "tmp/abc/def"])
    shutil.rmtree(fixture_tree / "tmp")
    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)

    def cross_device(source, target):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(os, "rename", cross_device)
    restored = extractor.relocate(destination)

    assert restored == ["tmp/foo", "tmp/abc/def"]
    assert_fixture_tree(fixture_tree)
    assert not (destination / "0000/foo").exists()


def test_relocate_rename_failure_is_reported(fixture_tree, tmp_path, monkeypatch) -> None:
    payload = _compressed_archive(["tmp/foo"])
    destination = tmp_path / "work"
    extractor = Extractor()
    extractor.extract(io.BytesIO(payload), destination)

    def denied(source, target):
        raise PermissionError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(os, "rename", denied)
    with pytest.raises(ExtractionError) as excinfo:
        extractor.relocate(destination)
    assert excinfo.value.code == "RELOCATE_FAILED"
