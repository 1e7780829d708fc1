from __future__ import annotations

import io
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

import pytest

from guruguru_cache.errors import RemoteError
from guruguru_cache.storage import ObjectSummary, RemoteObject, md5_base64


class InMemoryStore:
    """RemoteStore fake keeping objects in a dict, with per-key failure injection."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, datetime]] = {}
        self.failing_keys: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def add(self, key: str, content: bytes, last_modified: datetime | None = None) -> None:
        self.objects[key] = (content, last_modified or datetime.now(tz=timezone.utc))

    def _check(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if key in self.failing_keys:
            raise RemoteError("REMOTE_REQUEST_FAILED", f"{operation} {key}: injected")

    def exists(self, key: str) -> bool:
        self._check("exists", key)
        return key in self.objects

    def get(self, key: str) -> RemoteObject | None:
        self._check("get", key)
        if key not in self.objects:
            return None
        content, last_modified = self.objects[key]
        return RemoteObject(key=key, body=io.BytesIO(content), last_modified=last_modified, size=len(content))

    def put(self, key: str, body: BinaryIO, *, content_md5: str, content_length: int) -> None:
        self._check("put", key)
        content = body.read()
        actual_md5, actual_length = md5_base64(io.BytesIO(content))
        if (actual_md5, actual_length) != (content_md5, content_length):
            raise RemoteError("REMOTE_DIGEST_MISMATCH", key)
        self.add(key, content)

    def list_by_prefix(self, prefix: str) -> list[ObjectSummary]:
        self._check("list", prefix)
        return [
            ObjectSummary(key=key, last_modified=last_modified)
            for key, (_, last_modified) in self.objects.items()
            if key.startswith(prefix)
        ]


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fixture_tree(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Build tmp/foo and tmp/abc/def under a fresh working directory."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "tmp/foo/bar/baz").mkdir(parents=True)
    (tmp_path / "tmp/foo/hoge.txt").write_text("This is foo!", encoding="utf-8")
    os.symlink("../../hoge.txt", tmp_path / "tmp/foo/bar/baz/link")
    (tmp_path / "tmp/abc/def/ghe").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def assert_fixture_tree():
    def check(root: Path) -> None:
        assert (root / "tmp/foo/bar/baz").is_dir()
        assert (root / "tmp/foo/hoge.txt").read_text(encoding="utf-8") == "This is foo!"
        assert os.readlink(root / "tmp/foo/bar/baz/link") == "../../hoge.txt"
        assert (root / "tmp/foo/bar/baz/link").read_text(encoding="utf-8") == "This is foo!"
        assert (root / "tmp/abc/def/ghe").is_dir()
        assert list((root / "tmp/abc/def/ghe").iterdir()) == []

    return check
