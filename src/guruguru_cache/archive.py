"""Multi-path archive construction.

Every input path gets its own namespace inside one tar stream: entries under the
``i``-th path are named ``"{i:04d}/<path relative to the input's parent>"``, so
``tmp/foo/hoge.txt`` stored as path 0 becomes ``0000/foo/hoge.txt``. A trailing
``metadata.json`` entry records the original paths in input order so a restore can
move each namespace back where it came from.
"""

from __future__ import annotations

import io
import itertools
import json
import logging
import os
import stat
import tarfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Sequence

from pydantic import BaseModel

from .errors import ArchiveError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "metadata.json"
MANIFEST_MODE = 0o600


class Manifest(BaseModel):
    paths: list[str]

    def to_json(self) -> str:
        return json.dumps({"paths": list(self.paths)}, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, payload: str | bytes) -> "Manifest":
        return cls.model_validate_json(payload)


class EntryType(str, Enum):
    DIRECTORY = "directory"
    FILE = "file"
    SYMLINK = "symlink"


_TAR_TYPES = {
    EntryType.DIRECTORY: tarfile.DIRTYPE,
    EntryType.FILE: tarfile.REGTYPE,
    EntryType.SYMLINK: tarfile.SYMTYPE,
}


@dataclass(frozen=True)
class ArchiveEntry:
    """One header-plus-content record, already renamed into its namespace.

    File content comes from ``source`` on disk, or from ``content`` for entries
    that were not produced by a filesystem walk.
    """

    name: str
    kind: EntryType
    mode: int
    size: int = 0
    mtime: float = 0.0
    linkname: str | None = None
    source: Path | None = None
    content: bytes | None = None

    def open(self) -> BinaryIO:
        if self.content is not None:
            return io.BytesIO(self.content)
        if self.source is None:
            raise ArchiveError("ARCHIVE_READ_FAILED", f"no content for {self.name}")
        try:
            return self.source.open("rb")
        except OSError as exc:
            raise ArchiveError("ARCHIVE_READ_FAILED", f"{self.source}: {exc}") from exc


def namespace(index: int) -> str:
    return f"{index:04d}"


class SourceTree:
    """Lazily walks one input path, yielding its entries one at a time.

    Iterating again restarts the walk from the filesystem. Directory entries come
    before their children and siblings are visited in name order; symlinks are
    recorded, never followed.
    """

    def __init__(self, index: int, path: str) -> None:
        self.index = index
        self.path = path
        self.root = Path(os.path.abspath(path))

    def __iter__(self) -> Iterator[ArchiveEntry]:
        try:
            root_stat = self.root.lstat()
        except FileNotFoundError as exc:
            raise ArchiveError("ARCHIVE_SOURCE_MISSING", self.path) from exc
        except OSError as exc:
            raise ArchiveError("ARCHIVE_READ_FAILED", f"{self.path}: {exc}") from exc
        base = self.root.parent
        stack: list[tuple[Path, os.stat_result]] = [(self.root, root_stat)]
        while stack:
            current, current_stat = stack.pop()
            entry = self._entry(current, current_stat, base)
            if entry is None:
                continue
            yield entry
            if entry.kind is EntryType.DIRECTORY:
                stack.extend(reversed(self._children(current)))

    def _children(self, directory: Path) -> list[tuple[Path, os.stat_result]]:
        try:
            with os.scandir(directory) as scanner:
                children = [(Path(item.path), item.stat(follow_symlinks=False)) for item in scanner]
        except OSError as exc:
            raise ArchiveError("ARCHIVE_READ_FAILED", f"{directory}: {exc}") from exc
        children.sort(key=lambda child: child[0].name)
        return children

    def _entry(self, path: Path, st: os.stat_result, base: Path) -> ArchiveEntry | None:
        name = f"{namespace(self.index)}/{path.relative_to(base).as_posix()}"
        mode = stat.S_IMODE(st.st_mode)
        if stat.S_ISLNK(st.st_mode):
            try:
                target = os.readlink(path)
            except OSError as exc:
                raise ArchiveError("ARCHIVE_READ_FAILED", f"{path}: {exc}") from exc
            return ArchiveEntry(name=name, kind=EntryType.SYMLINK, mode=mode, mtime=st.st_mtime, linkname=target)
        if stat.S_ISDIR(st.st_mode):
            return ArchiveEntry(name=name, kind=EntryType.DIRECTORY, mode=mode, mtime=st.st_mtime)
        if stat.S_ISREG(st.st_mode):
            return ArchiveEntry(
                name=name,
                kind=EntryType.FILE,
                mode=mode,
                size=st.st_size,
                mtime=st.st_mtime,
                source=path,
            )
        logger.warning("Skipping unsupported file type (path=%s)", path)
        return None


class Archiver:
    """Writes input paths and their manifest as one tar stream."""

    def __init__(self, tar_format: int = tarfile.PAX_FORMAT) -> None:
        self.tar_format = tar_format

    def create_archive(self, paths: Sequence[str], sink: BinaryIO) -> Manifest:
        manifest = Manifest(paths=list(paths))
        trees = [SourceTree(index, path) for index, path in enumerate(manifest.paths)]
        count = self.write(itertools.chain.from_iterable(trees), manifest, sink)
        logger.info("Archive written (paths=%s, entries=%s)", len(manifest.paths), count)
        return manifest

    def write(self, entries: Iterable[ArchiveEntry], manifest: Manifest, sink: BinaryIO) -> int:
        """Stream ``entries`` then the manifest into ``sink``; returns the entry count."""
        count = 0
        try:
            with tarfile.open(fileobj=sink, mode="w|", format=self.tar_format) as tar:
                for entry in entries:
                    self._add(tar, entry)
                    count += 1
                payload = manifest.to_json().encode("utf-8")
                self._add(
                    tar,
                    ArchiveEntry(
                        name=MANIFEST_NAME,
                        kind=EntryType.FILE,
                        mode=MANIFEST_MODE,
                        size=len(payload),
                        mtime=time.time(),
                        content=payload,
                    ),
                )
        except ArchiveError:
            raise
        except (tarfile.TarError, OSError) as exc:
            raise ArchiveError("ARCHIVE_WRITE_FAILED", str(exc)) from exc
        return count + 1

    def _add(self, tar: tarfile.TarFile, entry: ArchiveEntry) -> None:
        info = tarfile.TarInfo(entry.name)
        info.type = _TAR_TYPES[entry.kind]
        info.mode = entry.mode
        info.mtime = int(entry.mtime)
        info.uname = ""
        info.gname = ""
        if entry.kind is EntryType.SYMLINK:
            info.linkname = entry.linkname or ""
        if entry.kind is not EntryType.FILE:
            tar.addfile(info)
            return
        info.size = entry.size
        with entry.open() as handle:
            tar.addfile(info, fileobj=handle)
