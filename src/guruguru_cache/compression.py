"""Gzip framing for cache archives."""

from __future__ import annotations

import gzip
from contextlib import contextmanager
from typing import BinaryIO, Iterator

from .errors import ArchiveError


class GzipCompressor:
    def __init__(self, level: int = 9) -> None:
        self.level = level

    @contextmanager
    def compress(self, sink: BinaryIO) -> Iterator[BinaryIO]:
        """Yield a writer that gzips into ``sink``.

        The gzip trailer is written only when the block exits cleanly; a failed
        archive leaves a truncated stream behind that must not be uploaded.
        """
        stream = gzip.GzipFile(filename="", mode="wb", fileobj=sink, compresslevel=self.level, mtime=0)
        yield stream
        try:
            stream.close()
        except OSError as exc:
            raise ArchiveError("ARCHIVE_WRITE_FAILED", f"failed to finalize gzip stream: {exc}") from exc

    def decompress(self, source: BinaryIO) -> gzip.GzipFile:
        return gzip.GzipFile(filename="", mode="rb", fileobj=source)
