"""Store and restore flows."""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Sequence

from .archive import Archiver
from .compression import GzipCompressor
from .config import CacheProfile
from .errors import ArchiveError, CacheError, ExtractionError, RemoteError
from .extract import Extractor
from .matcher import CacheKeyMatcher, MatchKind
from .storage import RemoteStore, build_remote_store, md5_base64
from .template import TemplateResolver

ARCHIVE_FILENAME = "cache.tar.gz"


class StoreStatus(str, Enum):
    STORED = "STORED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


class RestoreStatus(str, Enum):
    RESTORED = "RESTORED"
    MISS = "MISS"


@dataclass(frozen=True)
class StoreOutcome:
    status: StoreStatus
    key: str
    object_key: str
    size: int | None = None


@dataclass(frozen=True)
class RestoreOutcome:
    status: RestoreStatus
    key: str | None = None
    object_key: str | None = None
    kind: MatchKind | None = None
    restored_paths: list[str] = field(default_factory=list)


class CacheRunner:
    def __init__(
        self,
        profile: CacheProfile,
        *,
        store: RemoteStore | None = None,
        resolver: TemplateResolver | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.profile = profile
        self.remote = store if store is not None else build_remote_store(profile)
        self.resolver = resolver or TemplateResolver()
        self.archiver = Archiver()
        self.compressor = GzipCompressor(level=profile.compression_level)
        self.extractor = Extractor(self.compressor)
        self.matcher = CacheKeyMatcher(self.remote, suffix=profile.object_suffix)

    def store(self, template: str, paths: Sequence[str]) -> StoreOutcome:
        key = self.resolver.resolve(template)
        object_key = key + self.profile.object_suffix
        if self.remote.exists(object_key):
            self.logger.info("Cache already exists (key=%s)", key)
            return StoreOutcome(status=StoreStatus.ALREADY_EXISTS, key=key, object_key=object_key)

        with self._workspace(ArchiveError) as work_dir:
            archive_path = work_dir / ARCHIVE_FILENAME
            self.logger.info("Creating cache (key=%s, paths=%s)", key, list(paths))
            try:
                with archive_path.open("wb") as sink, self.compressor.compress(sink) as stream:
                    self.archiver.create_archive(paths, stream)
                with archive_path.open("rb") as handle:
                    content_md5, size = md5_base64(handle)
            except OSError as exc:
                raise ArchiveError("ARCHIVE_WRITE_FAILED", f"{archive_path}: {exc}") from exc

            self.logger.info("Uploading cache (object=%s, bytes=%s)", object_key, size)
            try:
                handle = archive_path.open("rb")
            except OSError as exc:
                raise ArchiveError("ARCHIVE_READ_FAILED", f"{archive_path}: {exc}") from exc
            with handle:
                self.remote.put(object_key, handle, content_md5=content_md5, content_length=size)
        return StoreOutcome(status=StoreStatus.STORED, key=key, object_key=object_key, size=size)

    def restore(self, templates: Sequence[str], *, base_dir: Path | None = None) -> RestoreOutcome:
        candidates = (self.resolver.resolve(template) for template in templates)
        with self._workspace(ExtractionError) as work_dir:
            match = self.matcher.resolve(candidates)
            if match is None:
                return RestoreOutcome(status=RestoreStatus.MISS)

            download_path = work_dir / ARCHIVE_FILENAME
            try:
                with download_path.open("wb") as handle:
                    shutil.copyfileobj(match.item.body, handle)
                    received = handle.tell()
            except OSError as exc:
                raise ExtractionError("EXTRACT_WRITE_FAILED", f"failed to save {match.key}: {exc}") from exc
            finally:
                match.item.close()
            expected = match.item.size
            if expected is not None and received != expected:
                raise RemoteError(
                    "REMOTE_REQUEST_FAILED",
                    f"get {match.key}: received {received} of {expected} bytes",
                )

            extract_root = work_dir / "extract"
            try:
                source = download_path.open("rb")
            except OSError as exc:
                raise ExtractionError("EXTRACT_WRITE_FAILED", f"{download_path}: {exc}") from exc
            with source:
                self.extractor.extract(source, extract_root)
            restored = self.extractor.relocate(extract_root, base_dir=base_dir)
        self.logger.info("Cache restored (key=%s, object=%s)", match.candidate, match.key)
        return RestoreOutcome(
            status=RestoreStatus.RESTORED,
            key=match.candidate,
            object_key=match.key,
            kind=match.kind,
            restored_paths=restored,
        )

    @contextmanager
    def _workspace(self, error: type[CacheError]) -> Iterator[Path]:
        try:
            holder = tempfile.TemporaryDirectory(prefix="guruguru-cache-", dir=self.profile.work_dir)
        except OSError as exc:
            raise error("WORKDIR_FAILED", str(exc)) from exc
        with holder as name:
            yield Path(name)
