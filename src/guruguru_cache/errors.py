"""Cache error taxonomy."""

from __future__ import annotations


class CacheError(RuntimeError):
    """Fatal cache failure surfaced with a stable reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class TemplateError(CacheError):
    """Bad cache key template syntax or a failing template function."""


class ArchiveError(CacheError):
    """Filesystem failure while building or writing an archive."""


class RemoteError(CacheError):
    """Backing store failure other than a missing object."""


class ExtractionError(CacheError):
    """Corrupt archive data or filesystem failure while restoring."""

