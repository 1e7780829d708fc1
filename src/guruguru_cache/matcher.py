"""Cache key matching: exact key first, then newest object sharing the key as prefix."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .errors import RemoteError
from .storage import ObjectSummary, RemoteObject, RemoteStore

logger = logging.getLogger(__name__)


class MatchKind(str, Enum):
    EXACT = "EXACT"
    PARTIAL = "PARTIAL"


@dataclass
class CacheMatch:
    candidate: str
    kind: MatchKind
    item: RemoteObject

    @property
    def key(self) -> str:
        return self.item.key


def select_latest(summaries: Iterable[ObjectSummary]) -> ObjectSummary | None:
    """Newest entry by last-modified; ties keep the one listed first."""
    latest: ObjectSummary | None = None
    for summary in summaries:
        if latest is None or summary.last_modified > latest.last_modified:
            latest = summary
    return latest


class CacheKeyMatcher:
    def __init__(self, store: RemoteStore, *, suffix: str = ".tar.gz") -> None:
        self.store = store
        self.suffix = suffix

    def resolve(self, candidates: Iterable[str]) -> CacheMatch | None:
        """Return the first candidate's hit, or ``None`` when no candidate matches.

        ``candidates`` is consumed lazily, so nothing after the winning key is
        evaluated. Lookup failures are logged and count as a miss for that key.
        """
        for candidate in candidates:
            logger.info("Checking cache (key=%s)", candidate)
            match = self.match(candidate)
            if match is not None:
                return match
        logger.info("No cache found")
        return None

    def match(self, candidate: str) -> CacheMatch | None:
        exact = self._exact(candidate)
        if exact is not None:
            logger.info("Exact cache match (key=%s)", candidate)
            return exact
        partial = self._partial(candidate)
        if partial is not None:
            logger.info("Partial cache match (key=%s, object=%s)", candidate, partial.key)
        return partial

    def _exact(self, candidate: str) -> CacheMatch | None:
        key = candidate + self.suffix
        try:
            item = self.store.get(key)
        except RemoteError as exc:
            logger.warning("Exact cache lookup failed (key=%s): %s", key, exc)
            return None
        if item is None:
            return None
        return CacheMatch(candidate=candidate, kind=MatchKind.EXACT, item=item)

    def _partial(self, candidate: str) -> CacheMatch | None:
        try:
            latest = select_latest(self.store.list_by_prefix(candidate))
            if latest is None:
                return None
            item = self.store.get(latest.key)
        except RemoteError as exc:
            logger.warning("Partial cache lookup failed (prefix=%s): %s", candidate, exc)
            return None
        if item is None:
            logger.warning("Listed cache object disappeared (key=%s)", latest.key)
            return None
        return CacheMatch(candidate=candidate, kind=MatchKind.PARTIAL, item=item)
