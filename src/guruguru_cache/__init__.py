"""Rule-based build cache: pack paths under a templated key, restore by best match."""

from .archive import Archiver, Manifest, SourceTree
from .config import CacheProfile, load_profile
from .errors import ArchiveError, CacheError, ExtractionError, RemoteError, TemplateError
from .extract import Extractor
from .matcher import CacheKeyMatcher, CacheMatch, MatchKind
from .runner import CacheRunner, RestoreOutcome, RestoreStatus, StoreOutcome, StoreStatus
from .storage import LocalRemoteStore, RemoteStore, S3RemoteStore, build_remote_store
from .template import TemplateResolver, resolve_template

__all__ = [
    "ArchiveError",
    "Archiver",
    "CacheError",
    "CacheKeyMatcher",
    "CacheMatch",
    "CacheProfile",
    "CacheRunner",
    "ExtractionError",
    "Extractor",
    "LocalRemoteStore",
    "Manifest",
    "MatchKind",
    "RemoteError",
    "RemoteStore",
    "RestoreOutcome",
    "RestoreStatus",
    "S3RemoteStore",
    "SourceTree",
    "StoreOutcome",
    "StoreStatus",
    "TemplateError",
    "TemplateResolver",
    "build_remote_store",
    "load_profile",
    "resolve_template",
]
