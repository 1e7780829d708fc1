"""Blob stores for cache archives (local + S3-compatible)."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol
from urllib.parse import urlparse

from .errors import RemoteError

if TYPE_CHECKING:
    from .config import CacheProfile

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DIGEST_MISMATCH_CODES = {"BadDigest", "InvalidDigest"}
_PARTIAL_SUFFIX = ".partial"


@dataclass(frozen=True)
class ObjectSummary:
    key: str
    last_modified: datetime


@dataclass
class RemoteObject:
    """A fetched object; the caller owns ``body`` and must close it."""

    key: str
    body: Any
    last_modified: datetime | None = None
    size: int | None = None

    def close(self) -> None:
        self.body.close()


class RemoteStore(Protocol):
    def exists(self, key: str) -> bool:
        ...

    def get(self, key: str) -> RemoteObject | None:
        ...

    def put(self, key: str, body: BinaryIO, *, content_md5: str, content_length: int) -> None:
        ...

    def list_by_prefix(self, prefix: str) -> list[ObjectSummary]:
        ...


def md5_base64(handle: BinaryIO) -> tuple[str, int]:
    """Return the base64 MD5 digest and byte length of a stream, read to the end."""
    hasher = hashlib.md5()
    size = 0
    for chunk in iter(lambda: handle.read(1 << 20), b""):
        hasher.update(chunk)
        size += len(chunk)
    return base64.b64encode(hasher.digest()).decode("ascii"), size


class LocalRemoteStore:
    """Directory-backed store; object mtime stands in for last-modified."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _full_path(self, key: str) -> Path:
        return self.root / key.lstrip("/")

    def exists(self, key: str) -> bool:
        return self._full_path(key).is_file()

    def get(self, key: str) -> RemoteObject | None:
        path = self._full_path(key)
        try:
            handle = path.open("rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None
        except OSError as exc:
            raise RemoteError("REMOTE_REQUEST_FAILED", f"get {key}: {exc}") from exc
        stat = os.fstat(handle.fileno())
        return RemoteObject(
            key=key,
            body=handle,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
        )

    def put(self, key: str, body: BinaryIO, *, content_md5: str, content_length: int) -> None:
        path = self._full_path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}{_PARTIAL_SUFFIX}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as handle:
                shutil.copyfileobj(body, handle)
            with tmp_path.open("rb") as handle:
                actual_md5, actual_length = md5_base64(handle)
            if actual_md5 != content_md5 or actual_length != content_length:
                raise RemoteError(
                    "REMOTE_DIGEST_MISMATCH",
                    f"put {key}: expected {content_md5}/{content_length} got {actual_md5}/{actual_length}",
                )
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RemoteError("REMOTE_REQUEST_FAILED", f"put {key}: {exc}") from exc
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def list_by_prefix(self, prefix: str) -> list[ObjectSummary]:
        if not self.root.exists():
            return []
        summaries: list[ObjectSummary] = []
        try:
            for path in sorted(self.root.rglob("*")):
                if not path.is_file() or path.name.endswith(_PARTIAL_SUFFIX):
                    continue
                key = path.relative_to(self.root).as_posix()
                if not key.startswith(prefix):
                    continue
                summaries.append(
                    ObjectSummary(
                        key=key,
                        last_modified=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
                    )
                )
        except OSError as exc:
            raise RemoteError("REMOTE_REQUEST_FAILED", f"list {prefix}: {exc}") from exc
        return summaries


class _S3Body:
    """Object body whose read failures surface as RemoteError."""

    def __init__(self, stream: Any, object_key: str) -> None:
        self._stream = stream
        self._object_key = object_key

    def read(self, amt: int | None = None) -> bytes:
        from botocore.exceptions import BotoCoreError

        try:
            return self._stream.read(amt)
        except BotoCoreError as exc:
            raise _remote_error("get_object", self._object_key, exc) from exc

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> "_S3Body":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class S3RemoteStore:
    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        endpoint_url: str | None = None,
        region_name: str | None = None,
        path_style: bool | None = None,
    ) -> None:
        import boto3
        from botocore.config import Config

        self.bucket = bucket
        self.prefix = prefix.strip("/")
        config = None
        if path_style:
            config = Config(s3={"addressing_style": "path"})
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region_name,
            config=config,
        )

    def _key(self, key: str) -> str:
        relative = key.lstrip("/")
        if not self.prefix:
            return relative
        return f"{self.prefix}/{relative}"

    def _strip_prefix(self, object_key: str) -> str:
        if self.prefix and object_key.startswith(self.prefix + "/"):
            return object_key[len(self.prefix) + 1 :]
        return object_key

    def exists(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        object_key = self._key(key)
        try:
            self._client.head_object(Bucket=self.bucket, Key=object_key)
            return True
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise _remote_error("head_object", object_key, exc) from exc
        except BotoCoreError as exc:
            raise _remote_error("head_object", object_key, exc) from exc

    def get(self, key: str) -> RemoteObject | None:
        from botocore.exceptions import BotoCoreError, ClientError

        object_key = self._key(key)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=object_key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise _remote_error("get_object", object_key, exc) from exc
        except BotoCoreError as exc:
            raise _remote_error("get_object", object_key, exc) from exc
        return RemoteObject(
            key=key,
            body=_S3Body(response["Body"], object_key),
            last_modified=response.get("LastModified"),
            size=response.get("ContentLength"),
        )

    def put(self, key: str, body: BinaryIO, *, content_md5: str, content_length: int) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        object_key = self._key(key)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=body,
                ContentLength=content_length,
                ContentMD5=content_md5,
            )
        except ClientError as exc:
            if _error_code(exc) in _DIGEST_MISMATCH_CODES:
                raise RemoteError("REMOTE_DIGEST_MISMATCH", f"put_object {object_key}: {exc}") from exc
            raise _remote_error("put_object", object_key, exc) from exc
        except BotoCoreError as exc:
            raise _remote_error("put_object", object_key, exc) from exc

    def list_by_prefix(self, prefix: str) -> list[ObjectSummary]:
        from botocore.exceptions import BotoCoreError, ClientError

        object_prefix = self._key(prefix)
        summaries: list[ObjectSummary] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=object_prefix):
                for item in page.get("Contents", []):
                    summaries.append(
                        ObjectSummary(key=self._strip_prefix(item["Key"]), last_modified=item["LastModified"])
                    )
        except (BotoCoreError, ClientError) as exc:
            raise _remote_error("list_objects_v2", object_prefix, exc) from exc
        return summaries


def _error_code(exc: Exception) -> str | None:
    response = getattr(exc, "response", None) or {}
    return response.get("Error", {}).get("Code")


def _remote_error(operation: str, key: str, exc: Exception) -> RemoteError:
    logger.debug("S3 %s failed (key=%s): %s", operation, key, exc)
    return RemoteError("REMOTE_REQUEST_FAILED", f"{operation} {key}: {exc}")


def build_remote_store(profile: "CacheProfile") -> RemoteStore:
    bucket = profile.bucket
    prefix = profile.prefix
    root = profile.store_root
    if root and root.startswith("s3://"):
        parsed = urlparse(root)
        bucket = parsed.netloc
        prefix = parsed.path.lstrip("/")
        if not bucket:
            raise ValueError("S3 store_root missing bucket")
    elif root:
        return LocalRemoteStore(Path(root))
    if not bucket:
        raise ValueError("either bucket or store_root is required")
    endpoint = (
        profile.s3_endpoint_url
        or os.getenv("GURUGURU_CACHE_S3_ENDPOINT_URL")
        or os.getenv("AWS_ENDPOINT_URL")
    )
    region = profile.s3_region or os.getenv("GURUGURU_CACHE_S3_REGION") or os.getenv("AWS_DEFAULT_REGION")
    path_style_env = os.getenv("GURUGURU_CACHE_S3_PATH_STYLE")
    path_style = profile.s3_path_style if profile.s3_path_style is not None else (path_style_env == "true")
    return S3RemoteStore(
        bucket=bucket,
        prefix=prefix,
        endpoint_url=endpoint,
        region_name=region,
        path_style=path_style,
    )
