"""Configuration loader for cache store/restore profiles."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class CacheProfile(BaseModel):
    bucket: str | None = None
    store_root: str | None = None
    prefix: str = ""
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_path_style: bool | None = None
    object_suffix: str = ".tar.gz"
    work_dir: str | None = None
    compression_level: int = Field(default=9, ge=1, le=9)
    log_paths: list[str] = []

    @model_validator(mode="after")
    def _require_store(self) -> "CacheProfile":
        if bool(self.bucket) == bool(self.store_root):
            raise ValueError("Provide exactly one of bucket or store_root")
        return self


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ValueError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def load_profile(path: Path, **overrides: Any) -> CacheProfile:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"cache profile must be a mapping: {path}")
    expanded = _expand_payload(data)
    expanded.update({key: value for key, value in overrides.items() if value is not None})
    return CacheProfile(**expanded)


def build_profile(path: Path | None = None, **overrides: Any) -> CacheProfile:
    """Load ``path`` when given, with non-``None`` overrides taking precedence."""
    if path is not None:
        return load_profile(path, **overrides)
    return CacheProfile(**{key: value for key, value in overrides.items() if value is not None})
