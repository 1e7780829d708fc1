from __future__ import annotations

import pytest
from pydantic import ValidationError

from guruguru_cache.config import CacheProfile, build_profile, load_profile


def test_load_profile_expands_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CACHE_BUCKET", "ci-caches")
    monkeypatch.delenv("CACHE_PREFIX", raising=False)
    path = tmp_path / "cache.yaml"
    path.write_text(
        """
bucket: ${CACHE_BUCKET}
prefix: ${CACHE_PREFIX:-builds}
s3_region: eu-west-1
compression_level: 6
""",
        encoding="utf-8",
    )
    profile = load_profile(path)
    assert profile.bucket == "ci-caches"
    assert profile.prefix == "builds"
    assert profile.s3_region == "eu-west-1"
    assert profile.compression_level == 6
    assert profile.object_suffix == ".tar.gz"


def test_missing_required_variable(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("CACHE_BUCKET", raising=False)
    path = tmp_path / "cache.yaml"
    path.write_text("bucket: ${CACHE_BUCKET}\n", encoding="utf-8")
    with pytest.raises(ValueError, match="CACHE_BUCKET"):
        load_profile(path)


def test_overrides_take_precedence(tmp_path) -> None:
    path = tmp_path / "cache.yaml"
    path.write_text("bucket: from-file\nprefix: p\n", encoding="utf-8")
    profile = build_profile(path, bucket="from-flag", prefix=None)
    assert profile.bucket == "from-flag"
    assert profile.prefix == "p"


def test_exactly_one_store_is_required() -> None:
    with pytest.raises(ValidationError):
        CacheProfile()
    with pytest.raises(ValidationError):
        CacheProfile(bucket="b", store_root="/tmp/cache")
    with pytest.raises(ValidationError):
        CacheProfile(bucket="b", compression_level=11)
