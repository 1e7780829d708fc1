"""CLI for storing and restoring build caches."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from .config import build_profile
from .errors import CacheError
from .logging_utils import configure_logging
from .runner import CacheRunner, RestoreStatus, StoreStatus
from .storage import build_remote_store

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    base = argparse.ArgumentParser(add_help=False)
    base.add_argument("--profile", default=None, help="Path to cache profile YAML")
    base.add_argument("--bucket", "--s3-bucket", dest="bucket", default=None, help="S3 bucket holding caches")
    base.add_argument("--store-root", default=None, help="Local directory (or s3://bucket/prefix) holding caches")
    base.add_argument("--prefix", default=None, help="Object key prefix inside the bucket")
    base.add_argument("--endpoint-url", default=None, help="S3-compatible endpoint URL")
    base.add_argument("--region", default=None, help="S3 region")
    base.add_argument("--path-style", action="store_true", default=None, help="Use path-style S3 addressing")
    base.add_argument("--work-dir", default=None, help="Parent directory for temporary files")
    base.add_argument("--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(prog="guruguru-cache", description="Rule-based cache utility")
    subparsers = parser.add_subparsers(dest="command", required=True)

    store_parser = subparsers.add_parser("store", parents=[base], help="Store cache files with a key")
    store_parser.add_argument("key", help="Cache key template")
    store_parser.add_argument("paths", nargs="+", help="Paths to cache")

    restore_parser = subparsers.add_parser("restore", parents=[base], help="Restore cache files with keys")
    restore_parser.add_argument("keys", nargs="+", help="Cache key templates, most specific first")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        profile = build_profile(
            Path(args.profile) if args.profile else None,
            bucket=args.bucket,
            store_root=args.store_root,
            prefix=args.prefix,
            s3_endpoint_url=args.endpoint_url,
            s3_region=args.region,
            s3_path_style=args.path_style,
            work_dir=args.work_dir,
        )
        store = build_remote_store(profile)
    except (ValueError, OSError, yaml.YAMLError) as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_paths=profile.log_paths)

    try:
        runner = CacheRunner(profile, store=store)
        if args.command == "store":
            outcome = runner.store(args.key, args.paths)
            if outcome.status is StoreStatus.ALREADY_EXISTS:
                print(f"cache already exists: {outcome.key}")
            else:
                print(f"cache stored: {outcome.object_key}")
            return 0
        restored = runner.restore(args.keys)
        if restored.status is RestoreStatus.MISS:
            print("no cache is found")
        else:
            print(f"cache restored: {restored.object_key}")
        return 0
    except CacheError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
