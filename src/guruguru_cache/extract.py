"""Archive extraction and relocation back to the original paths."""

from __future__ import annotations

import errno
import gzip
import logging
import os
import shutil
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from pydantic import ValidationError

from .archive import MANIFEST_NAME, Manifest, namespace
from .compression import GzipCompressor
from .errors import ExtractionError

logger = logging.getLogger(__name__)


def _validate_member_path(member_name: str) -> Path:
    """Validate archive member paths to prevent traversal."""
    relative = PurePosixPath(member_name.replace("\\", "/"))
    if relative.is_absolute():
        raise ExtractionError("EXTRACT_UNSAFE_MEMBER", f"absolute path in archive: {member_name}")
    if not relative.parts:
        raise ExtractionError("EXTRACT_UNSAFE_MEMBER", f"empty path in archive: {member_name}")
    if any(part in {"", ".", ".."} for part in relative.parts):
        raise ExtractionError("EXTRACT_UNSAFE_MEMBER", f"unsafe path in archive: {member_name}")
    return Path(*relative.parts)


def _original_name(path: str) -> str:
    return Path(os.path.abspath(path)).name


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


def _move(source: Path, target: Path) -> None:
    try:
        os.rename(source, target)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.move(str(source), str(target))


class Extractor:
    def __init__(self, compressor: GzipCompressor | None = None) -> None:
        self.compressor = compressor or GzipCompressor()

    def extract(self, source: BinaryIO, destination: Path) -> int:
        """Unpack a compressed archive under ``destination``; returns the member count."""
        destination.mkdir(parents=True, exist_ok=True)
        root = os.path.realpath(destination)
        directories: list[tuple[Path, tarfile.TarInfo]] = []
        count = 0
        try:
            with self.compressor.decompress(source) as stream, tarfile.open(fileobj=stream, mode="r|") as tar:
                for member in tar:
                    target = destination / _validate_member_path(member.name)
                    self._check_inside(root, target)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if member.isdir():
                        target.mkdir(exist_ok=True)
                        directories.append((target, member))
                    elif member.issym():
                        if os.path.lexists(target):
                            target.unlink()
                        os.symlink(member.linkname, target)
                    elif member.isfile():
                        self._write_file(tar, member, target)
                    else:
                        raise ExtractionError(
                            "EXTRACT_UNSAFE_MEMBER", f"unsupported member type in archive: {member.name}"
                        )
                    count += 1
            # Deepest first, so read-only parents are locked only after their children.
            for path, member in reversed(directories):
                os.chmod(path, member.mode)
                os.utime(path, (member.mtime, member.mtime))
        except ExtractionError:
            raise
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise ExtractionError("EXTRACT_CORRUPT", str(exc)) from exc
        except OSError as exc:
            raise ExtractionError("EXTRACT_WRITE_FAILED", str(exc)) from exc
        logger.info("Archive extracted (destination=%s, members=%s)", destination, count)
        return count

    def _check_inside(self, root: str, target: Path) -> None:
        parent = os.path.realpath(target.parent)
        if parent != root and not parent.startswith(root + os.sep):
            raise ExtractionError("EXTRACT_UNSAFE_MEMBER", f"member escapes destination: {target}")

    def _write_file(self, tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
        if target.is_symlink():
            target.unlink()
        extracted = tar.extractfile(member)
        if extracted is None:
            raise ExtractionError("EXTRACT_CORRUPT", f"failed to read member: {member.name}")
        with extracted as src, target.open("wb") as dst:
            shutil.copyfileobj(src, dst)
        os.chmod(target, member.mode)
        os.utime(target, (member.mtime, member.mtime))

    def read_manifest(self, destination: Path) -> Manifest:
        path = destination / MANIFEST_NAME
        try:
            return Manifest.from_json(path.read_bytes())
        except OSError as exc:
            raise ExtractionError("EXTRACT_MANIFEST_INVALID", f"failed to open {MANIFEST_NAME}: {exc}") from exc
        except ValidationError as exc:
            raise ExtractionError("EXTRACT_MANIFEST_INVALID", f"failed to decode {MANIFEST_NAME}: {exc}") from exc

    def relocate(
        self,
        destination: Path,
        manifest: Manifest | None = None,
        *,
        base_dir: Path | None = None,
    ) -> list[str]:
        """Move each extracted namespace onto its original path, in manifest order.

        Whatever currently sits at an original path is removed first. A failure
        stops at that index; paths already restored stay restored.
        """
        if manifest is None:
            manifest = self.read_manifest(destination)
        restored: list[str] = []
        for index, original in enumerate(manifest.paths):
            source = destination / namespace(index) / _original_name(original)
            target = Path(original)
            if base_dir is not None and not target.is_absolute():
                target = base_dir / target
            if not os.path.lexists(source):
                raise ExtractionError("RELOCATE_FAILED", f"archive has no entry for {original}")
            try:
                _remove_path(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                _move(source, target)
            except OSError as exc:
                raise ExtractionError("RELOCATE_FAILED", f"{original}: {exc}") from exc
            logger.info("Restored path (index=%s, path=%s)", index, original)
            restored.append(original)
        return restored
