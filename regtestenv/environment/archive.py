"""
gzip tarball helpers and scoped working directories.

Archives are laid out like ``tar -czf out -C src .``: every member is
rooted at ``./`` so archives produced here and by other tools extract to
the same tree.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from regtestenv.core.errors import ArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".caravan-env"


def with_archive_suffix(path: Path) -> Path:
    """Append ``.caravan-env`` unless the path already ends with it."""
    if path.name.endswith(ARCHIVE_SUFFIX):
        return path
    return path.with_name(path.name + ARCHIVE_SUFFIX)


def create_tar_gz(source_dir: Path, output_file: Path) -> None:
    """
    Compress ``source_dir`` into ``output_file``.

    A partially written output is removed if compression fails.
    """
    output_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(output_file, "w:gz") as tar:
            tar.add(str(source_dir), arcname=".")
    except BaseException:
        output_file.unlink(missing_ok=True)
        raise


def extract_tar_gz(archive_file: Path, output_dir: Path) -> None:
    """
    Extract a gzip tarball.

    Raises:
        ArchiveError: If the file is missing or not a readable tarball.
    """
    if not archive_file.is_file():
        raise ArchiveError(
            f"Archive not found: {archive_file}",
            suggestions=["Check the archive path"],
        )
    output_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_file, "r:gz") as tar:
            tar.extractall(output_dir, filter="data")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ArchiveError(
            f"Could not read archive {archive_file.name}: {e}",
            raw_error=e,
            suggestions=["The archive may be truncated or corrupt; re-export it"],
        ) from e


def read_member(archive_file: Path, name: str) -> bytes | None:
    """
    Read one root-level member without extracting the archive.

    Returns:
        The member bytes, or None if the archive has no such member.
    """
    if not archive_file.is_file():
        raise ArchiveError(f"Archive not found: {archive_file}")
    try:
        with tarfile.open(archive_file, "r:gz") as tar:
            for member in tar:
                if member.isfile() and member.name.removeprefix("./") == name:
                    fileobj = tar.extractfile(member)
                    return fileobj.read() if fileobj is not None else None
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ArchiveError(
            f"Could not read archive {archive_file.name}: {e}", raw_error=e
        ) from e
    return None


@contextmanager
def timestamped_dir(parent: Path, prefix: str) -> Iterator[Path]:
    """
    Create ``<parent>/<prefix>_<ms>`` and remove it on exit, always.

    Example:
        >>> with timestamped_dir(app_dir, "env_export") as staging:
        ...     (staging / "manifest.json").write_text("{}")
    """
    parent.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    path = parent / f"{prefix}_{stamp}"
    suffix = 1
    while path.exists():
        path = parent / f"{prefix}_{stamp}_{suffix}"
        suffix += 1
    path.mkdir()
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed working directory %s", path)
