"""
sha256 checksums for archive integrity.

Digests are plain sha256 hex so archives stay readable by other tools
that produce and consume ``.caravan-env`` files.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from regtestenv.manifest.env_manifest import ArchiveChecksums

CHECKSUMMED_SUFFIXES = (".json", ".js")
BLOCKCHAIN_PAYLOAD = "blockchain-data.tar.gz"


def sha256_file(path: Path) -> str:
    """
    Compute sha256 of a file's contents.

    Args:
        path: Path to file.

    Returns:
        Hex-encoded digest.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_directory_checksums(
    root: Path,
    suffixes: tuple[str, ...] = CHECKSUMMED_SUFFIXES,
) -> dict[str, str]:
    """
    Checksum every matching file under ``root``.

    Keys are POSIX paths relative to ``root``, so the same tree produces
    the same mapping on every platform.
    """
    checksums: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix in suffixes:
            checksums[path.relative_to(root).as_posix()] = sha256_file(path)
    return checksums


def verify_integrity(root: Path, checksums: ArchiveChecksums) -> list[str]:
    """
    Compare an extracted archive against its recorded checksums.

    Files absent from the extraction are skipped; only content that is
    present and differs is reported.

    Args:
        root: Extraction directory.
        checksums: Checksums from the manifest.

    Returns:
        Relative paths whose contents do not match, in manifest order with
        the blockchain payload last.
    """
    mismatched: list[str] = []
    for rel_path, expected in checksums.files.items():
        path = root / rel_path
        if path.is_file() and sha256_file(path) != expected:
            mismatched.append(rel_path)

    if checksums.blockchain_data:
        payload = root / BLOCKCHAIN_PAYLOAD
        if payload.is_file() and sha256_file(payload) != checksums.blockchain_data:
            mismatched.append(BLOCKCHAIN_PAYLOAD)

    return mismatched
