"""
Manifest hashing for environment equivalence checks.

Computes stable fingerprints of manifest content for ``inspect`` and
``diff``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import xxhash

from regtestenv.core.json_canonical import canonical_json_bytes

if TYPE_CHECKING:
    from regtestenv.manifest.env_manifest import EnvironmentManifest


def compute_manifest_hash(manifest: EnvironmentManifest) -> str:
    """
    Compute hash of an environment manifest.

    The hash excludes volatile fields (timestamps, author, description)
    and focuses on content that determines the rebuilt environment.

    Args:
        manifest: The manifest to hash.

    Returns:
        Hex-encoded hash string.
    """
    content = {
        "network": manifest.network,
        "block_height": manifest.blockchain_state.block_height,
        "block_hash": manifest.blockchain_state.block_hash,
        "bitcoin_wallets": sorted(manifest.contents.bitcoin_wallets),
        "caravan_wallets": sorted(manifest.contents.caravan_wallets),
        "key_files": sorted(manifest.contents.key_files),
        "files": manifest.checksums.files,
        "blockchain_data": manifest.checksums.blockchain_data,
    }

    json_bytes = canonical_json_bytes(content)
    return xxhash.xxh64(json_bytes).hexdigest()


def compare_manifests(
    manifest_a: EnvironmentManifest,
    manifest_b: EnvironmentManifest,
) -> dict[str, bool]:
    """
    Compare two environment manifests for equivalence.

    Args:
        manifest_a: First manifest.
        manifest_b: Second manifest.

    Returns:
        Dict of comparison results by component.
    """
    state_a, state_b = manifest_a.blockchain_state, manifest_b.blockchain_state
    return {
        "network_match": manifest_a.network == manifest_b.network,
        "block_height_match": state_a.block_height == state_b.block_height,
        "block_hash_match": state_a.block_hash == state_b.block_hash,
        "wallets_match": sorted(manifest_a.contents.bitcoin_wallets)
        == sorted(manifest_b.contents.bitcoin_wallets),
        "caravan_wallets_match": sorted(manifest_a.contents.caravan_wallets)
        == sorted(manifest_b.contents.caravan_wallets),
        "file_checksums_match": manifest_a.checksums.files == manifest_b.checksums.files,
        "blockchain_data_match": manifest_a.checksums.blockchain_data
        == manifest_b.checksums.blockchain_data,
        "overall_hash_match": compute_manifest_hash(manifest_a)
        == compute_manifest_hash(manifest_b),
    }
