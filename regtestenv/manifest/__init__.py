"""Archive manifest, checksums and per-wallet export records."""

from regtestenv.manifest.env_manifest import (
    ArchiveChecksums,
    ArchiveContents,
    BlockchainState,
    EnvironmentManifest,
    SCHEMA_VERSION,
)
from regtestenv.manifest.checksums import compute_directory_checksums, verify_integrity
from regtestenv.manifest.hash import compare_manifests, compute_manifest_hash
from regtestenv.manifest.wallet_export import FullWalletExport, WalletRole

__all__ = [
    "ArchiveChecksums",
    "ArchiveContents",
    "BlockchainState",
    "EnvironmentManifest",
    "SCHEMA_VERSION",
    "compute_directory_checksums",
    "verify_integrity",
    "compare_manifests",
    "compute_manifest_hash",
    "FullWalletExport",
    "WalletRole",
]
