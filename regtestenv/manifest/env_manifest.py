"""
Environment manifest schema.

The ``manifest.json`` at the root of every ``.caravan-env`` archive. It is
written once at the end of export and is the sole basis for every import
decision.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field

from regtestenv import __version__
from regtestenv.core.config import Network, SetupMode
from regtestenv.core.json_canonical import (
    canonical_json_dumps,
    read_json_file,
    utc_now_iso,
)
from regtestenv.core.schema import FrozenWireModel

SCHEMA_VERSION = "1.0.0"
MANIFEST_FILENAME = "manifest.json"


class BlockchainState(FrozenWireModel):
    """Chain tip observed at export time."""

    block_height: int = Field(description="Chain height")
    block_hash: str = Field(description="Tip block hash")
    chain_work: str | None = Field(default=None, description="Accumulated chain work")


class ArchiveContents(FrozenWireModel):
    """Inventory of what the archive carries."""

    has_blockchain_data: bool = Field(
        default=False, description="Binary chain payload present"
    )
    bitcoin_wallets: list[str] = Field(
        default_factory=list, description="Node wallet names"
    )
    caravan_wallets: list[str] = Field(
        default_factory=list, description="Multisig config names"
    )
    key_files: list[str] = Field(default_factory=list, description="Key file names")
    scenarios: list[str] = Field(default_factory=list, description="Scenario file names")
    has_replay_script: bool = Field(default=False, description="replay.json present")


class ArchiveChecksums(FrozenWireModel):
    """sha256 hex digests for integrity verification."""

    blockchain_data: str | None = Field(
        default=None, description="Digest of blockchain-data.tar.gz"
    )
    files: dict[str, str] = Field(
        default_factory=dict, description="Digest per staged JSON/script file"
    )


class RpcSettings(FrozenWireModel):
    rpc_user: str
    rpc_password: str
    rpc_port: int
    p2p_port: int


class ContainerInfo(FrozenWireModel):
    image: str
    container_name: str
    nginx_port: int | None = None


class EnvironmentManifest(FrozenWireModel):
    """
    Complete manifest for an environment archive.

    Contains everything the importer needs to pick a restore method and
    rebuild the node configuration.
    """

    version: str = Field(default=SCHEMA_VERSION, description="Manifest schema version")
    name: str = Field(description="Environment name")
    description: str | None = Field(default=None, description="Free-form description")
    created_by: str | None = Field(default=None, description="Author")
    created_at: str = Field(default_factory=utc_now_iso, description="ISO timestamp")
    caravan_x_version: str = Field(
        default=__version__, alias="caravanXVersion", description="Tool version"
    )
    bitcoin_core_version: str | None = Field(
        default=None, description="Node version string"
    )
    network: Network = "regtest"
    blockchain_state: BlockchainState
    contents: ArchiveContents = Field(default_factory=ArchiveContents)
    checksums: ArchiveChecksums = Field(default_factory=ArchiveChecksums)
    mode: SetupMode = SetupMode.MANUAL
    rpc_config: RpcSettings
    docker: ContainerInfo | None = None

    @property
    def major_version(self) -> int:
        try:
            return int(self.version.split(".")[0])
        except ValueError:
            return 0

    def to_json(self, indent: bool = True) -> str:
        """Serialize to canonical JSON."""
        return canonical_json_dumps(self.to_wire(), indent=indent)

    def save(self, path: Path) -> None:
        """Save manifest to file."""
        path.write_text(self.to_json(indent=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> EnvironmentManifest:
        """Load manifest from file."""
        return cls.model_validate(read_json_file(path))
