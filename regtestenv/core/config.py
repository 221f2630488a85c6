"""
Application configuration models.

An :class:`AppConfig` describes one environment: how to reach the node,
where its data and side files live, and (in Docker mode) how its
container is laid out. Config values are passed explicitly into every
pipeline; there is no process-wide current config.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError

from regtestenv.core.errors import ConfigError
from regtestenv.core.json_canonical import read_json_file, write_json_file
from regtestenv.core.schema import WireModel

DEFAULT_RPC_PORT = 18443
DEFAULT_P2P_PORT = 18444
DEFAULT_PROXY_PORT = 8080
DEFAULT_IMAGE = "bitcoin/bitcoin:27.0"
DEFAULT_CONTAINER_NAME = "caravan-x-bitcoin"
DEFAULT_NETWORK = "caravan-x-network"

Network = Literal["regtest", "signet", "testnet"]


class SetupMode(str, Enum):
    """How the node process is run."""

    DOCKER = "docker"
    MANUAL = "manual"


class BitcoinRpcConfig(WireModel):
    """Connection settings for the node's JSON-RPC endpoint."""

    protocol: str = "http"
    host: str = "127.0.0.1"
    port: int = DEFAULT_RPC_PORT
    user: str = "user"
    password: str = Field(default="pass", alias="pass")
    data_dir: str = ""

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


class DockerPorts(WireModel):
    rpc: int = DEFAULT_RPC_PORT
    p2p: int = DEFAULT_P2P_PORT
    nginx: int | None = DEFAULT_PROXY_PORT


class DockerVolumes(WireModel):
    bitcoin_data: str = ""
    coordinator: str = ""


class DockerConfig(WireModel):
    """Container layout for Docker-mode environments."""

    enabled: bool = False
    image: str = DEFAULT_IMAGE
    container_name: str = DEFAULT_CONTAINER_NAME
    ports: DockerPorts = Field(default_factory=DockerPorts)
    volumes: DockerVolumes = Field(default_factory=DockerVolumes)
    network: str = DEFAULT_NETWORK
    auto_start: bool = True


class SharedBitcoinSettings(WireModel):
    network: Network = "regtest"
    rpc_port: int = DEFAULT_RPC_PORT
    p2p_port: int = DEFAULT_P2P_PORT
    rpc_user: str = "user"
    rpc_password: str = "pass"


class InitialState(WireModel):
    block_height: int = 0
    pre_generate_blocks: bool = False
    wallets: list[dict[str, Any]] = Field(default_factory=list)
    transactions: list[dict[str, Any]] = Field(default_factory=list)


class SharedSnapshotSettings(WireModel):
    enabled: bool = True
    auto_snapshot: bool = False


class SharedConfig(WireModel):
    """Network-level settings shared between machines."""

    version: str = "1.0.0"
    name: str
    description: str | None = None
    mode: SetupMode = SetupMode.DOCKER
    bitcoin: SharedBitcoinSettings = Field(default_factory=SharedBitcoinSettings)
    docker: DockerConfig | None = None
    initial_state: InitialState = Field(default_factory=InitialState)
    wallet_name: str | None = None
    snapshots: SharedSnapshotSettings | None = None


class SnapshotSettings(WireModel):
    enabled: bool = True
    directory: str = ""
    auto_snapshot: bool = False


class AppConfig(WireModel):
    """Complete configuration of one environment."""

    bitcoin: BitcoinRpcConfig = Field(default_factory=BitcoinRpcConfig)
    app_dir: str = ""
    caravan_dir: str = ""
    keys_dir: str = ""
    mode: SetupMode = SetupMode.MANUAL
    shared_config: SharedConfig | None = None
    docker: DockerConfig | None = None
    snapshots: SnapshotSettings = Field(default_factory=SnapshotSettings)
    scenarios_dir: str = ""
    active_scenario: str | None = None

    @property
    def is_docker(self) -> bool:
        return self.mode == SetupMode.DOCKER and self.docker is not None

    @property
    def p2p_port(self) -> int:
        if self.shared_config is not None:
            return self.shared_config.bitcoin.p2p_port
        if self.docker is not None:
            return self.docker.ports.p2p
        return DEFAULT_P2P_PORT

    def save(self, path: Path) -> None:
        """Save config to a JSON file."""
        write_json_file(path, self.to_wire())

    @classmethod
    def load(cls, path: Path) -> AppConfig:
        """
        Load config from a JSON or YAML file.

        Raises:
            ConfigError: If the file is missing or invalid.
        """
        if not path.exists():
            raise ConfigError(
                f"Config file not found: {path}",
                suggestions=["Create a profile first, or pass --config"],
            )
        try:
            if path.suffix in (".yaml", ".yml"):
                with path.open(encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            else:
                data = read_json_file(path)
            return cls.model_validate(data)
        except (yaml.YAMLError, ValueError, ValidationError) as e:
            raise ConfigError(
                f"Invalid config file {path}: {e}",
                raw_error=e,
                suggestions=["Fix the file manually, or delete the profile and recreate it"],
            ) from e


def sanitize_config_for_export(config: AppConfig) -> dict[str, Any]:
    """
    Strip machine-specific paths from a config before it leaves the machine.

    Directory fields (``appDir``, ``caravanDir``, ``keysDir``,
    ``scenariosDir``) are dropped; ``dataDir``, Docker volume paths and the
    snapshot directory are blanked and re-scoped on import. The host is
    always ``127.0.0.1``.

    Args:
        config: Config to sanitize.

    Returns:
        Wire-format dict safe to ship inside an archive.
    """
    sanitized: dict[str, Any] = {
        "mode": config.mode.value,
        "bitcoin": config.bitcoin.model_copy(
            update={"host": "127.0.0.1", "data_dir": ""}
        ).to_wire(),
        "snapshots": config.snapshots.model_copy(update={"directory": ""}).to_wire(),
    }
    if config.shared_config is not None:
        sanitized["sharedConfig"] = config.shared_config.to_wire()
    if config.docker is not None:
        sanitized["docker"] = config.docker.model_copy(
            update={"volumes": DockerVolumes()}
        ).to_wire()
    return sanitized
