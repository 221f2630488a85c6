"""
Container lifecycle for Docker-mode environments.

Drives the ``docker`` CLI directly through :mod:`subprocess`; no Docker SDK
is required, only a working binary on ``$PATH``. All waits go through an
injectable ``sleep`` and every polling loop is bounded.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, Sequence

from regtestenv.container.ports import (
    MAX_PORT_ATTEMPTS,
    PortProbe,
    find_free_port,
    is_port_in_use,
)
from regtestenv.core.config import AppConfig, DEFAULT_PROXY_PORT, DockerConfig, SharedConfig
from regtestenv.core.errors import ConfigError, ContainerError, RegtestEnvError

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str], float], subprocess.CompletedProcess]

PROXY_IMAGE = "nginx:alpine"
STARTUP_GRACE_SECONDS = 3.0
RPC_READY_ATTEMPTS = 60
LOG_TAIL_ON_FAILURE = 50

_NGINX_TEMPLATE = """events {{
    worker_connections 1024;
}}

http {{
    upstream bitcoin_regtest {{
        server {container}:{rpc_port};
    }}

    server {{
        listen 8080;
        server_name localhost;
        client_max_body_size 100m;

        location / {{
            proxy_pass http://bitcoin_regtest;
            proxy_set_header Host $host;
            proxy_http_version 1.1;
            proxy_buffering off;
            proxy_read_timeout 300s;

            add_header 'Access-Control-Allow-Origin' '*' always;
            add_header 'Access-Control-Allow-Methods' 'GET, POST, OPTIONS' always;
            add_header 'Access-Control-Allow-Headers' 'Authorization, Content-Type, Accept, Origin' always;
            add_header 'Access-Control-Allow-Credentials' 'true' always;

            if ($request_method = 'OPTIONS') {{
                add_header 'Access-Control-Allow-Origin' '*' always;
                add_header 'Access-Control-Allow-Methods' 'GET, POST, OPTIONS' always;
                add_header 'Access-Control-Allow-Headers' 'Authorization, Content-Type, Accept, Origin' always;
                add_header 'Content-Length' 0;
                return 204;
            }}
        }}
    }}
}}
"""


def _subprocess_runner(args: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def is_docker_available(runner: Runner = _subprocess_runner) -> bool:
    """Quick probe: can we talk to the Docker daemon?"""
    bin_path = shutil.which("docker") or "docker"
    try:
        result = runner([bin_path, "info", "--format", "{{.ID}}"], 10)
        return result.returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


class ContainerLifecycle(Protocol):
    """What the import pipeline needs from a container backend."""

    def start_container(
        self,
        shared: SharedConfig | None = None,
        skip_data_prep: bool = False,
        force_reindex: bool = False,
    ) -> ContainerStatus: ...

    def setup_proxy(self, force: bool = False) -> int: ...

    def get_status(self) -> ContainerStatus: ...

    def get_logs(self, tail: int = 100) -> str: ...

    def stop_container(self) -> None: ...


@dataclass
class ContainerStatus:
    """Snapshot of the node container."""

    running: bool
    container_id: str | None = None
    rpc_port: int | None = None
    p2p_port: int | None = None
    network: str | None = None


class ContainerManager:
    """
    Starts, stops and inspects the node container and its RPC proxy.

    The manager holds a reference to the :class:`DockerConfig` it was
    given; port negotiation writes resolved ports back into it, so callers
    must persist that config after a start, not the values they asked for.
    """

    def __init__(
        self,
        config: DockerConfig,
        data_dir: Path,
        rpc_user: str = "user",
        rpc_password: str = "pass",
        runner: Runner = _subprocess_runner,
        sleep: Callable[[float], None] = time.sleep,
        port_probe: PortProbe = is_port_in_use,
        machine: Callable[[], str] = platform.machine,
    ):
        self.config = config
        self.data_dir = Path(data_dir)
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self._runner = runner
        self._sleep = sleep
        self._port_probe = port_probe
        self._machine = machine

    @classmethod
    def from_app_config(cls, config: AppConfig, **kwargs) -> ContainerManager:
        """
        Build a manager for a Docker-mode config.

        Shares ``config.docker`` by reference so negotiated ports land in
        the config the caller persists.
        """
        if config.docker is None:
            raise ConfigError("Config has no docker section", suggestions=["Use a Docker-mode profile"])
        return cls(
            config.docker,
            Path(config.app_dir) / "docker-data",
            rpc_user=config.bitcoin.user,
            rpc_password=config.bitcoin.password,
            **kwargs,
        )

    @property
    def proxy_name(self) -> str:
        return f"{self.config.container_name}-nginx"

    @property
    def bitcoin_data_dir(self) -> Path:
        if self.config.volumes.bitcoin_data:
            return Path(self.config.volumes.bitcoin_data)
        return self.data_dir / "bitcoin-data"

    # --- docker CLI helpers ----------------------------------------------------

    def _docker(self, *args: str, timeout: float = 60, check: bool = True) -> str:
        cmd = ["docker", *args]
        try:
            result = self._runner(cmd, timeout)
        except FileNotFoundError as e:
            raise ContainerError(
                "Docker is not installed on this system",
                raw_error=e,
                command=" ".join(cmd),
                suggestions=["Install Docker: https://docs.docker.com/get-docker/"],
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ContainerError(
                f"docker {args[0]} timed out after {timeout:.0f}s",
                raw_error=e,
                command=" ".join(cmd),
            ) from e

        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise ContainerError(
                f"docker {args[0]} failed (rc={result.returncode}): {detail}",
                raw_error=detail,
                command=" ".join(cmd),
            )
        return (result.stdout or "").strip()

    def exec_cli(self, *args: str) -> str:
        """Run ``bitcoin-cli`` inside the node container."""
        return self._docker(
            "exec",
            self.config.container_name,
            "bitcoin-cli",
            "-regtest",
            f"-rpcuser={self.rpc_user}",
            f"-rpcpassword={self.rpc_password}",
            f"-rpcport={self.config.ports.rpc}",
            *args,
        )

    # --- capability ------------------------------------------------------------

    def is_docker_available(self) -> bool:
        return is_docker_available(self._runner)

    def detect_architecture(self) -> str:
        return self._machine() or "unknown"

    def ensure_ports_available(self) -> tuple[int, int]:
        """
        Resolve non-conflicting RPC and P2P ports.

        Each conflicting port is scanned forward on its own. The resolved
        pair is written into the in-memory config.

        Returns:
            ``(rpc_port, p2p_port)``

        Raises:
            PortConflictError: If a scan exhausts its attempts.
        """
        ports = self.config.ports
        rpc = find_free_port(ports.rpc, MAX_PORT_ATTEMPTS, self._port_probe, role="RPC")
        p2p = find_free_port(ports.p2p, MAX_PORT_ATTEMPTS, self._port_probe, role="P2P")
        ports.rpc, ports.p2p = rpc, p2p
        return rpc, p2p

    def find_proxy_port(self) -> int:
        return find_free_port(
            DEFAULT_PROXY_PORT, MAX_PORT_ATTEMPTS, self._port_probe, role="proxy"
        )

    def get_status(self) -> ContainerStatus:
        try:
            out = self._docker(
                "ps",
                "-a",
                "--filter",
                f"name=^{self.config.container_name}$",
                "--format",
                "{{.ID}}|{{.Status}}",
            )
        except ContainerError:
            return ContainerStatus(running=False)

        if not out:
            return ContainerStatus(running=False)

        container_id, _, status = out.splitlines()[0].partition("|")
        return ContainerStatus(
            running="up" in status.lower(),
            container_id=container_id or None,
            rpc_port=self.config.ports.rpc,
            p2p_port=self.config.ports.p2p,
            network=self.config.network,
        )

    def get_logs(self, tail: int = 100) -> str:
        return self._docker("logs", "--tail", str(tail), self.config.container_name)

    def ensure_network(self) -> None:
        try:
            self._docker("network", "inspect", self.config.network)
        except ContainerError:
            self._docker("network", "create", self.config.network)

    def prepare_data_dir(self) -> Path:
        """Create the bind-mounted data tree and drop any stale mining wallet."""
        data_dir = self.bitcoin_data_dir
        wallets_dir = data_dir / "regtest" / "wallets"
        wallets_dir.mkdir(parents=True, exist_ok=True)

        mining_wallet = wallets_dir / "mining_wallet"
        if mining_wallet.exists():
            logger.info("Removing stale mining wallet at %s", mining_wallet)
            shutil.rmtree(mining_wallet)

        if os.name != "nt":
            try:
                for root, dirs, files in os.walk(data_dir):
                    os.chmod(root, 0o777)
                    for name in files:
                        os.chmod(os.path.join(root, name), 0o777)
            except OSError as e:
                logger.warning("Could not set permissions on %s: %s", data_dir, e)
        return data_dir

    def remove_stale_container(self) -> None:
        status = self.get_status()
        if not status.container_id:
            return
        logger.info("Removing old container %s", self.config.container_name)
        if status.running:
            self._docker("stop", self.config.container_name, check=False)
        self._docker("rm", self.config.container_name, check=False)

    def build_run_command(self, arch: str, force_reindex: bool = False) -> list[str]:
        """Assemble the ``docker run`` arguments for the node container."""
        cfg = self.config
        args = ["run", "-d", "--name", cfg.container_name]
        if "arm64" in arch or "aarch64" in arch:
            args += ["--platform", "linux/amd64"]
        args += [
            "--network",
            cfg.network,
            "-p",
            f"{cfg.ports.rpc}:{cfg.ports.rpc}",
            "-p",
            f"{cfg.ports.p2p}:{cfg.ports.p2p}",
            "-v",
            f"{self.bitcoin_data_dir}:/home/bitcoin/.bitcoin",
            cfg.image,
            "-regtest=1",
            "-server=1",
            "-rest=1",
            "-txindex=1",
            "-printtoconsole=1",
            "-rpcallowip=0.0.0.0/0",
            "-rpcbind=0.0.0.0",
            f"-rpcport={cfg.ports.rpc}",
            f"-port={cfg.ports.p2p}",
            f"-rpcuser={self.rpc_user}",
            f"-rpcpassword={self.rpc_password}",
            "-fallbackfee=0.00001",
        ]
        if force_reindex:
            args.append("-reindex")
        return args

    def wait_for_rpc_ready(self, max_attempts: int = RPC_READY_ATTEMPTS) -> None:
        """
        Poll ``getblockchaininfo`` until the node answers.

        Raises:
            ContainerError: If the container stops or the attempts run out.
        """
        self._sleep(2)
        for attempt in range(1, max_attempts + 1):
            if not self.get_status().running:
                raise ContainerError("Container stopped unexpectedly while waiting for RPC")
            try:
                self.exec_cli("getblockchaininfo")
                logger.info("RPC ready after %d attempt(s)", attempt)
                return
            except ContainerError as e:
                logger.debug("RPC not ready (%d/%d): %s", attempt, max_attempts, e)
            if attempt < max_attempts:
                self._sleep(1)
        raise ContainerError(
            f"RPC did not become ready after {max_attempts} attempts",
            suggestions=[
                "Check the RPC credentials in the profile configuration",
                f"Check container logs: docker logs {self.config.container_name}",
            ],
        )

    def generate_initial_blocks(self, count: int) -> None:
        try:
            self.exec_cli("createwallet", "mining_wallet")
            address = self.exec_cli("-rpcwallet=mining_wallet", "getnewaddress")
            self.exec_cli(
                "-rpcwallet=mining_wallet", "generatetoaddress", str(count), address
            )
        except ContainerError as e:
            logger.warning("Could not generate initial blocks: %s", e)

    def start_container(
        self,
        shared: SharedConfig | None = None,
        skip_data_prep: bool = False,
        force_reindex: bool = False,
    ) -> ContainerStatus:
        """
        Start the node container.

        Stages run in a fixed order; the first failure aborts the sequence
        and is re-raised as :class:`ContainerError` carrying the tail of the
        container log.

        Args:
            shared: Shared config supplying credentials and initial state.
            skip_data_prep: Leave the data directory untouched (import path).
            force_reindex: Start ``bitcoind`` with ``-reindex``.

        Returns:
            Status of the running container.
        """
        if shared is not None:
            self.rpc_user = shared.bitcoin.rpc_user or self.rpc_user
            self.rpc_password = shared.bitcoin.rpc_password or self.rpc_password

        stage = "docker check"
        try:
            if not self.is_docker_available():
                raise ContainerError(
                    "Docker is not installed or not running",
                    suggestions=[
                        "Install Docker: https://docs.docker.com/get-docker/",
                        "Start Docker Desktop, or run: sudo systemctl start docker",
                    ],
                )

            stage = "architecture detection"
            arch = self.detect_architecture()
            logger.info("Architecture: %s", arch)

            stage = "port negotiation"
            rpc, p2p = self.ensure_ports_available()
            logger.info("Ports resolved: rpc=%d p2p=%d", rpc, p2p)

            stage = "network"
            self.ensure_network()

            stage = "data directory"
            if skip_data_prep:
                self.bitcoin_data_dir.mkdir(parents=True, exist_ok=True)
            else:
                self.prepare_data_dir()

            stage = "stale container removal"
            self.remove_stale_container()

            stage = "container creation"
            self._docker(*self.build_run_command(arch, force_reindex), timeout=300)

            stage = "startup"
            self._sleep(STARTUP_GRACE_SECONDS)
            status = self.get_status()
            if not status.running:
                raise ContainerError("Container stopped immediately after starting")

            stage = "RPC readiness"
            self.wait_for_rpc_ready()

            if shared is not None and shared.initial_state.pre_generate_blocks:
                stage = "initial block generation"
                self.generate_initial_blocks(shared.initial_state.block_height)
        except (RegtestEnvError, OSError, subprocess.SubprocessError) as e:
            logs = self._safe_logs(LOG_TAIL_ON_FAILURE)
            kwargs = {}
            if isinstance(e, RegtestEnvError):
                kwargs = {"category": e.category, "suggestions": e.suggestions}
            raise ContainerError(
                f"Container start failed during {stage}: {e}",
                logs=logs,
                raw_error=e,
                **kwargs,
            ) from e

        logger.info("Container %s started", self.config.container_name)
        return status

    def setup_proxy(self, force: bool = False) -> int:
        """
        Provision the nginx reverse proxy in front of the node RPC port.

        The upstream is the RPC port resolved by the last port negotiation.

        Args:
            force: Recreate the proxy even if one exists.

        Returns:
            Host port the proxy listens on.
        """
        existing = self._docker(
            "ps", "-a", "--filter", f"name=^{self.proxy_name}$", "--format", "{{.ID}}"
        )
        current = self.config.ports.nginx or DEFAULT_PROXY_PORT

        if existing and not force:
            running = self._docker(
                "ps", "--filter", f"name=^{self.proxy_name}$", "--format", "{{.Status}}"
            )
            if not running:
                self._docker("start", self.proxy_name)
            return current

        if existing:
            self._docker("rm", "-f", self.proxy_name, check=False)

        port = self.find_proxy_port()
        nginx_dir = self.data_dir / "nginx"
        nginx_dir.mkdir(parents=True, exist_ok=True)
        conf_path = nginx_dir / "nginx.conf"
        conf_path.write_text(
            _NGINX_TEMPLATE.format(
                container=self.config.container_name, rpc_port=self.config.ports.rpc
            ),
            encoding="utf-8",
        )

        self._docker(
            "run",
            "-d",
            "--name",
            self.proxy_name,
            "--network",
            self.config.network,
            "-p",
            f"{port}:8080",
            "-v",
            f"{conf_path}:/etc/nginx/nginx.conf:ro",
            PROXY_IMAGE,
            timeout=120,
        )
        self._sleep(2)
        self.config.ports.nginx = port
        logger.info("Proxy started on http://localhost:%d", port)
        return port

    def stop_container(self) -> None:
        if not self.get_status().running:
            logger.info("Container %s not running", self.config.container_name)
            return
        self._docker("stop", self.config.container_name)

    def remove_container(self) -> None:
        status = self.get_status()
        if not status.container_id:
            return
        if status.running:
            self._docker("stop", self.config.container_name)
        self._docker("rm", self.config.container_name)

    def _safe_logs(self, tail: int) -> str:
        try:
            return self.get_logs(tail)
        except ContainerError:
            return ""
