"""Shared fakes and fixtures: an in-memory node, a fake container and source environments."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from regtestenv.container.docker import ContainerStatus
from regtestenv.core.config import AppConfig, BitcoinRpcConfig, DockerConfig, SetupMode
from regtestenv.core.errors import ContainerError, RpcError
from regtestenv.core.json_canonical import write_json_file
from regtestenv.environment.exporter import EnvironmentExporter, ExportOptions, ExportResult
from regtestenv.node.client import NodeClient


@dataclass
class FakeWallet:
    name: str
    private_keys: bool = True
    descriptors: list[dict[str, Any]] = field(default_factory=list)


class FakeNodeClient(NodeClient):
    """In-memory node answering the RPC subset the pipelines use."""

    def __init__(self, height: int = 0):
        self.height = height
        self.wallets: dict[str, FakeWallet] = {}
        self.loaded: list[str] = []
        self.calls: list[tuple[str, list[Any], str | None]] = []
        self.fail: dict[str, str] = {}
        self.reachable = True
        self._address_counter = 0

    def add_wallet(
        self,
        name: str,
        private_keys: bool = True,
        descriptors: list[dict[str, Any]] | None = None,
    ) -> FakeWallet:
        wallet = FakeWallet(name, private_keys, list(descriptors or []))
        self.wallets[name] = wallet
        self.loaded.append(name)
        return wallet

    def call(self, method: str, params: list[Any] | None = None, wallet: str | None = None) -> Any:
        params = list(params or [])
        self.calls.append((method, params, wallet))
        if not self.reachable:
            raise RpcError("Connection refused", method=method)
        if method in self.fail:
            raise RpcError(self.fail[method], method=method)
        handler = getattr(self, f"_rpc_{method}", None)
        if handler is None:
            raise RpcError(f"Method not found: {method}", method=method, code=-32601)
        return handler(params, wallet)

    def __enter__(self) -> FakeNodeClient:
        return self

    def __exit__(self, *exc: object) -> None:
        pass

    def methods_called(self) -> list[str]:
        return [method for method, _, _ in self.calls]

    def _wallet(self, name: str | None) -> FakeWallet:
        if name not in self.loaded or name not in self.wallets:
            raise RpcError("Requested wallet does not exist or is not loaded", code=-18)
        return self.wallets[name]

    def _rpc_listwallets(self, params, wallet):
        return list(self.loaded)

    def _rpc_getwalletinfo(self, params, wallet):
        w = self._wallet(wallet)
        return {"walletname": w.name, "private_keys_enabled": w.private_keys, "descriptors": True}

    def _rpc_getblockchaininfo(self, params, wallet):
        return {"chain": "regtest", "blocks": self.height, "chainwork": f"{self.height * 2 + 2:064x}"}

    def _rpc_getblockhash(self, params, wallet):
        return f"{params[0]:064x}"

    def _rpc_getnetworkinfo(self, params, wallet):
        return {"version": 270000}

    def _rpc_listdescriptors(self, params, wallet):
        w = self._wallet(wallet)
        if params and params[0] and not w.private_keys:
            raise RpcError("Can't get descriptor string for watch-only wallet", code=-4)
        return {"wallet_name": w.name, "descriptors": [dict(d) for d in w.descriptors]}

    def _rpc_createwallet(self, params, wallet):
        name = params[0]
        if name in self.wallets:
            raise RpcError(f"Wallet file verification failed. Database already exists: {name}", code=-4)
        self.add_wallet(name, private_keys=not params[1])
        return {"name": name, "warning": ""}

    def _rpc_importdescriptors(self, params, wallet):
        w = self._wallet(wallet)
        requests = params[0]
        w.descriptors.extend(dict(r) for r in requests)
        return [{"success": True} for _ in requests]

    def _rpc_loadwallet(self, params, wallet):
        name = params[0]
        if name in self.loaded:
            raise RpcError(f'Wallet "{name}" is already loaded.', code=-35)
        if name not in self.wallets:
            raise RpcError("Wallet file not found", code=-18)
        self.loaded.append(name)
        return {"name": name}

    def _rpc_getnewaddress(self, params, wallet):
        self._wallet(wallet)
        self._address_counter += 1
        return f"bcrt1q{wallet}{self._address_counter:04d}"

    def _rpc_generatetoaddress(self, params, wallet):
        count = params[0]
        start = self.height
        self.height += count
        return [f"{h:064x}" for h in range(start + 1, self.height + 1)]

    def _rpc_sendtoaddress(self, params, wallet):
        self._wallet(wallet)
        return "ab" * 32

    def _rpc_stop(self, params, wallet):
        return "Bitcoin Core stopping"


class FakeContainer:
    """Container backend that records calls instead of running Docker."""

    def __init__(self, config: DockerConfig, proxy_port: int = 8081, fail_start: bool = False):
        self.config = config
        self.proxy_port = proxy_port
        self.fail_start = fail_start
        self.running = False
        self.calls: list[tuple[Any, ...]] = []

    def start_container(self, shared=None, skip_data_prep=False, force_reindex=False):
        self.calls.append(("start", skip_data_prep, force_reindex))
        if self.fail_start:
            raise ContainerError("Container start failed during container creation: boom")
        self.running = True
        return ContainerStatus(running=True, container_id="abc123")

    def setup_proxy(self, force=False):
        self.calls.append(("proxy", force))
        self.config.ports.nginx = self.proxy_port
        return self.proxy_port

    def get_status(self):
        return ContainerStatus(running=self.running)

    def get_logs(self, tail=100):
        return ""

    def stop_container(self):
        self.calls.append(("stop",))
        self.running = False


class FakeDocker:
    """
    Runner standing in for the ``docker`` binary.

    Dispatches on the subcommand (``argv[1]``) so it works whether
    ``argv[0]`` is ``docker`` or a resolved path.
    """

    def __init__(self, container_name: str = "caravan-x-bitcoin"):
        self.container_name = container_name
        self.calls: list[list[str]] = []
        self.running = False
        self.exists = False
        self.proxy_exists = False
        self.fail: dict[str, str] = {}

    def __call__(self, args, timeout):
        args = list(args)
        self.calls.append(args)
        sub = args[1]
        if sub in self.fail:
            return subprocess.CompletedProcess(args, 1, "", self.fail[sub])

        out = ""
        if sub == "info":
            out = "daemon-id"
        elif sub == "ps":
            name_filter = next((a for a in args if a.startswith("name=")), "")
            if "-nginx" in name_filter:
                out = "proxy1" if self.proxy_exists else ""
            elif self.exists:
                out = f"abc123|{'Up 3 seconds' if self.running else 'Exited (0)'}"
        elif sub == "run":
            if "nginx:alpine" in args:
                self.proxy_exists = True
            else:
                self.exists = self.running = True
        elif sub == "stop":
            self.running = False
        elif sub == "rm":
            self.exists = self.running = False
        elif sub == "exec":
            out = '{"blocks": 0}'
        elif sub == "logs":
            out = "node log line"
        return subprocess.CompletedProcess(args, 0, out, "")

    def subcommands(self) -> list[str]:
        return [c[1] for c in self.calls]


@dataclass
class SourceEnv:
    config: AppConfig
    client: FakeNodeClient
    root: Path


WATCHER_DESCRIPTORS = [
    {"desc": "wpkh([d34db33f/84h/1h/0h]tpubDC.../0/*)#abcd1234", "timestamp": 1700000000,
     "active": True, "internal": False, "range": [0, 999], "next": 5},
    {"desc": "wpkh([d34db33f/84h/1h/0h]tpubDC.../1/*)#efgh5678", "timestamp": 1700000000,
     "active": True, "internal": True, "range": [0, 999], "next": 2},
]

SIGNER_DESCRIPTORS = [
    {"desc": "wpkh(tprv8Z.../84h/1h/0h/0/*)#ijkl9012", "timestamp": 1700000000,
     "active": True, "internal": False, "range": [0, 999], "next": 0},
]


def build_source_env(root: Path, height: int = 150) -> SourceEnv:
    """A manual-mode environment with chain data, two wallets and side files."""
    node_dir = root / "node"
    regtest = node_dir / "regtest"
    (regtest / "blocks").mkdir(parents=True)
    (regtest / "blocks" / "blk00000.dat").write_bytes(b"\xfa\xbf\xb5\xda" * 64)
    (regtest / "chainstate").mkdir()
    (regtest / "chainstate" / "000003.ldb").write_bytes(b"chainstate")
    for wallet in ("watcher", "signer_1", "unlisted"):
        (regtest / "wallets" / wallet).mkdir(parents=True)
        (regtest / "wallets" / wallet / "wallet.dat").write_bytes(wallet.encode())
    write_json_file(regtest / "settings.json", {"wallet": ["watcher", "signer_1"]})

    app_dir = root / "app"
    caravan_dir = app_dir / "wallets"
    keys_dir = app_dir / "keys"
    scenarios_dir = app_dir / "scenarios"
    write_json_file(
        caravan_dir / "alice_vault_config.json",
        {
            "name": "Alice Vault",
            "network": "regtest",
            "quorum": {"requiredSigners": 1, "totalSigners": 1},
            "client": {"type": "private", "walletName": "watcher"},
        },
    )
    write_json_file(keys_dir / "alice_vault_keys.json", {"keys": ["xprv-test"]})
    scenarios_dir.mkdir(parents=True)
    (scenarios_dir / "spend.js").write_text("module.exports = {};\n")

    config = AppConfig(
        mode=SetupMode.MANUAL,
        bitcoin=BitcoinRpcConfig(data_dir=str(node_dir)),
        app_dir=str(app_dir),
        caravan_dir=str(caravan_dir),
        keys_dir=str(keys_dir),
        scenarios_dir=str(scenarios_dir),
    )

    client = FakeNodeClient(height=height)
    client.add_wallet("watcher", private_keys=False, descriptors=WATCHER_DESCRIPTORS)
    client.add_wallet("signer_1", private_keys=True, descriptors=SIGNER_DESCRIPTORS)
    return SourceEnv(config=config, client=client, root=root)


def build_manual_target(root: Path) -> AppConfig:
    app_dir = root / "app"
    return AppConfig(
        mode=SetupMode.MANUAL,
        bitcoin=BitcoinRpcConfig(data_dir=str(root / "node")),
        app_dir=str(app_dir),
        caravan_dir=str(app_dir / "wallets"),
        keys_dir=str(app_dir / "keys"),
        scenarios_dir=str(app_dir / "scenarios"),
    )


@pytest.fixture
def no_sleep():
    slept: list[float] = []
    return slept.append


@pytest.fixture
def source_env(tmp_path: Path) -> SourceEnv:
    return build_source_env(tmp_path / "source")


@pytest.fixture
def manual_target(tmp_path: Path) -> AppConfig:
    return build_manual_target(tmp_path / "target")


@pytest.fixture
def export_archive(source_env: SourceEnv, tmp_path: Path):
    """Factory: export the source environment with the given options."""

    def _export(name: str = "alice-env", **kwargs) -> ExportResult:
        options = ExportOptions(name=name, output_path=tmp_path / "out" / name, **kwargs)
        exporter = EnvironmentExporter(
            source_env.config, source_env.client, home=tmp_path / "home"
        )
        return exporter.export(options)

    return _export
