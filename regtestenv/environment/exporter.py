"""
Environment export pipeline.

Builds a ``.caravan-env`` archive from a running node and the active
profile's side files. The pipeline stages everything in a timestamped
working directory that is removed on every exit path, so a failure before
the final compression leaves neither an archive nor staging residue.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from regtestenv.core.caravan import (
    MultisigConfigFile,
    keys_filename,
    list_multisig_configs,
)
from regtestenv.core.config import AppConfig, sanitize_config_for_export
from regtestenv.core.errors import RegtestEnvError
from regtestenv.core.json_canonical import read_json_file, write_json_file
from regtestenv.environment.archive import (
    create_tar_gz,
    timestamped_dir,
    with_archive_suffix,
)
from regtestenv.environment.datadir import locate_regtest_dir
from regtestenv.manifest.checksums import (
    BLOCKCHAIN_PAYLOAD,
    compute_directory_checksums,
    sha256_file,
)
from regtestenv.manifest.env_manifest import (
    MANIFEST_FILENAME,
    ArchiveChecksums,
    ArchiveContents,
    BlockchainState,
    ContainerInfo,
    EnvironmentManifest,
    RpcSettings,
)
from regtestenv.manifest.wallet_export import (
    DescriptorEntry,
    FullWalletExport,
    WalletDescriptorExport,
    WalletRole,
    classify_wallet_role,
)
from regtestenv.node.client import NodeClient
from regtestenv.replay.planner import build_replay_script
from regtestenv.replay.steps import REPLAY_FILENAME

logger = logging.getLogger(__name__)

SCENARIO_SUFFIXES = (".js", ".json")


@dataclass
class ExportOptions:
    """Options for one export call."""

    name: str
    output_path: Path
    description: str | None = None
    created_by: str | None = None
    include_blockchain_data: bool = True
    include_private_keys: bool = True
    generate_replay_script: bool = True
    wallet_filter: list[str] = field(default_factory=list)


@dataclass
class ExportResult:
    archive_path: Path
    manifest: EnvironmentManifest
    skipped_wallets: list[str] = field(default_factory=list)


@dataclass
class DescriptorStrategy:
    """One way of listing a wallet's descriptors."""

    name: str
    includes_private: bool
    fetch: Callable[[NodeClient, str], list[dict[str, Any]]]
    applies: Callable[[bool, bool], bool]


DESCRIPTOR_STRATEGIES: list[DescriptorStrategy] = [
    DescriptorStrategy(
        name="private",
        includes_private=True,
        fetch=lambda client, wallet: client.list_descriptors(wallet, include_private=True),
        applies=lambda want_private, keys_enabled: want_private and keys_enabled,
    ),
    DescriptorStrategy(
        name="public",
        includes_private=False,
        fetch=lambda client, wallet: client.list_descriptors(wallet, include_private=False),
        applies=lambda want_private, keys_enabled: True,
    ),
]


def discover_descriptors(
    client: NodeClient,
    wallet: str,
    want_private: bool,
    keys_enabled: bool,
    strategies: list[DescriptorStrategy] = DESCRIPTOR_STRATEGIES,
) -> tuple[list[dict[str, Any]], bool]:
    """
    Try each applicable strategy in order; the first success wins.

    Returns:
        ``(descriptors, includes_private)``; an empty list when every
        strategy fails.
    """
    for strategy in strategies:
        if not strategy.applies(want_private, keys_enabled):
            continue
        try:
            return strategy.fetch(client, wallet), strategy.includes_private
        except RegtestEnvError as e:
            logger.debug("Descriptor strategy %s failed for %s: %s", strategy.name, wallet, e)
    return [], False


class EnvironmentExporter:
    """
    Exports the environment described by ``config`` through ``client``.

    Args:
        config: Config of the environment being exported.
        client: Node client connected to that environment.
        home: Home directory used when probing platform default data dirs.
    """

    def __init__(self, config: AppConfig, client: NodeClient, home: Path | None = None):
        self.config = config
        self.client = client
        self.home = home

    def export(self, options: ExportOptions) -> ExportResult:
        """
        Run the export pipeline.

        Args:
            options: Export options.

        Returns:
            The written archive path and its manifest.

        Raises:
            RegtestEnvError: If the node cannot be queried or a file cannot
                be written. No archive is left behind in that case.
        """
        output_path = with_archive_suffix(Path(options.output_path))
        work_parent = Path(self.config.app_dir) if self.config.app_dir else output_path.parent

        with timestamped_dir(work_parent, "env_export") as staging:
            logger.info("Querying blockchain state")
            chain = self.client.get_blockchain_info()
            height = int(chain["blocks"])
            tip_hash = self.client.get_block_hash(height)
            core_version = self._core_version()

            loaded = self.client.list_wallets()
            if options.wallet_filter:
                wallets = [w for w in loaded if w in options.wallet_filter]
            else:
                wallets = loaded
            logger.info("Exporting %d wallet(s)", len(wallets))

            multisig_configs = (
                list_multisig_configs(Path(self.config.caravan_dir))
                if self.config.caravan_dir
                else []
            )
            exports, skipped = self._export_wallets(
                wallets, options.include_private_keys, multisig_configs
            )
            for export in exports:
                export.save(staging / "descriptors" / f"{export.wallet_name}.json")

            caravan_names = self._copy_multisig_configs(multisig_configs, staging / "caravan-wallets")
            key_files = self._copy_matching(
                Path(self.config.keys_dir) if self.config.keys_dir else None,
                staging / "keys",
                (".json",),
            )
            scenarios = self._copy_matching(
                Path(self.config.scenarios_dir) if self.config.scenarios_dir else None,
                staging / "scenarios",
                SCENARIO_SUFFIXES,
            )

            payload_checksum = None
            if options.include_blockchain_data:
                payload_checksum = self._capture_blockchain_data(staging, wallets)

            has_replay = False
            if options.generate_replay_script:
                logger.info("Generating replay script")
                build_replay_script(exports, height).save(staging / REPLAY_FILENAME)
                has_replay = True

            config_dir = staging / "config"
            write_json_file(
                config_dir / "enhanced-config.json", sanitize_config_for_export(self.config)
            )
            if self.config.shared_config is not None:
                write_json_file(
                    config_dir / "shared-config.json", self.config.shared_config.to_wire()
                )

            file_checksums = compute_directory_checksums(staging)

            manifest = EnvironmentManifest(
                name=options.name,
                description=options.description,
                created_by=options.created_by,
                bitcoin_core_version=core_version,
                network=(
                    self.config.shared_config.bitcoin.network
                    if self.config.shared_config is not None
                    else "regtest"
                ),
                blockchain_state=BlockchainState(
                    block_height=height,
                    block_hash=tip_hash,
                    chain_work=chain.get("chainwork"),
                ),
                contents=ArchiveContents(
                    has_blockchain_data=payload_checksum is not None,
                    bitcoin_wallets=wallets,
                    caravan_wallets=caravan_names,
                    key_files=key_files,
                    scenarios=scenarios,
                    has_replay_script=has_replay,
                ),
                checksums=ArchiveChecksums(
                    blockchain_data=payload_checksum,
                    files=file_checksums,
                ),
                mode=self.config.mode,
                rpc_config=RpcSettings(
                    rpc_user=self.config.bitcoin.user,
                    rpc_password=self.config.bitcoin.password,
                    rpc_port=self.config.bitcoin.port,
                    p2p_port=self.config.p2p_port,
                ),
                docker=(
                    ContainerInfo(
                        image=self.config.docker.image,
                        container_name=self.config.docker.container_name,
                        nginx_port=self.config.docker.ports.nginx,
                    )
                    if self.config.docker is not None
                    else None
                ),
            )
            manifest.save(staging / MANIFEST_FILENAME)

            logger.info("Writing archive %s", output_path)
            create_tar_gz(staging, output_path)

        return ExportResult(archive_path=output_path, manifest=manifest, skipped_wallets=skipped)

    def _core_version(self) -> str | None:
        try:
            return str(self.client.get_network_info()["version"])
        except (RegtestEnvError, KeyError, TypeError):
            return None

    def _export_wallets(
        self,
        wallets: list[str],
        include_private: bool,
        multisig_configs: list[MultisigConfigFile],
    ) -> tuple[list[FullWalletExport], list[str]]:
        exports: list[FullWalletExport] = []
        skipped: list[str] = []
        for wallet in wallets:
            try:
                exports.append(self._export_wallet(wallet, include_private, multisig_configs))
            except (RegtestEnvError, OSError, ValueError) as e:
                logger.warning("Could not export wallet %r: %s", wallet, e)
                skipped.append(wallet)
        return exports, skipped

    def _export_wallet(
        self,
        wallet: str,
        include_private: bool,
        multisig_configs: list[MultisigConfigFile],
    ) -> FullWalletExport:
        info = self.client.get_wallet_info(wallet)
        keys_enabled = bool(info.get("private_keys_enabled", False))
        is_descriptor = info.get("descriptors") is True
        role = classify_wallet_role(wallet, keys_enabled)

        descriptors: list[dict[str, Any]] = []
        has_private = False
        if is_descriptor:
            descriptors, has_private = discover_descriptors(
                self.client, wallet, include_private, keys_enabled
            )

        export = FullWalletExport(
            descriptor_export=WalletDescriptorExport(
                wallet_name=wallet,
                wallet_type=role,
                is_descriptor_wallet=is_descriptor,
                has_private_keys=has_private and role != WalletRole.WATCH_ONLY,
                descriptors=[DescriptorEntry.model_validate(d) for d in descriptors],
            )
        )

        for cfg in multisig_configs:
            if cfg.matches_wallet(wallet):
                export.caravan_config = cfg.config
                key_path = Path(self.config.keys_dir) / keys_filename(cfg.config)
                if self.config.keys_dir and key_path.is_file():
                    export.key_data = read_json_file(key_path)
                break
        return export

    def _copy_multisig_configs(
        self, configs: list[MultisigConfigFile], dest_dir: Path
    ) -> list[str]:
        dest_dir.mkdir(parents=True, exist_ok=True)
        names: list[str] = []
        for cfg in configs:
            try:
                shutil.copy2(cfg.path, dest_dir / cfg.path.name)
            except OSError as e:
                logger.warning("Could not copy multisig config %s: %s", cfg.path.name, e)
                continue
            names.append(cfg.name)
        return names

    def _copy_matching(
        self, src_dir: Path | None, dest_dir: Path, suffixes: tuple[str, ...]
    ) -> list[str]:
        dest_dir.mkdir(parents=True, exist_ok=True)
        if src_dir is None or not src_dir.is_dir():
            return []
        copied: list[str] = []
        for path in sorted(src_dir.iterdir()):
            if not path.is_file() or path.suffix not in suffixes:
                continue
            try:
                shutil.copy2(path, dest_dir / path.name)
            except OSError as e:
                logger.warning("Could not copy %s: %s", path.name, e)
                continue
            copied.append(path.name)
        return copied

    def _capture_blockchain_data(self, staging: Path, wallets: list[str]) -> str | None:
        """Copy chain and wallet data into one payload and return its digest."""
        regtest_dir = locate_regtest_dir(self.config, home=self.home)
        if regtest_dir is None:
            logger.warning(
                "Could not locate regtest data directory, skipping binary blockchain data"
            )
            return None

        logger.info("Capturing blockchain data from %s", regtest_dir)
        blockchain_dir = staging / "blockchain"
        blockchain_dir.mkdir()
        for subtree in ("blocks", "chainstate"):
            src = regtest_dir / subtree
            if src.is_dir():
                shutil.copytree(src, blockchain_dir / subtree)

        wallets_src = regtest_dir / "wallets"
        if wallets_src.is_dir():
            wallets_dest = blockchain_dir / "wallets"
            wallets_dest.mkdir()
            for wallet in wallets:
                if wallet and (wallets_src / wallet).is_dir():
                    shutil.copytree(wallets_src / wallet, wallets_dest / wallet)

        settings = regtest_dir / "settings.json"
        if settings.is_file():
            shutil.copy2(settings, blockchain_dir / "settings.json")

        payload = staging / BLOCKCHAIN_PAYLOAD
        create_tar_gz(blockchain_dir, payload)
        checksum = sha256_file(payload)
        shutil.rmtree(blockchain_dir)
        return checksum
