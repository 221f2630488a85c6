"""
Environment import pipeline.

Reconstructs an environment from a ``.caravan-env`` archive, either by
restoring the binary chain payload into the node's data directory or by
replaying the archive's declarative script against a fresh node.

Stages run in order::

    extract -> validate manifest -> verify integrity -> select method
    -> stop node -> binary | replay -> (docker) restart and proxy
    -> copy side files -> write overlay

Fatal errors are caught at the pipeline boundary and reported in
:attr:`ImportResult.errors`; recoverable problems become warnings.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from regtestenv.container.docker import ContainerLifecycle, ContainerManager
from regtestenv.core.config import (
    DEFAULT_IMAGE,
    DEFAULT_NETWORK,
    DEFAULT_PROXY_PORT,
    AppConfig,
    BitcoinRpcConfig,
    DockerConfig,
    DockerPorts,
    InitialState,
    SetupMode,
    SharedBitcoinSettings,
    SharedConfig,
    SharedSnapshotSettings,
)
from regtestenv.core.errors import (
    ArchiveError,
    ConfigError,
    RegtestEnvError,
    RpcError,
    classify_error,
)
from regtestenv.core.json_canonical import utc_now_iso, write_json_file
from regtestenv.environment.archive import extract_tar_gz, read_member, timestamped_dir
from regtestenv.environment.datadir import locate_regtest_dir
from regtestenv.manifest.checksums import BLOCKCHAIN_PAYLOAD, verify_integrity
from regtestenv.manifest.env_manifest import MANIFEST_FILENAME, EnvironmentManifest
from regtestenv.manifest.wallet_export import FullWalletExport, WalletRole
from regtestenv.node.client import JsonRpcNodeClient, NodeClient
from regtestenv.replay.interpreter import ReplayInterpreter
from regtestenv.replay.steps import REPLAY_FILENAME, ReplayScript

if TYPE_CHECKING:
    from regtestenv.profiles.manager import Profile, ProfileManager

logger = logging.getLogger(__name__)

OVERLAY_FILENAME = "imported-env-config.json"
SUPPORTED_MAJOR_VERSION = 1
SHUTDOWN_GRACE_SECONDS = 3.0
RPC_POLL_ATTEMPTS = 30
RPC_POLL_INTERVAL = 1.0
RESTORED_SUBTREES = ("blocks", "chainstate", "wallets")


class ImportMethod(str, Enum):
    """How the chain is reconstructed."""

    AUTO = "auto"
    BINARY = "binary"
    REPLAY = "replay"


@dataclass
class RpcOverrides:
    """Caller-supplied RPC credentials that win over the manifest's."""

    rpc_user: str | None = None
    rpc_password: str | None = None
    rpc_port: int | None = None


@dataclass
class ImportOptions:
    """Options for one import call."""

    archive_path: Path
    method: ImportMethod = ImportMethod.AUTO
    rpc_overrides: RpcOverrides | None = None
    skip_verification: bool = False


@dataclass
class ImportResult:
    """
    Outcome of an import; ``config`` is the updated config to persist.

    ``errors`` holds the messages of fatal errors and ``error_details`` the
    classified errors themselves, with their suggestions.
    """

    success: bool = False
    method: ImportMethod = ImportMethod.BINARY
    block_height: int = 0
    wallets_imported: list[str] = field(default_factory=list)
    caravan_wallets_imported: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error_details: list[RegtestEnvError] = field(default_factory=list)
    config: AppConfig | None = None


class BinaryRestoreTransaction:
    """
    Backup-and-restore scope around a binary chain restore.

    On entry the destination is copied to ``regtest_backup_<ms>`` if it
    holds anything. If the block raises, the destination is replaced with
    the backup and the exception propagates. On success the backup is
    kept so the user can roll back by hand.

    Example:
        >>> with BinaryRestoreTransaction(regtest_dir, app_dir) as txn:
        ...     txn.replace_subtree(payload_dir, "blocks")
    """

    def __init__(self, destination: Path, backup_parent: Path):
        self.destination = destination
        self.backup_parent = backup_parent
        self.backup_dir: Path | None = None

    def __enter__(self) -> BinaryRestoreTransaction:
        if self.destination.is_dir() and any(self.destination.iterdir()):
            stamp = int(time.time() * 1000)
            self.backup_dir = self.backup_parent / f"regtest_backup_{stamp}"
            logger.info("Backing up %s to %s", self.destination, self.backup_dir)
            shutil.copytree(self.destination, self.backup_dir)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and self.backup_dir is not None:
            logger.warning("Restore failed, rolling back from %s", self.backup_dir)
            shutil.rmtree(self.destination, ignore_errors=True)
            shutil.copytree(self.backup_dir, self.destination)
            shutil.rmtree(self.backup_dir, ignore_errors=True)
            self.backup_dir = None
        return False

    def replace_subtree(self, source_root: Path, name: str) -> bool:
        """
        Replace ``destination/name`` with ``source_root/name``.

        Returns:
            False if the source has no such subtree, True otherwise.
        """
        src = source_root / name
        if not src.is_dir():
            return False
        dest = self.destination / name
        if dest.exists():
            shutil.rmtree(dest)
        shutil.copytree(src, dest)
        return True


def select_method(
    requested: ImportMethod, manifest: EnvironmentManifest
) -> tuple[ImportMethod, list[str]]:
    """
    Resolve the requested import method against the archive contents.

    Returns:
        ``(method, warnings)``

    Raises:
        ArchiveError: If replay is required but the archive has no script.
    """
    warnings: list[str] = []
    method = requested
    if method == ImportMethod.AUTO:
        method = (
            ImportMethod.BINARY
            if manifest.contents.has_blockchain_data
            else ImportMethod.REPLAY
        )

    if method == ImportMethod.BINARY and not manifest.contents.has_blockchain_data:
        warnings.append(
            "Binary import requested but no blockchain data in archive. "
            "Falling back to replay."
        )
        method = ImportMethod.REPLAY

    if method == ImportMethod.REPLAY and not manifest.contents.has_replay_script:
        raise ArchiveError(
            "Replay import requested but no replay script found in archive",
            suggestions=["Re-export the environment with replay script generation enabled"],
        )
    return method, warnings


def shared_config_from_manifest(
    manifest: EnvironmentManifest, docker: DockerConfig | None = None
) -> SharedConfig:
    """Shared config that starts a node with the archive's credentials and no pre-mined blocks."""
    rpc = manifest.rpc_config
    return SharedConfig(
        name=manifest.name,
        description=manifest.description or "",
        mode=SetupMode.DOCKER,
        bitcoin=SharedBitcoinSettings(
            network=manifest.network,
            rpc_port=rpc.rpc_port,
            p2p_port=rpc.p2p_port,
            rpc_user=rpc.rpc_user,
            rpc_password=rpc.rpc_password,
        ),
        docker=docker,
        initial_state=InitialState(block_height=0, pre_generate_blocks=False),
        wallet_name="caravan_watcher",
        snapshots=SharedSnapshotSettings(enabled=True, auto_snapshot=False),
    )


def _start_bitcoind(config: AppConfig) -> None:
    cmd = ["bitcoind", "-regtest", "-daemon"]
    if config.bitcoin.data_dir:
        cmd.append(f"-datadir={config.bitcoin.data_dir}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30, check=False)
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning("Could not start bitcoind: %s", e)
        return
    if result.returncode != 0:
        # Usually already running; the RPC poll decides.
        logger.info("bitcoind exited with %d: %s", result.returncode, result.stderr.strip())


class EnvironmentImporter:
    """
    Imports an archive into the environment described by ``config``.

    The importer updates ``config`` in place (proxy port, negotiated
    container ports) and hands it back as :attr:`ImportResult.config`.

    Args:
        config: Config of the target environment.
        client: Node client for the target node.
        container: Container backend for Docker-mode targets. Built from
            ``config`` when omitted.
        sleep: Sleep function, injectable for tests.
        home: Home directory used when probing platform default data dirs.
        start_node: Starts a manual-mode node.
        client_factory: Rebuilds the node client after the RPC endpoint
            moves (proxy port negotiated on restart).
    """

    def __init__(
        self,
        config: AppConfig,
        client: NodeClient,
        container: ContainerLifecycle | None = None,
        sleep: Callable[[float], None] = time.sleep,
        home: Path | None = None,
        start_node: Callable[[AppConfig], None] = _start_bitcoind,
        client_factory: Callable[[AppConfig], NodeClient] | None = None,
    ):
        self.config = config
        self.client = client
        if container is None and config.is_docker:
            container = ContainerManager.from_app_config(config, sleep=sleep)
        self.container = container
        self._sleep = sleep
        self.home = home
        self._start_node = start_node
        self._client_factory = client_factory

    @property
    def _docker_target(self) -> bool:
        return self.config.mode == SetupMode.DOCKER and self.container is not None

    def import_environment(self, options: ImportOptions) -> ImportResult:
        """
        Run the import pipeline.

        Args:
            options: Import options.

        Returns:
            The import result. Never raises for pipeline failures; check
            ``success`` and ``errors``.
        """
        result = ImportResult(config=self.config)
        archive_path = Path(options.archive_path)
        work_parent = Path(self.config.app_dir) if self.config.app_dir else archive_path.parent

        try:
            with timestamped_dir(work_parent, "env_import") as extract_dir:
                self._run(options, archive_path, extract_dir, result)
        except (RegtestEnvError, OSError, ValueError) as e:
            logger.error("Import failed: %s", e)
            classified = classify_error(e)
            result.errors.append(str(e))
            result.error_details.append(classified)
            result.success = False
        return result

    def _run(
        self,
        options: ImportOptions,
        archive_path: Path,
        extract_dir: Path,
        result: ImportResult,
    ) -> None:
        logger.info("Extracting %s", archive_path)
        extract_tar_gz(archive_path, extract_dir)

        manifest = self._load_manifest(extract_dir)
        if manifest.major_version > SUPPORTED_MAJOR_VERSION:
            result.warnings.append(
                f"Archive schema version {manifest.version} is newer than supported. "
                "Some features may not import correctly."
            )

        if not options.skip_verification:
            logger.info("Verifying archive integrity")
            for rel_path in verify_integrity(extract_dir, manifest.checksums):
                result.warnings.append(f"Checksum mismatch: {rel_path}")

        method, method_warnings = select_method(options.method, manifest)
        result.warnings.extend(method_warnings)
        result.method = method
        logger.info(
            "Importing %s at height %d using %s",
            manifest.name,
            manifest.blockchain_state.block_height,
            method.value,
        )

        self._stop_node()

        if method == ImportMethod.BINARY:
            self._import_binary(extract_dir, manifest, result)
        else:
            self._import_replay(extract_dir, manifest, result)

        if self._docker_target:
            self._restart_container(manifest, result)

        self._copy_side_files(extract_dir, result)
        try:
            self._write_overlay(archive_path, manifest, options.rpc_overrides)
        except OSError as e:
            result.warnings.append(f"Could not write {OVERLAY_FILENAME}: {e}")

        result.block_height = manifest.blockchain_state.block_height
        result.success = True
        logger.info("Import complete")

    def _load_manifest(self, extract_dir: Path) -> EnvironmentManifest:
        path = extract_dir / MANIFEST_FILENAME
        if not path.is_file():
            raise ArchiveError(
                "Invalid .caravan-env archive: manifest.json not found",
                suggestions=["Check that the file was produced by an environment export"],
            )
        try:
            return EnvironmentManifest.load(path)
        except ValueError as e:
            raise ArchiveError(f"Invalid manifest.json: {e}", raw_error=e) from e

    def _stop_node(self) -> None:
        logger.info("Stopping node")
        if self._docker_target:
            try:
                self.container.stop_container()
            except RegtestEnvError as e:
                logger.debug("Container stop ignored: %s", e)
        else:
            try:
                self.client.call("stop")
            except RpcError as e:
                logger.debug("Node stop ignored: %s", e)
        self._sleep(SHUTDOWN_GRACE_SECONDS)

    # --- binary ----------------------------------------------------------------

    def _import_binary(
        self, extract_dir: Path, manifest: EnvironmentManifest, result: ImportResult
    ) -> None:
        regtest_dir = locate_regtest_dir(self.config, create_if_missing=True, home=self.home)
        if regtest_dir is None:
            raise ConfigError(
                "Cannot determine regtest data directory",
                suggestions=["Set bitcoin.dataDir in the profile configuration"],
            )

        payload = extract_dir / BLOCKCHAIN_PAYLOAD
        if not payload.is_file():
            raise ArchiveError(
                f"{BLOCKCHAIN_PAYLOAD} not found in archive. Archive may be corrupt."
            )
        payload_dir = extract_dir / "blockchain"
        extract_tar_gz(payload, payload_dir)

        backup_parent = Path(self.config.app_dir) if self.config.app_dir else regtest_dir.parent
        with BinaryRestoreTransaction(regtest_dir, backup_parent) as txn:
            for subtree in RESTORED_SUBTREES:
                logger.info("Restoring %s", subtree)
                txn.replace_subtree(payload_dir, subtree)

            settings_src = payload_dir / "settings.json"
            settings_dest = regtest_dir / "settings.json"
            if settings_src.is_file():
                shutil.copy2(settings_src, settings_dest)
            else:
                write_json_file(settings_dest, {"wallet": list(manifest.contents.bitcoin_wallets)})

        if txn.backup_dir is not None:
            result.warnings.append(f"Previous regtest data backed up to: {txn.backup_dir}")
        result.wallets_imported = list(manifest.contents.bitcoin_wallets)

    # --- replay ----------------------------------------------------------------

    def _import_replay(
        self, extract_dir: Path, manifest: EnvironmentManifest, result: ImportResult
    ) -> None:
        replay_path = extract_dir / REPLAY_FILENAME
        if not replay_path.is_file():
            raise ArchiveError(f"{REPLAY_FILENAME} not found in archive")
        script, skipped = ReplayScript.load(replay_path)
        result.warnings.extend(skipped)

        logger.info("Starting node for replay")
        if self._docker_target:
            shared = shared_config_from_manifest(manifest, self.config.docker)
            self.container.start_container(shared)
            self._attach_proxy(force=False)
        else:
            self._start_node(self.config)
            self._sleep(SHUTDOWN_GRACE_SECONDS)

        if not self._wait_for_rpc():
            raise RpcError(
                f"Node RPC did not become available after {RPC_POLL_ATTEMPTS} attempts",
                suggestions=[
                    "Check that Docker is running and the ports are available",
                    "Check the RPC credentials in the profile configuration",
                ],
            )

        interpreter = ReplayInterpreter(
            self.client, Path(self.config.caravan_dir), sleep=self._sleep
        )
        report = interpreter.run(script)
        result.warnings.extend(report.warnings)
        result.wallets_imported = interpreter.created_wallets

        self._import_remaining_descriptors(extract_dir / "descriptors", result)

    def _wait_for_rpc(self) -> bool:
        for attempt in range(1, RPC_POLL_ATTEMPTS + 1):
            if self.client.ping():
                logger.info("Node RPC ready after %d attempt(s)", attempt)
                return True
            self._sleep(RPC_POLL_INTERVAL)
        return False

    def _import_remaining_descriptors(self, descriptors_dir: Path, result: ImportResult) -> None:
        if not descriptors_dir.is_dir():
            return
        for path in sorted(descriptors_dir.glob("*.json")):
            try:
                export = FullWalletExport.load(path)
                desc = export.descriptor_export
                if desc.wallet_name in self.client.list_wallets():
                    continue
                watch_only = desc.wallet_type == WalletRole.WATCH_ONLY
                self.client.create_wallet(
                    desc.wallet_name,
                    disable_private_keys=watch_only,
                    blank=watch_only,
                    descriptors=desc.is_descriptor_wallet,
                )
                if desc.descriptors:
                    self.client.import_descriptors(
                        desc.wallet_name, [d.to_import_request() for d in desc.descriptors]
                    )
                if desc.wallet_name not in result.wallets_imported:
                    result.wallets_imported.append(desc.wallet_name)
            except (RegtestEnvError, OSError, ValueError) as e:
                result.warnings.append(f"Could not import descriptor file {path.name}: {e}")

    # --- docker ----------------------------------------------------------------

    def _attach_proxy(self, force: bool) -> int:
        port = self.container.setup_proxy(force=force)
        self.config.bitcoin.port = port
        if self._client_factory is not None:
            self.client = self._client_factory(self.config)
        return port

    def _restart_container(self, manifest: EnvironmentManifest, result: ImportResult) -> None:
        logger.info("Starting container with imported data")
        shared = shared_config_from_manifest(manifest, self.config.docker)
        try:
            # A replay leaves its node running; its ports must not look taken.
            if self.container.get_status().running:
                self.container.stop_container()
                self._sleep(SHUTDOWN_GRACE_SECONDS)
            self.container.start_container(shared, skip_data_prep=True, force_reindex=True)
            port = self._attach_proxy(force=True)
            for wallet in manifest.contents.bitcoin_wallets:
                try:
                    self.client.load_wallet(wallet)
                except RpcError as e:
                    logger.debug("loadwallet %s ignored: %s", wallet, e)
            logger.info("Container running, proxy on port %d", port)
        except (RegtestEnvError, OSError) as e:
            result.warnings.append(
                f"Could not auto-start Docker container: {e}. "
                "Start the container manually once the import finishes."
            )

    # --- side files ------------------------------------------------------------

    def _copy_side_files(self, extract_dir: Path, result: ImportResult) -> None:
        for name in self._copy_dir(
            extract_dir / "caravan-wallets", self.config.caravan_dir, ".json", result
        ):
            result.caravan_wallets_imported.append(name.replace("_config.json", ""))
        self._copy_dir(extract_dir / "keys", self.config.keys_dir, ".json", result)
        self._copy_dir(extract_dir / "scenarios", self.config.scenarios_dir, None, result)

    def _copy_dir(
        self,
        src_dir: Path,
        dest: str,
        suffix: str | None,
        result: ImportResult,
    ) -> list[str]:
        if not src_dir.is_dir() or not dest:
            return []
        dest_dir = Path(dest)
        dest_dir.mkdir(parents=True, exist_ok=True)
        copied: list[str] = []
        for path in sorted(src_dir.iterdir()):
            if not path.is_file() or (suffix and path.suffix != suffix):
                continue
            try:
                shutil.copy2(path, dest_dir / path.name)
            except OSError as e:
                result.warnings.append(f"Could not copy {src_dir.name}/{path.name}: {e}")
                continue
            copied.append(path.name)
        return copied

    def _write_overlay(
        self,
        archive_path: Path,
        manifest: EnvironmentManifest,
        overrides: RpcOverrides | None,
    ) -> None:
        if not self.config.app_dir:
            return
        overrides = overrides or RpcOverrides()
        rpc = manifest.rpc_config
        overlay: dict[str, Any] = {
            "importedFrom": archive_path.name,
            "importedAt": utc_now_iso(),
            "manifest": manifest.to_wire(),
            "rpcOverrides": {
                "rpcUser": overrides.rpc_user or rpc.rpc_user,
                "rpcPassword": overrides.rpc_password or rpc.rpc_password,
                "rpcPort": overrides.rpc_port or rpc.rpc_port,
            },
        }
        write_json_file(Path(self.config.app_dir) / OVERLAY_FILENAME, overlay)


def inspect_archive(archive_path: Path) -> EnvironmentManifest:
    """
    Read an archive's manifest without extracting anything else.

    Raises:
        ArchiveError: If the archive is unreadable or has no manifest.
    """
    raw = read_member(Path(archive_path), MANIFEST_FILENAME)
    if raw is None:
        raise ArchiveError("Invalid .caravan-env archive: manifest.json not found")
    try:
        return EnvironmentManifest.model_validate_json(raw)
    except ValueError as e:
        raise ArchiveError(f"Invalid manifest.json: {e}", raw_error=e) from e


def imported_container_name(env_name: str) -> str:
    safe = re.sub(r"[^a-zA-Z0-9]", "-", env_name).lower()[:30]
    return f"caravan-x-imported-{safe}"


def build_config_from_manifest(manifest: EnvironmentManifest) -> AppConfig:
    """
    Docker-mode config for importing ``manifest`` into its own container.

    Directory fields are left blank; profile creation scopes them.
    """
    rpc = manifest.rpc_config
    docker = DockerConfig(
        enabled=True,
        image=manifest.docker.image if manifest.docker is not None else DEFAULT_IMAGE,
        container_name=imported_container_name(manifest.name),
        ports=DockerPorts(rpc=rpc.rpc_port, p2p=rpc.p2p_port, nginx=DEFAULT_PROXY_PORT),
        network=DEFAULT_NETWORK,
        auto_start=True,
    )
    shared = shared_config_from_manifest(manifest, docker).model_copy(
        update={
            "name": f"Imported: {manifest.name}",
            "description": manifest.description or f"Imported from {manifest.name}",
        }
    )
    return AppConfig(
        mode=SetupMode.DOCKER,
        shared_config=shared,
        docker=docker,
        bitcoin=BitcoinRpcConfig(
            host="localhost",
            port=DEFAULT_PROXY_PORT,
            user=rpc.rpc_user,
            password=rpc.rpc_password,
        ),
    )


def import_into_new_profile(
    manager: ProfileManager,
    archive_path: Path,
    options: ImportOptions,
    profile_name: str | None = None,
    client_factory: Callable[[AppConfig], NodeClient] | None = None,
    container_factory: Callable[[AppConfig], ContainerLifecycle] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[ImportResult, Profile | None]:
    """
    Import an archive into a freshly created Docker profile.

    On success the profile becomes active and its config is saved with the
    ports negotiated during import. On failure the profile is deleted.

    Args:
        manager: Profile manager for the base directory.
        archive_path: Archive to import.
        options: Import options; RPC overrides default to the manifest's.
        profile_name: Profile name, defaults to ``Imported: <env name>``.
        client_factory: Builds a node client for a config.
        container_factory: Builds a container backend for a config.
        sleep: Sleep function, injectable for tests.

    Returns:
        ``(result, profile)``; ``profile`` is None when the import failed.
    """
    archive_path = Path(archive_path)
    manifest = inspect_archive(archive_path)
    client_factory = client_factory or (lambda cfg: JsonRpcNodeClient.from_config(cfg.bitcoin))
    container_factory = container_factory or (
        lambda cfg: ContainerManager.from_app_config(cfg, sleep=sleep)
    )

    profile = manager.create_profile(
        profile_name or f"Imported: {manifest.name}",
        SetupMode.DOCKER,
        build_config_from_manifest(manifest),
    )
    config = manager.get_profile_config(profile.id)

    if options.rpc_overrides is None:
        rpc = manifest.rpc_config
        options.rpc_overrides = RpcOverrides(rpc.rpc_user, rpc.rpc_password, rpc.rpc_port)
    options.archive_path = archive_path

    importer = EnvironmentImporter(
        config,
        client_factory(config),
        container=container_factory(config),
        sleep=sleep,
        client_factory=client_factory,
    )
    result = importer.import_environment(options)

    if not result.success:
        logger.warning("Import failed, removing profile %s", profile.id)
        manager.delete_profile(profile.id)
        return result, None

    result.config.save(Path(profile.config_path))
    manager.set_active_profile(profile.id)
    return result, profile
