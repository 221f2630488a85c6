"""
regtestenv CLI.

Command-line interface for exporting, importing and inspecting
``.caravan-env`` archives and for managing isolated profiles.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn

import click

from regtestenv import __version__
from regtestenv.core.errors import ConfigError, classify_error
from regtestenv.core.logging import setup_logging

DEFAULT_HOME = Path.home() / ".caravan-x"


def _echo_error(error: BaseException) -> None:
    """Print a classified error and its suggestions to stderr."""
    classified = classify_error(error)
    click.echo(f"Error [{classified.label}]: {classified.user_message}", err=True)
    for suggestion in classified.suggestions:
        click.echo(f"  - {suggestion}", err=True)
    logging.getLogger(__name__).debug("Raw error: %r", classified.raw_error)


def _fail(error: BaseException) -> NoReturn:
    """Classify an error, print it with suggestions and exit 1."""
    _echo_error(error)
    raise SystemExit(1)


def _load_config(obj: dict):
    """Config from ``--config``, else the active profile's."""
    from regtestenv.core.config import AppConfig
    from regtestenv.profiles.manager import ProfileManager

    if obj["config_path"] is not None:
        return AppConfig.load(obj["config_path"]), None

    manager = ProfileManager(obj["home"])
    profile = manager.get_active_profile()
    if profile is None:
        raise ConfigError(
            "No active profile",
            suggestions=[
                "Import an environment: regtestenv import <archive>",
                "Or activate a profile: regtestenv profile activate <id>",
                "Or pass --config <file>",
            ],
        )
    return manager.get_profile_config(profile.id), profile


def _confirm_legacy_wipe(markers: list[Path]) -> bool:
    click.echo("Found data from an older, non-isolated layout:", err=True)
    for marker in markers:
        click.echo(f"  {marker}", err=True)
    return click.confirm(
        "Delete ALL of it and switch to isolated profiles? This cannot be undone",
        default=False,
        err=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--home",
    envvar="REGTESTENV_HOME",
    type=click.Path(file_okay=False, path_type=Path),
    help="Base directory for profiles (default: ~/.caravan-x)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Config file to use instead of the active profile",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def main(
    ctx: click.Context,
    home: Path | None,
    config_path: Path | None,
    verbose: bool,
    log_json: bool,
) -> None:
    """regtestenv: Portable regtest Bitcoin environments."""
    home = home or DEFAULT_HOME
    log_file = None
    if config_path is None:
        from regtestenv.profiles.manager import ProfileManager

        manager = ProfileManager(home)
        try:
            active = manager.get_active_profile()
        except ValueError as e:
            _fail(e)
        if active is not None:
            log_file = manager.log_path(active)

    setup_logging(
        logging.DEBUG if verbose else logging.INFO, json_output=log_json, log_file=log_file
    )
    ctx.obj = {"home": home, "config_path": config_path}


@main.command("export")
@click.option("--name", "-n", required=True, help="Environment name")
@click.option("--output", "-o", required=True, help="Output archive path")
@click.option("--description", "-d", help="Environment description")
@click.option("--author", help="Author recorded in the manifest")
@click.option("--wallet", "wallets", multiple=True, help="Only export these wallets")
@click.option("--no-blockchain", is_flag=True, help="Skip the binary chain payload")
@click.option("--no-private-keys", is_flag=True, help="Export public descriptors only")
@click.option("--no-replay", is_flag=True, help="Skip the replay script")
@click.pass_obj
def export_env(
    obj: dict,
    name: str,
    output: str,
    description: str | None,
    author: str | None,
    wallets: tuple[str, ...],
    no_blockchain: bool,
    no_private_keys: bool,
    no_replay: bool,
) -> None:
    """Export the active environment to a .caravan-env archive."""
    from regtestenv.environment.exporter import EnvironmentExporter, ExportOptions
    from regtestenv.node.client import JsonRpcNodeClient

    try:
        config, _ = _load_config(obj)
        options = ExportOptions(
            name=name,
            output_path=Path(output),
            description=description,
            created_by=author,
            include_blockchain_data=not no_blockchain,
            include_private_keys=not no_private_keys,
            generate_replay_script=not no_replay,
            wallet_filter=list(wallets),
        )
        with JsonRpcNodeClient.from_config(config.bitcoin) as client:
            result = EnvironmentExporter(config, client).export(options)
    except Exception as e:
        _fail(e)

    manifest = result.manifest
    click.echo(f"Archive written: {result.archive_path}")
    click.echo(f"  Block height:    {manifest.blockchain_state.block_height}")
    click.echo(f"  Wallets:         {', '.join(manifest.contents.bitcoin_wallets) or 'none'}")
    click.echo(f"  Multisig:        {', '.join(manifest.contents.caravan_wallets) or 'none'}")
    click.echo(f"  Blockchain data: {'yes' if manifest.contents.has_blockchain_data else 'no'}")
    click.echo(f"  Replay script:   {'yes' if manifest.contents.has_replay_script else 'no'}")
    for wallet in result.skipped_wallets:
        click.echo(f"Warning: wallet {wallet} could not be exported", err=True)


@main.command("import")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--method",
    type=click.Choice(["auto", "binary", "replay"]),
    default="auto",
    help="How to rebuild the chain",
)
@click.option("--skip-verification", is_flag=True, help="Skip checksum verification")
@click.option("--force", is_flag=True, help="Import into the active profile in place")
@click.option("--profile-name", help="Name for the new profile")
@click.pass_obj
def import_env(
    obj: dict,
    archive: Path,
    method: str,
    skip_verification: bool,
    force: bool,
    profile_name: str | None,
) -> None:
    """Import a .caravan-env archive into a new isolated profile."""
    from regtestenv.environment.importer import (
        EnvironmentImporter,
        ImportMethod,
        ImportOptions,
        import_into_new_profile,
    )
    from regtestenv.node.client import JsonRpcNodeClient
    from regtestenv.profiles.manager import ProfileManager

    options = ImportOptions(
        archive_path=archive,
        method=ImportMethod(method),
        skip_verification=skip_verification,
    )
    try:
        manager = ProfileManager(obj["home"])
        if force:
            config, profile = _load_config(obj)
            with JsonRpcNodeClient.from_config(config.bitcoin) as client:
                result = EnvironmentImporter(
                    config,
                    client,
                    client_factory=lambda cfg: JsonRpcNodeClient.from_config(cfg.bitcoin),
                ).import_environment(options)
            if result.success:
                if profile is not None:
                    manager.update_profile(profile.id, result.config)
                else:
                    result.config.save(obj["config_path"])
        else:
            manager.initialize(confirm=_confirm_legacy_wipe)
            result, profile = import_into_new_profile(
                manager, archive, options, profile_name=profile_name
            )
    except Exception as e:
        _fail(e)

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)

    if not result.success:
        click.echo("Import failed:", err=True)
        for error in result.error_details:
            _echo_error(error)
        raise SystemExit(1)

    click.echo("Environment imported")
    if profile is not None:
        click.echo(f"  Profile:         {profile.name} ({profile.id})")
    click.echo(f"  Method:          {result.method.value}")
    click.echo(f"  Block height:    {result.block_height}")
    click.echo(f"  Wallets:         {', '.join(result.wallets_imported) or 'none'}")
    click.echo(f"  Multisig:        {', '.join(result.caravan_wallets_imported) or 'none'}")


@main.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the raw manifest")
def inspect(archive: Path, as_json: bool) -> None:
    """Show an archive's manifest without importing it."""
    from regtestenv.environment.importer import inspect_archive
    from regtestenv.manifest.hash import compute_manifest_hash

    try:
        manifest = inspect_archive(archive)
    except Exception as e:
        _fail(e)

    if as_json:
        click.echo(manifest.to_json(indent=True))
        return

    state = manifest.blockchain_state
    contents = manifest.contents
    click.echo("=== Environment Manifest ===")
    click.echo(f"Name: {manifest.name}")
    if manifest.description:
        click.echo(f"Description: {manifest.description}")
    click.echo(f"Created: {manifest.created_at}")
    if manifest.created_by:
        click.echo(f"Author: {manifest.created_by}")
    click.echo(f"Schema: {manifest.version}")
    click.echo(f"Bitcoin Core: {manifest.bitcoin_core_version or 'unknown'}")
    click.echo(f"Network: {manifest.network}")
    click.echo(f"Mode: {manifest.mode.value}")
    click.echo(f"Block Height: {state.block_height}")
    click.echo(f"Block Hash: {state.block_hash}")
    click.echo(f"Fingerprint: {compute_manifest_hash(manifest)}")

    click.echo("\n=== Contents ===")
    click.echo(f"Wallets: {', '.join(contents.bitcoin_wallets) or 'none'}")
    click.echo(f"Multisig configs: {', '.join(contents.caravan_wallets) or 'none'}")
    click.echo(f"Key files: {len(contents.key_files)}")
    click.echo(f"Scenarios: {len(contents.scenarios)}")
    click.echo(f"Blockchain data: {'yes' if contents.has_blockchain_data else 'no'}")
    click.echo(f"Replay script: {'yes' if contents.has_replay_script else 'no'}")


@main.command("diff")
@click.argument("archive_a", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("archive_b", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def diff_archives(archive_a: Path, archive_b: Path) -> None:
    """Compare the manifests of two archives."""
    from regtestenv.environment.importer import inspect_archive
    from regtestenv.manifest.hash import compare_manifests

    try:
        manifest_a = inspect_archive(archive_a)
        manifest_b = inspect_archive(archive_b)
    except Exception as e:
        _fail(e)

    click.echo(f"Comparing: {manifest_a.name} vs {manifest_b.name}")
    click.echo(
        f"Heights: {manifest_a.blockchain_state.block_height} vs "
        f"{manifest_b.blockchain_state.block_height}"
    )

    comparison = compare_manifests(manifest_a, manifest_b)
    for key, matched in comparison.items():
        label = key.removesuffix("_match").replace("_", " ")
        click.echo(f"  {'✓' if matched else '✗'} {label}")

    wallets_a = set(manifest_a.contents.bitcoin_wallets)
    wallets_b = set(manifest_b.contents.bitcoin_wallets)
    if wallets_b - wallets_a:
        click.echo(f"\n+ Added wallets: {', '.join(sorted(wallets_b - wallets_a))}")
    if wallets_a - wallets_b:
        click.echo(f"\n- Removed wallets: {', '.join(sorted(wallets_a - wallets_b))}")


@main.group()
def profile() -> None:
    """Profile management commands."""
    pass


@profile.command("list")
@click.pass_obj
def profile_list(obj: dict) -> None:
    """List profiles; the active one is marked with *."""
    from regtestenv.profiles.manager import ProfileManager

    try:
        manager = ProfileManager(obj["home"])
        profiles = manager.list_profiles()
        active = manager.get_active_profile()
    except Exception as e:
        _fail(e)

    if not profiles:
        click.echo("No profiles found")
        return

    active_id = active.id if active is not None else None
    for p in profiles:
        marker = "*" if p.id == active_id else " "
        click.echo(f"{marker} {p.id}  {p.name}  [{p.mode.value}]  last used {p.last_used_at}")


@profile.command("activate")
@click.argument("profile_id")
@click.pass_obj
def profile_activate(obj: dict, profile_id: str) -> None:
    """Make a profile the active one."""
    from regtestenv.profiles.manager import ProfileManager

    try:
        ProfileManager(obj["home"]).set_active_profile(profile_id)
    except Exception as e:
        _fail(e)
    click.echo(f"Active profile: {profile_id}")


@profile.command("rename")
@click.argument("profile_id")
@click.argument("new_name")
@click.pass_obj
def profile_rename(obj: dict, profile_id: str, new_name: str) -> None:
    """Rename a profile."""
    from regtestenv.profiles.manager import ProfileManager

    try:
        ProfileManager(obj["home"]).rename_profile(profile_id, new_name)
    except Exception as e:
        _fail(e)
    click.echo(f"Renamed {profile_id} to '{new_name}'")


@profile.command("delete")
@click.argument("profile_id")
@click.confirmation_option(prompt="Delete this profile and all of its data?")
@click.pass_obj
def profile_delete(obj: dict, profile_id: str) -> None:
    """Delete a profile and its directory."""
    from regtestenv.profiles.manager import ProfileManager

    try:
        ProfileManager(obj["home"]).delete_profile(profile_id)
    except Exception as e:
        _fail(e)
    click.echo(f"Deleted profile {profile_id}")
