"""
Replay script synthesis.

Builds the declarative script shipped as ``replay.json`` from the wallet
exports gathered during export.
"""

from __future__ import annotations

from typing import Sequence

from regtestenv.manifest.env_manifest import SCHEMA_VERSION
from regtestenv.manifest.wallet_export import FullWalletExport, WalletRole
from regtestenv.replay.steps import (
    CreateWalletParams,
    CreateWalletStep,
    GenerateBlocksParams,
    GenerateBlocksStep,
    ImportCaravanConfigParams,
    ImportCaravanConfigStep,
    ImportDescriptorsParams,
    ImportDescriptorsStep,
    ReplayScript,
    ReplayStep,
)

# Coinbase outputs need 100 confirmations before they are spendable
COINBASE_MATURITY_BLOCKS = 101

SCRIPT_DESCRIPTION = (
    "Declarative script to reconstruct the environment from scratch. "
    "Block hashes will differ from the original since regtest mining is "
    "non-deterministic; wallet sets and balances are what is reproduced."
)


def build_replay_script(
    wallet_exports: Sequence[FullWalletExport],
    target_height: int,
) -> ReplayScript:
    """
    Synthesize a replay script.

    Order: maturity blocks, then per wallet a create step (plus a
    descriptor import when it has descriptors), then one config import per
    associated multisig config, then the blocks still missing to reach
    ``target_height``.

    Args:
        wallet_exports: Exported wallets, in export order.
        target_height: Chain height observed at export.

    Returns:
        The script.
    """
    steps: list[ReplayStep] = [
        GenerateBlocksStep(
            description="Generate initial blocks for coinbase maturity",
            params=GenerateBlocksParams(count=COINBASE_MATURITY_BLOCKS, to_wallet="default"),
        )
    ]

    for export in wallet_exports:
        desc = export.descriptor_export
        if desc.wallet_type == WalletRole.WATCH_ONLY:
            steps.append(
                CreateWalletStep(
                    description=f"Create watch-only wallet: {desc.wallet_name}",
                    params=CreateWalletParams(
                        name=desc.wallet_name,
                        disable_private_keys=True,
                        blank=True,
                        descriptor_wallet=True,
                    ),
                )
            )
        else:
            steps.append(
                CreateWalletStep(
                    description=f"Create wallet: {desc.wallet_name}",
                    params=CreateWalletParams(
                        name=desc.wallet_name,
                        descriptor_wallet=desc.is_descriptor_wallet,
                    ),
                )
            )

        if desc.descriptors:
            steps.append(
                ImportDescriptorsStep(
                    description=f"Import descriptors for: {desc.wallet_name}",
                    params=ImportDescriptorsParams(
                        wallet_name=desc.wallet_name,
                        descriptors=list(desc.descriptors),
                    ),
                )
            )

    for export in wallet_exports:
        if export.caravan_config:
            steps.append(
                ImportCaravanConfigStep(
                    description=f"Import Caravan config: {export.caravan_config.get('name')}",
                    params=ImportCaravanConfigParams(config=export.caravan_config),
                )
            )

    remaining = target_height - COINBASE_MATURITY_BLOCKS
    if remaining > 0:
        steps.append(
            GenerateBlocksStep(
                description=f"Mine remaining blocks to reach height {target_height}",
                params=GenerateBlocksParams(count=remaining, to_wallet="default"),
            )
        )

    return ReplayScript(
        version=SCHEMA_VERSION,
        description=SCRIPT_DESCRIPTION,
        steps=steps,
    )
