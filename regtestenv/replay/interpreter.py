"""
Replay interpreter.

Executes replay steps one at a time against a node client. Steps fail
soft: :meth:`ReplayInterpreter.run` records each failure and moves on to
the next step.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from regtestenv.core.caravan import save_multisig_config
from regtestenv.core.errors import RegtestEnvError, RpcError
from regtestenv.node.client import NodeClient
from regtestenv.replay.steps import (
    CreateWalletStep,
    GenerateBlocksStep,
    ImportCaravanConfigStep,
    ImportDescriptorsStep,
    MineToAddressStep,
    ReplayScript,
    ReplayStep,
    SendTransactionStep,
    WaitStep,
)

logger = logging.getLogger(__name__)

MINING_WALLET = "mining_temp"
# Only reached when no wallet can be listed or created.
FALLBACK_MINING_ADDRESS = "bcrt1qqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqq3l7f0n"


@dataclass
class StepOutcome:
    """Result of one executed step."""

    index: int
    step_type: str
    description: str
    ok: bool
    error: str | None = None


@dataclass
class ReplayReport:
    """Per-step outcomes of a replay run."""

    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def warnings(self) -> list[str]:
        return [
            f"Step {o.index} failed: {o.description} ({o.error})"
            for o in self.outcomes
            if not o.ok
        ]


class ReplayInterpreter:
    """
    Executes replay steps against a node.

    Args:
        client: Node client for RPC calls.
        caravan_dir: Directory that receives imported multisig configs.
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        client: NodeClient,
        caravan_dir: Path,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.caravan_dir = Path(caravan_dir)
        self._sleep = sleep
        self._created: list[str] = []

    @property
    def created_wallets(self) -> list[str]:
        """Wallets created (or found existing) by create steps so far."""
        return list(self._created)

    def execute(self, step: ReplayStep) -> None:
        """
        Execute one step.

        Raises:
            RegtestEnvError: If the step fails in a way that is not
                idempotently ignorable.
        """
        if isinstance(step, CreateWalletStep):
            self._create_wallet(step)
        elif isinstance(step, ImportDescriptorsStep):
            self._import_descriptors(step)
        elif isinstance(step, GenerateBlocksStep):
            if step.params.count > 0:
                self.client.generate_to_address(step.params.count, self._mining_address())
        elif isinstance(step, MineToAddressStep):
            self.client.generate_to_address(step.params.count, step.params.address)
        elif isinstance(step, SendTransactionStep):
            self.client.call(
                "sendtoaddress",
                [step.params.address, step.params.amount],
                step.params.from_wallet,
            )
        elif isinstance(step, ImportCaravanConfigStep):
            save_multisig_config(self.caravan_dir, step.params.config)
        elif isinstance(step, WaitStep):
            self._sleep(step.params.bounded_ms / 1000)
        else:
            raise TypeError(f"Unsupported replay step: {type(step).__name__}")

    def run(self, script: ReplayScript) -> ReplayReport:
        """Execute every step in order, recording failures."""
        report = ReplayReport()
        total = len(script.steps)
        for i, step in enumerate(script.steps, start=1):
            logger.info("[%d/%d] %s", i, total, step.description or step.type)
            try:
                self.execute(step)
            except (RegtestEnvError, OSError) as e:
                logger.warning("Replay step %d failed: %s", i, e)
                report.outcomes.append(
                    StepOutcome(i, step.type, step.description, ok=False, error=str(e))
                )
                continue
            report.outcomes.append(StepOutcome(i, step.type, step.description, ok=True))
        return report

    def _create_wallet(self, step: CreateWalletStep) -> None:
        p = step.params
        try:
            self.client.create_wallet(
                p.name,
                disable_private_keys=p.disable_private_keys,
                blank=p.blank,
                descriptors=p.descriptor_wallet,
            )
        except RpcError as e:
            if "already exists" not in str(e):
                raise
            logger.info("Wallet %s already exists", p.name)
        if p.name not in self._created:
            self._created.append(p.name)

    def _import_descriptors(self, step: ImportDescriptorsStep) -> None:
        p = step.params
        if not p.descriptors:
            return
        results = self.client.import_descriptors(
            p.wallet_name, [d.to_import_request() for d in p.descriptors]
        )
        for entry, result in zip(p.descriptors, results or []):
            if isinstance(result, dict) and not result.get("success", True):
                logger.info(
                    "Descriptor import for %s not applied: %s",
                    p.wallet_name,
                    (result.get("error") or {}).get("message", "unknown error"),
                )

    def _mining_address(self) -> str:
        try:
            wallets = self.client.list_wallets()
            if wallets:
                return self.client.get_new_address(wallets[0])
            self.client.create_wallet(MINING_WALLET)
            return self.client.get_new_address(MINING_WALLET)
        except RpcError as e:
            logger.warning("No mining wallet available, using fallback address: %s", e)
            return FALLBACK_MINING_ADDRESS
