"""
Replay script schema.

A replay script is an ordered list of steps. Each step is a tagged variant
selected by its ``type`` field and carries a typed ``params`` payload, so
the interpreter never inspects untyped dicts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from regtestenv.core.errors import ScriptError
from regtestenv.core.json_canonical import read_json_file, write_json_file
from regtestenv.core.schema import WireModel
from regtestenv.manifest.wallet_export import DescriptorEntry

logger = logging.getLogger(__name__)

REPLAY_FILENAME = "replay.json"
MAX_WAIT_MS = 60_000


class CreateWalletParams(WireModel):
    name: str
    disable_private_keys: bool = False
    blank: bool = False
    descriptor_wallet: bool = True


class ImportDescriptorsParams(WireModel):
    wallet_name: str
    descriptors: list[DescriptorEntry] = Field(default_factory=list)


class GenerateBlocksParams(WireModel):
    count: int = Field(ge=0)
    to_wallet: str | None = None


class SendTransactionParams(WireModel):
    from_wallet: str
    address: str
    amount: float


class ImportCaravanConfigParams(WireModel):
    config: dict[str, Any]


class MineToAddressParams(WireModel):
    address: str
    count: int = Field(default=1, ge=0)


class WaitParams(WireModel):
    ms: int = Field(default=1000, ge=0)

    @property
    def bounded_ms(self) -> int:
        return min(self.ms, MAX_WAIT_MS)


class CreateWalletStep(WireModel):
    type: Literal["create_wallet"] = "create_wallet"
    description: str = ""
    params: CreateWalletParams


class ImportDescriptorsStep(WireModel):
    type: Literal["import_descriptors"] = "import_descriptors"
    description: str = ""
    params: ImportDescriptorsParams


class GenerateBlocksStep(WireModel):
    type: Literal["generate_blocks"] = "generate_blocks"
    description: str = ""
    params: GenerateBlocksParams


class SendTransactionStep(WireModel):
    type: Literal["send_transaction"] = "send_transaction"
    description: str = ""
    params: SendTransactionParams


class ImportCaravanConfigStep(WireModel):
    type: Literal["import_caravan_config"] = "import_caravan_config"
    description: str = ""
    params: ImportCaravanConfigParams


class MineToAddressStep(WireModel):
    # "fund_address" is an older name for the same operation
    type: Literal["mine_to_address", "fund_address"] = "mine_to_address"
    description: str = ""
    params: MineToAddressParams


class WaitStep(WireModel):
    type: Literal["wait"] = "wait"
    description: str = ""
    params: WaitParams = Field(default_factory=WaitParams)


ReplayStep = Annotated[
    Union[
        CreateWalletStep,
        ImportDescriptorsStep,
        GenerateBlocksStep,
        SendTransactionStep,
        ImportCaravanConfigStep,
        MineToAddressStep,
        WaitStep,
    ],
    Field(discriminator="type"),
]

_step_adapter: TypeAdapter[ReplayStep] = TypeAdapter(ReplayStep)


def decode_step(raw: dict[str, Any]) -> ReplayStep:
    """
    Decode one wire-format step into its typed variant.

    Raises:
        ScriptError: If the type is unknown or the params do not match.
    """
    try:
        return _step_adapter.validate_python(raw)
    except ValidationError as e:
        step_type = raw.get("type") if isinstance(raw, dict) else None
        raise ScriptError(
            f"Invalid replay step of type {step_type!r}: {e.error_count()} validation error(s)",
            raw_error=e,
        ) from e


class ReplayScript(WireModel):
    """Declarative reconstruction script."""

    version: str = "1.0.0"
    name: str = "Environment Replay Script"
    description: str = ""
    steps: list[ReplayStep] = Field(default_factory=list)

    def save(self, path: Path) -> None:
        write_json_file(path, self.to_wire())

    @classmethod
    def from_wire(cls, data: Any) -> tuple[ReplayScript, list[str]]:
        """
        Decode a script, skipping steps that cannot be decoded.

        Returns:
            The script and one warning per skipped step.

        Raises:
            ScriptError: If the document itself is not a script.
        """
        if not isinstance(data, dict) or not isinstance(data.get("steps", []), list):
            raise ScriptError("Replay script must be an object with a 'steps' list")

        steps: list[ReplayStep] = []
        skipped: list[str] = []
        for i, raw in enumerate(data.get("steps", []), start=1):
            try:
                steps.append(decode_step(raw))
            except ScriptError as e:
                logger.warning("Skipping replay step %d: %s", i, e)
                skipped.append(f"Step {i} skipped: {e}")

        script = cls(
            version=data.get("version", "1.0.0"),
            name=data.get("name", "Environment Replay Script"),
            description=data.get("description", ""),
            steps=steps,
        )
        return script, skipped

    @classmethod
    def load(cls, path: Path) -> tuple[ReplayScript, list[str]]:
        try:
            data = read_json_file(path)
        except ValueError as e:
            raise ScriptError(f"Replay script {path.name} is not valid JSON", raw_error=e) from e
        return cls.from_wire(data)
