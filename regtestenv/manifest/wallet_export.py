"""Per-wallet export records written to ``descriptors/<wallet>.json``."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field

from regtestenv.core.json_canonical import read_json_file, write_json_file
from regtestenv.core.schema import WireModel


class WalletRole(str, Enum):
    SIGNER = "signer"
    WATCH_ONLY = "watch-only"
    REGULAR = "regular"


def classify_wallet_role(wallet_name: str, private_keys_enabled: bool) -> WalletRole:
    """Classify a wallet by naming convention and key availability."""
    if "_watcher" in wallet_name or not private_keys_enabled:
        return WalletRole.WATCH_ONLY
    if "_signer" in wallet_name:
        return WalletRole.SIGNER
    return WalletRole.REGULAR


class DescriptorEntry(WireModel):
    desc: str
    timestamp: int | str = 0
    active: bool | None = None
    internal: bool | None = None
    range: tuple[int, int] | int | None = None
    next: int | None = None

    def to_import_request(self) -> dict[str, Any]:
        """Request entry for ``importdescriptors``, rescanning from now."""
        request: dict[str, Any] = {
            "desc": self.desc,
            "timestamp": "now",
            "active": True if self.active is None else self.active,
        }
        if self.internal is not None:
            request["internal"] = self.internal
        if self.range is not None:
            request["range"] = list(self.range) if isinstance(self.range, tuple) else self.range
        return request


class WalletDescriptorExport(WireModel):
    wallet_name: str
    wallet_type: WalletRole = WalletRole.REGULAR
    is_descriptor_wallet: bool = True
    has_private_keys: bool = False
    descriptors: list[DescriptorEntry] = Field(default_factory=list)


class FullWalletExport(WireModel):
    """Descriptor data plus any linked multisig config and key data."""

    descriptor_export: WalletDescriptorExport
    caravan_config: dict[str, Any] | None = None
    key_data: Any | None = None
    signer_wallets: list[str] | None = None
    watcher_wallet: str | None = None

    @property
    def wallet_name(self) -> str:
        return self.descriptor_export.wallet_name

    def save(self, path: Path) -> None:
        write_json_file(path, self.to_wire())

    @classmethod
    def load(cls, path: Path) -> FullWalletExport:
        return cls.model_validate(read_json_file(path))
