"""
Multisig wallet configuration files.

Configs live as ``<slug>_config.json`` in the profile's caravan directory;
associated key material lives as ``<slug>_keys.json`` in the keys
directory. The slug is the config name with whitespace runs replaced by
``_`` and lowercased.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from regtestenv.core.json_canonical import read_json_file, write_json_file

logger = logging.getLogger(__name__)

CONFIG_SUFFIX = "_config.json"
KEYS_SUFFIX = "_keys.json"


def slugify_name(name: str) -> str:
    """
    Slug used for multisig config and key file names.

    Examples:
        >>> slugify_name("Team Vault 2")
        'team_vault_2'
    """
    return re.sub(r"\s+", "_", name).lower()


def config_filename(config: dict[str, Any]) -> str:
    return config.get("filename") or f"{slugify_name(config['name'])}{CONFIG_SUFFIX}"


def keys_filename(config: dict[str, Any]) -> str:
    return f"{slugify_name(config['name'])}{KEYS_SUFFIX}"


@dataclass
class MultisigConfigFile:
    """A multisig config on disk."""

    path: Path
    config: dict[str, Any]

    @property
    def name(self) -> str:
        return self.config.get("name") or self.path.name.replace(CONFIG_SUFFIX, "")

    def matches_wallet(self, wallet_name: str) -> bool:
        """True if this config belongs to the given node wallet."""
        client = self.config.get("client") or {}
        if client.get("walletName") == wallet_name:
            return True
        name = self.config.get("name")
        return bool(name) and wallet_name.startswith(slugify_name(name))


def list_multisig_configs(caravan_dir: Path) -> list[MultisigConfigFile]:
    """Read every parseable ``*.json`` config in ``caravan_dir``."""
    if not caravan_dir.is_dir():
        return []
    configs: list[MultisigConfigFile] = []
    for path in sorted(caravan_dir.glob("*.json")):
        try:
            data = read_json_file(path)
        except ValueError as e:
            logger.warning("Skipping unreadable multisig config %s: %s", path.name, e)
            continue
        if isinstance(data, dict) and data.get("name"):
            configs.append(MultisigConfigFile(path=path, config=data))
    return configs


def save_multisig_config(caravan_dir: Path, config: dict[str, Any]) -> Path:
    """Write a config under its conventional filename, overwriting."""
    path = caravan_dir / config_filename(config)
    write_json_file(path, config)
    return path
