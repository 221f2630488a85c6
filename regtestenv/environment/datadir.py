"""
Locating the node's regtest data directory.

Candidates are tried in order and the first existing directory wins.
Docker-mode configs look at the bind-mounted volume and the profile's
``docker-data`` tree; manual-mode configs look at the configured data dir
and the platform defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path

from regtestenv.core.config import AppConfig

logger = logging.getLogger(__name__)


def regtest_dir_candidates(config: AppConfig, home: Path | None = None) -> list[Path]:
    """Ordered list of places the regtest directory may live."""
    candidates: list[Path] = []
    if config.is_docker:
        volume = config.docker.volumes.bitcoin_data
        if volume:
            candidates.append(Path(volume) / "regtest")
        if config.app_dir:
            docker_data = Path(config.app_dir) / "docker-data"
            candidates += [
                docker_data / "bitcoin" / "regtest",
                docker_data / "regtest",
                docker_data / "bitcoin-data" / "regtest",
            ]
        return candidates

    if config.bitcoin.data_dir:
        candidates.append(Path(config.bitcoin.data_dir) / "regtest")
    home = home or Path.home()
    candidates += [
        home / ".bitcoin" / "regtest",
        home / "Library" / "Application Support" / "Bitcoin" / "regtest",
    ]
    return candidates


def _creatable_target(config: AppConfig) -> Path | None:
    if config.is_docker and config.docker.volumes.bitcoin_data:
        return Path(config.docker.volumes.bitcoin_data) / "regtest"
    if not config.is_docker and config.bitcoin.data_dir:
        return Path(config.bitcoin.data_dir) / "regtest"
    return None


def locate_regtest_dir(
    config: AppConfig,
    create_if_missing: bool = False,
    home: Path | None = None,
) -> Path | None:
    """
    Find the regtest data directory.

    Args:
        config: Environment config.
        create_if_missing: Create the canonical location when nothing
            exists yet (fresh profiles before the node's first start).
        home: Home directory for platform defaults.

    Returns:
        The directory, or None if it cannot be determined.
    """
    for candidate in regtest_dir_candidates(config, home):
        if candidate.is_dir():
            return candidate

    if create_if_missing:
        target = _creatable_target(config)
        if target is not None:
            target.mkdir(parents=True, exist_ok=True)
            logger.info("Created regtest directory %s", target)
            return target

    return None
