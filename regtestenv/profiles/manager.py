"""
Profile isolation.

Each profile is a named config plus an exclusively owned directory tree
under ``<base>/profiles/<id>/``. The registry at
``<base>/profiles/index.json`` lists the profiles and points at the active
one. :class:`ProfileManager` is the only writer of the registry.

Layout::

    <base>/profiles/
        index.json
        <id>/
            config.json
            wallets/  keys/  snapshots/  scenarios/  logs/
            docker-data/bitcoin-data/  docker-data/nginx/   # docker only
"""

from __future__ import annotations

import logging
import random
import shutil
import string
import time
from pathlib import Path
from typing import Callable

from pydantic import Field

from regtestenv.core.config import AppConfig, SetupMode
from regtestenv.core.errors import LegacyLayoutDeclined, ProfileError
from regtestenv.core.json_canonical import read_json_file, utc_now_iso, write_json_file
from regtestenv.core.schema import WireModel

logger = logging.getLogger(__name__)

PROFILES_DIRNAME = "profiles"
INDEX_FILENAME = "index.json"
CONFIG_FILENAME = "config.json"
LOG_FILENAME = "regtestenv.log"
PROFILE_SUBDIRS = ("wallets", "keys", "snapshots", "scenarios", "logs")
DOCKER_SUBDIRS = ("docker-data/bitcoin-data", "docker-data/nginx")
LEGACY_DIRS = ("wallets", "keys", "snapshots", "scenarios", "docker-data")
LEGACY_FILES = ("config.json",)


class Profile(WireModel):
    """Registry entry for one profile."""

    id: str
    name: str
    mode: SetupMode
    created_at: str
    last_used_at: str
    config_path: str
    directory: str


class ProfilesIndex(WireModel):
    """The profile registry."""

    active_profile_id: str | None = None
    profiles: list[Profile] = Field(default_factory=list)

    def find(self, profile_id: str) -> Profile | None:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


def scope_config(config: AppConfig, directory: Path) -> AppConfig:
    """
    Point every path-bearing field of ``config`` inside ``directory``.

    Pure and idempotent: the output depends only on ``directory`` and the
    non-path fields, so scoping an already-scoped config changes nothing.
    The manual-mode ``dataDir`` is left alone since a manual node is shared
    and lives outside any profile.

    Args:
        config: Config to scope. Not modified.
        directory: The profile's directory.

    Returns:
        A new, scoped config.
    """
    root = Path(directory)
    scoped = config.model_copy(deep=True)
    scoped.app_dir = str(root)
    scoped.caravan_dir = str(root / "wallets")
    scoped.keys_dir = str(root / "keys")
    scoped.scenarios_dir = str(root / "scenarios")
    scoped.snapshots.directory = str(root / "snapshots")

    if scoped.docker is not None:
        volumes = scoped.docker.volumes
        volumes.bitcoin_data = str(root / "docker-data" / "bitcoin-data")
        if volumes.coordinator:
            volumes.coordinator = str(root / "docker-data" / "coordinator")
    return scoped


def _generate_profile_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"profile_{int(time.time() * 1000)}_{suffix}"


class ProfileManager:
    """
    Registry of isolated profiles under one base directory.

    Args:
        base_dir: Application base directory (``~/.caravan-x`` by default).
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.profiles_dir = self.base_dir / PROFILES_DIRNAME
        self.index_path = self.profiles_dir / INDEX_FILENAME

    # --- initialization ----------------------------------------------------

    def detect_legacy_layout(self) -> list[Path]:
        """
        Find data left by the pre-profile layout.

        Returns:
            Shared top-level data dirs and files outside ``profiles/``, and
            flat ``profiles/*.json`` records other than the index.
        """
        markers: list[Path] = []
        if not self.base_dir.is_dir():
            return markers
        for name in LEGACY_DIRS:
            if (self.base_dir / name).is_dir():
                markers.append(self.base_dir / name)
        for name in LEGACY_FILES:
            if (self.base_dir / name).is_file():
                markers.append(self.base_dir / name)
        if self.profiles_dir.is_dir():
            for path in sorted(self.profiles_dir.glob("*.json")):
                if path.name != INDEX_FILENAME:
                    markers.append(path)
        return markers

    def initialize(self, confirm: Callable[[list[Path]], bool] | None = None) -> None:
        """
        Prepare the base directory for profiles.

        When a legacy layout is found, ``confirm`` is asked before anything
        is touched. Accepting wipes the base directory; declining (or no
        ``confirm``) raises and leaves every file as it was.

        Raises:
            LegacyLayoutDeclined: If legacy data is present and not cleared.
        """
        markers = self.detect_legacy_layout()
        if markers:
            if confirm is None or not confirm(markers):
                raise LegacyLayoutDeclined(
                    "Legacy data layout found and not cleared",
                    suggestions=[
                        f"Back up {self.base_dir} and re-run to migrate to isolated profiles"
                    ],
                )
            logger.warning("Removing legacy data under %s", self.base_dir)
            for child in self.base_dir.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()

        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self._save_index(ProfilesIndex())

    def _load_index(self) -> ProfilesIndex:
        if not self.index_path.is_file():
            return ProfilesIndex()
        return ProfilesIndex.model_validate(read_json_file(self.index_path))

    def _save_index(self, index: ProfilesIndex) -> None:
        # activeProfileId is written even when null
        write_json_file(self.index_path, index.model_dump(by_alias=True, mode="json"))

    def _require(self, index: ProfilesIndex, profile_id: str) -> Profile:
        profile = index.find(profile_id)
        if profile is None:
            raise ProfileError(
                f"Profile {profile_id} not found",
                suggestions=["List profiles with: regtestenv profile list"],
            )
        return profile

    # --- queries -----------------------------------------------------------

    def list_profiles(self) -> list[Profile]:
        return self._load_index().profiles

    def get_profiles_by_mode(self, mode: SetupMode) -> list[Profile]:
        return [p for p in self.list_profiles() if p.mode == mode]

    def get_profile(self, profile_id: str) -> Profile | None:
        return self._load_index().find(profile_id)

    def get_active_profile(self) -> Profile | None:
        index = self._load_index()
        if index.active_profile_id is None:
            return None
        return index.find(index.active_profile_id)

    def log_path(self, profile: Profile) -> Path:
        return Path(profile.directory) / "logs" / LOG_FILENAME

    def get_profile_config(self, profile_id: str) -> AppConfig:
        """
        Load a profile's config.

        Raises:
            ProfileError: If the profile is unknown.
            ConfigError: If its config file is missing or invalid.
        """
        profile = self._require(self._load_index(), profile_id)
        return AppConfig.load(Path(profile.config_path))

    # --- mutations ---------------------------------------------------------

    def create_profile(self, name: str, mode: SetupMode, config: AppConfig) -> Profile:
        """
        Create and register a new profile.

        Args:
            name: Display name.
            mode: Setup mode of the profile.
            config: Config to scope into the profile's directory.

        Returns:
            The registered profile.

        Raises:
            ProfileError: If ``mode`` is manual and a manual profile exists.
                Nothing is created in that case.
        """
        index = self._load_index()
        if mode == SetupMode.MANUAL and any(p.mode == SetupMode.MANUAL for p in index.profiles):
            raise ProfileError(
                "A manual-mode profile already exists",
                suggestions=[
                    "Manual mode shares one local node; use a Docker profile for isolation",
                    "Or delete the existing manual profile first",
                ],
            )

        profile_id = _generate_profile_id()
        while index.find(profile_id) is not None:
            profile_id = _generate_profile_id()

        directory = self.profiles_dir / profile_id
        subdirs = PROFILE_SUBDIRS + (DOCKER_SUBDIRS if mode == SetupMode.DOCKER else ())
        for sub in subdirs:
            (directory / sub).mkdir(parents=True, exist_ok=True)

        config_path = directory / CONFIG_FILENAME
        scoped = scope_config(config.model_copy(update={"mode": mode}), directory)
        scoped.save(config_path)

        now = utc_now_iso()
        profile = Profile(
            id=profile_id,
            name=name,
            mode=mode,
            created_at=now,
            last_used_at=now,
            config_path=str(config_path),
            directory=str(directory),
        )
        index.profiles.append(profile)
        self._save_index(index)
        logger.info("Created %s profile %s (%s)", mode.value, profile_id, name)
        return profile

    def update_profile(self, profile_id: str, config: AppConfig) -> None:
        """Replace a profile's config, re-scoped to its directory."""
        index = self._load_index()
        profile = self._require(index, profile_id)
        scope_config(config, Path(profile.directory)).save(Path(profile.config_path))
        profile.last_used_at = utc_now_iso()
        self._save_index(index)

    def rename_profile(self, profile_id: str, new_name: str) -> None:
        index = self._load_index()
        self._require(index, profile_id).name = new_name
        self._save_index(index)

    def set_active_profile(self, profile_id: str) -> None:
        index = self._load_index()
        profile = self._require(index, profile_id)
        index.active_profile_id = profile_id
        profile.last_used_at = utc_now_iso()
        self._save_index(index)

    def delete_profile(self, profile_id: str) -> None:
        """Remove a profile's directory and registry entry."""
        index = self._load_index()
        profile = self._require(index, profile_id)
        shutil.rmtree(profile.directory, ignore_errors=True)
        index.profiles = [p for p in index.profiles if p.id != profile_id]
        if index.active_profile_id == profile_id:
            index.active_profile_id = None
        self._save_index(index)
        logger.info("Deleted profile %s", profile_id)
