"""Tests for profile isolation."""

from pathlib import Path

import pytest

from regtestenv.core.config import AppConfig, DockerConfig, DockerVolumes, SetupMode
from regtestenv.core.errors import LegacyLayoutDeclined, ProfileError
from regtestenv.core.json_canonical import canonical_json_dumps, read_json_file, write_json_file
from regtestenv.profiles.manager import ProfileManager, scope_config


@pytest.fixture
def manager(tmp_path: Path) -> ProfileManager:
    manager = ProfileManager(tmp_path / "home")
    manager.initialize()
    return manager


def _docker_config() -> AppConfig:
    return AppConfig(mode=SetupMode.DOCKER, docker=DockerConfig(enabled=True))


class TestScopeConfig:
    """Tests for scope_config."""

    def test_paths_inside_directory(self, tmp_path: Path):
        """Every path-bearing field points inside the profile."""
        root = tmp_path / "p1"
        scoped = scope_config(_docker_config(), root)
        assert scoped.app_dir == str(root)
        assert scoped.caravan_dir == str(root / "wallets")
        assert scoped.keys_dir == str(root / "keys")
        assert scoped.scenarios_dir == str(root / "scenarios")
        assert scoped.snapshots.directory == str(root / "snapshots")
        assert scoped.docker.volumes.bitcoin_data == str(root / "docker-data" / "bitcoin-data")

    def test_idempotent(self, tmp_path: Path):
        """Scoping twice gives byte-identical output."""
        once = scope_config(_docker_config(), tmp_path / "p1")
        twice = scope_config(once, tmp_path / "p1")
        assert canonical_json_dumps(once.to_wire()) == canonical_json_dumps(twice.to_wire())

    def test_input_not_modified(self, tmp_path: Path):
        """The source config is left alone."""
        config = _docker_config()
        scope_config(config, tmp_path / "p1")
        assert config.app_dir == ""
        assert config.docker.volumes.bitcoin_data == ""

    def test_manual_data_dir_untouched(self, tmp_path: Path):
        """The shared manual node's data dir is not scoped."""
        config = AppConfig()
        config.bitcoin.data_dir = "/srv/bitcoin"
        assert scope_config(config, tmp_path / "p1").bitcoin.data_dir == "/srv/bitcoin"

    def test_coordinator_only_when_set(self, tmp_path: Path):
        """An empty coordinator volume stays empty."""
        root = tmp_path / "p1"
        assert scope_config(_docker_config(), root).docker.volumes.coordinator == ""
        config = AppConfig(
            mode=SetupMode.DOCKER,
            docker=DockerConfig(volumes=DockerVolumes(coordinator="/old/coord")),
        )
        scoped = scope_config(config, root)
        assert scoped.docker.volumes.coordinator == str(root / "docker-data" / "coordinator")


class TestInitialize:
    """Tests for base directory preparation."""

    def test_fresh_base(self, tmp_path: Path):
        """A fresh base gets a registry with a null active profile."""
        manager = ProfileManager(tmp_path / "home")
        manager.initialize()
        index = read_json_file(manager.index_path)
        assert index == {"activeProfileId": None, "profiles": []}

    def test_legacy_declined_leaves_files(self, tmp_path: Path):
        """Declining the wipe raises and touches nothing."""
        base = tmp_path / "home"
        write_json_file(base / "config.json", {"mode": "manual"})
        (base / "wallets").mkdir()
        (base / "wallets" / "vault_config.json").write_text("{}")
        manager = ProfileManager(base)

        with pytest.raises(LegacyLayoutDeclined):
            manager.initialize(confirm=lambda markers: False)
        assert (base / "config.json").is_file()
        assert (base / "wallets" / "vault_config.json").is_file()
        assert not manager.profiles_dir.exists()

    def test_legacy_without_confirm(self, tmp_path: Path):
        """Without a confirm callback legacy data is never removed."""
        base = tmp_path / "home"
        (base / "keys").mkdir(parents=True)
        with pytest.raises(LegacyLayoutDeclined):
            ProfileManager(base).initialize()
        assert (base / "keys").is_dir()

    def test_legacy_accepted_wipes(self, tmp_path: Path):
        """Accepting the wipe clears the base and creates the registry."""
        base = tmp_path / "home"
        write_json_file(base / "profiles" / "old_profile.json", {"name": "old"})
        (base / "docker-data").mkdir()
        manager = ProfileManager(base)

        seen = []
        manager.initialize(confirm=lambda markers: seen.extend(markers) or True)
        assert base / "docker-data" in seen
        assert base / "profiles" / "old_profile.json" in seen
        assert sorted(p.name for p in base.iterdir()) == ["profiles"]
        assert manager.index_path.is_file()
        assert manager.detect_legacy_layout() == []


class TestProfileManager:
    """Tests for profile registry operations."""

    def test_create_docker_profile(self, manager: ProfileManager):
        """Docker profiles get the full directory tree and a scoped config."""
        profile = manager.create_profile("team", SetupMode.DOCKER, _docker_config())
        directory = Path(profile.directory)
        assert directory.parent == manager.profiles_dir
        assert profile.id.startswith("profile_")
        for sub in ("wallets", "keys", "snapshots", "scenarios", "logs",
                    "docker-data/bitcoin-data", "docker-data/nginx"):
            assert (directory / sub).is_dir()
        config = manager.get_profile_config(profile.id)
        assert config.app_dir == str(directory)
        assert config.mode == SetupMode.DOCKER

    def test_create_manual_profile(self, manager: ProfileManager):
        """Manual profiles have no docker-data tree."""
        profile = manager.create_profile("local", SetupMode.MANUAL, AppConfig())
        assert not (Path(profile.directory) / "docker-data").exists()

    def test_manual_singleton(self, manager: ProfileManager):
        """A second manual profile is refused before anything is created."""
        manager.create_profile("local", SetupMode.MANUAL, AppConfig())
        before = sorted(manager.profiles_dir.iterdir())
        with pytest.raises(ProfileError):
            manager.create_profile("local 2", SetupMode.MANUAL, AppConfig())
        assert sorted(manager.profiles_dir.iterdir()) == before
        assert len(manager.list_profiles()) == 1

    def test_many_docker_profiles(self, manager: ProfileManager):
        """Docker profiles are not limited and get distinct directories."""
        a = manager.create_profile("a", SetupMode.DOCKER, _docker_config())
        b = manager.create_profile("b", SetupMode.DOCKER, _docker_config())
        assert a.id != b.id
        assert a.directory != b.directory
        assert len(manager.get_profiles_by_mode(SetupMode.DOCKER)) == 2

    def test_mode_overrides_config(self, manager: ProfileManager):
        """The profile's mode wins over the config's."""
        profile = manager.create_profile("team", SetupMode.DOCKER, AppConfig(docker=DockerConfig()))
        assert manager.get_profile_config(profile.id).mode == SetupMode.DOCKER

    def test_activate(self, manager: ProfileManager):
        """Activation sets the pointer."""
        profile = manager.create_profile("team", SetupMode.DOCKER, _docker_config())
        assert manager.get_active_profile() is None
        manager.set_active_profile(profile.id)
        assert manager.get_active_profile().id == profile.id

    def test_rename(self, manager: ProfileManager):
        """Renaming updates the registry."""
        profile = manager.create_profile("team", SetupMode.DOCKER, _docker_config())
        manager.rename_profile(profile.id, "renamed")
        assert manager.get_profile(profile.id).name == "renamed"

    def test_update_rescopes(self, manager: ProfileManager, tmp_path: Path):
        """Updated configs are scoped back into the profile directory."""
        profile = manager.create_profile("team", SetupMode.DOCKER, _docker_config())
        config = manager.get_profile_config(profile.id)
        config.app_dir = str(tmp_path / "elsewhere")
        config.docker.ports.nginx = 8090
        manager.update_profile(profile.id, config)
        saved = manager.get_profile_config(profile.id)
        assert saved.app_dir == profile.directory
        assert saved.docker.ports.nginx == 8090

    def test_delete_clears_pointer(self, manager: ProfileManager):
        """Deleting the active profile removes its tree and clears the pointer."""
        profile = manager.create_profile("team", SetupMode.DOCKER, _docker_config())
        manager.set_active_profile(profile.id)
        manager.delete_profile(profile.id)
        assert not Path(profile.directory).exists()
        assert manager.list_profiles() == []
        assert read_json_file(manager.index_path)["activeProfileId"] is None

    def test_delete_other_keeps_pointer(self, manager: ProfileManager):
        """Deleting an inactive profile keeps the active one."""
        a = manager.create_profile("a", SetupMode.DOCKER, _docker_config())
        b = manager.create_profile("b", SetupMode.DOCKER, _docker_config())
        manager.set_active_profile(a.id)
        manager.delete_profile(b.id)
        assert manager.get_active_profile().id == a.id

    @pytest.mark.parametrize("action", ["activate", "rename", "delete", "config"])
    def test_unknown_profile(self, manager: ProfileManager, action):
        """Operations on unknown ids raise ProfileError."""
        calls = {
            "activate": lambda: manager.set_active_profile("nope"),
            "rename": lambda: manager.rename_profile("nope", "x"),
            "delete": lambda: manager.delete_profile("nope"),
            "config": lambda: manager.get_profile_config("nope"),
        }
        with pytest.raises(ProfileError):
            calls[action]()
