"""Tests for the environment manifest, checksums and wallet export records."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from regtestenv import __version__
from regtestenv.core.json_canonical import read_json_file
from regtestenv.manifest.checksums import (
    BLOCKCHAIN_PAYLOAD,
    compute_directory_checksums,
    sha256_file,
    verify_integrity,
)
from regtestenv.manifest.env_manifest import (
    ArchiveChecksums,
    ArchiveContents,
    BlockchainState,
    EnvironmentManifest,
    RpcSettings,
)
from regtestenv.manifest.hash import compare_manifests, compute_manifest_hash
from regtestenv.manifest.wallet_export import (
    DescriptorEntry,
    FullWalletExport,
    WalletDescriptorExport,
    WalletRole,
    classify_wallet_role,
)


def _manifest(**overrides) -> EnvironmentManifest:
    fields = dict(
        name="alice-env",
        blockchain_state=BlockchainState(block_height=150, block_hash="00" * 32),
        contents=ArchiveContents(
            has_blockchain_data=True, bitcoin_wallets=["watcher", "signer_1"]
        ),
        checksums=ArchiveChecksums(files={"replay.json": "aa"}),
        rpc_config=RpcSettings(rpc_user="u", rpc_password="p", rpc_port=18443, p2p_port=18444),
    )
    fields.update(overrides)
    return EnvironmentManifest(**fields)


class TestEnvironmentManifest:
    """Tests for EnvironmentManifest."""

    def test_defaults(self):
        """Version, tool version and timestamp are filled in."""
        manifest = _manifest()
        assert manifest.version == "1.0.0"
        assert manifest.caravan_x_version == __version__
        assert manifest.created_at.endswith("Z")
        assert manifest.major_version == 1

    def test_wire_names(self, tmp_path: Path):
        """The saved file uses the archive's camelCase names."""
        path = tmp_path / "manifest.json"
        _manifest().save(path)
        data = read_json_file(path)
        assert data["caravanXVersion"] == __version__
        assert data["blockchainState"]["blockHeight"] == 150
        assert data["contents"]["bitcoinWallets"] == ["watcher", "signer_1"]
        assert data["rpcConfig"]["rpcPort"] == 18443

    def test_save_load(self, tmp_path: Path):
        """Saved manifests load back equal."""
        path = tmp_path / "manifest.json"
        manifest = _manifest(description="demo")
        manifest.save(path)
        assert EnvironmentManifest.load(path) == manifest

    def test_frozen(self):
        """Manifests cannot be mutated."""
        with pytest.raises(ValidationError):
            _manifest().name = "other"

    def test_future_major_version(self):
        """Major version is parsed from the schema version."""
        assert _manifest(version="2.1.0").major_version == 2

    def test_rejects_unknown_network(self):
        """Only regtest, signet and testnet are valid networks."""
        with pytest.raises(ValidationError):
            _manifest(network="mainnet")


class TestManifestHash:
    """Tests for manifest fingerprints."""

    def test_ignores_volatile_fields(self):
        """Timestamps and descriptions do not change the fingerprint."""
        a = _manifest(created_at="2024-01-01T00:00:00.000Z", description="a")
        b = _manifest(created_at="2025-01-01T00:00:00.000Z", description="b")
        assert compute_manifest_hash(a) == compute_manifest_hash(b)

    def test_wallet_order_irrelevant(self):
        """Wallet order does not change the fingerprint."""
        a = _manifest()
        b = _manifest(contents=ArchiveContents(
            has_blockchain_data=True, bitcoin_wallets=["signer_1", "watcher"]
        ))
        assert compute_manifest_hash(a) == compute_manifest_hash(b)

    def test_height_changes_hash(self):
        """Different chain tips give different fingerprints."""
        a = _manifest()
        b = _manifest(blockchain_state=BlockchainState(block_height=151, block_hash="11" * 32))
        assert compute_manifest_hash(a) != compute_manifest_hash(b)

    def test_compare_manifests(self):
        """Comparison flags each differing component."""
        a = _manifest()
        b = _manifest(contents=ArchiveContents(bitcoin_wallets=["watcher"]))
        result = compare_manifests(a, b)
        assert result["block_height_match"] is True
        assert result["wallets_match"] is False
        assert result["overall_hash_match"] is False


class TestChecksums:
    """Tests for archive checksums."""

    @pytest.fixture
    def tree(self, tmp_path: Path) -> Path:
        (tmp_path / "descriptors").mkdir()
        (tmp_path / "descriptors" / "watcher.json").write_text('{"a": 1}\n')
        (tmp_path / "scenarios").mkdir()
        (tmp_path / "scenarios" / "spend.js").write_text("x = 1;\n")
        (tmp_path / "notes.txt").write_text("ignored")
        (tmp_path / BLOCKCHAIN_PAYLOAD).write_bytes(b"payload")
        return tmp_path

    def test_known_digest(self, tmp_path: Path):
        """sha256 of empty content is the well-known digest."""
        path = tmp_path / "empty"
        path.write_bytes(b"")
        assert sha256_file(path) == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_relative_posix_keys(self, tree: Path):
        """Only .json and .js files are keyed by relative POSIX path."""
        checksums = compute_directory_checksums(tree)
        assert set(checksums) == {"descriptors/watcher.json", "scenarios/spend.js"}

    def test_deterministic(self, tree: Path):
        """The same tree always gives the same mapping."""
        assert compute_directory_checksums(tree) == compute_directory_checksums(tree)

    def test_verify_clean(self, tree: Path):
        """An untouched tree verifies clean."""
        checksums = ArchiveChecksums(
            blockchain_data=sha256_file(tree / BLOCKCHAIN_PAYLOAD),
            files=compute_directory_checksums(tree),
        )
        assert verify_integrity(tree, checksums) == []

    def test_verify_names_exact_path(self, tree: Path):
        """A modified file is reported by its exact relative path."""
        checksums = ArchiveChecksums(files=compute_directory_checksums(tree))
        (tree / "descriptors" / "watcher.json").write_text('{"a": 2}\n')
        assert verify_integrity(tree, checksums) == ["descriptors/watcher.json"]

    def test_verify_payload(self, tree: Path):
        """A modified payload is reported."""
        checksums = ArchiveChecksums(blockchain_data="0" * 64)
        assert verify_integrity(tree, checksums) == [BLOCKCHAIN_PAYLOAD]

    def test_verify_skips_absent(self, tree: Path):
        """Files missing from the extraction are not reported."""
        checksums = ArchiveChecksums(files={"keys/gone.json": "0" * 64})
        assert verify_integrity(tree, checksums) == []


class TestWalletExport:
    """Tests for wallet export records."""

    @pytest.mark.parametrize(
        "name,keys_enabled,expected",
        [
            ("team_watcher", True, WalletRole.WATCH_ONLY),
            ("anything", False, WalletRole.WATCH_ONLY),
            ("team_signer_1", True, WalletRole.SIGNER),
            ("savings", True, WalletRole.REGULAR),
        ],
    )
    def test_classify_role(self, name, keys_enabled, expected):
        """Roles follow naming convention and key availability."""
        assert classify_wallet_role(name, keys_enabled) == expected

    def test_import_request(self):
        """Import requests rescan from now and keep range and internal."""
        entry = DescriptorEntry(desc="wpkh(x)", timestamp=1700000000, internal=True, range=[0, 999])
        assert entry.to_import_request() == {
            "desc": "wpkh(x)",
            "timestamp": "now",
            "active": True,
            "internal": True,
            "range": [0, 999],
        }

    def test_import_request_keeps_inactive(self):
        """An explicitly inactive descriptor stays inactive."""
        request = DescriptorEntry(desc="wpkh(x)", active=False).to_import_request()
        assert request["active"] is False
        assert "range" not in request

    def test_save_load(self, tmp_path: Path):
        """Exports round-trip through their wire form."""
        export = FullWalletExport(
            descriptor_export=WalletDescriptorExport(
                wallet_name="watcher",
                wallet_type=WalletRole.WATCH_ONLY,
                descriptors=[DescriptorEntry(desc="wpkh(x)", range=[0, 9])],
            ),
            caravan_config={"name": "Vault"},
        )
        path = tmp_path / "watcher.json"
        export.save(path)
        data = read_json_file(path)
        assert data["descriptorExport"]["walletType"] == "watch-only"
        loaded = FullWalletExport.load(path)
        assert loaded.wallet_name == "watcher"
        assert loaded.caravan_config == {"name": "Vault"}
