"""Tests for replay script decoding, synthesis and interpretation."""

from pathlib import Path

import pytest

from conftest import FakeNodeClient, SIGNER_DESCRIPTORS, WATCHER_DESCRIPTORS

from regtestenv.core.errors import ScriptError
from regtestenv.core.json_canonical import read_json_file
from regtestenv.manifest.wallet_export import (
    DescriptorEntry,
    FullWalletExport,
    WalletDescriptorExport,
    WalletRole,
)
from regtestenv.replay.interpreter import (
    FALLBACK_MINING_ADDRESS,
    MINING_WALLET,
    ReplayInterpreter,
)
from regtestenv.replay.planner import COINBASE_MATURITY_BLOCKS, build_replay_script
from regtestenv.replay.steps import (
    CreateWalletParams,
    CreateWalletStep,
    GenerateBlocksParams,
    GenerateBlocksStep,
    ImportCaravanConfigStep,
    ImportDescriptorsStep,
    MineToAddressStep,
    ReplayScript,
    WaitStep,
    decode_step,
)


def _export(name, role, descriptors, caravan_config=None) -> FullWalletExport:
    return FullWalletExport(
        descriptor_export=WalletDescriptorExport(
            wallet_name=name,
            wallet_type=role,
            has_private_keys=role != WalletRole.WATCH_ONLY,
            descriptors=[DescriptorEntry.model_validate(d) for d in descriptors],
        ),
        caravan_config=caravan_config,
    )


class TestDecodeStep:
    """Tests for step decoding."""

    def test_create_wallet(self):
        """Wire params decode into typed params."""
        step = decode_step(
            {"type": "create_wallet", "params": {"name": "w", "disablePrivateKeys": True}}
        )
        assert isinstance(step, CreateWalletStep)
        assert step.params.disable_private_keys is True
        assert step.params.descriptor_wallet is True

    def test_fund_address_alias(self):
        """The older fund_address name decodes as mine_to_address."""
        step = decode_step({"type": "fund_address", "params": {"address": "bcrt1qx", "count": 3}})
        assert isinstance(step, MineToAddressStep)
        assert step.params.count == 3

    def test_wait_defaults(self):
        """Wait without params waits one second."""
        step = decode_step({"type": "wait"})
        assert isinstance(step, WaitStep)
        assert step.params.bounded_ms == 1000

    def test_wait_is_bounded(self):
        """Waits are capped at one minute."""
        step = decode_step({"type": "wait", "params": {"ms": 600_000}})
        assert step.params.bounded_ms == 60_000

    def test_unknown_type(self):
        """Unknown step types raise ScriptError."""
        with pytest.raises(ScriptError):
            decode_step({"type": "teleport", "params": {}})

    def test_bad_params(self):
        """Mismatched params raise ScriptError."""
        with pytest.raises(ScriptError):
            decode_step({"type": "generate_blocks", "params": {"count": -1}})


class TestReplayScript:
    """Tests for script loading."""

    def test_from_wire_skips_bad_steps(self):
        """Undecodable steps are skipped with a warning."""
        script, skipped = ReplayScript.from_wire(
            {
                "steps": [
                    {"type": "generate_blocks", "params": {"count": 1}},
                    {"type": "teleport"},
                    {"type": "wait", "params": {"ms": 5}},
                ]
            }
        )
        assert [s.type for s in script.steps] == ["generate_blocks", "wait"]
        assert len(skipped) == 1
        assert skipped[0].startswith("Step 2 skipped")

    def test_from_wire_rejects_non_script(self):
        """A document without a steps list is not a script."""
        with pytest.raises(ScriptError):
            ReplayScript.from_wire({"steps": "nope"})

    def test_load_invalid_json(self, tmp_path: Path):
        """Unparseable files raise ScriptError."""
        path = tmp_path / "replay.json"
        path.write_text("{oops")
        with pytest.raises(ScriptError):
            ReplayScript.load(path)

    def test_save_load(self, tmp_path: Path):
        """Saved scripts load back with the same steps."""
        script = ReplayScript(
            steps=[GenerateBlocksStep(params=GenerateBlocksParams(count=5, to_wallet="default"))]
        )
        path = tmp_path / "replay.json"
        script.save(path)
        assert read_json_file(path)["steps"][0]["params"]["toWallet"] == "default"
        loaded, skipped = ReplayScript.load(path)
        assert skipped == []
        assert loaded.steps == script.steps


class TestBuildReplayScript:
    """Tests for replay script synthesis."""

    @pytest.fixture
    def exports(self):
        return [
            _export("watcher", WalletRole.WATCH_ONLY, WATCHER_DESCRIPTORS,
                    caravan_config={"name": "Alice Vault"}),
            _export("signer_1", WalletRole.SIGNER, SIGNER_DESCRIPTORS),
            _export("empty", WalletRole.REGULAR, []),
        ]

    def test_step_order(self, exports):
        """Maturity, wallets, configs, then remaining blocks."""
        script = build_replay_script(exports, target_height=150)
        assert [s.type for s in script.steps] == [
            "generate_blocks",
            "create_wallet",
            "import_descriptors",
            "create_wallet",
            "import_descriptors",
            "create_wallet",
            "import_caravan_config",
            "generate_blocks",
        ]

    def test_block_counts(self, exports):
        """Maturity blocks plus the remainder reach the target height."""
        script = build_replay_script(exports, target_height=150)
        assert script.steps[0].params.count == COINBASE_MATURITY_BLOCKS
        assert script.steps[-1].params.count == 150 - COINBASE_MATURITY_BLOCKS

    def test_no_remainder_below_maturity(self, exports):
        """Short chains get only the maturity step."""
        script = build_replay_script(exports, target_height=50)
        assert sum(isinstance(s, GenerateBlocksStep) for s in script.steps) == 1

    def test_watch_only_is_blank(self, exports):
        """Watch-only wallets are created blank without private keys."""
        create = build_replay_script(exports, 150).steps[1]
        assert create.params.name == "watcher"
        assert create.params.disable_private_keys is True
        assert create.params.blank is True

    def test_signer_keeps_keys(self, exports):
        """Signer wallets are created with private keys."""
        create = build_replay_script(exports, 150).steps[3]
        assert create.params.name == "signer_1"
        assert create.params.disable_private_keys is False

    def test_config_step(self, exports):
        """Linked configs become import steps."""
        step = build_replay_script(exports, 150).steps[6]
        assert isinstance(step, ImportCaravanConfigStep)
        assert step.params.config == {"name": "Alice Vault"}


class TestReplayInterpreter:
    """Tests for the replay interpreter."""

    @pytest.fixture
    def client(self):
        return FakeNodeClient()

    @pytest.fixture
    def interpreter(self, client, tmp_path: Path, no_sleep):
        return ReplayInterpreter(client, tmp_path / "wallets", sleep=no_sleep)

    def test_create_existing_wallet_is_ignored(self, client, interpreter):
        """Creating a wallet that exists is not an error."""
        client.add_wallet("watcher")
        interpreter.execute(CreateWalletStep(params=CreateWalletParams(name="watcher")))
        assert interpreter.created_wallets == ["watcher"]

    def test_generate_creates_mining_wallet(self, client, interpreter):
        """Without any wallet a temporary mining wallet is created."""
        interpreter.execute(GenerateBlocksStep(params=GenerateBlocksParams(count=101)))
        assert MINING_WALLET in client.wallets
        assert client.height == 101

    def test_generate_uses_first_wallet(self, client, interpreter):
        """An existing wallet receives the block rewards."""
        client.add_wallet("miner")
        interpreter.execute(GenerateBlocksStep(params=GenerateBlocksParams(count=2)))
        assert MINING_WALLET not in client.wallets
        assert ("getnewaddress", [], "miner") in client.calls

    def test_fallback_mining_address(self, client, interpreter):
        """A fixed address is used when no wallet is available."""
        client.fail["createwallet"] = "disk full"
        interpreter.execute(GenerateBlocksStep(params=GenerateBlocksParams(count=1)))
        method, params, _ = client.calls[-1]
        assert method == "generatetoaddress"
        assert params[1] == FALLBACK_MINING_ADDRESS

    def test_import_descriptors_rescan_now(self, client, interpreter):
        """Descriptors are imported with a rescan from now."""
        client.add_wallet("watcher", private_keys=False)
        interpreter.execute(
            ImportDescriptorsStep.model_validate(
                {"params": {"walletName": "watcher", "descriptors": WATCHER_DESCRIPTORS}}
            )
        )
        imported = client.wallets["watcher"].descriptors
        assert len(imported) == 2
        assert all(d["timestamp"] == "now" for d in imported)

    def test_import_caravan_config(self, interpreter, tmp_path: Path):
        """Config steps write a config file."""
        interpreter.execute(
            ImportCaravanConfigStep.model_validate({"params": {"config": {"name": "Team Vault"}}})
        )
        path = tmp_path / "wallets" / "team_vault_config.json"
        assert read_json_file(path) == {"name": "Team Vault"}

    def test_wait_uses_injected_sleep(self, client, tmp_path: Path):
        """Waits go through the sleep function, bounded."""
        slept = []
        interpreter = ReplayInterpreter(client, tmp_path, sleep=slept.append)
        interpreter.execute(decode_step({"type": "wait", "params": {"ms": 120_000}}))
        assert slept == [60.0]

    def test_run_continues_after_failure(self, client, interpreter):
        """Failed steps are recorded and later steps still run."""
        client.fail["sendtoaddress"] = "Insufficient funds"
        script, _ = ReplayScript.from_wire(
            {
                "steps": [
                    {"type": "create_wallet", "description": "make w", "params": {"name": "w"}},
                    {"type": "send_transaction", "description": "pay",
                     "params": {"fromWallet": "w", "address": "bcrt1qx", "amount": 1.0}},
                    {"type": "generate_blocks", "params": {"count": 1}},
                ]
            }
        )
        report = interpreter.run(script)
        assert report.succeeded == 2
        assert report.failed == 1
        assert report.warnings == ["Step 2 failed: pay (Insufficient funds)"]
        assert client.height == 1
        assert interpreter.created_wallets == ["w"]
