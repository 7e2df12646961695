"""Tests for CLI commands.

Commands that only touch the state database run end to end against a
temporary config; scan commands are covered by the service tests.
"""

import json

import pytest
import yaml

from fixtures import make_detection
from subtrace.runner.main import create_cli, main
from subtrace.schemas.detection import DetectionStatus
from subtrace.state_store import DetectionStore

CLI_USER = "alice"

ENV_OVERRIDES = [
    "OLLAMA_URL",
    "SUBTRACE_DB_PATH",
    "SUBTRACE_USER",
    "SUBTRACE_HOME_CURRENCY",
]


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config pointing at a temporary database."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({"state_db_path": str(tmp_path / "cli.db"), "user_id": CLI_USER})
    )
    return path


@pytest.fixture
def cli_store(tmp_path) -> DetectionStore:
    return DetectionStore(tmp_path / "cli.db")


@pytest.fixture
def pending_id(cli_store) -> str:
    _, stored = cli_store.upsert_pending(CLI_USER, make_detection("spotify", "119"))
    return stored.id


def run(config_file, *argv) -> int:
    return main(["-c", str(config_file), *argv])


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        parser = create_cli()
        commands = [
            ["init-config"],
            ["scan-emails"],
            ["deep-scan"],
            ["scan-bank", "--account", "acc-1"],
            ["list"],
            ["import", "abc"],
            ["reject", "abc"],
            ["price-history"],
            ["status"],
        ]
        for argv in commands:
            assert parser.parse_args(argv).command == argv[0]

    def test_scan_bank_accepts_several_accounts(self):
        args = create_cli().parse_args(["scan-bank", "--account", "a", "--account", "b"])
        assert args.accounts == ["a", "b"]

    def test_scan_bank_requires_account(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["scan-bank"])

    def test_list_defaults_to_pending(self):
        args = create_cli().parse_args(["list"])
        assert args.status == "pending"
        assert args.source is None

    def test_list_rejects_unknown_status(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["list", "--status", "bogus"])

    def test_global_options(self):
        args = create_cli().parse_args(["-v", "-u", "bob", "status"])
        assert args.verbose is True
        assert args.user == "bob"


class TestInitConfig:
    def test_writes_default_config(self, tmp_path, capsys):
        path = tmp_path / "nested" / "config.yaml"

        assert run(path, "init-config") == 0

        assert path.exists()
        assert "Wrote default configuration" in capsys.readouterr().out

    def test_refuses_to_overwrite(self, config_file, capsys):
        before = config_file.read_text()

        assert run(config_file, "init-config") == 1

        assert config_file.read_text() == before
        assert "already exists" in capsys.readouterr().out


class TestMain:
    def test_no_command_prints_help(self, config_file):
        assert main(["-c", str(config_file)]) == 1

    def test_invalid_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("SUBTRACE_HOME_CURRENCY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"detection": {"home_currency": "rupees"}}))

        assert run(path, "status") == 1

        out = capsys.readouterr().out
        assert "Invalid configuration" in out
        assert "home_currency" in out

    def test_unreadable_config(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        assert run(path, "status") == 1
        assert "Failed to load config" in capsys.readouterr().out


class TestReviewCommands:
    def test_list_pending(self, config_file, pending_id, capsys):
        assert run(config_file, "list") == 0

        out = capsys.readouterr().out
        assert "1 detection(s)" in out
        assert pending_id in out
        assert "spotify" in out

    def test_list_json(self, config_file, pending_id, capsys):
        assert run(config_file, "list", "--json") == 0

        data = json.loads(capsys.readouterr().out)
        assert [d["id"] for d in data] == [pending_id]

    def test_list_other_user_is_empty(self, config_file, pending_id, capsys):
        assert run(config_file, "-u", "bob", "list") == 0
        assert "No detections." in capsys.readouterr().out

    def test_import(self, config_file, cli_store, pending_id, capsys):
        assert run(config_file, "import", pending_id) == 0

        assert "Imported" in capsys.readouterr().out
        assert cli_store.get_detection(CLI_USER, pending_id).status == DetectionStatus.IMPORTED
        assert cli_store.get_active_subscription(CLI_USER, "spotify") is not None

    def test_import_twice_fails(self, config_file, pending_id, capsys):
        run(config_file, "import", pending_id)

        assert run(config_file, "import", pending_id) == 1

    def test_import_unknown(self, config_file, capsys):
        assert run(config_file, "import", "nope") == 1
        assert "not found" in capsys.readouterr().out

    def test_reject(self, config_file, cli_store, pending_id, capsys):
        assert run(config_file, "reject", pending_id) == 0

        assert "Rejected spotify" in capsys.readouterr().out
        assert cli_store.get_detection(CLI_USER, pending_id).status == DetectionStatus.REJECTED

    def test_status(self, config_file, pending_id, capsys):
        assert run(config_file, "status") == 0

        out = capsys.readouterr().out
        assert "Detection Status" in out
        assert "Pending review:         1" in out

    def test_price_history_empty(self, config_file, capsys):
        assert run(config_file, "price-history") == 0
        assert "No price history." in capsys.readouterr().out
