"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from subtrace.config import (
    Config,
    ConfigValidationError,
    OracleConfig,
    create_default_config,
    load_config,
)

ENV_VARS = [
    "OLLAMA_URL",
    "OLLAMA_MODEL",
    "OLLAMA_AUTH_HEADER",
    "OLLAMA_TIMEOUT",
    "SUBTRACE_RATE_LIMIT_SECONDS",
    "SUBTRACE_EMAIL_URL",
    "SUBTRACE_EMAIL_TOKEN",
    "SUBTRACE_BANK_URL",
    "SUBTRACE_BANK_TOKEN",
    "SUBTRACE_HOME_CURRENCY",
    "SUBTRACE_DB_PATH",
    "SUBTRACE_USER",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.oracle.ollama_url == "http://localhost:11434"
        assert config.detection.home_currency == "INR"
        assert config.scan.deep_scan_chunk_size == 25
        assert config.state_db_path == Path("data/subtrace.db")
        assert config.validate() == []

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).user_id == "default"

    def test_yaml_values(self, tmp_path):
        path = write_yaml(
            tmp_path / "config.yaml",
            {
                "oracle": {"model": "llama3", "rate_limit_seconds": 2, "cache_ttl_days": 7},
                "sources": {"email_base_url": "https://mail.local", "page_size": 10},
                "detection": {"home_currency": "usd", "alias_table_path": "aliases.yaml"},
                "scan": {"max_emails": 50, "max_parallel_accounts": 2},
                "report": {"expense_threshold": 20},
                "state_db_path": "/tmp/s.db",
                "user_id": "alice",
            },
        )

        config = load_config(path)

        assert config.oracle.model == "llama3"
        assert config.oracle.rate_limit_seconds == 2
        assert config.oracle.cache_ttl_days == 7
        assert config.sources.email_base_url == "https://mail.local"
        assert config.sources.page_size == 10
        assert config.detection.home_currency == "USD"
        assert config.detection.alias_table_path == Path("aliases.yaml")
        assert config.scan.max_emails == 50
        assert config.scan.max_parallel_accounts == 2
        assert config.report.expense_threshold == 20
        assert config.state_db_path == Path("/tmp/s.db")
        assert config.user_id == "alice"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = write_yaml(
            tmp_path / "config.yaml",
            {"oracle": {"model": "from-file"}, "user_id": "from-file"},
        )
        monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434")
        monkeypatch.setenv("OLLAMA_MODEL", "from-env")
        monkeypatch.setenv("OLLAMA_TIMEOUT", "15")
        monkeypatch.setenv("SUBTRACE_RATE_LIMIT_SECONDS", "1.5")
        monkeypatch.setenv("SUBTRACE_BANK_TOKEN", "secret")
        monkeypatch.setenv("SUBTRACE_HOME_CURRENCY", "eur")
        monkeypatch.setenv("SUBTRACE_DB_PATH", "/var/lib/subtrace.db")
        monkeypatch.setenv("SUBTRACE_USER", "bob")

        config = load_config(path)

        assert config.oracle.ollama_url == "http://gpu-box:11434"
        assert config.oracle.model == "from-env"
        assert config.oracle.timeout_seconds == 15
        assert config.oracle.rate_limit_seconds == 1.5
        assert config.sources.bank_token == "secret"
        assert config.detection.home_currency == "EUR"
        assert config.state_db_path == Path("/var/lib/subtrace.db")
        assert config.user_id == "bob"

    def test_bad_env_integer(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OLLAMA_TIMEOUT", "soon")

        with pytest.raises(ConfigValidationError, match="OLLAMA_TIMEOUT"):
            load_config(tmp_path / "absent.yaml")

    def test_bad_env_float(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SUBTRACE_RATE_LIMIT_SECONDS", "fast")

        with pytest.raises(ConfigValidationError, match="SUBTRACE_RATE_LIMIT_SECONDS"):
            load_config(tmp_path / "absent.yaml")

    def test_top_level_must_be_mapping(self, tmp_path):
        path = write_yaml(tmp_path / "config.yaml", ["not", "a", "mapping"])

        with pytest.raises(ConfigValidationError, match="mapping"):
            load_config(path)


class TestValidate:
    def test_defaults_valid(self):
        assert Config().validate() == []

    def test_collects_all_errors(self):
        config = Config(user_id="")
        config.oracle.ollama_url = ""
        config.detection.home_currency = "RUPEE"
        config.scan.deep_scan_chunk_size = 0

        errors = config.validate()

        assert "oracle.ollama_url is required" in errors
        assert "detection.home_currency must be a 3-letter ISO code" in errors
        assert "scan.deep_scan_chunk_size must be > 0" in errors
        assert "user_id is required" in errors

    def test_negative_rate_limit(self):
        config = Config()
        config.oracle.rate_limit_seconds = -1
        assert config.validate() == ["oracle.rate_limit_seconds must be >= 0"]


class TestDefaultConfig:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "conf" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert config.validate() == []
        assert config.oracle.call_timeout_seconds == 90
        assert config.oracle.auth_header is None
        assert config.detection.alias_table_path is None
        assert config.report.high_spending_threshold == 50000


@pytest.mark.parametrize(
    "url,remote",
    [
        ("http://localhost:11434", False),
        ("http://127.0.0.1:11434", False),
        ("http://host.docker.internal:11434", False),
        ("https://ollama.example.com", True),
        ("http://192.168.1.20:11434", True),
    ],
)
def test_is_remote(url, remote):
    assert OracleConfig(ollama_url=url).is_remote() is remote
