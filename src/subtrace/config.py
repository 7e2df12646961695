"""
Configuration management (SSOT).

This module defines ALL configuration for the subtrace engine.
All config keys are defined here; no other module should invent config keys.

Decision thresholds (auto-import 85, review floor 50) are business rules and
live as constants in subtrace.confidence, not here.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class OracleConfig:
    """Extraction Oracle (Ollama) configuration.

    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - call_timeout_seconds: Hard per-email limit; a stalled call fails that email only
    """

    ollama_url: str = "http://localhost:11434"
    auth_header: str | None = None
    model: str = "qwen2.5:7b-instruct-q4_K_M"
    # HTTP read timeout (seconds)
    timeout_seconds: int = 60
    # Per-email ceiling enforced by the extractor (seconds)
    call_timeout_seconds: float = 90.0
    # Mandatory delay between two Oracle calls (seconds)
    rate_limit_seconds: float = 0.5
    # Cache TTL (days)
    cache_ttl_days: int = 30

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class SourceConfig:
    """Email and transaction source endpoints (reference HTTP adapters)."""

    email_base_url: str = ""
    email_token: str = ""
    bank_base_url: str = ""
    bank_token: str = ""
    # Page size requested from paginated sources
    page_size: int = 50
    # Request timeout (seconds)
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class DetectionConfig:
    """Normalization settings."""

    # Currency assumed when a candidate carries none
    home_currency: str = "INR"
    # Optional alias table overriding the packaged one
    alias_table_path: Path | None = None


@dataclass
class ScanConfig:
    """Scan windows and batching."""

    max_emails: int = 200
    email_days_back: int = 365
    bank_days_back: int = 90
    # Emails per normalize/dedup/decide unit during a deep scan
    deep_scan_chunk_size: int = 25
    # Concurrent accounts in a batch run
    max_parallel_accounts: int = 4


@dataclass
class ReportConfig:
    """Deep-scan report settings."""

    # Monthly-equivalent amount above which a rarely seen service is a cancel suggestion
    expense_threshold: float = 500.0
    # Yearly spend that triggers the high-spending recommendation
    high_spending_threshold: float = 50_000.0
    # Service count that triggers the subscription-overload recommendation
    overload_service_count: int = 10


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    oracle: OracleConfig = field(default_factory=OracleConfig)
    sources: SourceConfig = field(default_factory=SourceConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/subtrace.db"))
    user_id: str = "default"

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.oracle.ollama_url:
            errors.append("oracle.ollama_url is required")
        if self.oracle.rate_limit_seconds < 0:
            errors.append("oracle.rate_limit_seconds must be >= 0")
        if self.oracle.call_timeout_seconds <= 0:
            errors.append("oracle.call_timeout_seconds must be > 0")

        currency = self.detection.home_currency
        if not currency or len(currency) != 3 or not currency.isalpha():
            errors.append("detection.home_currency must be a 3-letter ISO code")

        if self.scan.max_emails <= 0:
            errors.append("scan.max_emails must be > 0")
        if self.scan.email_days_back <= 0 or self.scan.bank_days_back <= 0:
            errors.append("scan days_back values must be > 0")
        if self.scan.deep_scan_chunk_size <= 0:
            errors.append("scan.deep_scan_chunk_size must be > 0")
        if self.scan.max_parallel_accounts <= 0:
            errors.append("scan.max_parallel_accounts must be > 0")

        if self.report.expense_threshold < 0:
            errors.append("report.expense_threshold must be >= 0")

        if not self.user_id:
            errors.append("user_id is required")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigValidationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigValidationError(f"{name} must be a number, got {value!r}")


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_TIMEOUT (HTTP read timeout in seconds)
    - SUBTRACE_RATE_LIMIT_SECONDS (delay between Oracle calls)
    - SUBTRACE_EMAIL_URL / SUBTRACE_EMAIL_TOKEN
    - SUBTRACE_BANK_URL / SUBTRACE_BANK_TOKEN
    - SUBTRACE_HOME_CURRENCY
    - SUBTRACE_DB_PATH
    - SUBTRACE_USER
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{config_path}: top level must be a mapping")

    # Oracle config
    oracle_data = data.get("oracle", {})
    oracle = OracleConfig(
        ollama_url=os.environ.get(
            "OLLAMA_URL", oracle_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", oracle_data.get("auth_header")),
        model=os.environ.get(
            "OLLAMA_MODEL", oracle_data.get("model", "qwen2.5:7b-instruct-q4_K_M")
        ),
        timeout_seconds=_env_int("OLLAMA_TIMEOUT", oracle_data.get("timeout_seconds", 60)),
        call_timeout_seconds=oracle_data.get("call_timeout_seconds", 90.0),
        rate_limit_seconds=_env_float(
            "SUBTRACE_RATE_LIMIT_SECONDS", oracle_data.get("rate_limit_seconds", 0.5)
        ),
        cache_ttl_days=oracle_data.get("cache_ttl_days", 30),
    )

    # Sources config
    source_data = data.get("sources", {})
    sources = SourceConfig(
        email_base_url=os.environ.get(
            "SUBTRACE_EMAIL_URL", source_data.get("email_base_url", "")
        ),
        email_token=os.environ.get("SUBTRACE_EMAIL_TOKEN", source_data.get("email_token", "")),
        bank_base_url=os.environ.get("SUBTRACE_BANK_URL", source_data.get("bank_base_url", "")),
        bank_token=os.environ.get("SUBTRACE_BANK_TOKEN", source_data.get("bank_token", "")),
        page_size=source_data.get("page_size", 50),
        timeout_seconds=source_data.get("timeout_seconds", 30),
        max_retries=source_data.get("max_retries", 3),
    )

    # Detection config
    detection_data = data.get("detection", {})
    alias_path = detection_data.get("alias_table_path")
    detection = DetectionConfig(
        home_currency=os.environ.get(
            "SUBTRACE_HOME_CURRENCY", detection_data.get("home_currency", "INR")
        ).upper(),
        alias_table_path=Path(alias_path) if alias_path else None,
    )

    # Scan config
    scan_data = data.get("scan", {})
    scan = ScanConfig(
        max_emails=scan_data.get("max_emails", 200),
        email_days_back=scan_data.get("email_days_back", 365),
        bank_days_back=scan_data.get("bank_days_back", 90),
        deep_scan_chunk_size=scan_data.get("deep_scan_chunk_size", 25),
        max_parallel_accounts=scan_data.get("max_parallel_accounts", 4),
    )

    # Report config
    report_data = data.get("report", {})
    report = ReportConfig(
        expense_threshold=report_data.get("expense_threshold", 500.0),
        high_spending_threshold=report_data.get("high_spending_threshold", 50_000.0),
        overload_service_count=report_data.get("overload_service_count", 10),
    )

    state_db = os.environ.get("SUBTRACE_DB_PATH", data.get("state_db_path", "data/subtrace.db"))

    return Config(
        oracle=oracle,
        sources=sources,
        detection=detection,
        scan=scan,
        report=report,
        state_db_path=Path(state_db),
        user_id=os.environ.get("SUBTRACE_USER", data.get("user_id", "default")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# subtrace configuration
#
# Environment variables override these values (see subtrace.config.load_config).

# Extraction Oracle (Ollama)
oracle:
  ollama_url: "http://localhost:11434"     # Ollama server URL (localhost, LAN, or remote)
  auth_header: null                        # Optional auth header for proxied deployments
  model: "qwen2.5:7b-instruct-q4_K_M"
  timeout_seconds: 60                      # HTTP read timeout
  call_timeout_seconds: 90                 # Per-email ceiling; the email is skipped on expiry
  rate_limit_seconds: 0.5                  # Mandatory delay between Oracle calls
  cache_ttl_days: 30

# Email and bank transaction providers (JSON REST)
sources:
  email_base_url: ""
  email_token: ""
  bank_base_url: ""
  bank_token: ""
  page_size: 50
  timeout_seconds: 30
  max_retries: 3

detection:
  home_currency: "INR"                     # Used when a candidate carries no currency
  alias_table_path: null                   # Custom alias table (YAML); packaged table if null

scan:
  max_emails: 200
  email_days_back: 365
  bank_days_back: 90
  deep_scan_chunk_size: 25                 # Emails per committed unit in a deep scan
  max_parallel_accounts: 4

report:
  expense_threshold: 500                   # Monthly cost above which rare services are flagged
  high_spending_threshold: 50000           # Yearly spend that triggers a recommendation
  overload_service_count: 10

# State database path
state_db_path: "data/subtrace.db"

# Account owner for CLI runs
user_id: "default"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
