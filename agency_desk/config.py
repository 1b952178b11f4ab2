"""Agency Desk — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class DeskSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Data store ─────────────────────────────────────────────
    database_url: str = "sqlite:///agency_desk.db"
    database_echo: bool = False

    # ── Pricing ────────────────────────────────────────────────
    # XOF / FCFA has no minor unit; set to 2 for cent-based currencies.
    currency_code: str = "XOF"
    currency_decimals: int = 0

    # ── Ledger service ─────────────────────────────────────────
    ledger_base_url: str = ""
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = 10.0

    # ── Operator API ───────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def remote_ledger_enabled(self) -> bool:
        return bool(self.ledger_base_url)


settings = DeskSettings()
