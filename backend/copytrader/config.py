"""Application configuration via environment variables and .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Global application settings loaded from env / .env."""

    # Server
    app_host: str = "127.0.0.1"
    app_port: int = 8787

    # Database – default is relative to the backend/ directory, not the CWD.
    db_path: str = ""
    database_url_override: str = ""

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""

    # Payment webhooks
    webhook_secret: str = ""
    autoiq_plan_id: str = ""
    default_num_plays: int = 10

    # Execution confirmation
    confirmation_timeout_seconds: float = 90.0
    confirmation_poll_interval_seconds: float = 0.5

    # Trade guards
    market_hours_check_enabled: bool = True
    trade_rate_limit: int = 60
    trade_rate_window_seconds: float = 60.0

    # Follower fan-out
    fanout_concurrency: int = 10

    # Follow cache
    follow_cache_ttl_seconds: float = 300.0
    follow_cache_max_entries: int = 10_000

    # Brokers
    alpaca_live_base_url: str = "https://api.alpaca.markets"
    alpaca_paper_base_url: str = "https://paper-api.alpaca.markets"
    broker_request_timeout_seconds: float = 10.0

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

    @property
    def resolved_db_path(self) -> str:
        """Return an absolute path for the database file.

        If db_path is empty (default), place the file in the backend/ directory.
        If db_path is already absolute, use it as-is.
        If db_path is relative, resolve it relative to backend/.
        """
        backend_dir = Path(__file__).resolve().parent.parent
        if not self.db_path:
            return str(backend_dir / "copy_trader.db")
        p = Path(self.db_path)
        if p.is_absolute():
            return str(p)
        return str(backend_dir / p)

    @property
    def database_url(self) -> str:
        """Return the async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"sqlite+aiosqlite:///{self.resolved_db_path}"

    @property
    def resolved_log_dir(self) -> Path:
        """Directory holding the per-run log folders."""
        if self.log_dir:
            return Path(self.log_dir)
        return Path(__file__).resolve().parent.parent / "logs"

    @property
    def webhook_signing_key(self) -> str:
        """Webhook secret with the provider's ``whsec_`` prefix stripped."""
        secret = self.webhook_secret
        if secret.startswith("whsec_"):
            return secret[len("whsec_"):]
        return secret


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Return the cached application config, creating it on first call."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def reset_config() -> None:
    """Reset the cached config so the next get_config() picks up new env vars."""
    global _config
    _config = None
