import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def make_async_db_url(url: str) -> str:
    """Accepts Railway-style DATABASE_URL and returns sqlalchemy async url."""
    if url.startswith("postgresql+asyncpg://") or url.startswith("sqlite+aiosqlite://"):
        return url
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    raise RuntimeError("Unsupported DATABASE_URL format")


@dataclass(frozen=True)
class Settings:
    bot_token: str = ""
    database_url: str = ""

    # Gateway panels
    # xui: real 3x-ui panels over HTTP
    # fake: in-memory panels (dev/test), never used as a fallback for xui
    gateway_mode: str = "xui"  # xui | fake
    panel_session_ttl_seconds: int = 1800
    panel_probe_timeout_seconds: float = 5
    panel_provision_timeout_seconds: float = 15
    # Fernet secret for servers.xui_password; empty keeps plaintext
    panel_secret_key: str | None = None

    # Subscription bundle
    subscription_base_url: str = "https://vpntest.digital"
    subscription_import_scheme: str = "v2raytun"
    subscription_title: str = "GramVPN Subscription"
    subscription_headers: bool = False

    # business defaults
    trial_days: int = 3
    referral_bonus_days: int = 7

    log_level: str = "INFO"

    def require_runtime(self) -> None:
        if not self.bot_token:
            raise RuntimeError("BOT_TOKEN is missing")
        if not self.database_url:
            raise RuntimeError("DATABASE_URL is missing")
        if self.gateway_mode not in ("xui", "fake"):
            raise RuntimeError(f"Unsupported GATEWAY_MODE: {self.gateway_mode}")


def _load_settings() -> Settings:
    database_url_raw = os.getenv("DATABASE_URL", "").strip()

    return Settings(
        bot_token=(os.getenv("BOT_TOKEN") or "").strip(),
        database_url=make_async_db_url(database_url_raw) if database_url_raw else "",
        gateway_mode=os.getenv("GATEWAY_MODE", "xui").strip().lower(),
        panel_session_ttl_seconds=int(os.getenv("PANEL_SESSION_TTL_SECONDS", "1800")),
        panel_probe_timeout_seconds=float(os.getenv("PANEL_PROBE_TIMEOUT_SECONDS", "5")),
        panel_provision_timeout_seconds=float(os.getenv("PANEL_PROVISION_TIMEOUT_SECONDS", "15")),
        panel_secret_key=(os.getenv("PANEL_SECRET_KEY") or "").strip() or None,
        subscription_base_url=os.getenv("SUBSCRIPTION_BASE_URL", "https://vpntest.digital").strip().rstrip("/"),
        subscription_import_scheme=os.getenv("SUBSCRIPTION_IMPORT_SCHEME", "v2raytun").strip(),
        subscription_title=os.getenv("SUBSCRIPTION_TITLE", "GramVPN Subscription").strip(),
        subscription_headers=_env_bool("SUBSCRIPTION_HEADERS", False),
        trial_days=int(os.getenv("TRIAL_DAYS", "3")),
        referral_bonus_days=int(os.getenv("REFERRAL_BONUS_DAYS", "7")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )


settings = _load_settings()
