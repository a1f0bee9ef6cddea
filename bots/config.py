"""Configuration helpers for the verification runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

REQUIRED_VARS = (
    "DISCORD_TOKEN",
    "API_USERNAME",
    "API_PASSWORD",
    "IDENFY_API_KEY",
    "IDENFY_API_SECRET",
    "ADMIN_ROLE_ID",
)


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def missing_vars(names=REQUIRED_VARS) -> list[str]:
    return [name for name in names if not os.getenv(name)]


@dataclass(frozen=True)
class GatewaySettings:
    discord_token: str | None
    api_base_url: str
    api_username: str | None
    api_password: str | None
    idenfy_base_url: str
    idenfy_api_key: str | None
    idenfy_api_secret: str | None
    daily_verification_limit: int
    admin_role_id: int | None
    verification_channel_id: int | None
    guild_id: int | None
    webhook_host: str
    webhook_port: int
    ledger_path: Path
    http_timeout: float
    review_notify_policy: str
    debug: bool


def read_gateway_settings() -> GatewaySettings:
    # DEBUG_MODE wins over DEBUG when both are set
    debug_raw = "DEBUG_MODE" if os.getenv("DEBUG_MODE") is not None else "DEBUG"
    policy = os.getenv("REVIEW_NOTIFY_POLICY", "first").strip().lower()
    return GatewaySettings(
        discord_token=os.getenv("DISCORD_TOKEN"),
        api_base_url=os.getenv("API_BASE_URL", "http://localhost:3000"),
        api_username=os.getenv("API_USERNAME"),
        api_password=os.getenv("API_PASSWORD"),
        idenfy_base_url=os.getenv("IDENFY_BASE_URL", "https://ivs.idenfy.com"),
        idenfy_api_key=os.getenv("IDENFY_API_KEY"),
        idenfy_api_secret=os.getenv("IDENFY_API_SECRET"),
        daily_verification_limit=env_int(  # type: ignore[arg-type]
            "DAILY_VERIFICATION_LIMIT", default=25
        ),
        admin_role_id=env_int("ADMIN_ROLE_ID"),
        verification_channel_id=env_int("VERIFICATION_CHANNEL_ID"),
        guild_id=env_int("GUILD_ID"),
        webhook_host=os.getenv("WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=env_int("WEBHOOK_PORT", default=3001),  # type: ignore[arg-type]
        ledger_path=Path(
            os.getenv("LEDGER_PATH", "data/pending_verifications.json")
        ),
        http_timeout=env_float("HTTP_TIMEOUT_SECONDS", default=10.0),
        review_notify_policy=policy,
        debug=env_bool(debug_raw, default=False),
    )
