# breakout/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("breakout.config")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["BTC","ETH"]
      - csv:  "BTC,ETH"
      - json: '["BTC","ETH"]'
    Returns uppercase, trimmed asset symbols.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            log.warning("TRACKED_ASSETS is not valid JSON, parsing as CSV")
    return [p.strip().upper() for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding list fields;
    # the validators below accept both CSV and JSON.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Remote state store ---
    STATE_API_URL: str = ""
    STATE_API_PASSWORD: str = ""
    STATE_POLL_SECONDS: int = 10
    STATE_HTTP_TIMEOUT: float = 15.0
    STATE_MAX_RETRIES: int = 3

    # --- Telegram ---
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: str = ""
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    # --- Price feed ---
    KRAKEN_WS_URL: str = "wss://ws.kraken.com/v2"
    TRACKED_ASSETS: List[str] = Field(default_factory=list)
    FEED_RECONNECT_SECONDS: float = 3.0
    FEED_RECONNECT_MAX_SECONDS: float = 60.0

    # --- Alert engine ---
    ALERT_COOLDOWN_SECONDS: int = 30
    PNL_WARMUP_SECONDS: int = 10
    EVAL_MIN_INTERVAL_MS: int = 500
    CLEAR_FIRED_ON_LEVEL_EDIT: bool = True
    NOTIFY_TIMEZONE: str = "America/New_York"

    # --- Service ---
    API_PASSWORD: str = ""
    DB_PATH: str = "data/breakout.db"
    AUDIT_JSONL_PATH: str = "logs/alert_audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("TRACKED_ASSETS", mode="before")
    @classmethod
    def parse_tracked_assets(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.STATE_API_URL = (self.STATE_API_URL or "").strip().rstrip("/")
        self.TELEGRAM_API_BASE_URL = (
            self.TELEGRAM_API_BASE_URL or "https://api.telegram.org"
        ).strip().rstrip("/")
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

        # keep duplicates out but preserve order
        seen = set()
        assets: List[str] = []
        for a in self.TRACKED_ASSETS:
            if a not in seen:
                seen.add(a)
                assets.append(a)
        self.TRACKED_ASSETS = assets

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not self.STATE_API_URL:
            errors.append("STATE_API_URL is required (remote state store base URL).")
        elif not self.STATE_API_URL.startswith(("http://", "https://")):
            errors.append("STATE_API_URL must start with http:// or https://.")

        if not self.STATE_API_PASSWORD:
            warnings.append(
                "STATE_API_PASSWORD is empty; state requests will be sent without a bearer token."
            )

        if not self.TELEGRAM_BOT_TOKEN or not self.TELEGRAM_CHAT_ID:
            warnings.append(
                "TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID missing. Alerts will only be logged."
            )

        if self.STATE_POLL_SECONDS <= 0:
            errors.append("STATE_POLL_SECONDS must be > 0.")
        if self.STATE_MAX_RETRIES < 0:
            errors.append("STATE_MAX_RETRIES must be >= 0.")

        if self.ALERT_COOLDOWN_SECONDS < 0:
            errors.append("ALERT_COOLDOWN_SECONDS must be >= 0.")
        if self.PNL_WARMUP_SECONDS < 0:
            errors.append("PNL_WARMUP_SECONDS must be >= 0.")
        if self.EVAL_MIN_INTERVAL_MS < 0:
            errors.append("EVAL_MIN_INTERVAL_MS must be >= 0.")

        if self.FEED_RECONNECT_SECONDS <= 0:
            errors.append("FEED_RECONNECT_SECONDS must be > 0.")
        if self.FEED_RECONNECT_MAX_SECONDS < self.FEED_RECONNECT_SECONDS:
            warnings.append(
                "FEED_RECONNECT_MAX_SECONDS is below FEED_RECONNECT_SECONDS; backoff will not grow."
            )

        if self.ALERT_COOLDOWN_SECONDS == 0:
            warnings.append(
                "ALERT_COOLDOWN_SECONDS=0 disables dedup cooldown; persistent alerts will fire every tick."
            )

        if not self.CLEAR_FIRED_ON_LEVEL_EDIT:
            warnings.append(
                "CLEAR_FIRED_ON_LEVEL_EDIT=false: a stop/target that already fired will not fire again after it is moved."
            )

        try:
            from zoneinfo import ZoneInfo

            ZoneInfo(self.NOTIFY_TIMEZONE)
        except Exception:
            errors.append(f"NOTIFY_TIMEZONE is not a known timezone: {self.NOTIFY_TIMEZONE!r}")

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
