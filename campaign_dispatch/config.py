"""Tuning knobs for the dispatch engine and the INI/environment settings loader."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

# Email scheduler
DEFAULT_RATE_HEADROOM = 0.8
DEFAULT_BUDGET_HEADROOM = 0.9
DEFAULT_MIN_SPACING_MS = 50
DEFAULT_MAX_SPACING_MS = 60_000

# Email worker
DEFAULT_LEASE_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_SECONDS = 60.0
DEFAULT_RETRY_MAX_JITTER_SECONDS = 30.0
DEFAULT_SEND_DELAY_MS = 750
DEFAULT_RATE_BACKOFF_MS = 2000
DEFAULT_RATE_MAX_RETRY = 3
DEFAULT_QUEUE_CONCURRENCY = 1
DEFAULT_QUEUE_LIMIT = 5
DEFAULT_STUCK_SECONDS = 300
DEFAULT_STUCK_LIMIT = 50

# SMS pacing
DEFAULT_SMS_GLOBAL_MPS = 12.0
DEFAULT_SMS_CARRIER_MPS = 4.0
DEFAULT_TMOBILE_DAILY_SEGMENTS = 10_000

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class DispatchConfig:
    """Numeric tuning knobs passed explicitly to the scheduler, worker and SMS service."""

    rate_headroom: float = DEFAULT_RATE_HEADROOM
    budget_headroom: float = DEFAULT_BUDGET_HEADROOM
    min_spacing_ms: int = DEFAULT_MIN_SPACING_MS
    max_spacing_ms: int = DEFAULT_MAX_SPACING_MS
    account_for_recent_usage: bool = False

    lease_seconds: int = DEFAULT_LEASE_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    retry_max_jitter_seconds: float = DEFAULT_RETRY_MAX_JITTER_SECONDS
    send_delay_ms: int = DEFAULT_SEND_DELAY_MS
    rate_backoff_ms: int = DEFAULT_RATE_BACKOFF_MS
    rate_max_retry: int = DEFAULT_RATE_MAX_RETRY
    queue_concurrency: int = DEFAULT_QUEUE_CONCURRENCY
    rewrite_links: bool = True
    stuck_seconds: int = DEFAULT_STUCK_SECONDS

    sms_global_mps: float = DEFAULT_SMS_GLOBAL_MPS
    sms_carrier_mps: float = DEFAULT_SMS_CARRIER_MPS
    tmobile_daily_segments: int = DEFAULT_TMOBILE_DAILY_SEGMENTS

    def __post_init__(self) -> None:
        if not 0 < self.rate_headroom <= 1:
            raise ValueError("rate_headroom must be in (0, 1]")
        if not 0 < self.budget_headroom <= 1:
            raise ValueError("budget_headroom must be in (0, 1]")
        if self.min_spacing_ms > self.max_spacing_ms:
            raise ValueError("min_spacing_ms cannot exceed max_spacing_ms")
        self.max_attempts = max(1, int(self.max_attempts))
        self.queue_concurrency = max(1, int(self.queue_concurrency))
        self.lease_seconds = max(1, int(self.lease_seconds))


def _parse_bool(value: str) -> Optional[bool]:
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def load_settings(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with CD_):
      CD_CONFIG - Path to config.ini file (default: config.ini)
      CD_DB_PATH - Database path (default: /data/dispatch.db)
      CD_HOST / CD_PORT - Server binding (default: 0.0.0.0:8000)
      CD_API_TOKEN - API authentication token
      CD_WORKER_INTERVAL - Seconds between automatic worker runs (unset: disabled)
      CD_BASE_URL - Public site URL used for unsubscribe links
      CD_UNSUBSCRIBE_SECRET - HMAC secret for unsubscribe links
      CD_PHYSICAL_ADDRESS - Postal address printed in the compliance footer
      CD_EMAIL_API_URL / CD_EMAIL_API_KEY / CD_EMAIL_FROM - Email provider
      CD_QUOTA_URL - Email provider quota endpoint
      CD_SMS_API_URL / CD_SMS_API_KEY / CD_SMS_PROFILE_ID - SMS gateway
      CD_LOG_DELIVERY_ACTIVITY - Log every delivery outcome (default: False)

    Every field of :class:`DispatchConfig` can be set in the ``[dispatch]`` section
    or through ``CD_<FIELD_NAME_UPPERCASE>``.
    """
    path = Path(config_path or os.getenv("CD_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        parsed = _parse_bool(value)
        return default if parsed is None else parsed

    tuning: Dict[str, Any] = {}
    for field in fields(DispatchConfig):
        raw = get("dispatch", field.name, os.getenv(f"CD_{field.name.upper()}"))
        if raw is None:
            continue
        if field.type in ("bool", bool):
            parsed = _parse_bool(raw)
            if parsed is not None:
                tuning[field.name] = parsed
        elif field.type in ("int", int):
            tuning[field.name] = int(raw)
        else:
            tuning[field.name] = float(raw)

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("CD_DB_PATH", "/data/dispatch.db")),
        "http_host": get("server", "host", os.getenv("CD_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("CD_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("CD_API_TOKEN")),
        "worker_interval": get_float("worker", "interval_seconds", os.getenv("CD_WORKER_INTERVAL")),
        "worker_limit": get_int("worker", "limit", os.getenv("CD_WORKER_LIMIT"), default=DEFAULT_QUEUE_LIMIT),
        "base_url": get("email", "base_url", os.getenv("CD_BASE_URL")),
        "unsubscribe_secret": get("email", "unsubscribe_secret", os.getenv("CD_UNSUBSCRIBE_SECRET")),
        "physical_address": get("email", "physical_address", os.getenv("CD_PHYSICAL_ADDRESS")),
        "email_api_url": get("email", "api_url", os.getenv("CD_EMAIL_API_URL")),
        "email_api_key": get("email", "api_key", os.getenv("CD_EMAIL_API_KEY")),
        "email_from": get("email", "from_address", os.getenv("CD_EMAIL_FROM")),
        "quota_url": get("email", "quota_url", os.getenv("CD_QUOTA_URL")),
        "sms_api_url": get("sms", "api_url", os.getenv("CD_SMS_API_URL")),
        "sms_api_key": get("sms", "api_key", os.getenv("CD_SMS_API_KEY")),
        "sms_profile_id": get("sms", "profile_id", os.getenv("CD_SMS_PROFILE_ID")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("CD_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
        "dispatch": DispatchConfig(**tuning),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings
