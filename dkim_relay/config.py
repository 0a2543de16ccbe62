"""Runtime settings loaded from ``config.ini`` with ``DKR_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError

TRANSPORT_KINDS = ("smtp", "http", "sendmail")


@dataclass(frozen=True)
class Settings:
    master_secret: str
    db_path: str = "/data/dkim_relay.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    admin_token: Optional[str] = None
    bcrypt_rounds: int = 12

    retry_interval: float = 60.0
    retry_batch_size: int = 10
    max_retries: int = 3
    retry_delays: Tuple[int, ...] = (60, 300, 900)
    retry_claim_ttl: int = 300

    transport_kind: str = "smtp"
    transport_timeout: float = 30.0
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = False
    smtp_start_tls: Optional[bool] = None
    http_url: Optional[str] = None
    http_token: Optional[str] = None
    sendmail_path: str = "/usr/sbin/sendmail"

    rate_limit_max: int = 100
    rate_limit_window: int = 60

    log_level: str = "INFO"
    log_delivery_activity: bool = False


def load_settings(config_path: str | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with DKR_):
      DKR_CONFIG - Path to config.ini file (default: config.ini)
      DKR_MASTER_SECRET - Secret protecting stored DKIM keys (required)
      DKR_DB_PATH - Database path (default: /data/dkim_relay.db)
      DKR_HOST, DKR_PORT - Server bind address (default: 0.0.0.0:8000)
      DKR_ADMIN_TOKEN - Token required in X-API-Token by admin endpoints
      DKR_BCRYPT_ROUNDS - API key hash cost (default: 12)
      DKR_RETRY_INTERVAL, DKR_RETRY_BATCH_SIZE, DKR_MAX_RETRIES,
      DKR_RETRY_DELAYS (comma separated seconds), DKR_RETRY_CLAIM_TTL
      DKR_TRANSPORT - smtp, http or sendmail (default: smtp)
      DKR_TRANSPORT_TIMEOUT - Seconds before a transport call is abandoned (default: 30)
      DKR_SMTP_HOST, DKR_SMTP_PORT, DKR_SMTP_USER, DKR_SMTP_PASSWORD,
      DKR_SMTP_USE_TLS, DKR_SMTP_START_TLS
      DKR_HTTP_URL, DKR_HTTP_TOKEN, DKR_SENDMAIL_PATH
      DKR_RATE_LIMIT_MAX, DKR_RATE_LIMIT_WINDOW - Sends allowed per window per domain
      DKR_LOG_LEVEL - Logging level (default: INFO)
      DKR_LOG_DELIVERY_ACTIVITY - Log every delivery outcome (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, admin_token
      [security] master_secret, bcrypt_rounds
      [retry] interval_seconds, batch_size, max_retries, delays, claim_ttl_seconds
      [transport] kind, timeout_seconds, smtp_host, smtp_port, smtp_user, smtp_password,
                  smtp_use_tls, smtp_start_tls, http_url, http_token, sendmail_path
      [limits] send_per_window, window_seconds
      [logging] level, delivery_activity
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("DKR_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env_name: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        value = env.get(env_name)
        return value if value is not None else fallback

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be an integer, got {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be a number, got {value!r}") from exc

    def get_bool(section: str, option: str, env_name: str, default: bool | None) -> bool | None:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def optional(value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    master_secret = optional(get("security", "master_secret", "DKR_MASTER_SECRET"))
    if not master_secret:
        raise ConfigurationError("DKR_MASTER_SECRET (or [security] master_secret) is required")

    raw_delays = get("retry", "delays", "DKR_RETRY_DELAYS", "60,300,900") or ""
    try:
        delays = tuple(int(part) for part in raw_delays.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigurationError(f"[retry] delays must be comma separated integers, got {raw_delays!r}") from exc
    if not delays or any(delay <= 0 for delay in delays):
        raise ConfigurationError("[retry] delays must list at least one positive delay")

    transport_kind = (get("transport", "kind", "DKR_TRANSPORT", "smtp") or "smtp").strip().lower()
    if transport_kind not in TRANSPORT_KINDS:
        raise ConfigurationError(f"Unknown transport '{transport_kind}', expected one of {', '.join(TRANSPORT_KINDS)}")

    settings = Settings(
        master_secret=master_secret,
        db_path=os.path.expanduser(get("storage", "db_path", "DKR_DB_PATH", "/data/dkim_relay.db") or ""),
        http_host=get("server", "host", "DKR_HOST", "0.0.0.0") or "0.0.0.0",
        http_port=get_int("server", "port", "DKR_PORT", 8000),
        admin_token=optional(get("server", "admin_token", "DKR_ADMIN_TOKEN")),
        bcrypt_rounds=get_int("security", "bcrypt_rounds", "DKR_BCRYPT_ROUNDS", 12),
        retry_interval=get_float("retry", "interval_seconds", "DKR_RETRY_INTERVAL", 60.0),
        retry_batch_size=get_int("retry", "batch_size", "DKR_RETRY_BATCH_SIZE", 10),
        max_retries=get_int("retry", "max_retries", "DKR_MAX_RETRIES", 3),
        retry_delays=delays,
        retry_claim_ttl=get_int("retry", "claim_ttl_seconds", "DKR_RETRY_CLAIM_TTL", 300),
        transport_kind=transport_kind,
        transport_timeout=get_float("transport", "timeout_seconds", "DKR_TRANSPORT_TIMEOUT", 30.0),
        smtp_host=optional(get("transport", "smtp_host", "DKR_SMTP_HOST")) or "localhost",
        smtp_port=get_int("transport", "smtp_port", "DKR_SMTP_PORT", 587),
        smtp_user=optional(get("transport", "smtp_user", "DKR_SMTP_USER")),
        smtp_password=get("transport", "smtp_password", "DKR_SMTP_PASSWORD"),
        smtp_use_tls=bool(get_bool("transport", "smtp_use_tls", "DKR_SMTP_USE_TLS", False)),
        smtp_start_tls=get_bool("transport", "smtp_start_tls", "DKR_SMTP_START_TLS", None),
        http_url=optional(get("transport", "http_url", "DKR_HTTP_URL")),
        http_token=optional(get("transport", "http_token", "DKR_HTTP_TOKEN")),
        sendmail_path=get("transport", "sendmail_path", "DKR_SENDMAIL_PATH", "/usr/sbin/sendmail")
        or "/usr/sbin/sendmail",
        rate_limit_max=get_int("limits", "send_per_window", "DKR_RATE_LIMIT_MAX", 100),
        rate_limit_window=get_int("limits", "window_seconds", "DKR_RATE_LIMIT_WINDOW", 60),
        log_level=(get("logging", "level", "DKR_LOG_LEVEL", "INFO") or "INFO").upper(),
        log_delivery_activity=bool(
            get_bool("logging", "delivery_activity", "DKR_LOG_DELIVERY_ACTIVITY", False)
        ),
    )

    if settings.retry_interval <= 0:
        raise ConfigurationError("[retry] interval_seconds must be positive")
    if settings.retry_batch_size <= 0:
        raise ConfigurationError("[retry] batch_size must be positive")
    if settings.max_retries <= 0:
        raise ConfigurationError("[retry] max_retries must be positive")
    if settings.transport_timeout <= 0:
        raise ConfigurationError("[transport] timeout_seconds must be positive")
    return settings
