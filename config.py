"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, MikrotikConfig, PaymongoConfig, SmsConfig

logger = logging.getLogger(__name__)

DEFAULT_PLAN_PROFILES = {
    "Plan 799": "50MBPS",
    "Plan 999": "100MBPS",
    "Plan 1299": "130MBPS",
    "Plan 1499": "150MBPS",
}


def _env_flag(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, MikrotikConfig, PaymongoConfig, SmsConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    mt_cfg = raw.get("mikrotik", {})
    pm_cfg = raw.get("paymongo", {})
    sms_cfg = raw.get("sms", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "ISP Billing"),
            secret_key=secret_key,
            currency=app_cfg.get("currency", "PHP"),
            timezone_offset_hours=int(
                os.environ.get("APP_TZ_OFFSET_HOURS", app_cfg.get("timezone_offset_hours", 8))
            ),
            referral_discount=str(app_cfg.get("referral_discount", "300")),
            invoice_number_pattern=app_cfg.get("invoice_number_pattern", "INV[YY][MM]-[CCCC]"),
            cron_secret=os.environ.get("CRON_SECRET", app_cfg.get("cron_secret", "")),
        ),
        MikrotikConfig(
            enabled=_env_flag("MIKROTIK_ENABLED", mt_cfg.get("enabled", False)),
            host=os.environ.get("MIKROTIK_HOST", mt_cfg.get("host", "")).strip(),
            port=int(os.environ.get("MIKROTIK_PORT", mt_cfg.get("port", 80))),
            api_port=int(os.environ.get("MIKROTIK_API_PORT", mt_cfg.get("api_port", 8728))),
            user=os.environ.get("MIKROTIK_USER", mt_cfg.get("user", "")).strip(),
            password=os.environ.get("MIKROTIK_PASSWORD", mt_cfg.get("password", "")),
            timeout=int(mt_cfg.get("timeout", 5)),
            disconnected_profile=mt_cfg.get("disconnected_profile", "DC"),
            plan_profiles=mt_cfg.get("plan_profiles") or dict(DEFAULT_PLAN_PROFILES),
        ),
        PaymongoConfig(
            enabled=_env_flag("PAYMONGO_ENABLED", pm_cfg.get("enabled", False)),
            secret_key=os.environ.get("PAYMONGO_SECRET_KEY", pm_cfg.get("secret_key", "")),
            base_url=os.environ.get(
                "PAYMONGO_BASE_URL", pm_cfg.get("base_url", "https://api.paymongo.com/v1")
            ),
        ),
        SmsConfig(
            enabled=_env_flag("SMS_ENABLED", sms_cfg.get("enabled", False)),
            api_key=os.environ.get("SEMAPHORE_API_KEY", sms_cfg.get("api_key", "")),
            sender_name=os.environ.get(
                "SEMAPHORE_SENDER_NAME", sms_cfg.get("sender_name", "ALLSTAR")
            ),
            base_url=sms_cfg.get("base_url", "https://api.semaphore.co/api/v4"),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///isp_billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
