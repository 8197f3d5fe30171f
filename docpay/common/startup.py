"""Startup report of the settings that change how payments are reconciled."""

from typing import Any
from urllib.parse import urlsplit

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from docpay.common.config import CommonSettings
from docpay.common.logging import logger


def _without_password(url: str) -> str:
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable>"


def startup_report(cfg: CommonSettings) -> tuple[dict[str, Any], list[str]]:
    """Return a secret-free config summary and warnings about risky settings."""

    summary = {
        "service": cfg.service_name,
        "database": _without_password(cfg.postgres_dsn),
        "redis": _without_password(cfg.redis_url),
        "gateway_host": urlsplit(cfg.gateway_base_url).netloc,
        "gateway_api_key": "<set>" if cfg.gateway_api_key else "<unset>",
        "webhook_secret": "<set>" if cfg.webhook_secret else "<unset>",
        "webhook_signature_mode": cfg.webhook_signature_mode,
        "webhook_handoff": "queued" if cfg.webhook_queue_enabled else "direct",
        "poller_autostart": cfg.poller_autostart,
        "poller_interval_seconds": cfg.poller_interval_seconds,
        "poller_window_days": cfg.poller_window_days,
    }

    warnings = []
    if not cfg.webhook_secret:
        warnings.append("WEBHOOK_SECRET is empty; every webhook delivery will be rejected with 401")
    if not cfg.gateway_api_key:
        warnings.append("GATEWAY_API_KEY is empty; cron, dashboard sync and payment creation will fail")
    if cfg.webhook_signature_mode not in ("token", "hmac"):
        warnings.append(f"unknown WEBHOOK_SIGNATURE_MODE {cfg.webhook_signature_mode!r}")
    if not cfg.poller_autostart:
        warnings.append("payment sweep not autostarted; an external scheduler must call the cron endpoint")
    return summary, warnings


def log_startup_config(cfg: CommonSettings) -> None:
    summary, warnings = startup_report(cfg)
    logger.info("startup_config=%s", summary)
    for warning in warnings:
        logger.warning("startup_config_warning %s", warning)
