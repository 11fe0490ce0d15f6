"""Startup-time helpers for safe config logging."""

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from storefront.common.config import Settings
from storefront.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value):
    """Redact secret-like settings; keep database URLs readable without their password."""

    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>" if value else "<unset>"
    if name.endswith("database_url"):
        try:
            return make_url(value).render_as_string(hide_password=True)
        except ArgumentError:
            return "<redacted>"
    return value


def startup_config(settings: Settings, fields: list[str]) -> dict:
    """Resolved values of selected settings, safe to log."""

    config = {"service": settings.service_name}
    for name in fields:
        config[name] = _safe_value(name, getattr(settings, name))
    return config


def log_startup_config(settings: Settings, fields: list[str]) -> None:
    """Log selected startup settings for quick troubleshooting."""

    logger.info("startup_config=%s", startup_config(settings, fields))
