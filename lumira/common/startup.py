"""Startup summary of the effective configuration, with secrets masked."""

from pydantic_settings import BaseSettings

from lumira.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: BaseSettings, fields: list[str]) -> dict[str, object]:
    """Selected settings fields; secret-looking ones reduce to set/unset."""

    summary: dict[str, object] = {}
    for field in fields:
        value = getattr(config, field)
        if any(marker in field for marker in SECRET_MARKERS):
            summary[field] = "<redacted>" if value else "<unset>"
        else:
            summary[field] = value
    return summary


def log_startup_config(config: BaseSettings, fields: list[str]) -> None:
    logger.info(
        "startup_config service=%s config=%s",
        getattr(config, "service_name", ""),
        redacted_config(config, fields),
    )
