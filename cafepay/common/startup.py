"""Startup-time config logging from the resolved settings."""

from typing import Any, Iterable

from cafepay.common.config import CommonSettings
from cafepay.common.logging import logger

SECRET_MARKERS = ("secret", "password", "token")


def _display(field: str, value: Any) -> Any:
    if value is None or value == "":
        return "<unset>"
    if any(marker in field for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def resolved_config(config: CommonSettings, fields: Iterable[str]) -> dict[str, Any]:
    """Values as the process will use them: environment, then `.env`, then defaults."""

    values = config.model_dump()
    return {field: _display(field, values[field]) for field in fields}


def log_startup_config(config: CommonSettings, fields: Iterable[str]) -> dict[str, Any]:
    """Log selected settings with secrets redacted; returns what was logged."""

    snapshot = {"service": config.service_name, **resolved_config(config, fields)}
    logger.info("startup_config=%s", snapshot)
    return snapshot
