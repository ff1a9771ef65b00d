"""Startup-time helpers: redacted config logging and boot-time retries."""

import time
from typing import Callable, TypeVar

from paysettle.common.config import CommonSettings
from paysettle.common.logging import logger


T = TypeVar("T")
_SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(settings: CommonSettings, fields: list[str]) -> dict[str, object]:
    """Selected settings with secret-looking values masked."""

    config: dict[str, object] = {}
    for name in fields:
        value = getattr(settings, name, None)
        if value is not None and any(marker in name for marker in _SECRET_MARKERS):
            value = "<redacted>"
        config[name] = value
    return config


def log_startup_config(settings: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config for quick troubleshooting."""

    config = {"service": settings.service_name, **redacted_settings(settings, fields)}
    logger.info("startup_config=%s", config)


def retry_on_boot(action: Callable[[], T], what: str, retries: int = 20, delay_seconds: float = 1.0) -> T:
    """Retry `action` while dependencies (e.g. postgres) are still starting."""

    for attempt in range(1, retries + 1):
        try:
            return action()
        except Exception as exc:
            logger.warning("%s retry=%s/%s error=%s", what, attempt, retries, exc)
            if attempt == retries:
                raise
            time.sleep(delay_seconds)
    raise RuntimeError(f"{what}: no attempts made")
