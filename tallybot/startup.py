from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings

logger = logging.getLogger(__name__)

REQUIRED_SETTINGS: list[Tuple[str, str]] = [
    ("database_url", "DATABASE_URL"),
    ("telegram_bot_token", "TELEGRAM_BOT_TOKEN"),
    ("openai_api_key", "OPENAI_API_KEY"),
]


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    return [label for attr, label in pairs if getattr(settings, attr, None) in (None, "")]


def _check_timeouts(settings: Settings) -> None:
    # A photo can take two vision calls (read, then re-read of suspicious rows).
    if settings.extraction_timeout_seconds < settings.openai_request_timeout_seconds:
        logger.warning(
            "EXTRACTION_TIMEOUT_SECONDS (%s) is shorter than OPENAI_REQUEST_TIMEOUT_SECONDS (%s); "
            "slow sheets will be reported as timeouts",
            settings.extraction_timeout_seconds,
            settings.openai_request_timeout_seconds,
        )


def validate_settings(settings: Settings) -> None:
    """Warn in dev, fail fast elsewhere, when the bot cannot do its job."""
    environment = (settings.environment or "dev").lower()
    missing = _collect_missing(settings, REQUIRED_SETTINGS)
    _check_timeouts(settings)

    if environment == "dev":
        if missing:
            logger.warning(
                "Running in dev without %s; the bot will not be able to read sheets or save counts",
                ", ".join(missing),
            )
        return

    if not settings.telegram_webhook_secret:
        logger.warning("TELEGRAM_WEBHOOK_SECRET is not set; the webhook accepts unsigned updates")
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
