"""Configuration for RetryBot."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, replace
from typing import Any, Optional

from dotenv import load_dotenv

# Загружаем переменные из .env, если файл есть рядом с проектом
load_dotenv()

# Telegram bot token (required)
TELEGRAM_BOT_TOKEN: Optional[str] = os.environ.get("TELEGRAM_BOT_TOKEN")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RetryConfig:
    """Settings of the retry transformer.

    max_retry_attempts: how many times a failed request is resubmitted
        (total attempts = max_retry_attempts + 1).
    max_delay_seconds: cap on any single wait, including server hints.
    initial_delay_seconds: first wait when the server gives no hint;
        doubled after every such retry.
    rethrow_http_errors: platform error responses (429 and 5xx included)
        propagate immediately; only transport failures are retried.
    """

    max_retry_attempts: int = 3
    max_delay_seconds: float = 5.0
    initial_delay_seconds: float = 3.0
    rethrow_http_errors: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.max_retry_attempts, bool) or not isinstance(self.max_retry_attempts, int):
            raise ValueError(f"max_retry_attempts must be an int, got {self.max_retry_attempts!r}")
        if self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must be >= 0")
        if not math.isfinite(self.max_delay_seconds) or self.max_delay_seconds <= 0:
            raise ValueError(f"max_delay_seconds must be a finite number > 0, got {self.max_delay_seconds!r}")
        if not math.isfinite(self.initial_delay_seconds) or self.initial_delay_seconds <= 0:
            raise ValueError(f"initial_delay_seconds must be a finite number > 0, got {self.initial_delay_seconds!r}")

    def replace(self, **overrides: Any) -> "RetryConfig":
        return replace(self, **overrides)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, cast: Any, default: Any) -> Any:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def load_retry_config() -> RetryConfig:
    defaults = RetryConfig()
    return RetryConfig(
        max_retry_attempts=_env_number("RETRY_MAX_ATTEMPTS", int, defaults.max_retry_attempts),
        max_delay_seconds=_env_number("RETRY_MAX_DELAY_SECONDS", float, defaults.max_delay_seconds),
        initial_delay_seconds=_env_number("RETRY_INITIAL_DELAY_SECONDS", float, defaults.initial_delay_seconds),
        rethrow_http_errors=_env_bool("RETRY_RETHROW_HTTP_ERRORS", defaults.rethrow_http_errors),
    )
