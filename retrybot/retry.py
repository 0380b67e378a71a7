# retrybot/retry.py
"""Retry transformer for outgoing Bot API requests.

The middleware sits on the bot session, so every request goes through it
no matter which handler (plain command or conversation) issued it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

from aiogram.client.session.middlewares.base import BaseRequestMiddleware, NextRequestMiddlewareType
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramNetworkError,
    TelegramRetryAfter,
    TelegramServerError,
)
from aiogram.methods import Response, TelegramMethod
from aiogram.methods.base import TelegramType

from .config import RetryConfig

if TYPE_CHECKING:
    from aiogram import Bot

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class Decision(enum.Enum):
    RETRY = "retry"
    RAISE = "raise"


@dataclass
class RetryState:
    """Bookkeeping for one logical request, retries included."""

    max_attempts: int
    attempts: int = 0
    accumulated_delay: float = 0.0
    next_delay: float = 0.0

    @property
    def exhausted(self) -> bool:
        # первая попытка не считается повтором
        return self.attempts > self.max_attempts


def classify_error(error: TelegramAPIError, config: RetryConfig) -> Decision:
    if isinstance(error, TelegramNetworkError):
        return Decision.RETRY
    if config.rethrow_http_errors:
        return Decision.RAISE
    if isinstance(error, (TelegramRetryAfter, TelegramServerError)):
        return Decision.RETRY
    return Decision.RAISE


def backoff_delay(error: TelegramAPIError, state: RetryState, config: RetryConfig) -> float:
    if isinstance(error, TelegramRetryAfter):
        return float(min(error.retry_after, config.max_delay_seconds))
    return min(state.next_delay, config.max_delay_seconds)


class AutoRetryMiddleware(BaseRequestMiddleware):
    """Resubmits failed requests per :class:`RetryConfig`.

    Must be registered before any other request middleware that should see
    individual attempts.
    """

    def __init__(self, config: Optional[RetryConfig] = None, sleep: Optional[Sleep] = None) -> None:
        self.config = config or RetryConfig()
        self._sleep: Sleep = sleep or asyncio.sleep

    async def __call__(
        self,
        make_request: NextRequestMiddlewareType[TelegramType],
        bot: "Bot",
        method: TelegramMethod[TelegramType],
    ) -> Response[TelegramType]:
        state = RetryState(
            max_attempts=self.config.max_retry_attempts,
            next_delay=self.config.initial_delay_seconds,
        )
        method_name = type(method).__name__

        while True:
            state.attempts += 1
            try:
                return await make_request(bot, method)
            except TelegramAPIError as e:
                if classify_error(e, self.config) is Decision.RAISE:
                    raise
                if state.exhausted:
                    logger.error(
                        "%s failed after %d attempt(s), waited %.1fs: %s",
                        method_name,
                        state.attempts,
                        state.accumulated_delay,
                        e,
                    )
                    raise

                delay = backoff_delay(e, state, self.config)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    method_name,
                    state.attempts,
                    state.max_attempts + 1,
                    e,
                    delay,
                )
                await self._sleep(delay)
                state.accumulated_delay += delay
                if not isinstance(e, TelegramRetryAfter):
                    state.next_delay = min(state.next_delay * 2, self.config.max_delay_seconds)


class AttemptLog(BaseRequestMiddleware):
    """Records every request that reaches the transport, in call order."""

    def __init__(self) -> None:
        self.methods: List[str] = []

    @property
    def count(self) -> int:
        return len(self.methods)

    def clear(self) -> None:
        self.methods.clear()

    async def __call__(
        self,
        make_request: NextRequestMiddlewareType[TelegramType],
        bot: "Bot",
        method: TelegramMethod[TelegramType],
    ) -> Response[TelegramType]:
        self.methods.append(type(method).__name__)
        logger.debug("Attempt #%d: %s", len(self.methods), type(method).__name__)
        return await make_request(bot, method)
