from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable

import pytest
from aiogram import Bot
from aiogram.client.session.base import BaseSession
from aiogram.exceptions import TelegramNetworkError
from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.methods import TelegramMethod

from retrybot import AttemptLog, BotApp, RetryConfig, create_bot

TEST_TOKEN = "123456789:TEST_TOKEN"  # noqa: S105
CHAT_ID = 1
USER_ID = 1

NETWORK_DOWN = object()

MESSAGE_RESULT = {
    "message_id": 100,
    "date": 1_700_000_000,
    "chat": {"id": CHAT_ID, "type": "private", "first_name": "User"},
    "text": "ok",
}


def ok(result: Any = None) -> tuple[int, dict[str, Any]]:
    return 200, {"ok": True, "result": MESSAGE_RESULT if result is None else result}


def rate_limited(retry_after: int) -> tuple[int, dict[str, Any]]:
    return 429, {
        "ok": False,
        "error_code": 429,
        "description": f"Too Many Requests: retry after {retry_after}",
        "parameters": {"retry_after": retry_after},
    }


def server_error(code: int = 502) -> tuple[int, dict[str, Any]]:
    return code, {"ok": False, "error_code": code, "description": "Bad Gateway"}


def bad_request() -> tuple[int, dict[str, Any]]:
    return 400, {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"}


class ScriptedSession(BaseSession):
    """Fake transport: plays outcomes in order, the last one repeats forever."""

    def __init__(self, *outcomes: Any) -> None:
        super().__init__()
        self.outcomes = list(outcomes) or [NETWORK_DOWN]
        self.requests: list[TelegramMethod[Any]] = []

    async def make_request(self, bot: Bot, method: TelegramMethod[Any], timeout: int | None = None) -> Any:
        self.requests.append(method)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome is NETWORK_DOWN:
            raise TelegramNetworkError(method=method, message="ClientConnectorError: Connection refused")
        status_code, payload = outcome
        response = self.check_response(bot, method, status_code, json.dumps(payload))
        return response.result

    async def stream_content(self, *args: Any, **kwargs: Any) -> AsyncGenerator[bytes, None]:
        raise NotImplementedError
        yield b""  # pragma: no cover

    async def close(self) -> None:
        return None


def make_update(text: str, update_id: int = 1) -> dict[str, Any]:
    entities = []
    if text.startswith("/"):
        entities.append({"type": "bot_command", "offset": 0, "length": len(text.split()[0])})
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": USER_ID, "is_bot": False, "first_name": "User"},
            "chat": {"id": CHAT_ID, "type": "private", "first_name": "User"},
            "date": 1_700_000_000,
            "text": text,
            "entities": entities,
        },
    }


@dataclass
class Harness:
    app: BotApp
    session: ScriptedSession
    attempts: AttemptLog
    storage: MemoryStorage
    sleeps: list[float] = field(default_factory=list)

    @property
    def errors(self) -> list[BaseException]:
        return self.app.errors.errors

    def state(self) -> FSMContext:
        key = StorageKey(bot_id=self.app.bot.id, chat_id=CHAT_ID, user_id=USER_ID)
        return FSMContext(storage=self.storage, key=key)

    async def send(self, text: str, update_id: int = 1) -> Any:
        return await self.app.handle_update(make_update(text, update_id))


@pytest.fixture
def harness() -> Callable[..., Harness]:
    def _make(*outcomes: Any, **retry_overrides: Any) -> Harness:
        session = ScriptedSession(*outcomes)
        attempts = AttemptLog()
        storage = MemoryStorage()
        sleeps: list[float] = []

        async def _sleep(delay: float) -> None:
            sleeps.append(delay)

        config = RetryConfig(max_retry_attempts=3, max_delay_seconds=5).replace(**retry_overrides)
        app = create_bot(
            TEST_TOKEN,
            retry_config=config,
            session=session,
            storage=storage,
            instrumentation=[attempts],
            sleep=_sleep,
        )
        return Harness(app=app, session=session, attempts=attempts, storage=storage, sleeps=sleeps)

    return _make
