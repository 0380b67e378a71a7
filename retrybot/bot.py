"""
RetryBot — Telegram bot (aiogram 3)

Логика:
- /send_message, /send_photo → один ответ напрямую из хендлера
- /conv_message, /conv_photo → тот же ответ, но изнутри диалога (conversation)
- каждый исходящий запрос проходит через AutoRetryMiddleware на сессии бота,
  поэтому повторы одинаковы для обоих путей
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from aiogram import Bot, Dispatcher, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.client.session.base import BaseSession
from aiogram.client.session.middlewares.base import BaseRequestMiddleware
from aiogram.client.telegram import TelegramAPIServer
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import BaseStorage
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import ErrorEvent, Message

from .config import TELEGRAM_BOT_TOKEN, RetryConfig, load_retry_config
from .conversations import Conversation, Conversations
from .retry import AutoRetryMiddleware, Sleep

# ─────────────────────────────────────────────────────────────
# Тексты (UX)
# ─────────────────────────────────────────────────────────────

START_MESSAGE = """Hi 👋

I send a message or a photo, with or without a conversation.
Try /help to see the commands."""

HELP_MESSAGE = """Commands 👇

/send_message — plain message
/send_photo — photo with a caption
/conv_message — message sent inside a conversation
/conv_photo — photo sent inside a conversation"""

PHOTO_URL = "https://picsum.photos/200/300"

DIRECT_MESSAGE_TEXT = "Message sent without conversation"
DIRECT_PHOTO_CAPTION = "Photo sent without conversation"
CONVERSATION_MESSAGE_TEXT = "Message sent inside conversation"
CONVERSATION_PHOTO_CAPTION = "Photo sent inside conversation"


# ─────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────

async def handle_start(msg: Message):
    await msg.answer(START_MESSAGE)


async def handle_help(msg: Message):
    await msg.answer(HELP_MESSAGE)


async def handle_send_message(msg: Message):
    await msg.answer(DIRECT_MESSAGE_TEXT)


async def handle_send_photo(msg: Message):
    await msg.answer_photo(PHOTO_URL, caption=DIRECT_PHOTO_CAPTION)


async def handle_conv_message(msg: Message, state: FSMContext, conversations: Conversations):
    await conversations.enter("conversation_send_message", msg, state)


async def handle_conv_photo(msg: Message, state: FSMContext, conversations: Conversations):
    await conversations.enter("conversation_send_photo", msg, state)


# ─────────────────────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────────────────────

async def conversation_send_message(conversation: Conversation, msg: Message):
    await conversation.external(lambda: msg.answer(CONVERSATION_MESSAGE_TEXT))


async def conversation_send_photo(conversation: Conversation, msg: Message):
    await conversation.external(lambda: msg.answer_photo(PHOTO_URL, caption=CONVERSATION_PHOTO_CAPTION))


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────

class ErrorSink:
    """Last stop for handler errors: log, remember, keep polling."""

    def __init__(self) -> None:
        self.errors: List[BaseException] = []

    @property
    def last(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None

    async def on_error(self, event: ErrorEvent) -> bool:
        self.errors.append(event.exception)
        logging.error(
            "UPDATE %s ERROR: %s: %s",
            event.update.update_id,
            type(event.exception).__name__,
            event.exception,
        )
        return True


# ─────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────

@dataclass
class BotApp:
    bot: Bot
    dispatcher: Dispatcher
    conversations: Conversations
    errors: ErrorSink
    retry: AutoRetryMiddleware

    async def handle_update(self, update: Dict[str, Any]) -> Any:
        """Dispatch one raw update (as received from getUpdates or a webhook)."""
        return await self.dispatcher.feed_raw_update(self.bot, update)

    async def run_polling(self, **kwargs: Any) -> None:
        # по одному апдейту за раз, в порядке поступления
        await self.dispatcher.start_polling(self.bot, handle_as_tasks=False, **kwargs)


def build_conversations() -> Conversations:
    conversations = Conversations()
    conversations.register(conversation_send_message)
    conversations.register(conversation_send_photo)
    return conversations


def build_router() -> Router:
    router = Router(name="commands")
    router.message.register(handle_start, CommandStart())
    router.message.register(handle_help, Command("help"))
    router.message.register(handle_send_message, Command("send_message"))
    router.message.register(handle_send_photo, Command("send_photo"))
    router.message.register(handle_conv_message, Command("conv_message"))
    router.message.register(handle_conv_photo, Command("conv_photo"))
    return router


def create_bot(
    token: str,
    *,
    retry_config: Optional[RetryConfig] = None,
    session: Optional[BaseSession] = None,
    api_root: Optional[str] = None,
    request_timeout: Optional[float] = None,
    storage: Optional[BaseStorage] = None,
    instrumentation: Sequence[BaseRequestMiddleware] = (),
    sleep: Optional[Sleep] = None,
) -> BotApp:
    """Wire the bot, the retry transformer, conversations and command handlers.

    ``instrumentation`` middlewares are installed inside the retry middleware and
    therefore see every attempt. ``session`` wins over ``api_root``/``request_timeout``.
    """
    if session is None:
        session_kwargs: Dict[str, Any] = {}
        if api_root:
            session_kwargs["api"] = TelegramAPIServer.from_base(api_root)
        if request_timeout is not None:
            session_kwargs["timeout"] = request_timeout
        session = AiohttpSession(**session_kwargs)

    bot = Bot(
        token=token,
        session=session,
        default=DefaultBotProperties(parse_mode="HTML"),
    )

    retry = AutoRetryMiddleware(retry_config or load_retry_config(), sleep=sleep)
    bot.session.middleware(retry)
    for middleware in instrumentation:
        bot.session.middleware(middleware)

    conversations = build_conversations()
    errors = ErrorSink()

    dp = Dispatcher(storage=storage or MemoryStorage())
    dp["conversations"] = conversations
    dp.errors.register(errors.on_error)
    dp.include_router(conversations.router)
    dp.include_router(build_router())

    return BotApp(
        bot=bot,
        dispatcher=dp,
        conversations=conversations,
        errors=errors,
        retry=retry,
    )


# ─────────────────────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────────────────────

def main():
    logging.basicConfig(level=logging.INFO)

    if not TELEGRAM_BOT_TOKEN:
        logging.error("TELEGRAM_BOT_TOKEN environment variable is required")
        sys.exit(1)

    app = create_bot(TELEGRAM_BOT_TOKEN)

    logging.info("RetryBot started (max_retry_attempts=%d)", app.retry.config.max_retry_attempts)
    asyncio.run(app.run_polling())


if __name__ == "__main__":
    main()
