"""RetryBot package.

A small Telegram bot (aiogram 3) whose outgoing requests are retried on
network errors, rate limits and server errors. The same replies can be sent
straight from a command handler or from inside a replayable conversation;
both paths share the bot session and therefore the retry policy.
"""

from .bot import BotApp, ErrorSink, create_bot
from .config import RetryConfig, load_retry_config
from .conversations import Conversation, Conversations
from .retry import AttemptLog, AutoRetryMiddleware

__all__ = [
    "AttemptLog",
    "AutoRetryMiddleware",
    "BotApp",
    "Conversation",
    "Conversations",
    "ErrorSink",
    "RetryConfig",
    "create_bot",
    "load_retry_config",
]
