# retrybot/conversations.py
"""Multi-step conversations kept in aiogram FSM storage.

A conversation handler is an ordinary coroutine ``handler(conversation, message)``.
Instead of keeping a live coroutine between updates, every step is written to a
log: inbound updates (``conversation.wait()``) and results of outbound calls
(``conversation.external(...)``). When the next update for the chat arrives, the
handler is run again from the top and the log is replayed into it, so code before
the last suspension point never hits the network twice.

Handlers must be deterministic outside of ``external()`` calls.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from aiogram import Bot, Router, types
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import Message, TelegramObject

logger = logging.getLogger(__name__)

STATE_KEY = "conversation"

T = TypeVar("T")


class ConversationStates(StatesGroup):
    active = State()


class ConversationSuspended(BaseException):
    """Raised inside a handler when it waits for an update that has not arrived yet.

    Derived from BaseException so ``except Exception`` in handler code does not eat it.
    """


class ConversationReplayError(RuntimeError):
    """The handler asked for a different kind of step than the log recorded."""


class StepKind(str, enum.Enum):
    UPDATE = "update"
    ACTION = "action"


# тип "list" — последовательность, каждый элемент хранится как {"type", "payload"}
SEQUENCE_TYPE = "list"


def _dump(value: Any) -> Tuple[Optional[str], Any]:
    if isinstance(value, TelegramObject):
        return type(value).__name__, value.model_dump(mode="json", exclude_none=True, by_alias=True)
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            item_type, item_payload = _dump(item)
            items.append({"type": item_type, "payload": item_payload})
        return SEQUENCE_TYPE, items
    return None, value


def _load(type_name: Optional[str], payload: Any, bot: Bot) -> Any:
    if type_name is None:
        return payload
    if type_name == SEQUENCE_TYPE:
        return [_load(item.get("type"), item.get("payload"), bot) for item in payload]
    model = getattr(types, type_name)
    return model.model_validate(payload, context={"bot": bot})


@dataclass
class Step:
    kind: StepKind
    payload: Any
    type: Optional[str] = None

    @classmethod
    def capture(cls, kind: StepKind, value: Any) -> "Step":
        type_name, payload = _dump(value)
        return cls(kind=kind, type=type_name, payload=payload)

    def restore(self, bot: Bot) -> Any:
        return _load(self.type, self.payload, bot)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "type": self.type, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(kind=StepKind(data["kind"]), type=data.get("type"), payload=data.get("payload"))


@dataclass
class ConversationState:
    """Recorded history of one running conversation."""

    name: str
    log: List[Step] = field(default_factory=list)

    def record(self, kind: StepKind, value: Any) -> None:
        self.log.append(Step.capture(kind, value))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "log": [step.to_dict() for step in self.log]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(name=data["name"], log=[Step.from_dict(item) for item in data.get("log") or []])


class Conversation:
    """Handle passed to a conversation handler."""

    def __init__(self, state: ConversationState, bot: Bot) -> None:
        if not state.log or state.log[0].kind is not StepKind.UPDATE:
            raise ConversationReplayError(f"conversation {state.name!r} has no entering update")
        self._state = state
        self._bot = bot
        # 0 — входящий апдейт, с которого всё началось
        self._cursor = 1

    @property
    def name(self) -> str:
        return self._state.name

    @property
    def replaying(self) -> bool:
        return self._cursor < len(self._state.log)

    def first_update(self) -> Message:
        return self._state.log[0].restore(self._bot)

    async def wait(self) -> Message:
        """Next message of the chat; suspends the handler until it arrives."""
        step = self._take(StepKind.UPDATE)
        if step is None:
            raise ConversationSuspended()
        return step.restore(self._bot)

    async def external(self, action: Callable[[], Awaitable[T]]) -> T:
        """Run an outbound call once; later replays get the recorded result."""
        step = self._take(StepKind.ACTION)
        if step is not None:
            return step.restore(self._bot)

        result = await action()
        self._state.record(StepKind.ACTION, result)
        self._cursor += 1
        return result

    def _take(self, kind: StepKind) -> Optional[Step]:
        if not self.replaying:
            return None
        step = self._state.log[self._cursor]
        if step.kind is not kind:
            raise ConversationReplayError(
                f"conversation {self.name!r} step {self._cursor}: "
                f"expected {kind.value}, log has {step.kind.value}"
            )
        self._cursor += 1
        return step


ConversationHandler = Callable[[Conversation, Message], Awaitable[Any]]


class Conversations:
    """Registry of conversation handlers plus the router that resumes them.

    Include ``conversations.router`` before command routers: while a chat has an
    active conversation, its messages go to the conversation.
    """

    def __init__(self, name: str = "conversations") -> None:
        self._handlers: Dict[str, ConversationHandler] = {}
        self.router = Router(name=name)
        self.router.message.register(self._resume, ConversationStates.active)

    def register(self, handler: ConversationHandler, name: Optional[str] = None) -> ConversationHandler:
        key = name or handler.__name__
        if key in self._handlers:
            raise ValueError(f"conversation {key!r} is already registered")
        self._handlers[key] = handler
        return handler

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def enter(self, name: str, message: Message, state: FSMContext) -> None:
        if name not in self._handlers:
            raise KeyError(f"unknown conversation {name!r}")

        current = await self.active(state)
        if current is not None:
            logger.warning("Conversation %r replaced by %r", current, name)

        record = ConversationState(name=name)
        record.record(StepKind.UPDATE, message)
        logger.info("Conversation %r entered", name)
        await self._run(record, state, self._bot_of(message))

    async def exit(self, state: FSMContext) -> None:
        data = await state.get_data()
        data.pop(STATE_KEY, None)
        await state.set_data(data)
        await state.set_state(None)

    async def active(self, state: FSMContext) -> Optional[str]:
        if await state.get_state() != ConversationStates.active.state:
            return None
        data = await state.get_data()
        raw = data.get(STATE_KEY)
        return raw["name"] if raw else None

    async def _resume(self, message: Message, state: FSMContext) -> None:
        data = await state.get_data()
        raw = data.get(STATE_KEY)
        if not raw:
            logger.warning("Active conversation state without a log, dropping it")
            await self.exit(state)
            return

        record = ConversationState.from_dict(raw)
        if record.name not in self._handlers:
            logger.error("Conversation %r is no longer registered, dropping it", record.name)
            await self.exit(state)
            return

        record.record(StepKind.UPDATE, message)
        await self._run(record, state, self._bot_of(message))

    async def _run(self, record: ConversationState, state: FSMContext, bot: Bot) -> None:
        handler = self._handlers[record.name]
        try:
            conversation = Conversation(record, bot)
            await handler(conversation, conversation.first_update())
        except ConversationSuspended:
            await state.set_state(ConversationStates.active)
            await state.update_data({STATE_KEY: record.to_dict()})
            logger.info("Conversation %r waiting, %d step(s) recorded", record.name, len(record.log))
            return
        except Exception:
            await self.exit(state)
            raise

        await self.exit(state)
        logger.info("Conversation %r finished", record.name)

    @staticmethod
    def _bot_of(message: Message) -> Bot:
        bot = message.bot
        if bot is None:
            raise RuntimeError("message is not bound to a bot")
        return bot
