"""Platform-neutral event and keyboard models consumed by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from telechat_bot.core.types import ChatType

NO_TOPIC = 0


@dataclass(frozen=True, slots=True)
class User:
    id: int
    username: str = ""
    first_name: str = ""
    language_code: str = ""

    @property
    def display_name(self) -> str:
        if self.first_name:
            return self.first_name
        if self.username:
            return f"@{self.username}"
        return str(self.id)


@dataclass(frozen=True, slots=True)
class Chat:
    id: int
    type: ChatType
    has_topics: bool = False

    @property
    def is_private(self) -> bool:
        return self.type == ChatType.PRIVATE


@dataclass(frozen=True, slots=True)
class ConversationKey:
    """History scope: one chat, optionally narrowed to a forum topic."""

    chat_id: int
    thread_id: int = NO_TOPIC


@dataclass(frozen=True, slots=True)
class ChatMessage:
    message_id: int
    chat: Chat
    text: str
    sender: Optional[User] = None
    thread_id: int = NO_TOPIC
    reply_to: Optional[ChatMessage] = None

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.chat.id, self.thread_id)


@dataclass(frozen=True, slots=True)
class CallbackAction:
    id: str
    sender: User
    data: str
    message: Optional[ChatMessage] = None
    inline_message_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class InlineQuery:
    id: str
    sender: User
    query: str


@dataclass(frozen=True, slots=True)
class ChosenInlineResult:
    result_id: str
    sender: User
    query: str
    inline_message_id: Optional[str] = None


Event = Union[ChatMessage, CallbackAction, InlineQuery, ChosenInlineResult]


@dataclass(frozen=True, slots=True)
class IncomingUpdate:
    """One polled update. ``event`` is None for update kinds the bot ignores."""

    update_id: int
    event: Optional[Event] = None


@dataclass(frozen=True, slots=True)
class KeyboardButton:
    text: str
    callback_data: str


@dataclass(frozen=True, slots=True)
class InlineKeyboard:
    rows: tuple[tuple[KeyboardButton, ...], ...] = field(default_factory=tuple)

    @classmethod
    def single(cls, text: str, callback_data: str) -> InlineKeyboard:
        return cls(rows=((KeyboardButton(text, callback_data),),))


@dataclass(frozen=True, slots=True)
class InlineResult:
    """A single article answer to an inline query."""

    id: str
    title: str
    text: str
    description: str = ""
    keyboard: Optional[InlineKeyboard] = None
