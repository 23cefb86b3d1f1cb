"""Abstract chat transport interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from telechat_bot.messenger.models import (
    NO_TOPIC,
    IncomingUpdate,
    InlineKeyboard,
    InlineResult,
    User,
)


class ChatTransport(ABC):
    """Everything the dispatcher needs from a chat platform.

    Implementations raise ``TransportError`` when the platform rejects a call.
    """

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def get_identity(self) -> User:
        """Return the bot's own account."""
        ...

    @abstractmethod
    async def fetch_events(self, offset: int, timeout: int) -> list[IncomingUpdate]:
        """Long-poll for updates with id >= offset."""
        ...

    @abstractmethod
    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int = NO_TOPIC,
        reply_to: Optional[int] = None,
        keyboard: Optional[InlineKeyboard] = None,
        formatted: bool = True,
    ) -> int:
        """Send a message and return its message id."""
        ...

    @abstractmethod
    async def send_typing_indicator(self, chat_id: int, thread_id: int = NO_TOPIC) -> None:
        ...

    @abstractmethod
    async def send_ephemeral_draft(
        self,
        chat_id: int,
        draft_id: int,
        text: str,
        *,
        thread_id: int = NO_TOPIC,
        reply_to: Optional[int] = None,
    ) -> None:
        """Show a transient preview that the next real message replaces."""
        ...

    @abstractmethod
    async def edit_message(
        self,
        text: str,
        *,
        chat_id: Optional[int] = None,
        message_id: Optional[int] = None,
        inline_message_id: Optional[str] = None,
        keyboard: Optional[InlineKeyboard] = None,
        formatted: bool = True,
    ) -> None:
        """Edit by (chat_id, message_id) or by inline_message_id, never both."""
        ...

    @abstractmethod
    async def rename_topic(self, chat_id: int, thread_id: int, name: str) -> None:
        ...

    @abstractmethod
    async def answer_inline_query(self, query_id: str, result: Optional[InlineResult]) -> None:
        """Answer with a single uncached result, or with none."""
        ...

    @abstractmethod
    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        ...


def check_edit_target(
    chat_id: Optional[int], message_id: Optional[int], inline_message_id: Optional[str]
) -> None:
    """Validate that exactly one edit target form was given."""
    by_message = chat_id is not None and message_id is not None
    if inline_message_id and (chat_id is not None or message_id is not None):
        raise ValueError("edit target must be either (chat_id, message_id) or inline_message_id, not both")
    if not inline_message_id and not by_message:
        raise ValueError("edit target requires chat_id and message_id, or inline_message_id")
