"""Shared fixtures: in-memory transport, mocked completion API, temp database."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import httpx
import pytest

from telechat_bot.ai import postprocess
from telechat_bot.ai.client import CompletionGateway, CredentialPool
from telechat_bot.ai.handler import Dispatcher
from telechat_bot.config import ChatConfig, CompletionConfig
from telechat_bot.core.types import ChatType
from telechat_bot.errors import TransportError
from telechat_bot.i18n import Localizer
from telechat_bot.messenger.base import ChatTransport, check_edit_target
from telechat_bot.messenger.models import (
    Chat,
    ChatMessage,
    IncomingUpdate,
    InlineKeyboard,
    InlineResult,
    User,
)
from telechat_bot.storage.conversation_repo import ConversationRepository
from telechat_bot.storage.database import Database
from telechat_bot.storage.preference_repo import PreferenceRepository

BOT_USERNAME = "TestBot"
API_URL = "https://llm.test/v1/chat/completions"


class FakeTransport(ChatTransport):
    """Records every outbound call as ``(method, kwargs)``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.updates: list[list[IncomingUpdate]] = []
        self.fetch_offsets: list[int] = []
        self.reject_formatted = False
        self.reject_all_sends = False
        # When set, formatted sends beyond this many are rejected
        self.formatted_send_budget: Optional[int] = None
        self._next_message_id = 1000

    def of(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def start(self) -> None:
        self.calls.append(("start", {}))

    async def close(self) -> None:
        self.calls.append(("close", {}))

    async def get_identity(self) -> User:
        return User(id=1, username=BOT_USERNAME, first_name="Test")

    async def fetch_events(self, offset: int, timeout: int) -> list[IncomingUpdate]:
        self.fetch_offsets.append(offset)
        # Real long polling suspends; without this the poll loop never yields
        await asyncio.sleep(0.001)
        if not self.updates:
            return []
        batch = self.updates.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int = 0,
        reply_to: Optional[int] = None,
        keyboard: Optional[InlineKeyboard] = None,
        formatted: bool = True,
    ) -> int:
        if self.reject_all_sends or (formatted and self.reject_formatted):
            raise TransportError("Bad Request: can't parse entities")
        if formatted and self.formatted_send_budget is not None:
            if self.formatted_send_budget <= 0:
                raise TransportError("Bad Request: can't parse entities")
            self.formatted_send_budget -= 1
        self.calls.append(
            (
                "send_text",
                dict(chat_id=chat_id, text=text, thread_id=thread_id, reply_to=reply_to,
                     keyboard=keyboard, formatted=formatted),
            )
        )
        self._next_message_id += 1
        return self._next_message_id

    async def send_typing_indicator(self, chat_id: int, thread_id: int = 0) -> None:
        self.calls.append(("send_typing_indicator", dict(chat_id=chat_id, thread_id=thread_id)))

    async def send_ephemeral_draft(
        self, chat_id: int, draft_id: int, text: str, *, thread_id: int = 0, reply_to: Optional[int] = None
    ) -> None:
        self.calls.append(
            ("send_ephemeral_draft", dict(chat_id=chat_id, draft_id=draft_id, text=text,
                                          thread_id=thread_id, reply_to=reply_to))
        )

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
        check_edit_target(chat_id, message_id, inline_message_id)
        if formatted and self.reject_formatted:
            raise TransportError("Bad Request: can't parse entities")
        self.calls.append(
            ("edit_message", dict(text=text, chat_id=chat_id, message_id=message_id,
                                  inline_message_id=inline_message_id, formatted=formatted))
        )

    async def rename_topic(self, chat_id: int, thread_id: int, name: str) -> None:
        self.calls.append(("rename_topic", dict(chat_id=chat_id, thread_id=thread_id, name=name)))

    async def answer_inline_query(self, query_id: str, result: Optional[InlineResult]) -> None:
        self.calls.append(("answer_inline_query", dict(query_id=query_id, result=result)))

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        self.calls.append(("answer_callback", dict(callback_id=callback_id, text=text)))


class CompletionAPI:
    """httpx.MockTransport handler serving queued responses and recording requests."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.responses: list[httpx.Response | Exception] = []
        self.default: Callable[[], httpx.Response] = lambda: reply("Hi there")

    def queue(self, *responses: httpx.Response | Exception) -> None:
        self.responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            {
                "auth": request.headers.get("Authorization"),
                "body": json.loads(request.content),
            }
        )
        item = self.responses.pop(0) if self.responses else self.default()
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def keys_used(self) -> list[str]:
        return [r["auth"].removeprefix("Bearer ") for r in self.requests]


def reply(content: str, reasoning: str | None = None) -> httpx.Response:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning"] = reasoning
    return httpx.Response(200, json={"id": "cmpl-1", "choices": [{"index": 0, "message": message}]})


def error(status: int, body: str = "error") -> httpx.Response:
    return httpx.Response(status, text=body)


def make_gateway(api: CompletionAPI, keys: list[str]) -> CompletionGateway:
    config = CompletionConfig(api_keys=keys, model="test-model", endpoint=API_URL, timeout=5)
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return CompletionGateway(config, CredentialPool(keys), http_client=client)


def private_message(text: str, message_id: int = 1, chat_id: int = 100, thread_id: int = 0) -> ChatMessage:
    return ChatMessage(
        message_id=message_id,
        chat=Chat(id=chat_id, type=ChatType.PRIVATE, has_topics=bool(thread_id)),
        text=text,
        sender=User(id=42, username="alice", first_name="Alice"),
        thread_id=thread_id,
    )


def group_message(
    text: str,
    message_id: int = 1,
    chat_id: int = -200,
    reply_to: Optional[ChatMessage] = None,
) -> ChatMessage:
    return ChatMessage(
        message_id=message_id,
        chat=Chat(id=chat_id, type=ChatType.SUPERGROUP),
        text=text,
        sender=User(id=42, username="alice", first_name="Alice"),
        reply_to=reply_to,
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def conversations(db) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def preferences(db) -> PreferenceRepository:
    return PreferenceRepository(db)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def api() -> CompletionAPI:
    return CompletionAPI()


@pytest.fixture
async def gateway(api):
    gw = make_gateway(api, ["key-a", "key-b"])
    yield gw
    await gw.close()


@pytest.fixture
def localizer() -> Localizer:
    return Localizer.load()


@pytest.fixture
def no_preview_delay(monkeypatch):
    monkeypatch.setattr(postprocess, "MIN_PREVIEW_DELAY", 0.0)
    monkeypatch.setattr(postprocess, "MAX_PREVIEW_DELAY", 0.0)


@pytest.fixture
def dispatcher(transport, gateway, conversations, preferences, localizer) -> Dispatcher:
    return Dispatcher(
        transport=transport,
        gateway=gateway,
        conversations=conversations,
        preferences=preferences,
        localizer=localizer,
        chat_config=ChatConfig(system_prompt="Be helpful.", typing_interval=0.01),
        bot_username=BOT_USERNAME,
    )
