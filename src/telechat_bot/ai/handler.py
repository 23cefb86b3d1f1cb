"""Dispatcher: routes each inbound event through filter -> prompt -> completion -> reply."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Coroutine
from typing import Any, Optional

import aiosqlite

from telechat_bot.ai.client import CompletionGateway, CompletionResult
from telechat_bot.ai.conversation import AssembledPrompt, ContextAssembler, build_messages, system_message
from telechat_bot.ai.postprocess import ProcessedReply, clean_title, downgrade_emphasis, process
from telechat_bot.config import ChatConfig
from telechat_bot.core.filter import (
    LANGUAGE_COMMAND,
    RESET_COMMAND,
    START_COMMAND,
    parse_command,
    should_respond,
)
from telechat_bot.core.types import Role
from telechat_bot.errors import CredentialsExhaustedError, TransportError
from telechat_bot.i18n import FALLBACK_LANGUAGE, LANGUAGE_LABELS, Localizer
from telechat_bot.log import get_logger
from telechat_bot.messenger.base import ChatTransport
from telechat_bot.messenger.models import (
    CallbackAction,
    ChatMessage,
    ChosenInlineResult,
    ConversationKey,
    Event,
    InlineKeyboard,
    InlineQuery,
    InlineResult,
    KeyboardButton,
)
from telechat_bot.storage.conversation_repo import ConversationRepository
from telechat_bot.storage.preference_repo import PreferenceRepository

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4096
TITLE_CONTEXT_CHARS = 500

CLOSE_CALLBACK = "close"
SET_LANGUAGE_PREFIX = "set_lang_"
WAITING_CALLBACK = "waiting"

INLINE_INSTRUCTION = (
    "You are answering inside an inline query. Reply briefly and directly, "
    "in at most a few sentences, without follow-up questions."
)
TITLE_PROMPT = (
    "Write a topic title of at most 3 words, very concise, with no symbols and "
    "no punctuation, based on this text: {text}"
)


class TypingIndicator:
    """Re-sends the typing action every ``interval`` seconds until exited."""

    def __init__(self, transport: ChatTransport, chat_id: int, thread_id: int, interval: float):
        self._transport = transport
        self._chat_id = chat_id
        self._thread_id = thread_id
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> TypingIndicator:
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self._transport.send_typing_indicator(self._chat_id, self._thread_id)
            except TransportError as e:
                logger.debug("typing_indicator_failed", chat_id=self._chat_id, error=str(e))
            await asyncio.sleep(self._interval)


class Dispatcher:
    """Handles one event per task; tasks for different events run concurrently.

    There is no per-conversation serialization: two messages racing in the
    same chat may interleave their history reads and writes.
    """

    def __init__(
        self,
        transport: ChatTransport,
        gateway: CompletionGateway,
        conversations: ConversationRepository,
        preferences: PreferenceRepository,
        localizer: Localizer,
        chat_config: ChatConfig,
        bot_username: str = "",
    ):
        self._transport = transport
        self._gateway = gateway
        self._conversations = conversations
        self._preferences = preferences
        self._localizer = localizer
        self._config = chat_config
        self._assembler = ContextAssembler(conversations, cite_sources=chat_config.cite_sources)
        self.bot_username = bot_username
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Task management

    def dispatch(self, event: Event) -> asyncio.Task[None]:
        """Schedule ``handle(event)`` without waiting for it."""
        return self._spawn(self.handle(event), name=type(event).__name__)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("event_task_failed", task=task.get_name(), error=repr(exc), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("event_tasks_cancelled", count=len(still_running))

    async def handle(self, event: Event) -> None:
        match event:
            case ChatMessage():
                await self._handle_message(event)
            case CallbackAction():
                await self._handle_callback(event)
            case InlineQuery():
                await self._handle_inline_query(event)
            case ChosenInlineResult():
                await self._handle_chosen_inline(event)
            case _:
                logger.debug("event_ignored", kind=type(event).__name__)

    # ------------------------------------------------------------------
    # Messages

    async def _handle_message(self, msg: ChatMessage) -> None:
        decision = should_respond(msg, self.bot_username)
        if not decision.respond or not decision.text:
            return

        text = decision.text
        key = msg.key
        user_id = msg.sender.id if msg.sender else 0
        lang = await self._language_for(user_id)

        command = parse_command(text, self.bot_username)
        name = command[0] if command else ""
        if name == START_COMMAND:
            await self._safe_send(msg, self._localizer.get(lang, "welcome"), formatted=False)
            return
        if name == LANGUAGE_COMMAND:
            await self._send_language_selector(msg, lang)
            return
        if name == RESET_COMMAND:
            await self._reset_history(msg, key, lang)
            return

        await self._chat(msg, key, text, lang)

    async def _chat(self, msg: ChatMessage, key: ConversationKey, text: str, lang: str) -> None:
        log = logger.bind(chat_id=key.chat_id, thread_id=key.thread_id, message_id=msg.message_id)
        system_prompt = self._config.system_prompt

        async with TypingIndicator(self._transport, key.chat_id, key.thread_id, self._config.typing_interval):
            prompt = await self._assemble(key, system_prompt, text)
            try:
                result: CompletionResult | None = await self._gateway.send(prompt.messages)
            except CredentialsExhaustedError as e:
                log.error("completion_failed", attempts=e.attempts, error=str(e.last_error))
                result = None

        reply = process(result.text, result.reasoning) if result else None
        if reply is None or not reply.answer:
            if reply is not None:
                log.warning("completion_empty_answer", reasoning_chars=len(reply.reasoning))
            await self._safe_send(msg, self._localizer.get(lang, "ai_unavailable"), formatted=False)
            return

        if reply.reasoning and not msg.chat.is_private:
            await self._show_thinking(msg, reply, lang)

        await self._send_reply(msg, reply, lang)
        await self._persist(key, text, reply.answer)

        if self._should_auto_title(msg, prompt):
            self._spawn(self._auto_title(key, reply.answer), name="auto_title")

    async def _assemble(self, key: ConversationKey, system_prompt: str, text: str) -> AssembledPrompt:
        try:
            return await self._assembler.build(key, system_prompt, text)
        except aiosqlite.Error as e:
            logger.warning("history_read_failed", chat_id=key.chat_id, thread_id=key.thread_id, error=str(e))
            # Unknown history size: never treat this as a fresh topic
            return AssembledPrompt(
                messages=build_messages([], system_prompt, text, self._config.cite_sources),
                history_size=-1,
            )

    async def _show_thinking(self, msg: ChatMessage, reply: ProcessedReply, lang: str) -> None:
        draft_id = time.time_ns() // 1_000_000
        preview = self._localizer.get(lang, "thinking", text=reply.reasoning)
        try:
            await self._transport.send_ephemeral_draft(
                msg.chat.id,
                draft_id,
                _truncate(preview),
                thread_id=msg.thread_id,
                reply_to=msg.message_id,
            )
        except TransportError as e:
            logger.debug("thinking_preview_failed", chat_id=msg.chat.id, error=str(e))
            return
        await asyncio.sleep(reply.preview_delay)

    async def _send_reply(self, msg: ChatMessage, reply: ProcessedReply, lang: str) -> None:
        """Send the answer chunk by chunk; a rejected chunk is resent plain, alone."""
        keyboard = InlineKeyboard.single(self._localizer.get(lang, "button_close"), CLOSE_CALLBACK)
        chunks = split_message(reply.answer, MAX_MESSAGE_LENGTH)
        for i, chunk in enumerate(chunks):
            kwargs: dict[str, Any] = dict(
                thread_id=msg.thread_id,
                reply_to=msg.message_id if i == 0 else None,
                keyboard=keyboard if i == len(chunks) - 1 else None,
            )
            try:
                await self._transport.send_text(msg.chat.id, downgrade_emphasis(chunk), formatted=True, **kwargs)
                continue
            except TransportError as e:
                logger.warning("formatted_send_failed", chat_id=msg.chat.id, chunk=i, error=str(e))
            try:
                await self._transport.send_text(msg.chat.id, chunk, formatted=False, **kwargs)
            except TransportError as e:
                logger.error("plain_send_failed", chat_id=msg.chat.id, chunk=i, error=str(e))
                return

    async def _persist(self, key: ConversationKey, user_text: str, answer: str) -> None:
        for role, content in ((Role.USER, user_text), (Role.ASSISTANT, answer)):
            try:
                await self._conversations.append_message(key, role, content)
            except aiosqlite.Error as e:
                logger.error(
                    "history_write_failed",
                    chat_id=key.chat_id,
                    thread_id=key.thread_id,
                    role=role.value,
                    error=str(e),
                )

    def _should_auto_title(self, msg: ChatMessage, prompt: AssembledPrompt) -> bool:
        return (
            self._config.auto_title
            and prompt.is_first_turn
            and msg.thread_id != 0
            and msg.chat.type.value in self._config.auto_title_chat_types
        )

    async def _auto_title(self, key: ConversationKey, answer: str) -> None:
        messages = [
            system_message(self._config.system_prompt),
            {"role": Role.USER.value, "content": TITLE_PROMPT.format(text=answer[:TITLE_CONTEXT_CHARS])},
        ]
        try:
            result = await self._gateway.send(messages)
        except CredentialsExhaustedError as e:
            logger.warning("topic_title_failed", chat_id=key.chat_id, error=str(e.last_error))
            return

        title = clean_title(result.text)
        if not title:
            logger.info("topic_title_empty", chat_id=key.chat_id, thread_id=key.thread_id)
            return

        logger.info("topic_renaming", chat_id=key.chat_id, thread_id=key.thread_id, title=title)
        try:
            await self._transport.rename_topic(key.chat_id, key.thread_id, title)
        except TransportError as e:
            logger.warning("topic_rename_failed", chat_id=key.chat_id, error=str(e))

    # ------------------------------------------------------------------
    # Commands

    async def _reset_history(self, msg: ChatMessage, key: ConversationKey, lang: str) -> None:
        try:
            await self._conversations.clear_history(key)
        except aiosqlite.Error as e:
            logger.error("history_clear_failed", chat_id=key.chat_id, error=str(e))
            return
        await self._safe_send(msg, self._localizer.get(lang, "history_cleared"), formatted=False)

    async def _send_language_selector(self, msg: ChatMessage, lang: str) -> None:
        buttons = tuple(
            KeyboardButton(LANGUAGE_LABELS.get(code, code), f"{SET_LANGUAGE_PREFIX}{code}")
            for code in self._localizer.languages()
        )
        await self._safe_send(
            msg,
            self._localizer.get(lang, "choose_lang"),
            keyboard=InlineKeyboard(rows=(buttons,)),
            formatted=False,
        )

    async def _safe_send(
        self,
        msg: ChatMessage,
        text: str,
        keyboard: Optional[InlineKeyboard] = None,
        formatted: bool = True,
    ) -> None:
        try:
            await self._transport.send_text(
                msg.chat.id,
                text,
                thread_id=msg.thread_id,
                reply_to=msg.message_id,
                keyboard=keyboard,
                formatted=formatted,
            )
        except TransportError as e:
            logger.error("send_failed", chat_id=msg.chat.id, error=str(e))

    async def _language_for(self, user_id: int) -> str:
        if not user_id:
            return FALLBACK_LANGUAGE
        try:
            return await self._preferences.get_language(user_id)
        except aiosqlite.Error as e:
            logger.warning("language_read_failed", user_id=user_id, error=str(e))
            return FALLBACK_LANGUAGE

    # ------------------------------------------------------------------
    # Callbacks

    async def _handle_callback(self, cb: CallbackAction) -> None:
        try:
            await self._transport.answer_callback(cb.id)
        except TransportError as e:
            logger.warning("callback_ack_failed", callback_id=cb.id, error=str(e))

        if cb.data == CLOSE_CALLBACK:
            await self._close_message(cb)
        elif cb.data.startswith(SET_LANGUAGE_PREFIX):
            await self._set_language(cb, cb.data[len(SET_LANGUAGE_PREFIX):])
        else:
            logger.debug("callback_ignored", data=cb.data)

    async def _close_message(self, cb: CallbackAction) -> None:
        lang = await self._language_for(cb.sender.id)
        notice = self._localizer.get(lang, "closed_by", name=cb.sender.display_name)
        try:
            if cb.message is not None:
                await self._transport.edit_message(
                    notice, chat_id=cb.message.chat.id, message_id=cb.message.message_id, formatted=False
                )
            elif cb.inline_message_id:
                await self._transport.edit_message(
                    notice, inline_message_id=cb.inline_message_id, formatted=False
                )
        except TransportError as e:
            logger.warning("close_edit_failed", callback_id=cb.id, error=str(e))

    async def _set_language(self, cb: CallbackAction, code: str) -> None:
        if not self._localizer.supports(code):
            logger.warning("language_unsupported", code=code, user_id=cb.sender.id)
            return
        try:
            await self._preferences.set_language(cb.sender.id, code)
        except aiosqlite.Error as e:
            logger.error("language_write_failed", user_id=cb.sender.id, error=str(e))
            return
        if cb.message is None:
            return
        await self._safe_send(cb.message, self._localizer.get(code, "lang_set"), formatted=False)

    # ------------------------------------------------------------------
    # Inline mode

    async def _handle_inline_query(self, query: InlineQuery) -> None:
        text = query.query.strip()
        result = None
        if text:
            lang = await self._language_for(query.sender.id)
            # The button makes Telegram assign an inline_message_id we can edit later
            result = InlineResult(
                id=query.id[:64],
                title=self._localizer.get(lang, "inline_title"),
                description=self._localizer.get(lang, "inline_description", query=text),
                text=self._localizer.get(lang, "inline_waiting"),
                keyboard=InlineKeyboard.single(self._localizer.get(lang, "button_waiting"), WAITING_CALLBACK),
            )
        try:
            await self._transport.answer_inline_query(query.id, result)
        except TransportError as e:
            logger.warning("inline_answer_failed", query_id=query.id, error=str(e))

    async def _handle_chosen_inline(self, chosen: ChosenInlineResult) -> None:
        if not chosen.inline_message_id:
            logger.warning("inline_result_not_editable", result_id=chosen.result_id)
            return
        text = chosen.query.strip()
        if not text:
            return

        system_prompt = f"{self._config.system_prompt}\n\n{INLINE_INSTRUCTION}"
        messages = [
            system_message(system_prompt, self._config.cite_sources),
            {"role": Role.USER.value, "content": text},
        ]
        try:
            result = await self._gateway.send(messages)
        except CredentialsExhaustedError as e:
            logger.error("inline_completion_failed", error=str(e.last_error))
            lang = await self._language_for(chosen.sender.id)
            await self._edit_inline(chosen.inline_message_id, self._localizer.get(lang, "ai_unavailable"), None)
            return

        reply = process(result.text, result.reasoning)
        if not reply.answer:
            lang = await self._language_for(chosen.sender.id)
            await self._edit_inline(chosen.inline_message_id, self._localizer.get(lang, "ai_unavailable"), None)
            return
        await self._edit_inline(chosen.inline_message_id, reply.answer, reply.formatted)

    async def _edit_inline(self, inline_message_id: str, plain: str, formatted: Optional[str]) -> None:
        if formatted:
            try:
                await self._transport.edit_message(
                    _truncate(formatted), inline_message_id=inline_message_id, formatted=True
                )
                return
            except TransportError as e:
                logger.warning("inline_formatted_edit_failed", error=str(e))
        try:
            await self._transport.edit_message(_truncate(plain), inline_message_id=inline_message_id, formatted=False)
        except TransportError as e:
            logger.error("inline_edit_failed", error=str(e))


def _truncate(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks
