"""Telegram chat transport using python-telegram-bot v21+."""

from __future__ import annotations

from typing import Any, Optional

import telegram
from telegram import (
    Bot,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    InlineQueryResultArticle,
    InputTextMessageContent,
    ReplyParameters,
    Update,
)
from telegram.constants import ChatAction, ParseMode
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

from telechat_bot.config import TelegramConfig
from telechat_bot.core.types import ChatType
from telechat_bot.errors import TransportError
from telechat_bot.log import get_logger
from telechat_bot.messenger.base import ChatTransport, check_edit_target
from telechat_bot.messenger.models import (
    NO_TOPIC,
    CallbackAction,
    Chat,
    ChatMessage,
    ChosenInlineResult,
    IncomingUpdate,
    InlineKeyboard,
    InlineQuery,
    InlineResult,
    User,
)

logger = get_logger(__name__)

ALLOWED_UPDATES = ["message", "callback_query", "inline_query", "chosen_inline_result"]


class TelegramTransport(ChatTransport):
    """Bot API client with explicit-offset long polling."""

    def __init__(self, config: TelegramConfig, bot: Bot | None = None):
        self._config = config
        self._bot = bot or Bot(
            token=config.token,
            request=HTTPXRequest(
                connect_timeout=config.request_timeout,
                read_timeout=config.request_timeout,
                write_timeout=config.request_timeout,
            ),
            get_updates_request=HTTPXRequest(read_timeout=config.poll_timeout + 10),
        )

    async def start(self) -> None:
        await self._bot.initialize()
        logger.info("telegram_transport_started")

    async def close(self) -> None:
        await self._bot.shutdown()
        logger.info("telegram_transport_stopped")

    async def get_identity(self) -> User:
        try:
            me = await self._bot.get_me()
        except TelegramError as e:
            raise TransportError(f"getMe failed: {e}") from e
        return _convert_user(me)

    async def fetch_events(self, offset: int, timeout: int) -> list[IncomingUpdate]:
        try:
            updates = await self._bot.get_updates(
                offset=offset,
                timeout=timeout,
                allowed_updates=ALLOWED_UPDATES,
            )
        except TelegramError as e:
            raise TransportError(f"getUpdates failed: {e}") from e
        return [IncomingUpdate(update_id=u.update_id, event=_convert_update(u)) for u in updates]

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
        try:
            message = await self._bot.send_message(
                chat_id=chat_id,
                text=text,
                message_thread_id=thread_id or None,
                parse_mode=ParseMode.MARKDOWN if formatted else None,
                reply_parameters=_reply_parameters(reply_to),
                reply_markup=_to_markup(keyboard),
            )
        except TelegramError as e:
            raise TransportError(f"sendMessage failed: {e}") from e
        return message.message_id

    async def send_typing_indicator(self, chat_id: int, thread_id: int = NO_TOPIC) -> None:
        try:
            await self._bot.send_chat_action(
                chat_id=chat_id,
                action=ChatAction.TYPING,
                message_thread_id=thread_id or None,
            )
        except TelegramError as e:
            raise TransportError(f"sendChatAction failed: {e}") from e

    async def send_ephemeral_draft(
        self,
        chat_id: int,
        draft_id: int,
        text: str,
        *,
        thread_id: int = NO_TOPIC,
        reply_to: Optional[int] = None,
    ) -> None:
        # Not wrapped by a typed Bot method in every library release.
        # No parse_mode: reasoning is raw model output.
        api_kwargs: dict[str, Any] = {
            "chat_id": chat_id,
            "draft_id": draft_id,
            "text": text,
        }
        if thread_id:
            api_kwargs["message_thread_id"] = thread_id
        if reply_to:
            api_kwargs["reply_to_message_id"] = reply_to
        try:
            await self._bot.do_api_request("sendMessageDraft", api_kwargs=api_kwargs)
        except TelegramError as e:
            raise TransportError(f"sendMessageDraft failed: {e}") from e

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
        try:
            await self._bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                inline_message_id=inline_message_id,
                parse_mode=ParseMode.MARKDOWN if formatted else None,
                reply_markup=_to_markup(keyboard),
            )
        except TelegramError as e:
            raise TransportError(f"editMessageText failed: {e}") from e

    async def rename_topic(self, chat_id: int, thread_id: int, name: str) -> None:
        try:
            await self._bot.edit_forum_topic(chat_id=chat_id, message_thread_id=thread_id, name=name)
        except TelegramError as e:
            raise TransportError(f"editForumTopic failed: {e}") from e

    async def answer_inline_query(self, query_id: str, result: Optional[InlineResult]) -> None:
        results = []
        if result is not None:
            results.append(
                InlineQueryResultArticle(
                    id=result.id,
                    title=result.title,
                    description=result.description or None,
                    input_message_content=InputTextMessageContent(result.text),
                    reply_markup=_to_markup(result.keyboard),
                )
            )
        try:
            await self._bot.answer_inline_query(query_id, results=results, cache_time=0)
        except TelegramError as e:
            raise TransportError(f"answerInlineQuery failed: {e}") from e

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        try:
            await self._bot.answer_callback_query(callback_id, text=text)
        except TelegramError as e:
            raise TransportError(f"answerCallbackQuery failed: {e}") from e


def _reply_parameters(reply_to: Optional[int]) -> ReplyParameters | None:
    if not reply_to:
        return None
    return ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)


def _to_markup(keyboard: Optional[InlineKeyboard]) -> InlineKeyboardMarkup | None:
    if keyboard is None:
        return None
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton(b.text, callback_data=b.callback_data) for b in row]
            for row in keyboard.rows
        ]
    )


def _convert_user(user: telegram.User) -> User:
    return User(
        id=user.id,
        username=user.username or "",
        first_name=user.first_name or "",
        language_code=user.language_code or "",
    )


def _convert_chat(chat: telegram.Chat) -> Chat:
    try:
        chat_type = ChatType(chat.type)
    except ValueError:
        chat_type = ChatType.GROUP
    return Chat(id=chat.id, type=chat_type, has_topics=bool(getattr(chat, "is_forum", False)))


def _convert_message(msg: Any) -> ChatMessage | None:
    # Callback queries may carry an InaccessibleMessage without text or sender
    if msg is None or getattr(msg, "chat", None) is None:
        return None
    thread_id = msg.message_thread_id if getattr(msg, "is_topic_message", False) else NO_TOPIC
    sender = getattr(msg, "from_user", None)
    reply = getattr(msg, "reply_to_message", None)
    chat = _convert_chat(msg.chat)
    if thread_id:
        chat = Chat(id=chat.id, type=chat.type, has_topics=True)
    return ChatMessage(
        message_id=msg.message_id,
        chat=chat,
        text=getattr(msg, "text", None) or getattr(msg, "caption", None) or "",
        sender=_convert_user(sender) if sender else None,
        thread_id=thread_id or NO_TOPIC,
        reply_to=_convert_message(reply) if reply else None,
    )


def _convert_update(update: Update) -> CallbackAction | ChatMessage | InlineQuery | ChosenInlineResult | None:
    if update.message is not None:
        return _convert_message(update.message)
    if update.callback_query is not None:
        cb = update.callback_query
        return CallbackAction(
            id=cb.id,
            sender=_convert_user(cb.from_user),
            data=cb.data or "",
            message=_convert_message(cb.message),
            inline_message_id=cb.inline_message_id,
        )
    if update.inline_query is not None:
        iq = update.inline_query
        return InlineQuery(id=iq.id, sender=_convert_user(iq.from_user), query=iq.query or "")
    if update.chosen_inline_result is not None:
        cr = update.chosen_inline_result
        return ChosenInlineResult(
            result_id=cr.result_id,
            sender=_convert_user(cr.from_user),
            query=cr.query or "",
            inline_message_id=cr.inline_message_id,
        )
    return None
