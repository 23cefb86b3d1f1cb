"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

import asyncio

from telechat_bot.ai.client import CompletionGateway, CredentialPool
from telechat_bot.ai.handler import Dispatcher
from telechat_bot.config import AppConfig
from telechat_bot.errors import TransportError
from telechat_bot.i18n import Localizer
from telechat_bot.log import get_logger
from telechat_bot.messenger.base import ChatTransport
from telechat_bot.storage.conversation_repo import ConversationRepository
from telechat_bot.storage.database import Database
from telechat_bot.storage.preference_repo import PreferenceRepository

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


class TelechatApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        transport: ChatTransport | None = None,
        gateway: CompletionGateway | None = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.conversations = ConversationRepository(self.db, max_turns=config.chat.history_limit)
        self.preferences = PreferenceRepository(self.db)
        self.localizer = Localizer.load()
        self.gateway = gateway or CompletionGateway(
            config.completion, CredentialPool(config.completion.api_keys)
        )
        if transport is None:
            from telechat_bot.messenger.telegram import TelegramTransport

            transport = TelegramTransport(config.telegram)
        self.transport = transport
        self.dispatcher = Dispatcher(
            transport=self.transport,
            gateway=self.gateway,
            conversations=self.conversations,
            preferences=self.preferences,
            localizer=self.localizer,
            chat_config=config.chat,
            bot_username=config.telegram.bot_username,
        )
        self.offset = 0

    async def start(self) -> None:
        """Initialize storage and the transport, and resolve the bot's handle."""
        await self.db.initialize()
        await self.transport.start()

        identity = await self.transport.get_identity()
        if not self.dispatcher.bot_username:
            if identity.username:
                self.dispatcher.bot_username = identity.username
            else:
                logger.warning("bot_username_unset", hint="group mentions and reply detection are disabled")
        elif identity.username and identity.username.lower() != self.dispatcher.bot_username.lower():
            logger.warning(
                "bot_username_mismatch",
                configured=self.dispatcher.bot_username,
                actual=identity.username,
            )

        logger.info(
            "telechat_started",
            bot_username=self.dispatcher.bot_username,
            model=self.gateway.model_name,
            languages=self.localizer.languages(),
        )

    async def poll_once(self) -> int:
        """Fetch one batch, advance the offset past all of it, dispatch each event.

        Returns the number of updates fetched.
        """
        updates = await self.transport.fetch_events(self.offset, self.config.telegram.poll_timeout)
        for update in updates:
            if update.update_id >= self.offset:
                self.offset = update.update_id + 1
            if update.event is not None:
                self.dispatcher.dispatch(update.event)
        return len(updates)

    async def run(self) -> None:
        """Poll forever; cancel the surrounding task to stop."""
        logger.info("polling_started")
        while True:
            try:
                await self.poll_once()
            except TransportError as e:
                # Retried immediately unless poll_error_delay is configured
                logger.error("poll_failed", offset=self.offset, error=str(e))
                await asyncio.sleep(self.config.telegram.poll_error_delay)
            except Exception as e:
                logger.exception("poll_failed", offset=self.offset, error=str(e))
                await asyncio.sleep(self.config.telegram.poll_error_delay)

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.dispatcher.drain(timeout=SHUTDOWN_GRACE_SECONDS)
        for name, closer in (
            ("gateway", self.gateway.close),
            ("transport", self.transport.close),
            ("database", self.db.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error("shutdown_error", component=name, error=str(e))
        logger.info("telechat_stopped")
