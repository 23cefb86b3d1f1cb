"""Tests for the Telegram transport's raw Bot API calls."""

import pytest
from telegram.error import BadRequest

from telechat_bot.config import TelegramConfig
from telechat_bot.errors import TransportError
from telechat_bot.messenger.telegram import TelegramTransport


class RecordingBot:
    """Stands in for ``telegram.Bot`` and records ``do_api_request`` calls."""

    def __init__(self, fail: Exception | None = None):
        self.requests = []
        self.fail = fail

    async def do_api_request(self, endpoint, api_kwargs=None):
        self.requests.append((endpoint, api_kwargs))
        if self.fail is not None:
            raise self.fail
        return True


def make_transport(bot):
    return TelegramTransport(TelegramConfig(token="123:abc"), bot=bot)


async def test_draft_is_sent_without_parse_mode():
    bot = RecordingBot()

    await make_transport(bot).send_ephemeral_draft(-5, 77, "thinking about *x_y", thread_id=3, reply_to=9)

    endpoint, kwargs = bot.requests[0]
    assert endpoint == "sendMessageDraft"
    assert kwargs == {
        "chat_id": -5,
        "draft_id": 77,
        "text": "thinking about *x_y",
        "message_thread_id": 3,
        "reply_to_message_id": 9,
    }


async def test_draft_outside_topic_omits_thread():
    bot = RecordingBot()

    await make_transport(bot).send_ephemeral_draft(-5, 1, "hmm")

    assert "message_thread_id" not in bot.requests[0][1]
    assert "reply_to_message_id" not in bot.requests[0][1]


async def test_draft_failure_is_wrapped():
    bot = RecordingBot(fail=BadRequest("Bad Request: can't parse entities"))

    with pytest.raises(TransportError, match="sendMessageDraft"):
        await make_transport(bot).send_ephemeral_draft(-5, 1, "hmm")
