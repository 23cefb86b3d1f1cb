"""Decides whether an inbound message is addressed to the bot.

Pure functions only: no network or storage access, so every rule can be
tested in isolation.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

from telechat_bot.messenger.models import ChatMessage

ASK_COMMANDS = frozenset({"/ask", "/ai"})
RESET_COMMAND = "/newchat"
LANGUAGE_COMMAND = "/lang"
START_COMMAND = "/start"
ACTION_COMMANDS = frozenset({RESET_COMMAND, LANGUAGE_COMMAND})


class TriggerDecision(NamedTuple):
    respond: bool
    text: str


REJECT = TriggerDecision(False, "")


def parse_command(text: str, bot_username: str = "") -> Optional[tuple[str, str]]:
    """Split a leading ``/command[@bot]`` token from its argument text.

    Returns ``(command, argument)`` with the command lowercased and the
    ``@bot`` suffix removed, or None when the text is not a command or the
    suffix names another bot.
    """
    text = text.strip()
    if not text.startswith("/"):
        return None
    token, _, rest = text.partition(" ")
    command, _, target = token.partition("@")
    if target and bot_username and target.lower() != bot_username.lower():
        return None
    if len(command) < 2:
        return None
    return command.lower(), rest.strip()


def strip_mention(text: str, bot_username: str) -> str:
    """Remove every ``@bot_username`` occurrence, case-insensitively."""
    return re.sub(re.escape(f"@{bot_username}"), "", text, flags=re.IGNORECASE).strip()


def _is_reply_to_bot(message: ChatMessage, bot_username: str) -> bool:
    parent = message.reply_to
    if not bot_username or parent is None or parent.sender is None:
        return False
    return parent.sender.username.lower() == bot_username.lower()


def should_respond(message: ChatMessage, bot_username: str) -> TriggerDecision:
    """Apply the trigger rules in order; the first match wins."""
    text = message.text.strip()
    if not text:
        return REJECT

    if message.chat.is_private:
        return TriggerDecision(True, text)

    command = parse_command(text, bot_username)
    if command is not None:
        name, argument = command
        if name in ASK_COMMANDS:
            return TriggerDecision(True, argument)
        if name in ACTION_COMMANDS:
            return TriggerDecision(True, name)

    if bot_username and f"@{bot_username.lower()}" in text.lower():
        return TriggerDecision(True, strip_mention(text, bot_username))

    if _is_reply_to_bot(message, bot_username):
        return TriggerDecision(True, text)

    return REJECT
