"""Builds the completion prompt from stored conversation history."""

from __future__ import annotations

from dataclasses import dataclass

from telechat_bot.ai.client import Prompt
from telechat_bot.core.types import Role
from telechat_bot.messenger.models import ConversationKey
from telechat_bot.storage.conversation_repo import ConversationRepository
from telechat_bot.storage.models import Turn

CITATION_INSTRUCTION = (
    "When you use facts from a specific source, cite it inline as [n] and "
    "list the sources at the end of the answer as 'n. title - link'."
)

HISTORY_ROLES = frozenset({Role.USER, Role.ASSISTANT})


@dataclass
class AssembledPrompt:
    messages: Prompt
    history_size: int  # stored turns read, including ones skipped as empty

    @property
    def is_first_turn(self) -> bool:
        return self.history_size == 0


def system_message(system_prompt: str, cite_sources: bool = False) -> dict[str, str]:
    content = system_prompt
    if cite_sources:
        content = f"{system_prompt}\n\n{CITATION_INSTRUCTION}"
    return {"role": Role.SYSTEM.value, "content": content}


def build_messages(
    history: list[Turn],
    system_prompt: str,
    user_text: str,
    cite_sources: bool = False,
) -> Prompt:
    """System message, then non-empty history oldest-first, then the new user turn."""
    messages: Prompt = [system_message(system_prompt, cite_sources)]
    for turn in history:
        if turn.role not in HISTORY_ROLES or not turn.content.strip():
            continue
        messages.append({"role": str(turn.role), "content": turn.content})
    messages.append({"role": Role.USER.value, "content": user_text})
    return messages


class ContextAssembler:
    """Read-only: persisting the exchange is the dispatcher's job."""

    def __init__(self, repo: ConversationRepository, cite_sources: bool = False):
        self._repo = repo
        self._cite_sources = cite_sources

    async def build(self, key: ConversationKey, system_prompt: str, user_text: str) -> AssembledPrompt:
        history = await self._repo.read_recent_messages(key)
        return AssembledPrompt(
            messages=build_messages(history, system_prompt, user_text, self._cite_sources),
            history_size=len(history),
        )
