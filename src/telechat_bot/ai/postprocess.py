"""Splits model output into reasoning and answer, and prepares it for Telegram."""

from __future__ import annotations

import re
from dataclasses import dataclass

THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)

PREVIEW_CHARS_PER_SECOND = 50
MIN_PREVIEW_DELAY = 1.0
MAX_PREVIEW_DELAY = 3.0
TITLE_MAX_WORDS = 3


@dataclass(frozen=True)
class ProcessedReply:
    reasoning: str
    answer: str

    @property
    def formatted(self) -> str:
        """Answer with emphasis reduced to what legacy Markdown renders."""
        return downgrade_emphasis(self.answer)

    @property
    def preview_delay(self) -> float:
        return preview_delay(self.reasoning)


def split_reasoning(raw: str) -> tuple[str, str]:
    """Return ``(reasoning, answer)`` with every <think> region cut from the answer."""
    match = THINK_PATTERN.search(raw)
    reasoning = match.group(1).strip() if match else ""
    answer = THINK_PATTERN.sub("", raw)
    return reasoning, answer.strip()


def downgrade_emphasis(text: str) -> str:
    return text.replace("**", "*")


def preview_delay(reasoning: str) -> float:
    """Seconds to keep the thinking preview visible; 0 when there is none."""
    if not reasoning:
        return 0.0
    seconds = len(reasoning) / PREVIEW_CHARS_PER_SECOND
    return min(max(seconds, MIN_PREVIEW_DELAY), MAX_PREVIEW_DELAY)


def process(raw_text: str, raw_reasoning: str = "") -> ProcessedReply:
    # The structured field wins; the embedded region is stripped either way
    embedded, answer = split_reasoning(raw_text or "")
    reasoning = (raw_reasoning or "").strip() or embedded
    return ProcessedReply(reasoning=reasoning, answer=answer)


def clean_title(raw: str) -> str:
    _, title = split_reasoning(raw or "")
    for ch in ('*', '"', "."):
        title = title.replace(ch, "")
    words = title.split()
    return " ".join(words[:TITLE_MAX_WORDS])
