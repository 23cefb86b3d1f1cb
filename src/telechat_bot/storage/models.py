"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from telechat_bot.messenger.models import ConversationKey


@dataclass(frozen=True)
class Turn:
    key: ConversationKey
    role: str  # "user" | "assistant"
    content: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None
