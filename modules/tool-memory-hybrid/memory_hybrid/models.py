"""Data models for hybrid memory."""

import time
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class MemoryKind(str, Enum):
    """What a memory is about."""

    FACT = "FACT"  # facts about the user
    EVENT = "EVENT"  # things that happened
    PREFERENCE = "PREFERENCE"  # likes and dislikes
    EMOTION = "EMOTION"  # feelings
    PROJECT = "PROJECT"  # ongoing work, goals
    KNOWLEDGE = "KNOWLEDGE"  # learned or general information


class EmotionType(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"
    EXCITED = "EXCITED"
    CURIOUS = "CURIOUS"


class MemoryRecord(BaseModel):
    """A single remembered fact, event or preference.

    Design decisions:
    - id: Auto-generated UUID4
    - persona_id + user_id: owner scope, every query filters on both
    - text: normalized snippet, also copied into the lexical index
    - created_at / last_accessed: epoch milliseconds
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    persona_id: str
    user_id: str
    chat_id: Optional[str] = None
    role: str = "user"
    text: str
    kind: MemoryKind
    emotion: Optional[EmotionType] = None
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: int = Field(default_factory=now_ms)
    last_accessed: int = Field(default_factory=now_ms)

    def dict_for_storage(self) -> dict:
        """Return a flat dict of column values for the records table.

        Enums are stored by name so rows stay readable outside Python.
        """
        return {
            "id": self.id,
            "persona_id": self.persona_id,
            "user_id": self.user_id,
            "chat_id": self.chat_id,
            "role": self.role,
            "text": self.text,
            "kind": self.kind.value,
            "emotion": self.emotion.value if self.emotion else None,
            "importance": self.importance,
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
        }


class VectorEntry(BaseModel):
    """Quantized embedding for one memory (1:1 with MemoryRecord)."""

    memory_id: str
    dim: int
    q8: bytes
    scale: float


class ChatTurn(BaseModel):
    """A user/assistant exchange, the unit of ingestion. Never stored verbatim."""

    chat_id: Optional[str] = None
    user_text: str
    assistant_text: Optional[str] = None


class MemoryHit(BaseModel):
    """A retrieved memory with its relevance score (higher is better)."""

    record: MemoryRecord
    score: float
    source_chat_title: Optional[str] = None


class TemporalRange(BaseModel):
    """An absolute time window parsed from a query.

    start_ms and end_ms are both inclusive; day ranges end at 23:59:59.999.
    expression is the part of the query that produced the range.
    """

    start_ms: int
    end_ms: int
    label: str
    expression: str = ""

    def contains(self, timestamp_ms: int) -> bool:
        return self.start_ms <= timestamp_ms <= self.end_ms


class ShortTermTurn(BaseModel):
    """A raw recent message from the current chat."""

    role: str
    text: str
    created_at: int


class ContextBundle(BaseModel):
    """Memories assembled for one query. Built fresh per call, never persisted."""

    long_term: list[MemoryHit] = []
    short_term: list[ShortTermTurn] = []
    estimated_tokens: int = 0

    @classmethod
    def empty(cls) -> "ContextBundle":
        return cls()


class CategoryCount(BaseModel):
    kind: MemoryKind
    count: int
