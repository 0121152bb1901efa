"""Context assembly for a downstream prompt builder."""

import logging
from typing import Optional, Protocol, runtime_checkable

from .config import MemoryConfig
from .models import ContextBundle, MemoryHit, ShortTermTurn
from .retrieval import Retriever
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (1 token is about 4 characters)."""
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


@runtime_checkable
class ChatHistory(Protocol):
    """Source of recent raw turns for a chat, newest first."""

    def recent_turns(
        self, persona_id: str, user_id: str, chat_id: str, limit: int
    ) -> list[ShortTermTurn]: ...


class StoredChatHistory:
    """ChatHistory backed by the memory store's own records."""

    def __init__(self, storage: MemoryStorage):
        self.storage = storage

    def recent_turns(
        self, persona_id: str, user_id: str, chat_id: str, limit: int
    ) -> list[ShortTermTurn]:
        records = self.storage.recent(persona_id, user_id, limit, chat_id=chat_id)
        return [
            ShortTermTurn(role=record.role, text=record.text, created_at=record.created_at)
            for record in records
        ]


class ContextBuilder:
    """Bundle long-term hits and short-term turns under a token budget.

    Short-term turns get up to short_term_ratio of the budget (newest kept
    first); long-term hits fill the remainder in score order.
    """

    def __init__(
        self,
        retriever: Retriever,
        config: MemoryConfig,
        history: ChatHistory,
    ):
        self.retriever = retriever
        self.config = config
        self.history = history

    async def context_for(
        self,
        message: str,
        persona_id: str,
        user_id: str,
        chat_id: str,
        max_tokens: Optional[int] = None,
    ) -> ContextBundle:
        """Build the context bundle for a new user message.

        Args:
            message: The incoming user message
            persona_id: Persona scope
            user_id: Owner scope
            chat_id: Chat supplying short-term turns
            max_tokens: Budget override (default config.context_max_tokens)

        Returns:
            ContextBundle with long-term hits, chronological short-term turns
            and the estimated token total
        """
        budget = max_tokens or self.config.context_max_tokens

        turns = self.history.recent_turns(
            persona_id, user_id, chat_id, self.config.short_term_limit
        )
        short_term, short_tokens = self._take_turns(turns, int(budget * self.config.short_term_ratio))

        hits = await self.retriever.recall(persona_id, user_id, message)
        long_term, long_tokens = self._take_hits(hits, budget - short_tokens)

        logger.debug(
            "Context for persona=%s chat=%s: %d long-term, %d short-term, ~%d tokens",
            persona_id,
            chat_id,
            len(long_term),
            len(short_term),
            short_tokens + long_tokens,
        )
        return ContextBundle(
            long_term=long_term,
            short_term=short_term,
            estimated_tokens=short_tokens + long_tokens,
        )

    @staticmethod
    def _take_turns(turns: list[ShortTermTurn], budget: int) -> tuple[list[ShortTermTurn], int]:
        kept: list[ShortTermTurn] = []
        used = 0
        for turn in sorted(turns, key=lambda t: t.created_at, reverse=True):
            cost = estimate_tokens(turn.text)
            if used + cost > budget:
                break
            kept.append(turn)
            used += cost
        kept.reverse()
        return kept, used

    @staticmethod
    def _take_hits(hits: list[MemoryHit], budget: int) -> tuple[list[MemoryHit], int]:
        kept: list[MemoryHit] = []
        used = 0
        for hit in hits:
            cost = estimate_tokens(hit.record.text)
            if used + cost > budget:
                continue
            kept.append(hit)
            used += cost
        return kept, used
