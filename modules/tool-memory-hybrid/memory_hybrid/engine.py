"""MemoryEngine: the single object the host application holds."""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from . import quantizer
from .config import MemoryConfig
from .context import ChatHistory, ContextBuilder, StoredChatHistory
from .embeddings import Embedder, create_embedder
from .heuristics import Classifier, normalize
from .ingest import Ingestor
from .models import (
    CategoryCount,
    ChatTurn,
    ContextBundle,
    MemoryHit,
    MemoryKind,
    MemoryRecord,
    VectorEntry,
    now_ms,
)
from .retrieval import Retriever
from .storage import MemoryStorage
from .temporal import TemporalQueryParser

logger = logging.getLogger(__name__)

_MS_PER_DAY = 24 * 60 * 60 * 1000


class MemoryEngine:
    """Ingestion, recall, context assembly and housekeeping behind one handle.

    Design decisions:
    - Built by build_engine() and passed to callers explicitly; there is no
      process-wide instance
    - All collaborators (store, embedder, classifier, clocks) are injected
    - The per-persona enablement flag gates ingestion and context assembly;
      recall and the feed still show what is already stored
    """

    def __init__(
        self,
        config: MemoryConfig,
        storage: MemoryStorage,
        embedder: Embedder,
        ingestor: Ingestor,
        retriever: Retriever,
        context_builder: ContextBuilder,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.storage = storage
        self.embedder = embedder
        self.ingestor = ingestor
        self.retriever = retriever
        self.context_builder = context_builder
        self.clock = clock

    # ------------------------------------------------------------------
    # Enablement
    # ------------------------------------------------------------------

    def enable(self, persona_id: str, owner_id: str, enabled: bool = True) -> None:
        self.storage.set_enabled(persona_id, owner_id, enabled)
        logger.info(
            "Memory %s for persona=%s", "enabled" if enabled else "disabled", persona_id
        )

    def is_enabled(self, persona_id: str, owner_id: str) -> bool:
        return self.storage.is_enabled(persona_id, owner_id)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def ingest(
        self, turn: ChatTurn, persona_id: str, user_id: str, incognito: bool = False
    ) -> list[MemoryRecord]:
        """Store memories from a chat turn. See Ingestor.ingest."""
        return await self.ingestor.ingest(turn, persona_id, user_id, incognito=incognito)

    async def recall(
        self, persona_id: str, user_id: str, query: str, k: Optional[int] = None
    ) -> list[MemoryHit]:
        """Retrieve memories for a query. See Retriever.recall."""
        return await self.retriever.recall(persona_id, user_id, query, k=k)

    async def context_for(
        self,
        message: str,
        persona_id: str,
        user_id: str,
        chat_id: str,
        max_tokens: Optional[int] = None,
    ) -> ContextBundle:
        """Context bundle for a new message, empty when memory is disabled."""
        if not self.storage.is_enabled(persona_id, user_id):
            return ContextBundle.empty()
        return await self.context_builder.context_for(
            message, persona_id, user_id, chat_id, max_tokens=max_tokens
        )

    # ------------------------------------------------------------------
    # Browsing
    # ------------------------------------------------------------------

    def feed(
        self,
        persona_id: str,
        user_id: str,
        kind: Optional[MemoryKind] = None,
        query: Optional[str] = None,
    ) -> list[MemoryHit]:
        """All memories in scope, newest first, for a management screen.

        Args:
            persona_id: Persona scope
            user_id: Owner scope
            kind: Only this kind when given
            query: Case-insensitive substring filter on the text

        Returns:
            Hits with score 1.0 (the feed is not ranked)
        """
        records = self.storage.feed(persona_id, user_id, kind=kind, query=query)
        return [MemoryHit(record=record, score=1.0) for record in records]

    def counts(self, persona_id: str, user_id: str) -> list[CategoryCount]:
        """Per-kind counts, largest first."""
        by_kind = self.storage.counts_by_kind(persona_id, user_id)
        counts = [CategoryCount(kind=kind, count=count) for kind, count in by_kind.items()]
        counts.sort(key=lambda c: (-c.count, c.kind.value))
        return counts

    def count(self, persona_id: str, user_id: str) -> int:
        return self.storage.count(persona_id, user_id)

    def total_count(self, user_id: Optional[str] = None) -> int:
        return self.storage.total_count(user_id)

    # ------------------------------------------------------------------
    # Editing and deletion
    # ------------------------------------------------------------------

    async def update_text(
        self, memory_id: str, persona_id: str, user_id: str, text: str
    ) -> bool:
        """Replace a memory's text and re-embed it.

        Returns:
            True if the memory existed in this scope

        Raises:
            ValueError: If the new text is empty after normalization
        """
        normalized = normalize(text)
        if not normalized:
            raise ValueError("Memory text cannot be empty")

        vector = None
        embedding = await self.embedder.embed(normalized)
        q8, scale = quantizer.quantize(embedding)
        if q8 and not quantizer.is_zero(q8):
            vector = VectorEntry(memory_id=memory_id, dim=len(q8), q8=q8, scale=scale)

        updated = self.storage.update_text(memory_id, persona_id, user_id, normalized, vector)
        if updated:
            logger.info("Updated memory %s (vector=%s)", memory_id, vector is not None)
        return updated

    def delete(self, memory_id: str, persona_id: str, user_id: str) -> bool:
        deleted = self.storage.delete(memory_id, persona_id, user_id)
        if deleted:
            logger.info("Deleted memory %s", memory_id)
        return deleted

    def delete_all(self, persona_id: str, user_id: str) -> int:
        deleted = self.storage.delete_all(persona_id, user_id)
        logger.info("Deleted %d memories for persona=%s", deleted, persona_id)
        return deleted

    def delete_all_for_owner(self, owner_id: str) -> int:
        """Remove every memory the owner has, across all personas (account deletion)."""
        deleted = self.storage.delete_all_for_user(owner_id)
        logger.info("Deleted %d memories for owner=%s", deleted, owner_id)
        return deleted

    def delete_all_not_for_owner(self, owner_id: str) -> int:
        """Remove memories of every other owner (account switch on a shared device)."""
        deleted = self.storage.delete_all_not_for_user(owner_id)
        if deleted:
            logger.warning("Removed %d memories not owned by owner=%s", deleted, owner_id)
        return deleted

    def clear_preferences_for_owner(self, owner_id: str) -> int:
        return self.storage.clear_preferences(owner_id)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune_low_importance(
        self,
        persona_id: str,
        user_id: str,
        older_than_days: Optional[int] = None,
        min_importance: Optional[float] = None,
    ) -> int:
        """Delete old memories below the importance floor.

        Args:
            persona_id: Persona scope
            user_id: Owner scope
            older_than_days: Age cutoff (default config.prune_after_days)
            min_importance: Importance floor (default config.importance_floor)

        Returns:
            Number of memories removed
        """
        days = older_than_days if older_than_days is not None else self.config.prune_after_days
        floor = min_importance if min_importance is not None else self.config.importance_floor
        before_ms = self.clock() - days * _MS_PER_DAY
        pruned = self.storage.prune_low_importance(persona_id, user_id, before_ms, floor)
        logger.info(
            "Pruned %d memories for persona=%s (older than %d days, importance < %.2f)",
            pruned,
            persona_id,
            days,
            floor,
        )
        return pruned

    def purge_stale_vectors(self, dim: Optional[int] = None) -> int:
        """Drop vectors left behind by an embedder with a different dimension."""
        dim = dim or self.config.dim
        purged = self.storage.purge_stale_vectors(dim)
        if purged:
            logger.info("Purged %d vectors with dimension != %d", purged, dim)
        return purged

    def close(self) -> None:
        self.storage.close()


def build_engine(
    config: MemoryConfig | dict[str, Any] | None = None,
    embedder: Optional[Embedder] = None,
    classifier: Optional[Classifier] = None,
    chat_history: Optional[ChatHistory] = None,
    chat_titles: Optional[Callable[[str], Optional[str]]] = None,
    clock: Callable[[], int] = now_ms,
    now: Optional[Callable[[], datetime]] = None,
) -> MemoryEngine:
    """Wire up a MemoryEngine.

    Args:
        config: MemoryConfig, a plain config dict, or None for defaults
        embedder: Embedder to use (default chosen from config, see create_embedder)
        classifier: Classifier for ingestion (default HeuristicClassifier)
        chat_history: Short-term turn source (default reads the memory store)
        chat_titles: Optional chat_id -> title lookup for recall hits
        clock: Epoch-millisecond clock for timestamps and ranking
        now: Local datetime clock for time expressions (default datetime.now)

    Returns:
        A ready MemoryEngine; call close() when done
    """
    if not isinstance(config, MemoryConfig):
        config = MemoryConfig.from_dict(config)

    storage = MemoryStorage(config.db_path)
    embedder = embedder or create_embedder(config)
    parser = TemporalQueryParser(now=now, first_weekday=config.first_weekday)

    ingestor = Ingestor(storage, embedder, config, classifier=classifier, clock=clock)
    retriever = Retriever(
        storage, embedder, config, parser=parser, clock=clock, chat_titles=chat_titles
    )
    context_builder = ContextBuilder(
        retriever, config, chat_history or StoredChatHistory(storage)
    )

    logger.info(
        "Memory engine ready (db=%s, embedder=%s, dim=%d)",
        config.db_path,
        type(embedder).__name__,
        embedder.dimension(),
    )
    return MemoryEngine(
        config=config,
        storage=storage,
        embedder=embedder,
        ingestor=ingestor,
        retriever=retriever,
        context_builder=context_builder,
        clock=clock,
    )
