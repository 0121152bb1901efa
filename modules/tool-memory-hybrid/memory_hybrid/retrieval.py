"""Hybrid memory retrieval: lexical + vector + recency + importance."""

import logging
import math
from typing import Callable, Optional

from . import quantizer
from .config import MemoryConfig
from .embeddings import Embedder
from .heuristics import normalize, query_terms
from .models import MemoryHit, MemoryRecord, TemporalRange, now_ms
from .storage import MemoryStorage
from .temporal import TemporalQueryParser

logger = logging.getLogger(__name__)

_MS_PER_DAY = 24 * 60 * 60 * 1000


class Retriever:
    """Recall memories for a query.

    Design decisions:
    - Queries with a time expression are answered from that window only;
      an empty window is an answer, not a reason to fall back
    - Other queries rank the union of FTS and vector candidates
    - Vectors of another dimension (older embedder config) are never compared
    - Returned records get last_accessed bumped; ranking itself is read-only
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: Embedder,
        config: MemoryConfig,
        parser: Optional[TemporalQueryParser] = None,
        clock: Callable[[], int] = now_ms,
        chat_titles: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.storage = storage
        self.embedder = embedder
        self.config = config
        self.parser = parser or TemporalQueryParser(first_weekday=config.first_weekday)
        self.clock = clock
        self.chat_titles = chat_titles

    async def recall(
        self, persona_id: str, user_id: str, query: str, k: Optional[int] = None
    ) -> list[MemoryHit]:
        """Return up to k memories relevant to query, best first.

        Args:
            persona_id: Persona scope
            user_id: Owner scope
            query: Natural language query, possibly with a time expression
            k: Max results (default config.k_return)

        Returns:
            Hits sorted by relevance; empty when nothing matches

        Raises:
            ValueError: If k is negative
        """
        if k is None:
            k = self.config.k_return
        if k < 0:
            raise ValueError(f"k must be >= 0, got {k}")
        if k == 0:
            return []

        time_range = self.parser.parse(normalize(query))
        if time_range is not None:
            hits = await self._recall_in_range(persona_id, user_id, query, time_range, k)
        else:
            hits = await self._recall_semantic(persona_id, user_id, query, k)

        if hits:
            self.storage.touch([hit.record.id for hit in hits], self.clock())
        return hits

    # ------------------------------------------------------------------
    # Standard mode
    # ------------------------------------------------------------------

    async def _recall_semantic(
        self, persona_id: str, user_id: str, query: str, k: int
    ) -> list[MemoryHit]:
        normalized = normalize(query)
        terms = query_terms(normalized)

        lexical_ids = self.storage.search_lexical(persona_id, user_id, terms, self.config.k_fts)
        query_vec = await self._embed_query(normalized)
        similarities = self._vector_candidates(persona_id, user_id, query_vec)

        candidate_ids = list(dict.fromkeys(lexical_ids + list(similarities)))
        if not candidate_ids:
            return []

        records = self.storage.get_many(candidate_ids, persona_id, user_id)
        # lexical-only candidates still get a cosine term when they have a vector
        missing = [i for i in candidate_ids if i not in similarities and i in records]
        if query_vec is not None and missing:
            similarities.update(self._similarities(persona_id, user_id, query_vec, missing))

        now = self.clock()
        lexical = set(lexical_ids)
        hits = []
        for memory_id in candidate_ids:
            record = records.get(memory_id)
            if record is None:
                continue
            age_days = max(0.0, (now - record.created_at) / _MS_PER_DAY)
            recency = math.exp(-age_days / self.config.recency_window_days)
            score = self._score(
                lexical=memory_id in lexical,
                cosine=similarities.get(memory_id, 0.0),
                time_term=recency,
                importance=record.importance,
            )
            hits.append(self._hit(record, score))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:k]

    # ------------------------------------------------------------------
    # Temporal mode
    # ------------------------------------------------------------------

    async def _recall_in_range(
        self, persona_id: str, user_id: str, query: str, time_range: TemporalRange, k: int
    ) -> list[MemoryHit]:
        records = self.storage.records_between(
            persona_id, user_id, time_range.start_ms, time_range.end_ms, self.config.temporal_cap
        )
        logger.debug(
            "Temporal query '%s' -> %s: %d records in window",
            query,
            time_range.label,
            len(records),
        )
        if not records:
            return []

        # rank on what the query says besides the time phrase
        semantic = normalize(query)
        if time_range.expression:
            semantic = semantic.replace(time_range.expression, " ")
        terms = query_terms(semantic)

        ids = [record.id for record in records]
        lexical: set[str] = set()
        similarities: dict[str, float] = {}
        if terms:
            lexical = set(
                self.storage.search_lexical(
                    persona_id,
                    user_id,
                    terms,
                    len(ids),
                    start_ms=time_range.start_ms,
                    end_ms=time_range.end_ms,
                )
            )
            # only the capped window is ranked
            lexical &= set(ids)
            query_vec = await self._embed_query(" ".join(terms))
            if query_vec is not None:
                similarities = self._similarities(persona_id, user_id, query_vec, ids)

        similarities = {
            memory_id: cosine
            for memory_id, cosine in similarities.items()
            if cosine >= self.config.min_vector_similarity
        }

        if not lexical and not similarities:
            # purely temporal question: newest first
            chronological = sorted(records, key=lambda r: r.created_at, reverse=True)
            return [self._hit(record, 0.0) for record in chronological[:k]]

        span = max(1, time_range.end_ms - time_range.start_ms)
        hits = []
        for record in records:
            position = min(1.0, max(0.0, (record.created_at - time_range.start_ms) / span))
            score = self._score(
                lexical=record.id in lexical,
                cosine=similarities.get(record.id, 0.0),
                time_term=position,
                importance=record.importance,
            )
            hits.append(self._hit(record, score))

        hits.sort(key=lambda hit: (hit.score, hit.record.created_at), reverse=True)
        return hits[:k]

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _score(self, lexical: bool, cosine: float, time_term: float, importance: float) -> float:
        c = self.config
        return (
            c.w1_lexical * (1.0 if lexical else 0.0)
            + c.w2_cosine * cosine
            + c.w3_recency * time_term
            + c.w4_importance * importance
        )

    def _hit(self, record: MemoryRecord, score: float) -> MemoryHit:
        title = None
        if self.chat_titles is not None and record.chat_id:
            title = self.chat_titles(record.chat_id)
        return MemoryHit(record=record, score=score, source_chat_title=title)

    async def _embed_query(self, text: str) -> Optional[tuple[bytes, float]]:
        """Quantized query embedding, or None when the embedder gave nothing usable."""
        if not text.strip():
            return None
        embedding = await self.embedder.embed(text)
        q8, scale = quantizer.quantize(embedding)
        if not q8 or quantizer.is_zero(q8):
            logger.debug("Query embedding unavailable, vector recall skipped")
            return None
        return q8, scale

    def _vector_candidates(
        self, persona_id: str, user_id: str, query_vec: Optional[tuple[bytes, float]]
    ) -> dict[str, float]:
        """Top k_vec memory ids by cosine similarity, best first."""
        if query_vec is None:
            return {}
        q8, scale = query_vec
        vectors = self.storage.vectors(persona_id, user_id, dim=len(q8))
        scored = sorted(
            (
                (vec.memory_id, quantizer.cosine_similarity(q8, scale, vec.q8, vec.scale))
                for vec in vectors
            ),
            key=lambda item: item[1],
            reverse=True,
        )
        return dict(scored[: self.config.k_vec])

    def _similarities(
        self,
        persona_id: str,
        user_id: str,
        query_vec: tuple[bytes, float],
        memory_ids: list[str],
    ) -> dict[str, float]:
        q8, scale = query_vec
        vectors = self.storage.vectors(persona_id, user_id, dim=len(q8), memory_ids=memory_ids)
        return {
            vec.memory_id: quantizer.cosine_similarity(q8, scale, vec.q8, vec.scale)
            for vec in vectors
        }
