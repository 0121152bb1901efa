"""Turns chat turns into stored memories."""

import logging
from typing import Callable, Optional

from . import quantizer
from .config import MemoryConfig
from .embeddings import Embedder
from .errors import MemoryLimitError
from .heuristics import Classifier, HeuristicClassifier, clean, is_greeting, is_too_short
from .models import ChatTurn, MemoryRecord, VectorEntry, now_ms
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class Ingestor:
    """Normalize, classify, embed, quantize and store a chat turn.

    Design decisions:
    - Incognito turns and personas with memory disabled are never written
    - Each side of the turn becomes one record + lexical entry + vector,
      all sides committed in a single store transaction
    - An embedding failure keeps the record and lexical entry and skips
      only the vector, so lexical recall still finds the memory
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: Embedder,
        config: MemoryConfig,
        classifier: Optional[Classifier] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.storage = storage
        self.embedder = embedder
        self.config = config
        self.classifier = classifier or HeuristicClassifier()
        self.clock = clock

    async def ingest(
        self, turn: ChatTurn, persona_id: str, user_id: str, incognito: bool = False
    ) -> list[MemoryRecord]:
        """Store the memories derived from one turn.

        Args:
            turn: User text and optional assistant reply
            persona_id: Persona the conversation is with
            user_id: Owner of the memories
            incognito: When True nothing is persisted

        Returns:
            The records written (empty when skipped)

        Raises:
            MemoryLimitError: If the persona is at max_per_persona
            StoreError: If the store write fails (nothing is committed)
        """
        if incognito:
            logger.debug("Incognito turn for persona=%s, not stored", persona_id)
            return []
        if not self.storage.is_enabled(persona_id, user_id):
            logger.debug("Memory disabled for persona=%s, not stored", persona_id)
            return []

        sides = [("user", clean(turn.user_text))]
        if turn.assistant_text:
            sides.append(("assistant", clean(turn.assistant_text)))
        sides = [(role, text) for role, text in sides if text and not self._is_trivial(text)]
        if not sides:
            return []

        count = self.storage.count(persona_id, user_id)
        if count + len(sides) > self.config.max_per_persona:
            raise MemoryLimitError(persona_id, count, self.config.max_per_persona)

        now = self.clock()
        records = []
        for offset, (role, text) in enumerate(sides):
            classification = self.classifier.classify(text)
            created_at = now + offset
            records.append(
                MemoryRecord(
                    persona_id=persona_id,
                    user_id=user_id,
                    chat_id=turn.chat_id,
                    role=role,
                    text=text.lower(),
                    kind=classification.kind,
                    emotion=classification.emotion,
                    importance=classification.importance,
                    created_at=created_at,
                    last_accessed=created_at,
                )
            )

        vectors = await self._vectors_for(records)
        self.storage.insert_many(list(zip(records, vectors)))

        logger.debug(
            "Ingested %d memories for persona=%s (%d with vectors)",
            len(records),
            persona_id,
            sum(1 for v in vectors if v is not None),
        )
        return records

    def _is_trivial(self, text: str) -> bool:
        return self.config.skip_trivial and (is_greeting(text) or is_too_short(text))

    async def _vectors_for(self, records: list[MemoryRecord]) -> list[Optional[VectorEntry]]:
        try:
            embeddings = await self.embedder.embed_batch([r.text for r in records])
        except Exception as e:
            # custom embedders may raise; lexical recall still works without vectors
            logger.warning("Embedder raised, storing memories without vectors: %s", e)
            return [None] * len(records)

        if len(embeddings) != len(records):
            logger.warning(
                "Embedder returned %d vectors for %d texts, storing without vectors",
                len(embeddings),
                len(records),
            )
            return [None] * len(records)

        vectors: list[Optional[VectorEntry]] = []
        for record, embedding in zip(records, embeddings):
            q8, scale = quantizer.quantize(embedding)
            if not q8 or quantizer.is_zero(q8):
                logger.debug("No usable embedding for memory %s, vector skipped", record.id)
                vectors.append(None)
                continue
            vectors.append(VectorEntry(memory_id=record.id, dim=len(q8), q8=q8, scale=scale))
        return vectors
