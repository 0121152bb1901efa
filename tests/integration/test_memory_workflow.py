"""Integration tests for memory workflow.

Tests the complete ingest→recall→context workflow with a real SQLite store.
"""

import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from memory_hybrid import quantizer
from memory_hybrid.config import MemoryConfig
from memory_hybrid.context import ContextBuilder, StoredChatHistory
from memory_hybrid.embeddings import HashingEmbedder
from memory_hybrid.errors import MemoryLimitError
from memory_hybrid.ingest import Ingestor
from memory_hybrid.models import ChatTurn, MemoryKind, MemoryRecord, ShortTermTurn, VectorEntry
from memory_hybrid.retrieval import Retriever
from memory_hybrid.storage import MemoryStorage
from memory_hybrid.temporal import TemporalQueryParser

# Mark all tests in this module as integration tests
pytestmark = pytest.mark.integration

PERSONA = "persona-1"
OWNER = "owner-1"


def ms(moment: datetime) -> int:
    return int(round(moment.timestamp() * 1000))


NOW = datetime(2025, 3, 15, 10, 0)


class FakeClock:
    """Settable epoch-millisecond clock shared by ingestion, ranking and parsing."""

    def __init__(self, moment: datetime):
        self.now = ms(moment)

    def __call__(self) -> int:
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = ms(moment)

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now / 1000)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def config(tmp_path):
    return MemoryConfig(
        storage_root=str(tmp_path),
        db_path=str(tmp_path / f"memory_{uuid.uuid4().hex}.db"),
        openai_api_key=None,
    )


@pytest.fixture
def storage(config):
    store = MemoryStorage(config.db_path)
    yield store
    store.close()


@pytest.fixture
def embedder(config):
    return HashingEmbedder(dimensions=config.dim)


@pytest.fixture
def ingestor(storage, embedder, config, clock):
    return Ingestor(storage, embedder, config, clock=clock)


@pytest.fixture
def retriever(storage, embedder, config, clock):
    parser = TemporalQueryParser(now=clock.datetime)
    return Retriever(storage, embedder, config, parser=parser, clock=clock)


@pytest.mark.asyncio
class TestIngestAndRecall:
    """Integration tests for complete memory workflows."""

    async def test_ingest_and_recall_single_turn(self, ingestor, retriever):
        """Ingest a turn and retrieve it through recall."""
        records = await ingestor.ingest(
            ChatTurn(chat_id="chat-1", user_text="I love green tea"), PERSONA, OWNER
        )

        assert len(records) == 1
        assert records[0].text == "i love green tea"
        assert records[0].kind is MemoryKind.PREFERENCE

        hits = await retriever.recall(PERSONA, OWNER, "green tea")

        assert [hit.record.id for hit in hits] == [records[0].id]
        assert hits[0].score > 0

    async def test_user_and_assistant_sides(self, ingestor, storage, clock):
        records = await ingestor.ingest(
            ChatTurn(
                chat_id="chat-1",
                user_text="I'm working on a garden planner app",
                assistant_text="That sounds like a fun project to build!",
            ),
            PERSONA,
            OWNER,
        )

        user, assistant = records
        assert user.role == "user"
        assert assistant.role == "assistant"
        assert user.created_at == clock.now
        assert assistant.created_at == clock.now + 1
        assert storage.table_counts() == {"memories": 2, "memories_fts": 2, "memory_vectors": 2}

    async def test_lexical_match_ranks_first(self, ingestor, retriever, clock):
        await ingestor.ingest(ChatTurn(user_text="My sister lives in Porto near the river"), PERSONA, OWNER)
        clock.now += 1_000
        await ingestor.ingest(ChatTurn(user_text="I started learning the cello this year"), PERSONA, OWNER)
        clock.now += 1_000
        await ingestor.ingest(ChatTurn(user_text="The car needs new winter tires soon"), PERSONA, OWNER)

        hits = await retriever.recall(PERSONA, OWNER, "where does my sister live?")

        assert hits[0].record.text == "my sister lives in porto near the river"

    async def test_recall_is_scoped(self, ingestor, retriever):
        """Memories of one persona/owner never leak into another's recall."""
        await ingestor.ingest(ChatTurn(user_text="My password hint is blue whale"), PERSONA, OWNER)

        assert await retriever.recall("persona-2", OWNER, "blue whale") == []
        assert await retriever.recall(PERSONA, "owner-2", "blue whale") == []
        assert len(await retriever.recall(PERSONA, OWNER, "blue whale")) == 1

    async def test_recall_touches_returned_records(self, ingestor, retriever, storage, clock):
        (record,) = await ingestor.ingest(ChatTurn(user_text="I prefer window seats on flights"), PERSONA, OWNER)
        clock.now += 60_000

        await retriever.recall(PERSONA, OWNER, "window seats")

        assert storage.get(record.id, PERSONA, OWNER).last_accessed == clock.now

    async def test_recall_respects_k(self, ingestor, retriever):
        for i in range(5):
            await ingestor.ingest(ChatTurn(user_text=f"note number {i} about gardening"), PERSONA, OWNER)

        assert len(await retriever.recall(PERSONA, OWNER, "gardening", k=3)) == 3

    async def test_recall_k_zero_returns_nothing(self, ingestor, retriever, storage, clock):
        (record,) = await ingestor.ingest(ChatTurn(user_text="notes about gardening"), PERSONA, OWNER)
        clock.now += 60_000

        assert await retriever.recall(PERSONA, OWNER, "gardening", k=0) == []
        assert storage.get(record.id, PERSONA, OWNER).last_accessed == record.last_accessed

    async def test_recall_rejects_negative_k(self, ingestor, retriever):
        await ingestor.ingest(ChatTurn(user_text="notes about gardening"), PERSONA, OWNER)

        with pytest.raises(ValueError, match="k must be >= 0"):
            await retriever.recall(PERSONA, OWNER, "gardening", k=-1)

    async def test_everyday_word_is_not_a_weekday(self, ingestor, retriever):
        """'sun' is a topic here, not last Sunday's window."""
        (record,) = await ingestor.ingest(
            ChatTurn(user_text="I burned badly in the sun at the beach"), PERSONA, OWNER
        )

        hits = await retriever.recall(PERSONA, OWNER, "sun")

        assert [hit.record.id for hit in hits] == [record.id]

    async def test_non_latin_memory_is_recalled(self, ingestor, retriever, storage):
        """Cyrillic text gets both a lexical entry and a usable vector."""
        (record,) = await ingestor.ingest(ChatTurn(user_text="Мой кот зовут Барсик"), PERSONA, OWNER)

        assert storage.table_counts() == {"memories": 1, "memories_fts": 1, "memory_vectors": 1}
        assert storage.search_lexical(PERSONA, OWNER, ["барсик"], 10) == [record.id]

        hits = await retriever.recall(PERSONA, OWNER, "Барсик")

        assert [hit.record.id for hit in hits] == [record.id]
        assert hits[0].record.text == "мой кот зовут барсик"

    async def test_chat_titles_lookup(self, storage, embedder, config, clock, ingestor):
        retriever = Retriever(
            storage,
            embedder,
            config,
            parser=TemporalQueryParser(now=clock.datetime),
            clock=clock,
            chat_titles={"chat-9": "Weekend plans"}.get,
        )
        await ingestor.ingest(ChatTurn(chat_id="chat-9", user_text="Going to the lake on Saturday"), PERSONA, OWNER)

        hits = await retriever.recall(PERSONA, OWNER, "lake")

        assert hits[0].source_chat_title == "Weekend plans"


@pytest.mark.asyncio
class TestIngestGuards:
    async def test_incognito_writes_nothing(self, ingestor, storage):
        records = await ingestor.ingest(
            ChatTurn(user_text="Do not remember this secret", assistant_text="Understood."),
            PERSONA,
            OWNER,
            incognito=True,
        )

        assert records == []
        assert storage.table_counts() == {"memories": 0, "memories_fts": 0, "memory_vectors": 0}

    async def test_disabled_persona_writes_nothing(self, ingestor, storage):
        storage.set_enabled(PERSONA, OWNER, False)

        assert await ingestor.ingest(ChatTurn(user_text="My cat is called Miso"), PERSONA, OWNER) == []
        assert storage.count(PERSONA, OWNER) == 0

    async def test_limit_reached(self, storage, embedder, clock, tmp_path):
        config = MemoryConfig(storage_root=str(tmp_path), openai_api_key=None, max_per_persona=2)
        ingestor = Ingestor(storage, embedder, config, clock=clock)
        await ingestor.ingest(
            ChatTurn(user_text="first memory here", assistant_text="second memory here"), PERSONA, OWNER
        )

        with pytest.raises(MemoryLimitError, match="Memory limit reached"):
            await ingestor.ingest(ChatTurn(user_text="one memory too many"), PERSONA, OWNER)

        assert storage.count(PERSONA, OWNER) == 2

    async def test_skip_trivial(self, storage, embedder, clock, tmp_path):
        config = MemoryConfig(storage_root=str(tmp_path), openai_api_key=None, skip_trivial=True)
        ingestor = Ingestor(storage, embedder, config, clock=clock)

        records = await ingestor.ingest(
            ChatTurn(user_text="thanks!", assistant_text="You are very welcome, any time"), PERSONA, OWNER
        )

        assert [r.role for r in records] == ["assistant"]

    async def test_blank_turn_writes_nothing(self, ingestor, storage):
        assert await ingestor.ingest(ChatTurn(user_text="   \n  "), PERSONA, OWNER) == []
        assert storage.count(PERSONA, OWNER) == 0


@pytest.mark.asyncio
class TestEmbeddingFailures:
    """Lexical recall keeps working when vectors are unavailable."""

    async def test_embedder_raising_keeps_lexical_entry(self, storage, config, clock):
        broken = MagicMock()
        broken.embed = AsyncMock(return_value=[0.0] * config.dim)
        broken.embed_batch = AsyncMock(side_effect=RuntimeError("backend down"))
        broken.dimension = MagicMock(return_value=config.dim)

        ingestor = Ingestor(storage, broken, config, clock=clock)
        retriever = Retriever(
            storage, broken, config, parser=TemporalQueryParser(now=clock.datetime), clock=clock
        )

        (record,) = await ingestor.ingest(ChatTurn(user_text="I keep bees in the backyard"), PERSONA, OWNER)

        assert storage.table_counts() == {"memories": 1, "memories_fts": 1, "memory_vectors": 0}
        hits = await retriever.recall(PERSONA, OWNER, "bees")
        assert [hit.record.id for hit in hits] == [record.id]

    async def test_zero_vector_is_not_stored(self, storage, config, clock):
        """A zero embedding (backend failure) stores no vector."""
        zero = MagicMock()
        zero.embed = AsyncMock(return_value=[0.0] * config.dim)
        zero.embed_batch = AsyncMock(side_effect=lambda texts: [[0.0] * config.dim for _ in texts])
        zero.dimension = MagicMock(return_value=config.dim)

        ingestor = Ingestor(storage, zero, config, clock=clock)
        await ingestor.ingest(ChatTurn(user_text="Remember the milk", assistant_text="Will do"), PERSONA, OWNER)

        assert storage.table_counts() == {"memories": 2, "memories_fts": 2, "memory_vectors": 0}

    async def test_other_dimension_vectors_are_ignored(self, storage, retriever, clock):
        """Vectors from an older embedder config are never compared."""
        record = MemoryRecord(
            persona_id=PERSONA,
            user_id=OWNER,
            text="zebra stripes are unique",
            kind=MemoryKind.KNOWLEDGE,
            importance=0.5,
            created_at=clock.now,
            last_accessed=clock.now,
        )
        q8, scale = quantizer.quantize([0.1] * 384)
        storage.insert(record, VectorEntry(memory_id=record.id, dim=384, q8=q8, scale=scale))

        assert await retriever.recall(PERSONA, OWNER, "penguins waddle") == []

        (hit,) = await retriever.recall(PERSONA, OWNER, "zebra")
        # lexical + full recency + importance, no cosine term
        assert hit.score == pytest.approx(0.4 + 0.2 + 0.1 * 0.5)


@pytest.mark.asyncio
class TestTemporalRecall:
    """Queries with a time expression are answered from that window."""

    async def test_empty_window_returns_nothing(self, ingestor, retriever):
        await ingestor.ingest(ChatTurn(user_text="We planned a trip to Japan"), PERSONA, OWNER)

        assert await retriever.recall(PERSONA, OWNER, "what did we talk about yesterday") == []

    async def test_purely_temporal_query_is_chronological(self, ingestor, retriever, clock):
        ids = []
        for hour, text in ((9, "Breakfast was pancakes"), (12, "The dentist visit went fine"), (20, "Watched a documentary about whales")):
            clock.set(datetime(2025, 3, 14, hour, 0))
            (record,) = await ingestor.ingest(ChatTurn(user_text=text), PERSONA, OWNER)
            ids.append(record.id)
        clock.set(NOW)
        await ingestor.ingest(ChatTurn(user_text="Today I fixed the bike"), PERSONA, OWNER)

        hits = await retriever.recall(PERSONA, OWNER, "What did we talk about yesterday?")

        assert [hit.record.id for hit in hits] == list(reversed(ids))
        assert all(hit.score == 0.0 for hit in hits)

    async def test_topic_within_window_ranks_first(self, ingestor, retriever, clock):
        clock.set(datetime(2025, 3, 14, 9, 0))
        (hiking,) = await ingestor.ingest(ChatTurn(user_text="We went hiking in the hills"), PERSONA, OWNER)
        clock.set(datetime(2025, 3, 14, 18, 0))
        await ingestor.ingest(ChatTurn(user_text="I bought new shoes downtown"), PERSONA, OWNER)
        clock.set(datetime(2025, 3, 10, 9, 0))
        await ingestor.ingest(ChatTurn(user_text="More hiking plans for spring"), PERSONA, OWNER)
        clock.set(NOW)

        hits = await retriever.recall(PERSONA, OWNER, "anything about hiking yesterday")

        assert len(hits) == 2
        assert hits[0].record.id == hiking.id
        assert hits[0].score > hits[1].score

    async def test_temporal_recall_is_scoped(self, ingestor, retriever, clock):
        clock.set(datetime(2025, 3, 14, 9, 0))
        await ingestor.ingest(ChatTurn(user_text="Private note from yesterday"), "persona-2", OWNER)
        clock.set(NOW)

        assert await retriever.recall(PERSONA, OWNER, "yesterday") == []

    async def test_matches_outside_capped_window_are_ignored(self, ingestor, storage, clock, tmp_path):
        """A lexical match dropped by temporal_cap gives no signal to the ranked records."""
        config = MemoryConfig(storage_root=str(tmp_path), openai_api_key=None, temporal_cap=2)
        no_vectors = MagicMock()
        no_vectors.embed = AsyncMock(return_value=[0.0] * config.dim)
        no_vectors.dimension = MagicMock(return_value=config.dim)
        retriever = Retriever(
            storage, no_vectors, config, parser=TemporalQueryParser(now=clock.datetime), clock=clock
        )

        ids = []
        for hour, text in ((8, "We went hiking early"), (12, "Lunch was soup"), (18, "Dinner was pasta")):
            clock.set(datetime(2025, 3, 14, hour, 0))
            (record,) = await ingestor.ingest(ChatTurn(user_text=text), PERSONA, OWNER)
            ids.append(record.id)
        clock.set(NOW)

        hits = await retriever.recall(PERSONA, OWNER, "hiking yesterday")

        assert [hit.record.id for hit in hits] == [ids[2], ids[1]]
        assert all(hit.score == 0.0 for hit in hits)


@pytest.mark.asyncio
class TestContextBuilder:
    async def test_context_combines_short_and_long_term(self, ingestor, retriever, storage, config, clock):
        await ingestor.ingest(ChatTurn(chat_id="old-chat", user_text="I love jasmine tea"), PERSONA, OWNER)
        for text in ("Let's plan dinner", "Maybe something light", "What drink goes well?"):
            clock.now += 1_000
            await ingestor.ingest(ChatTurn(chat_id="chat-1", user_text=text), PERSONA, OWNER)

        builder = ContextBuilder(retriever, config, StoredChatHistory(storage))
        bundle = await builder.context_for("which tea do i love", PERSONA, OWNER, "chat-1")

        assert [turn.text for turn in bundle.short_term] == [
            "let's plan dinner",
            "maybe something light",
            "what drink goes well?",
        ]
        assert bundle.long_term[0].record.text == "i love jasmine tea"
        assert bundle.estimated_tokens > 0

    async def test_context_respects_token_budget(self, ingestor, retriever, storage, config, clock):
        for i in range(10):
            clock.now += 1_000
            await ingestor.ingest(
                ChatTurn(chat_id="chat-1", user_text=f"message {i} about planning the garden beds"),
                PERSONA,
                OWNER,
            )

        builder = ContextBuilder(retriever, config, StoredChatHistory(storage))
        bundle = await builder.context_for("garden", PERSONA, OWNER, "chat-1", max_tokens=40)

        assert bundle.estimated_tokens <= 40
        assert 0 < len(bundle.short_term) < 10
        # newest turns are kept, returned oldest first
        assert bundle.short_term[-1].text == "message 9 about planning the garden beds"
        created = [turn.created_at for turn in bundle.short_term]
        assert created == sorted(created)

    async def test_custom_chat_history(self, retriever, config):
        history = MagicMock()
        history.recent_turns.return_value = [
            ShortTermTurn(role="assistant", text="hello again", created_at=2),
            ShortTermTurn(role="user", text="hi", created_at=1),
        ]

        builder = ContextBuilder(retriever, config, history)
        bundle = await builder.context_for("hi", PERSONA, OWNER, "chat-1")

        history.recent_turns.assert_called_once_with(PERSONA, OWNER, "chat-1", config.short_term_limit)
        assert [turn.text for turn in bundle.short_term] == ["hi", "hello again"]
        assert bundle.long_term == []
