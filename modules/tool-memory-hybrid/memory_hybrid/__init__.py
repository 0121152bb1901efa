"""On-device hybrid memory: lexical + vector + temporal recall for persona chats."""

__version__ = "1.0.0"

from .config import MemoryConfig
from .context import ChatHistory, ContextBuilder, StoredChatHistory
from .embeddings import Embedder, HashingEmbedder, OpenAIEmbedder, create_embedder
from .engine import MemoryEngine, build_engine
from .errors import MemoryEngineError, MemoryLimitError, StoreError
from .heuristics import Classification, Classifier, HeuristicClassifier
from .ingest import Ingestor
from .models import (
    CategoryCount,
    ChatTurn,
    ContextBundle,
    EmotionType,
    MemoryHit,
    MemoryKind,
    MemoryRecord,
    ShortTermTurn,
    TemporalRange,
    VectorEntry,
)
from .retrieval import Retriever
from .storage import MemoryStorage
from .temporal import TemporalQueryParser

__all__ = [
    "CategoryCount",
    "ChatHistory",
    "ChatTurn",
    "Classification",
    "Classifier",
    "ContextBuilder",
    "ContextBundle",
    "Embedder",
    "EmotionType",
    "HashingEmbedder",
    "HeuristicClassifier",
    "Ingestor",
    "MemoryConfig",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryHit",
    "MemoryKind",
    "MemoryLimitError",
    "MemoryRecord",
    "MemoryStorage",
    "OpenAIEmbedder",
    "Retriever",
    "ShortTermTurn",
    "StoreError",
    "StoredChatHistory",
    "TemporalQueryParser",
    "TemporalRange",
    "VectorEntry",
    "build_engine",
    "create_embedder",
]
