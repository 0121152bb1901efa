"""Configuration for the hybrid memory engine.

Values come from a plain config dict (the same shape the storage layer has
always accepted) with environment fallbacks for paths and credentials.
"""

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

DEFAULT_STORAGE_ROOT = os.environ.get(
    "MEMORY_HYBRID_HOME", os.path.expanduser("~/.amplifier/memory")
)


class MemoryConfig(BaseModel):
    """Engine configuration.

    Design decisions:
    - Ranking weights are named values; only their rough ordering matters
      (lexical and vector dominate, recency and importance break ties)
    - dim is the embedding dimension for the lifetime of a configuration
    - db_path defaults to <storage_root>/memory.db
    """

    storage_root: str = DEFAULT_STORAGE_ROOT
    db_path: Optional[str] = None

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = Field(
        default_factory=lambda: os.environ.get("OPENAI_API_KEY") or None
    )
    dim: int = Field(default=768, gt=0)

    # Limits
    max_per_persona: int = Field(default=100_000, gt=0)
    k_fts: int = Field(default=200, gt=0)
    k_vec: int = Field(default=200, gt=0)
    k_return: int = Field(default=50, gt=0)
    temporal_cap: int = Field(default=500, gt=0)

    # Ranking weights
    w1_lexical: float = 0.4
    w2_cosine: float = 0.3
    w3_recency: float = 0.2
    w4_importance: float = 0.1
    recency_window_days: float = Field(default=30.0, gt=0)
    min_vector_similarity: float = 0.2

    # Pruning
    importance_floor: float = Field(default=0.05, ge=0.0, le=1.0)
    prune_after_days: int = Field(default=365, gt=0)

    # Context assembly
    context_max_tokens: int = Field(default=2000, gt=0)
    short_term_limit: int = Field(default=100, ge=0)
    short_term_ratio: float = Field(default=0.4, ge=0.0, le=1.0)

    # Ingestion
    skip_trivial: bool = False

    # Temporal parsing (0 = Monday ... 6 = Sunday)
    first_weekday: int = Field(default=0, ge=0, le=6)

    @model_validator(mode="after")
    def _resolve_db_path(self) -> "MemoryConfig":
        if not self.db_path:
            self.db_path = str(Path(self.storage_root) / "memory.db")
        return self

    @classmethod
    def from_dict(cls, config: Optional[dict[str, Any]] = None) -> "MemoryConfig":
        """Build a config from a plain dict, ignoring None values.

        Args:
            config: Optional mapping of field name to value

        Returns:
            Validated MemoryConfig

        Raises:
            pydantic.ValidationError: If a value is out of range
        """
        config = config or {}
        return cls(**{key: value for key, value in config.items() if value is not None})
