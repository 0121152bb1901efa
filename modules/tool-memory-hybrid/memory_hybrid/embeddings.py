"""Embedding backends.

Callers depend only on the Embedder protocol. Two backends ship:
OpenAIEmbedder (network) and HashingEmbedder (deterministic, offline).
"""

import hashlib
import logging
import math
import re
from typing import Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI, OpenAIError

from .config import MemoryConfig

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[\w']+")


@runtime_checkable
class Embedder(Protocol):
    """Text to fixed-dimension float vector.

    Output need not be deterministic, but dimension() must be stable for
    the lifetime of a configuration. Backend failures return a zero vector
    of dimension() instead of raising.
    """

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    def dimension(self) -> int: ...


class OpenAIEmbedder:
    """OpenAI embedding API wrapper.

    Uses text-embedding-3-small by default, requested at the configured
    dimension (768 unless overridden) so stored vectors stay comparable.
    """

    MAX_CONTENT_LENGTH = 100_000

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        dimensions: int = 768,
    ):
        self.model = model
        self.dimensions = dimensions

        if not api_key:
            raise ValueError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self.client = AsyncOpenAI(api_key=api_key)

    def dimension(self) -> int:
        return self.dimensions

    def _zero(self) -> list[float]:
        return [0.0] * self.dimensions

    def _check(self, values) -> list[float]:
        vector = [float(x) for x in values]
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
            )
        return vector

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Args:
            text: Text to embed (truncated to 100,000 chars)

        Returns:
            Vector of dimension() floats, all zero if the API call failed
        """
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=text[: self.MAX_CONTENT_LENGTH],
                dimensions=self.dimensions,
            )
            return self._check(response.data[0].embedding)
        except (OpenAIError, ValueError, TypeError, IndexError, AttributeError) as e:
            logger.warning("Embedding failed, using zero vector: %s", e)
            return self._zero()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts in one request.

        More efficient than multiple individual calls. If the request fails
        every text in the batch gets a zero vector.
        """
        if not texts:
            return []
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=[text[: self.MAX_CONTENT_LENGTH] for text in texts],
                dimensions=self.dimensions,
            )
            vectors = [self._check(item.embedding) for item in response.data]
            if len(vectors) != len(texts):
                raise ValueError(f"Got {len(vectors)} embeddings for {len(texts)} texts")
            return vectors
        except (OpenAIError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Batch embedding failed, using zero vectors: %s", e)
            return [self._zero() for _ in texts]


class HashingEmbedder:
    """Deterministic offline embedder.

    Signed feature hashing of word tokens into a fixed number of buckets,
    L2-normalized. Texts sharing words get positive cosine similarity, so
    vector recall still works without a network backend. Empty text gives a
    zero vector.
    """

    def __init__(self, dimensions: int = 768):
        self.dimensions = dimensions

    def dimension(self) -> int:
        return self.dimensions

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0.0:
            return vector
        return [x / norm for x in vector]

    async def embed(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]


def create_embedder(config: MemoryConfig) -> Embedder:
    """Pick the embedding backend for a configuration.

    OpenAI when an API key is configured, otherwise the hashing fallback.
    A missing key never raises.
    """
    if config.openai_api_key:
        logger.info("Using OpenAI embeddings (%s, %d dims)", config.embedding_model, config.dim)
        return OpenAIEmbedder(
            model=config.embedding_model,
            api_key=config.openai_api_key,
            dimensions=config.dim,
        )
    logger.warning("No OpenAI API key configured, using offline hashing embeddings")
    return HashingEmbedder(dimensions=config.dim)
