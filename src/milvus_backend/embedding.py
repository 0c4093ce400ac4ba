"""Embedding providers and the query embedding orchestrator.

Providers turn text into vectors: dense providers return one list of floats per
text, sparse providers one {index: weight} map per text. `QueryEmbedder` wraps a
dense and an optional sparse provider and enforces the one-vector-per-text
contract for retrieval queries.
"""

import asyncio
from typing import Protocol

import httpx
import numpy as np
from loguru import logger
from openai import APIConnectionError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel, Field

from milvus_backend.errors import (
    EmbeddingError,
    EmbeddingShapeMismatch,
    EmbeddingUnavailable,
    SparseEmbeddingShapeMismatch,
)


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation.

    Attributes:
        model: Model identifier (e.g., "openai/text-embedding-3-small")
        dimensions: Expected embedding dimensionality
        batch_size: Number of texts to embed per API call
        max_retries: Maximum retry attempts for transient failures
        timeout_seconds: API request timeout
        api_key: API key for external services (set via env var)
    """

    model: str
    dimensions: int = Field(ge=2, le=32768)
    batch_size: int = Field(default=100, ge=1, le=2048)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    api_key: str | None = None


class DenseEmbedder(Protocol):
    """Protocol for dense embedding providers."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts into dense vectors, one per text, same order."""
        ...


class SparseEmbedder(Protocol):
    """Protocol for sparse embedding providers (SPLADE, BM25, ...)."""

    async def embed_batch(self, texts: list[str]) -> list[dict[int, float]]:
        """Embed texts into sparse vectors, one {index: weight} map per text."""
        ...


def to_float32(vector: list[float]) -> np.ndarray:
    """Narrow a double-precision vector to the engine's single precision.

    Each element is converted independently with standard float conversion.
    """
    return np.asarray(vector, dtype=np.float32)


class OpenAIEmbedding:
    """OpenAI embedding client with retry logic and batching."""

    def __init__(self, config: EmbeddingConfig):
        """Initialize OpenAI client.

        Args:
            config: Embedding configuration with API key
        """
        self.config = config
        self.client = AsyncOpenAI(
            api_key=config.api_key, timeout=httpx.Timeout(config.timeout_seconds)
        )
        self.model_name = config.model.removeprefix("openai/")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts with retry logic.

        Args:
            texts: List of input texts (max batch_size)

        Returns:
            List of embedding vectors (same order as inputs)

        Raises:
            ValueError: If batch size exceeds config limit or dimensions mismatch
            openai.APIConnectionError: On timeouts or connection failures after all retries
            openai.RateLimitError: When still rate limited after all retries
        """
        if len(texts) > self.config.batch_size:
            raise ValueError(f"Batch size {len(texts)} exceeds limit {self.config.batch_size}")

        if not texts:
            return []

        for attempt in range(self.config.max_retries):
            try:
                response = await self.client.embeddings.create(model=self.model_name, input=texts)
                embeddings = [item.embedding for item in response.data]

                for i, emb in enumerate(embeddings):
                    if len(emb) != self.config.dimensions:
                        raise ValueError(
                            f"Expected {self.config.dimensions} dimensions, "
                            f"got {len(emb)} for text {i}"
                        )

                logger.debug(
                    f"Embedded {len(texts)} texts with {self.model_name} "
                    f"(attempt {attempt + 1}/{self.config.max_retries})"
                )
                return embeddings

            except APIConnectionError as e:
                # APITimeoutError is a subclass
                logger.warning(
                    f"Connection error embedding batch "
                    f"(attempt {attempt + 1}/{self.config.max_retries}): {e}"
                )
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(2**attempt)
                else:
                    raise

            except RateLimitError as e:
                logger.warning(
                    f"Rate limited (attempt {attempt + 1}/{self.config.max_retries}): {e}"
                )
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(2 ** (attempt + 1))
                else:
                    raise

        raise RuntimeError("Exhausted all retry attempts")


def create_embedding_client(config: EmbeddingConfig) -> DenseEmbedder:
    """Factory function to create a dense embedding client from config.

    Example:
        >>> config = EmbeddingConfig(
        ...     model="openai/text-embedding-3-small",
        ...     dimensions=1536,
        ...     api_key="sk-...",
        ... )
        >>> client = create_embedding_client(config)
    """
    if config.model.startswith("openai/"):
        return OpenAIEmbedding(config)
    raise ValueError(f"Unknown model prefix in {config.model!r}. Expected 'openai/'")


class QueryEmbedder:
    """Turns a query string into dense and/or sparse query vectors.

    No caching: every call re-embeds.
    """

    def __init__(self, dense: DenseEmbedder | None = None, sparse: SparseEmbedder | None = None):
        self.dense = dense
        self.sparse = sparse

    async def embed_dense(self, text: str, provider: DenseEmbedder | None = None) -> np.ndarray:
        """Embed text with the given provider, falling back to the configured one.

        Raises:
            EmbeddingUnavailable: If no dense provider is available
            EmbeddingError: If the provider fails or returns non-numeric data
            EmbeddingShapeMismatch: If the provider does not return exactly one vector
        """
        embedder = provider if provider is not None else self.dense
        if embedder is None:
            raise EmbeddingUnavailable("dense embedding not provided")

        try:
            vectors = await embedder.embed_batch([text])
        except Exception as exc:
            raise EmbeddingError(f"failed to embed query: {exc}") from exc

        count = len(vectors) if vectors is not None else 0
        if count != 1:
            raise EmbeddingShapeMismatch(
                f"invalid embedding result: expected 1, got {count}", {"expected": 1, "got": count}
            )

        try:
            return to_float32(vectors[0])
        except (TypeError, ValueError) as exc:
            raise EmbeddingError(f"embedding provider returned a non-numeric vector: {exc}") from exc

    async def embed_sparse(self, text: str) -> dict[int, float]:
        """Embed text with the configured sparse provider.

        Raises:
            EmbeddingUnavailable: If no sparse provider is configured
            EmbeddingError: If the provider fails
            SparseEmbeddingShapeMismatch: If the provider does not return exactly one vector
        """
        if self.sparse is None:
            raise EmbeddingUnavailable("sparse embedding not provided")

        try:
            vectors = await self.sparse.embed_batch([text])
        except Exception as exc:
            raise EmbeddingError(f"failed to embed sparse query: {exc}") from exc

        count = len(vectors) if vectors is not None else 0
        if count != 1:
            raise SparseEmbeddingShapeMismatch(
                f"invalid sparse embedding result: expected 1, got {count}",
                {"expected": 1, "got": count},
            )
        return dict(vectors[0])
