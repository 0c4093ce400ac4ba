"""Retrieval dispatcher.

`MilvusRetriever.retrieve` embeds the query as the configured search mode
requires, builds the engine request, executes it, converts the result rows into
documents and applies the score threshold:

    - Scalar: the query text is a filter expression; no embedding
    - Hybrid: dense and/or sparse query vectors, one fused result set
    - Iterator: dense vector, batches accumulated in arrival order
    - Approximate / Range: dense vector, one result set
"""

import numbers
from typing import assert_never

from loguru import logger

from milvus_backend.config import RetrieverConfig
from milvus_backend.embedding import QueryEmbedder
from milvus_backend.engine import EngineClient, MilvusEngine
from milvus_backend.errors import (
    ConfigurationInvalid,
    DocumentConversionError,
    EngineExecutionError,
)
from milvus_backend.models import CallOptions, Document, ResultSet
from milvus_backend.search_mode import (
    Approximate,
    Hybrid,
    Iterator,
    Range,
    Scalar,
    build_hybrid_search_request,
    build_query_request,
    build_search_iterator_request,
    build_search_request,
)
from milvus_backend.types import SCORE_KEY


def apply_score_threshold(docs: list[Document], threshold: float | None) -> list[Document]:
    """Keep documents whose metadata score is at least `threshold`.

    Documents without a score are dropped when a threshold is set. With no
    threshold the list is returned unchanged.

    Example:
        >>> [d.id for d in apply_score_threshold(docs, 0.6)]  # scores 0.9, 0.7, 0.5, 0.3
        ['a', 'b']
    """
    if threshold is None:
        return docs

    kept = []
    for doc in docs:
        score = doc.metadata.get(SCORE_KEY)
        if not isinstance(score, numbers.Real) or isinstance(score, bool):
            continue
        if score >= threshold:
            kept.append(doc)
    return kept


class MilvusRetriever:
    """Retrieves documents from a Milvus collection.

    Create with `await MilvusRetriever.create(config)`. Instances hold only the
    frozen config and the shared engine client and can serve concurrent calls.
    """

    def __init__(self, config: RetrieverConfig, client: EngineClient):
        self.config = config
        self.client = client
        self.embedder = QueryEmbedder(dense=config.embedding, sparse=config.sparse_embedding)

    @classmethod
    async def create(cls, config: RetrieverConfig) -> "MilvusRetriever":
        """Validate the config, connect and make sure the collection is loaded.

        Raises:
            ConfigurationInvalid: If the config is invalid or the collection does not exist
        """
        config.ensure_valid()
        client = config.client
        if client is None:
            client = MilvusEngine.from_connection(config.connection)

        if not await client.has_collection(config.collection):
            raise ConfigurationInvalid(
                f"collection {config.collection!r} not found", {"collection": config.collection}
            )
        if not await client.is_loaded(config.collection):
            logger.info(f"Loading collection {config.collection}")
            await client.load_collection(config.collection)

        logger.info(
            f"Created retriever on {config.collection} "
            f"({type(config.search_mode).__name__} mode, top_k={config.top_k})"
        )
        return cls(config, client)

    async def retrieve(self, query: str, options: CallOptions | None = None) -> list[Document]:
        """Retrieve documents relevant to `query`.

        Args:
            query: Query text; a filter expression in Scalar mode
            options: Per-call overrides

        Returns:
            Converted documents, filtered by the effective score threshold

        Raises:
            EmbeddingUnavailable, EmbeddingError, EmbeddingShapeMismatch: Embedding failed
            RequestBuildError: The engine request could not be built
            EngineExecutionError: The engine call failed
            DocumentConversionError: A custom document converter failed
        """
        options = options or CallOptions()
        mode = self.config.search_mode

        if isinstance(mode, Scalar):
            docs = await self._retrieve_scalar(mode, query, options)
        elif isinstance(mode, Hybrid):
            docs = await self._retrieve_hybrid(mode, query, options)
        elif isinstance(mode, Iterator):
            docs = await self._retrieve_iterator(mode, query, options)
        elif isinstance(mode, Approximate | Range):
            docs = await self._retrieve_search(mode, query, options)
        else:
            assert_never(mode)

        threshold = (
            options.score_threshold
            if options.score_threshold is not None
            else self.config.score_threshold
        )
        filtered = apply_score_threshold(docs, threshold)
        logger.debug(f"Retrieved {len(filtered)}/{len(docs)} documents for query {query!r}")
        return filtered

    async def _retrieve_scalar(
        self, mode: Scalar, query: str, options: CallOptions
    ) -> list[Document]:
        request = build_query_request(mode, self.config, query, options)
        try:
            result_set = await self.client.query(request)
        except Exception as exc:
            raise EngineExecutionError(f"failed to query: {exc}") from exc
        return self._convert(result_set)

    async def _retrieve_hybrid(
        self, mode: Hybrid, query: str, options: CallOptions
    ) -> list[Document]:
        dense_vector = None
        if options.embedding is not None or self.embedder.dense is not None:
            dense_vector = await self.embedder.embed_dense(query, options.embedding)

        sparse_vector = None
        if self.embedder.sparse is not None:
            sparse_vector = await self.embedder.embed_sparse(query)

        request = build_hybrid_search_request(
            mode, self.config, dense_vector, sparse_vector, options
        )
        try:
            results = await self.client.hybrid_search(request)
        except Exception as exc:
            raise EngineExecutionError(f"failed to hybrid search: {exc}") from exc
        return self._convert_first(results)

    async def _retrieve_iterator(
        self, mode: Iterator, query: str, options: CallOptions
    ) -> list[Document]:
        vector = await self.embedder.embed_dense(query, options.embedding)
        request = build_search_iterator_request(mode, self.config, vector, options)
        try:
            iterator = await self.client.search_iterator(request)
        except Exception as exc:
            raise EngineExecutionError(f"failed to create search iterator: {exc}") from exc

        docs: list[Document] = []
        batches = 0
        try:
            while True:
                try:
                    batch = await iterator.next_batch()
                except Exception as exc:
                    raise EngineExecutionError(
                        f"failed to fetch search iterator batch: {exc}", {"batch": batches}
                    ) from exc
                if batch is None or batch.result_count == 0:
                    break
                batches += 1
                docs.extend(self._convert(batch))
        finally:
            await iterator.close()

        logger.debug(f"Search iterator returned {len(docs)} documents in {batches} batches")
        return docs

    async def _retrieve_search(
        self, mode: Approximate | Range, query: str, options: CallOptions
    ) -> list[Document]:
        vector = await self.embedder.embed_dense(query, options.embedding)
        request = build_search_request(mode, self.config, vector, options)
        try:
            results = await self.client.search(request)
        except Exception as exc:
            raise EngineExecutionError(f"failed to search: {exc}") from exc
        return self._convert_first(results)

    def _convert_first(self, results: list[ResultSet]) -> list[Document]:
        if not results:
            return []
        return self._convert(results[0])

    def _convert(self, result_set: ResultSet) -> list[Document]:
        try:
            return self.config.converter(result_set)
        except Exception as exc:
            raise DocumentConversionError(f"failed to convert result set: {exc}") from exc
