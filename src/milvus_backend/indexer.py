"""Document indexing into a Milvus collection.

`MilvusIndexer.create` provisions the collection on first use (schema, vector
indexes, load). `MilvusIndexer.store` embeds document contents, converts the
documents to rows and inserts them.

Row layout produced by `documents_to_rows`:
    id        varchar primary key (Document.id)
    content   varchar (Document.content)
    metadata  JSON (Document.metadata)
    <vector>  float32 dense vector, when a dense field is configured
    <sparse>  {index: weight}, when a sparse field is configured
"""

import json
import math
from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
from loguru import logger

from milvus_backend.config import IndexerConfig
from milvus_backend.embedding import to_float32
from milvus_backend.engine import CollectionSpec, EngineClient, MilvusEngine
from milvus_backend.errors import (
    ConfigurationInvalid,
    DocumentConversionError,
    EmbeddingError,
    EmbeddingShapeMismatch,
    EngineExecutionError,
)
from milvus_backend.index_params import AutoIndex, SparseInvertedIndex
from milvus_backend.models import Document, StoreOptions
from milvus_backend.types import CONTENT_FIELD, ID_FIELD, METADATA_FIELD, MetricType

RowConverter = Callable[[list[Document], list[np.ndarray] | None], list[dict[str, Any]]]


def _sparse_row(doc: Document, idx: int) -> dict[int, float]:
    row: dict[int, float] = {}
    for index, weight in (doc.sparse_vector or {}).items():
        value = float(np.float32(weight))
        if index < 0 or not math.isfinite(value):
            raise DocumentConversionError(
                f"failed to create sparse embedding for document {idx} (id: {doc.id})",
                {"index": index, "weight": weight},
            )
        row[index] = value
    return row


def documents_to_rows(
    docs: Sequence[Document],
    vectors: Sequence[np.ndarray] | None,
    *,
    vector_field: str,
    sparse_vector_field: str = "",
) -> list[dict[str, Any]]:
    """Convert documents into insertable rows.

    Dense vectors come from `vectors` when it has one entry per document, else
    from each document's `dense_vector`.

    Raises:
        DocumentConversionError: If a dense vector is missing, a sparse vector is
            invalid or metadata is not JSON serializable
    """
    use_embedded = vectors is not None and len(vectors) == len(docs)
    rows: list[dict[str, Any]] = []

    for idx, doc in enumerate(docs):
        row: dict[str, Any] = {ID_FIELD: doc.id, CONTENT_FIELD: doc.content}

        try:
            json.dumps(doc.metadata)
        except (TypeError, ValueError) as exc:
            raise DocumentConversionError(
                f"failed to marshal metadata for document {idx} (id: {doc.id}): {exc}"
            ) from exc
        row[METADATA_FIELD] = doc.metadata

        if vector_field:
            source = vectors[idx] if use_embedded else doc.dense_vector
            if source is None or len(source) == 0:
                raise DocumentConversionError(
                    f"vector data missing for document {idx} (id: {doc.id})"
                )
            row[vector_field] = to_float32(source)

        if sparse_vector_field:
            row[sparse_vector_field] = _sparse_row(doc, idx)

        rows.append(row)

    return rows


class MilvusIndexer:
    """Stores documents in a Milvus collection.

    Create with `await MilvusIndexer.create(config)`.
    """

    def __init__(self, config: IndexerConfig, client: EngineClient):
        self.config = config
        self.client = client

    @property
    def row_converter(self) -> RowConverter:
        if self.config.document_converter is not None:
            return self.config.document_converter
        return lambda docs, vectors: documents_to_rows(
            docs,
            vectors,
            vector_field=self.config.vector_field,
            sparse_vector_field=self.config.sparse_vector_field,
        )

    @classmethod
    async def create(cls, config: IndexerConfig) -> "MilvusIndexer":
        """Validate the config, connect, and provision the collection.

        Missing collections are created; indexes are created when the
        collection is not loaded and has none; the collection is then loaded.

        Raises:
            ConfigurationInvalid: If the config is invalid, or a dense field
                must be created without a dimension
        """
        config.ensure_valid()
        client = config.client
        if client is None:
            client = MilvusEngine.from_connection(config.connection)

        if not await client.has_collection(config.collection):
            await _create_collection(client, config)

        if not await client.is_loaded(config.collection):
            if not await client.list_indexes(config.collection):
                await _create_indexes(client, config)
            logger.info(f"Loading collection {config.collection}")
            await client.load_collection(config.collection)

        logger.info(f"Created indexer on {config.collection}")
        return cls(config, client)

    async def store(
        self, docs: list[Document], options: StoreOptions | None = None
    ) -> list[str]:
        """Embed, convert and insert documents.

        Args:
            docs: Documents to store; their ids become primary keys
            options: Per-call overrides (partition, embedder)

        Returns:
            Ids reported by the engine, in insertion order

        Raises:
            EmbeddingError: If the embedder fails
            EmbeddingShapeMismatch: If the embedder returns a vector count other
                than the document count
            DocumentConversionError: If documents cannot be converted to rows
            EngineExecutionError: If insert or flush fails
        """
        options = options or StoreOptions()
        if not docs:
            return []

        embedder = options.embedding if options.embedding is not None else self.config.embedding
        vectors: list[np.ndarray] | None = None
        if embedder is not None and self.config.vector_field:
            try:
                embedded = await embedder.embed_batch([doc.content for doc in docs])
            except Exception as exc:
                raise EmbeddingError(f"failed to embed documents: {exc}") from exc
            if len(embedded) != len(docs):
                raise EmbeddingShapeMismatch(
                    f"embedding result length mismatch: need {len(docs)}, got {len(embedded)}",
                    {"expected": len(docs), "got": len(embedded)},
                )
            vectors = [to_float32(v) for v in embedded]

        try:
            rows = self.row_converter(docs, vectors)
        except DocumentConversionError:
            raise
        except Exception as exc:
            raise DocumentConversionError(f"failed to convert documents: {exc}") from exc

        partition = options.partition or self.config.partition_name
        try:
            ids = await self.client.insert(self.config.collection, rows, partition)
            await self.client.flush(self.config.collection)
        except Exception as exc:
            raise EngineExecutionError(
                f"failed to insert documents: {exc}", {"collection": self.config.collection}
            ) from exc

        logger.info(f"Stored {len(ids)} documents in {self.config.collection}")
        return ids


async def _create_collection(client: EngineClient, config: IndexerConfig) -> None:
    if config.vector_field and config.dimension <= 0:
        raise ConfigurationInvalid(
            "dimension is required when collection does not exist",
            {"collection": config.collection},
        )
    logger.info(f"Creating collection {config.collection}")
    await client.create_collection(
        CollectionSpec(
            name=config.collection,
            description=config.description,
            vector_field=config.vector_field,
            dimension=config.dimension,
            sparse_vector_field=config.sparse_vector_field,
            enable_dynamic_schema=config.enable_dynamic_schema,
            consistency_level=config.consistency_level,
        )
    )


async def _create_indexes(client: EngineClient, config: IndexerConfig) -> None:
    if config.vector_field:
        index = config.index or AutoIndex()
        logger.info(
            f"Creating {index.index_type} index on {config.collection}.{config.vector_field}"
        )
        await client.create_index(config.collection, config.vector_field, index, config.metric_type)

    if config.sparse_vector_field:
        sparse_index = config.sparse_index or SparseInvertedIndex()
        logger.info(
            f"Creating {sparse_index.index_type} index on "
            f"{config.collection}.{config.sparse_vector_field}"
        )
        await client.create_index(
            config.collection, config.sparse_vector_field, sparse_index, MetricType.IP
        )
