"""Milvus retrieval and indexing backend.

This package stores documents in, and retrieves documents from, a Milvus
collection through a closed set of search modes. Nearest-neighbour search,
index structures and durability belong to Milvus; this package builds the
requests, orchestrates embedding and converts results back into documents.

Architecture:
    - search_mode: Approximate, Range, Scalar, Hybrid and Iterator modes plus
      their request builders
    - retriever: Dispatches a query through the configured mode
    - indexer: Collection provisioning and document storage
    - converter: Engine rows -> documents, with explicit skip outcomes
    - embedding: Query embedding orchestrator and OpenAI provider
    - engine: Engine client protocol and the pymilvus adapter
    - config: Runtime configs and Hydra-loaded settings

Usage:
    >>> from milvus_backend import MilvusRetriever, RetrieverConfig, Approximate
    >>> config = RetrieverConfig(client=engine, embedding=embedder, search_mode=Approximate())
    >>> retriever = await MilvusRetriever.create(config)
    >>> docs = await retriever.retrieve("protein aggregation in neurons")
"""

__version__ = "0.1.0"

from milvus_backend.config import (
    ConnectionConfig,
    IndexerConfig,
    MilvusBackendSettings,
    RetrieverConfig,
    load_config,
)
from milvus_backend.errors import (
    ConfigurationInvalid,
    DocumentConversionError,
    EmbeddingError,
    EmbeddingShapeMismatch,
    EmbeddingUnavailable,
    EngineExecutionError,
    MilvusBackendError,
    RequestBuildError,
    SparseEmbeddingShapeMismatch,
)
from milvus_backend.index_params import (
    AutoIndex,
    FlatIndex,
    HNSWIndex,
    IVFFlatIndex,
    SparseInvertedIndex,
)
from milvus_backend.indexer import MilvusIndexer
from milvus_backend.models import CallOptions, Document, Grouping, StoreOptions
from milvus_backend.retriever import MilvusRetriever, apply_score_threshold
from milvus_backend.search_mode import (
    Approximate,
    Hybrid,
    Iterator,
    Range,
    RRFReranker,
    Scalar,
    SubRequest,
    WeightedReranker,
)
from milvus_backend.types import ConsistencyLevel, MetricType, VectorType

__all__ = [
    "Approximate",
    "AutoIndex",
    "CallOptions",
    "ConfigurationInvalid",
    "ConnectionConfig",
    "ConsistencyLevel",
    "Document",
    "DocumentConversionError",
    "EmbeddingError",
    "EmbeddingShapeMismatch",
    "EmbeddingUnavailable",
    "EngineExecutionError",
    "FlatIndex",
    "Grouping",
    "HNSWIndex",
    "Hybrid",
    "IVFFlatIndex",
    "IndexerConfig",
    "Iterator",
    "MetricType",
    "MilvusBackendError",
    "MilvusBackendSettings",
    "MilvusIndexer",
    "MilvusRetriever",
    "RRFReranker",
    "Range",
    "RequestBuildError",
    "RetrieverConfig",
    "Scalar",
    "SparseEmbeddingShapeMismatch",
    "SparseInvertedIndex",
    "StoreOptions",
    "SubRequest",
    "VectorType",
    "WeightedReranker",
    "apply_score_threshold",
    "load_config",
]
