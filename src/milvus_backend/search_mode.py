"""Search modes and the request builders that go with them.

A search mode is one of five frozen variants, fixed for the lifetime of a
retriever:

    - Approximate: top-K approximate nearest neighbour search
    - Range: top-K search bounded by a radius (and optionally an inner ring)
    - Scalar: metadata-only query, the query text is the filter expression
    - Hybrid: several ANN sub-searches (dense and/or sparse) fused by a reranker
    - Iterator: batched cursor over a large result set

Each builder takes the retriever config, the query vector(s) and the per-call
options and returns an engine request from `milvus_backend.requests`. Top-K is
resolved as call option > mode override > config default.

Example:
    >>> mode = Range(radius=0.8, metric_type=MetricType.COSINE)
    >>> request = build_search_request(mode, config, query_vector, CallOptions(top_k=20))
    >>> request.limit
    20
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, assert_never

import numpy as np
from loguru import logger

from milvus_backend.errors import ConfigurationInvalid, RequestBuildError
from milvus_backend.models import CallOptions
from milvus_backend.requests import (
    AnnRequest,
    HybridSearchRequest,
    QueryRequest,
    SearchIteratorRequest,
    SearchRequest,
)
from milvus_backend.types import MetricType, VectorType

if TYPE_CHECKING:
    from milvus_backend.config import RetrieverConfig

DEFAULT_SUB_REQUEST_TOP_K = 10
DEFAULT_BATCH_SIZE = 100
DEFAULT_RRF_K = 60


def _coerce_metric(value: MetricType | str | None) -> MetricType:
    if not value:
        return MetricType.L2
    try:
        return MetricType(value)
    except ValueError as exc:
        raise ConfigurationInvalid(f"unknown metric type {value!r}") from exc


@dataclass(frozen=True)
class RRFReranker:
    """Reciprocal rank fusion: score = sum(1 / (k + rank))."""

    k: int = DEFAULT_RRF_K

    def __post_init__(self) -> None:
        if self.k <= 0:
            raise ConfigurationInvalid(f"RRF k must be positive, got {self.k}")


@dataclass(frozen=True)
class WeightedReranker:
    """Weighted sum of normalized sub-search scores, one weight per sub-request."""

    weights: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "weights", tuple(float(w) for w in self.weights))
        if not self.weights:
            raise ConfigurationInvalid("WeightedReranker requires at least one weight")
        for w in self.weights:
            if not 0.0 <= w <= 1.0:
                raise ConfigurationInvalid(f"reranker weights must be within [0, 1], got {w}")


Reranker = RRFReranker | WeightedReranker


@dataclass(frozen=True)
class Approximate:
    """Approximate nearest neighbour search on one dense vector field."""

    metric_type: MetricType = MetricType.L2

    def __post_init__(self) -> None:
        object.__setattr__(self, "metric_type", _coerce_metric(self.metric_type))


@dataclass(frozen=True)
class Range:
    """Range search around the query vector.

    Attributes:
        radius: Outer boundary. Distance metrics keep hits with distance <= radius;
            similarity metrics keep hits with score >= radius.
        metric_type: Metric used by the vector index
        range_filter: Optional inner boundary for ring searches. Distance metrics
            drop hits closer than range_filter, similarity metrics drop hits
            scoring above it.
    """

    radius: float
    metric_type: MetricType = MetricType.L2
    range_filter: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "metric_type", _coerce_metric(self.metric_type))
        if not math.isfinite(self.radius):
            raise ConfigurationInvalid(f"radius must be finite, got {self.radius}")
        if self.range_filter is None:
            return
        if not math.isfinite(self.range_filter):
            raise ConfigurationInvalid(f"range_filter must be finite, got {self.range_filter}")
        if self.metric_type.higher_is_better and self.range_filter <= self.radius:
            raise ConfigurationInvalid(
                f"range_filter ({self.range_filter}) must be greater than radius "
                f"({self.radius}) for {self.metric_type.value}"
            )
        if not self.metric_type.higher_is_better and self.range_filter >= self.radius:
            raise ConfigurationInvalid(
                f"range_filter ({self.range_filter}) must be less than radius "
                f"({self.radius}) for {self.metric_type.value}"
            )

    def search_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"radius": self.radius}
        if self.range_filter is not None:
            params["range_filter"] = self.range_filter
        return params


@dataclass(frozen=True)
class Scalar:
    """Metadata-only query; the query text is used as a filter expression."""


@dataclass(frozen=True)
class SubRequest:
    """One ANN sub-search of a Hybrid search.

    Attributes:
        vector_field: Field to search; falls back to the retriever's vector field
        metric_type: Metric for this sub-search; None uses the index metric
        top_k: Hits fetched by this sub-search before fusion (default 10)
        search_params: Extra index parameters (e.g. {"ef": 64}, {"nprobe": 16})
        vector_type: Whether this field holds dense or sparse vectors
    """

    vector_field: str = ""
    metric_type: MetricType | None = None
    top_k: int = 0
    search_params: Mapping[str, Any] = field(default_factory=dict)
    vector_type: VectorType = VectorType.DENSE

    def __post_init__(self) -> None:
        if self.metric_type is not None:
            object.__setattr__(self, "metric_type", _coerce_metric(self.metric_type))
        object.__setattr__(self, "vector_type", VectorType(self.vector_type))


@dataclass(frozen=True)
class Hybrid:
    """Multi-vector search with result fusion.

    Attributes:
        reranker: How sub-search results are fused
        sub_requests: Sub-searches to run; at least one is required
        top_k: Overrides the retriever's top-K for the fused result (0 = no override)
    """

    reranker: Reranker
    sub_requests: tuple[SubRequest, ...] = ()
    top_k: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "sub_requests", tuple(self.sub_requests))
        if not self.sub_requests:
            raise ConfigurationInvalid("Hybrid search mode requires at least one sub-request")
        if self.top_k < 0:
            raise ConfigurationInvalid(f"Hybrid top_k must be non-negative, got {self.top_k}")
        if isinstance(self.reranker, WeightedReranker) and len(self.reranker.weights) != len(
            self.sub_requests
        ):
            raise ConfigurationInvalid(
                f"WeightedReranker has {len(self.reranker.weights)} weights "
                f"for {len(self.sub_requests)} sub-requests"
            )

    @property
    def needs_dense(self) -> bool:
        return any(sub.vector_type == VectorType.DENSE for sub in self.sub_requests)

    @property
    def needs_sparse(self) -> bool:
        return any(sub.vector_type == VectorType.SPARSE for sub in self.sub_requests)


@dataclass(frozen=True)
class Iterator:
    """Batched search cursor.

    Attributes:
        metric_type: Metric used by the vector index
        batch_size: Hits fetched per round trip (default 100)
        search_params: Extra index parameters
    """

    metric_type: MetricType = MetricType.L2
    batch_size: int = DEFAULT_BATCH_SIZE
    search_params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metric_type", _coerce_metric(self.metric_type))
        if self.batch_size <= 0:
            object.__setattr__(self, "batch_size", DEFAULT_BATCH_SIZE)


SearchMode = Approximate | Range | Scalar | Hybrid | Iterator
SEARCH_MODE_TYPES = (Approximate, Range, Scalar, Hybrid, Iterator)


def resolve_top_k(config: RetrieverConfig, options: CallOptions, mode_top_k: int = 0) -> int:
    """Return the effective top-K: call option > mode override > config default."""
    if options.top_k is not None:
        return options.top_k
    if mode_top_k > 0:
        return mode_top_k
    return config.top_k


def build_filter_expression(query: str, call_filter: str) -> str:
    """Combine the query expression and the call-option filter with AND.

    Example:
        >>> build_filter_expression("year > 2020", 'lang == "en"')
        '(year > 2020) and (lang == "en")'
    """
    if query and call_filter:
        return f"({query}) and ({call_filter})"
    return query or call_filter


def build_search_request(
    mode: SearchMode,
    config: RetrieverConfig,
    query_vector: np.ndarray,
    options: CallOptions | None = None,
) -> SearchRequest:
    """Build a one-shot search request for Approximate or Range modes.

    Raises:
        RequestBuildError: If the mode needs a specialized builder or the vector is empty
    """
    options = options or CallOptions()

    if isinstance(mode, Approximate):
        params: dict[str, Any] = {}
    elif isinstance(mode, Range):
        params = mode.search_params()
    elif isinstance(mode, Hybrid):
        raise RequestBuildError("Hybrid search mode requires build_hybrid_search_request")
    elif isinstance(mode, Iterator):
        raise RequestBuildError("Iterator search mode requires build_search_iterator_request")
    elif isinstance(mode, Scalar):
        raise RequestBuildError("Scalar search mode requires build_query_request")
    else:
        assert_never(mode)

    if query_vector.size == 0:
        raise RequestBuildError("query vector is empty")

    request = SearchRequest(
        collection=config.collection,
        vector=query_vector,
        anns_field=options.vector_field or config.vector_field,
        limit=resolve_top_k(config, options),
        metric_type=mode.metric_type,
        output_fields=list(config.output_fields),
        search_params=params,
        partitions=list(config.partitions),
        filter=options.filter,
        grouping=options.grouping,
        consistency_level=config.consistency_level,
    )
    logger.debug(
        f"Built {type(mode).__name__} search on {request.collection}.{request.anns_field} "
        f"(limit={request.limit}, metric={request.metric_type.value})"
    )
    return request


def build_query_request(
    mode: Scalar,
    config: RetrieverConfig,
    query: str,
    options: CallOptions | None = None,
) -> QueryRequest:
    """Build a metadata query; `query` is treated as a boolean filter expression."""
    options = options or CallOptions()
    request = QueryRequest(
        collection=config.collection,
        filter=build_filter_expression(query, options.filter),
        limit=resolve_top_k(config, options),
        output_fields=list(config.output_fields),
        partitions=list(config.partitions),
        consistency_level=config.consistency_level,
    )
    logger.debug(f"Built query on {request.collection} (filter={request.filter!r})")
    return request


def _sparse_payload(sparse: Mapping[int, float]) -> dict[int, float]:
    payload: dict[int, float] = {}
    for index, weight in sorted(sparse.items()):
        if isinstance(index, bool) or not isinstance(index, int | np.integer) or index < 0:
            raise RequestBuildError(f"failed to create sparse embedding: invalid index {index!r}")
        value = float(np.float32(weight))
        if not math.isfinite(value):
            raise RequestBuildError(
                f"failed to create sparse embedding: non-finite weight at index {index}"
            )
        payload[int(index)] = value
    return payload


def build_hybrid_search_request(
    mode: Hybrid,
    config: RetrieverConfig,
    dense_vector: np.ndarray | None,
    sparse_vector: Mapping[int, float] | None,
    options: CallOptions | None = None,
) -> HybridSearchRequest:
    """Build a multi-vector search fused by the mode's reranker.

    Sub-requests whose vector kind was not supplied are skipped.

    Raises:
        RequestBuildError: If no sub-request resolves a vector, or the sparse
            vector cannot be encoded
    """
    options = options or CallOptions()
    fallback_field = options.vector_field or config.vector_field

    ann_requests: list[AnnRequest] = []
    kept: list[int] = []
    for idx, sub in enumerate(mode.sub_requests):
        anns_field = sub.vector_field or fallback_field
        data: np.ndarray | dict[int, float]
        if sub.vector_type == VectorType.SPARSE:
            if not sparse_vector:
                logger.debug(f"Skipping sparse sub-request on {anns_field}: no sparse vector")
                continue
            data = _sparse_payload(sparse_vector)
        else:
            if dense_vector is None or dense_vector.size == 0:
                logger.debug(f"Skipping dense sub-request on {anns_field}: no dense vector")
                continue
            data = dense_vector

        ann_requests.append(
            AnnRequest(
                anns_field=anns_field,
                data=data,
                limit=sub.top_k if sub.top_k > 0 else DEFAULT_SUB_REQUEST_TOP_K,
                vector_type=sub.vector_type,
                metric_type=sub.metric_type,
                search_params=dict(sub.search_params),
                filter=options.filter,
                grouping=options.grouping,
            )
        )
        kept.append(idx)

    if not ann_requests:
        raise RequestBuildError(
            "Hybrid search resolved no sub-request: no query vector matches any sub-request",
            {"sub_requests": len(mode.sub_requests)},
        )

    # one weight per sub-request actually sent
    reranker: Reranker = mode.reranker
    if isinstance(reranker, WeightedReranker):
        reranker = WeightedReranker(weights=tuple(reranker.weights[i] for i in kept))

    request = HybridSearchRequest(
        collection=config.collection,
        requests=ann_requests,
        reranker=reranker,
        limit=resolve_top_k(config, options, mode.top_k),
        output_fields=list(config.output_fields),
        partitions=list(config.partitions),
        consistency_level=config.consistency_level,
    )
    logger.debug(
        f"Built hybrid search on {request.collection} with {len(ann_requests)}/"
        f"{len(mode.sub_requests)} sub-requests (limit={request.limit})"
    )
    return request


def build_search_iterator_request(
    mode: Iterator,
    config: RetrieverConfig,
    query_vector: np.ndarray,
    options: CallOptions | None = None,
) -> SearchIteratorRequest:
    """Build a batched search cursor.

    The cursor is unlimited unless the call options carry a top-K.
    """
    options = options or CallOptions()
    if query_vector.size == 0:
        raise RequestBuildError("query vector is empty")

    request = SearchIteratorRequest(
        collection=config.collection,
        vector=query_vector,
        anns_field=options.vector_field or config.vector_field,
        batch_size=mode.batch_size,
        metric_type=mode.metric_type,
        limit=options.top_k,
        output_fields=list(config.output_fields),
        search_params=dict(mode.search_params),
        partitions=list(config.partitions),
        filter=options.filter,
        grouping=options.grouping,
        consistency_level=config.consistency_level,
    )
    logger.debug(
        f"Built search iterator on {request.collection}.{request.anns_field} "
        f"(batch_size={request.batch_size}, limit={request.limit})"
    )
    return request
