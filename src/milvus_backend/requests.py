"""Engine request objects produced by the search modes.

These are plain containers: the search modes decide their contents and the
engine adapter (`milvus_backend.engine`) translates them into SDK calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from milvus_backend.models import Grouping
from milvus_backend.types import ConsistencyLevel, MetricType, VectorType

if TYPE_CHECKING:
    from milvus_backend.search_mode import Reranker


@dataclass
class SearchRequest:
    """A one-shot top-K (or range) vector search."""

    collection: str
    vector: np.ndarray
    anns_field: str
    limit: int
    metric_type: MetricType
    output_fields: list[str] = field(default_factory=list)
    search_params: dict[str, Any] = field(default_factory=dict)
    partitions: list[str] = field(default_factory=list)
    filter: str = ""
    grouping: Grouping | None = None
    consistency_level: ConsistencyLevel | None = None

    def engine_search_params(self) -> dict[str, Any]:
        return {"metric_type": self.metric_type.value, "params": dict(self.search_params)}


@dataclass
class AnnRequest:
    """One sub-search of a hybrid search."""

    anns_field: str
    data: np.ndarray | dict[int, float]
    limit: int
    vector_type: VectorType = VectorType.DENSE
    metric_type: MetricType | None = None
    search_params: dict[str, Any] = field(default_factory=dict)
    filter: str = ""
    grouping: Grouping | None = None

    def engine_search_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"params": dict(self.search_params)}
        if self.metric_type is not None:
            params["metric_type"] = self.metric_type.value
        return params


@dataclass
class HybridSearchRequest:
    """Several ANN sub-searches fused by a reranker."""

    collection: str
    requests: list[AnnRequest]
    reranker: Reranker
    limit: int
    output_fields: list[str] = field(default_factory=list)
    partitions: list[str] = field(default_factory=list)
    consistency_level: ConsistencyLevel | None = None


@dataclass
class QueryRequest:
    """A metadata-only query driven by a filter expression."""

    collection: str
    filter: str
    limit: int
    output_fields: list[str] = field(default_factory=list)
    partitions: list[str] = field(default_factory=list)
    consistency_level: ConsistencyLevel | None = None


@dataclass
class SearchIteratorRequest:
    """A batched search cursor over a possibly large result set.

    A limit of None means the cursor runs until the engine has no more hits.
    """

    collection: str
    vector: np.ndarray
    anns_field: str
    batch_size: int
    metric_type: MetricType
    limit: int | None = None
    output_fields: list[str] = field(default_factory=list)
    search_params: dict[str, Any] = field(default_factory=dict)
    partitions: list[str] = field(default_factory=list)
    filter: str = ""
    grouping: Grouping | None = None
    consistency_level: ConsistencyLevel | None = None

    def engine_search_params(self) -> dict[str, Any]:
        return {"metric_type": self.metric_type.value, "params": dict(self.search_params)}
