"""Pydantic models for documents, per-call options and engine results.

Documents are what callers store and get back. Call options are per-invocation
overrides that take precedence over the retriever configuration. Result sets are
the engine-neutral shape the converter consumes.
"""

import math
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Document(BaseModel):
    """A retrievable unit of text.

    Attributes:
        id: Primary key (engine-assigned or caller-assigned)
        content: Raw text content
        metadata: Free-form metadata; retrieved documents also carry "score" here
        score: Similarity score reported by the engine, if any
        dense_vector: Pre-computed dense vector, used by the indexer when no
            embedder is configured
        sparse_vector: Sparse vector (index -> weight) for collections with a
            sparse field
    """

    id: str = ""
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float | None = None
    dense_vector: list[float] | None = None
    sparse_vector: dict[int, float] | None = None


class Grouping(BaseModel):
    """Group search results by a scalar field.

    Attributes:
        group_by_field: Field whose value defines a group
        group_size: Maximum number of hits per group
        strict_group_size: Only return groups that reach group_size
    """

    model_config = ConfigDict(frozen=True)

    group_by_field: str = Field(min_length=1)
    group_size: int = Field(default=1, ge=1)
    strict_group_size: bool = False


class CallOptions(BaseModel):
    """Per-call overrides for a retrieval.

    Precedence is always: call option > search mode field > config default.

    Attributes:
        filter: Boolean filter expression (e.g. 'category == "news"')
        grouping: Optional result grouping
        top_k: Number of results to return
        score_threshold: Drop documents scoring below this value
        vector_field: Vector field to search instead of the configured one
        embedding: Dense embedder to use instead of the configured one
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    filter: str = ""
    grouping: Grouping | None = None
    top_k: int | None = Field(default=None, ge=1)
    score_threshold: float | None = None
    vector_field: str | None = None
    embedding: Any = None

    @field_validator("score_threshold")
    @classmethod
    def validate_threshold(cls, v: float | None) -> float | None:
        """Ensure the threshold is a finite number."""
        if v is not None and not math.isfinite(v):
            raise ValueError(f"score_threshold must be finite, got {v}")
        return v


class StoreOptions(BaseModel):
    """Per-call overrides for storing documents.

    Attributes:
        partition: Partition to insert into instead of the configured one
        embedding: Dense embedder to use instead of the configured one
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    partition: str = ""
    embedding: Any = None


@dataclass
class ResultSet:
    """Engine result rows with optional per-row similarity scores.

    Rows are plain dicts keyed by column name. Scores are aligned with rows by
    position; query (non-vector) results carry no scores.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)

    @property
    def result_count(self) -> int:
        return len(self.rows)

    def score_at(self, idx: int) -> float | None:
        if idx < len(self.scores):
            return float(self.scores[idx])
        return None
