"""Vector index specifications used when the indexer provisions a collection."""

from dataclasses import dataclass
from typing import Any, ClassVar

from milvus_backend.errors import ConfigurationInvalid


@dataclass(frozen=True)
class AutoIndex:
    """Let Milvus pick the index type."""

    index_type: ClassVar[str] = "AUTOINDEX"

    def params(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class FlatIndex:
    """Exact brute-force search."""

    index_type: ClassVar[str] = "FLAT"

    def params(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class HNSWIndex:
    """Graph-based index.

    Attributes:
        m: Maximum out-degree of each graph node
        ef_construction: Candidate list size while building
    """

    m: int = 16
    ef_construction: int = 200
    index_type: ClassVar[str] = "HNSW"

    def __post_init__(self) -> None:
        if not 2 <= self.m <= 2048:
            raise ConfigurationInvalid(f"HNSW m must be within [2, 2048], got {self.m}")
        if self.ef_construction <= 0:
            raise ConfigurationInvalid(
                f"HNSW ef_construction must be positive, got {self.ef_construction}"
            )

    def params(self) -> dict[str, Any]:
        return {"M": self.m, "efConstruction": self.ef_construction}


@dataclass(frozen=True)
class IVFFlatIndex:
    """Inverted-file index with exact distances inside each cluster."""

    nlist: int = 128
    index_type: ClassVar[str] = "IVF_FLAT"

    def __post_init__(self) -> None:
        if not 1 <= self.nlist <= 65536:
            raise ConfigurationInvalid(f"IVF nlist must be within [1, 65536], got {self.nlist}")

    def params(self) -> dict[str, Any]:
        return {"nlist": self.nlist}


@dataclass(frozen=True)
class SparseInvertedIndex:
    """Inverted index for sparse vectors (always searched with IP)."""

    drop_ratio_build: float = 0.2
    index_type: ClassVar[str] = "SPARSE_INVERTED_INDEX"

    def __post_init__(self) -> None:
        if not 0.0 <= self.drop_ratio_build < 1.0:
            raise ConfigurationInvalid(
                f"drop_ratio_build must be within [0, 1), got {self.drop_ratio_build}"
            )

    def params(self) -> dict[str, Any]:
        return {"drop_ratio_build": self.drop_ratio_build}


IndexSpec = AutoIndex | FlatIndex | HNSWIndex | IVFFlatIndex | SparseInvertedIndex
INDEX_SPEC_TYPES = (AutoIndex, FlatIndex, HNSWIndex, IVFFlatIndex, SparseInvertedIndex)
