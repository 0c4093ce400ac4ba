"""Shared vocabulary for the Milvus backend.

Metric types, consistency levels and vector kinds are closed enumerations used
by the search modes, the indexer and the engine adapter alike.
"""

from enum import Enum

DEFAULT_COLLECTION = "milvus_backend_collection"
DEFAULT_DESCRIPTION = "the collection for milvus_backend"
DEFAULT_VECTOR_FIELD = "vector"
DEFAULT_TOP_K = 5
DEFAULT_OUTPUT_FIELDS = ("*",)

ID_FIELD = "id"
CONTENT_FIELD = "content"
METADATA_FIELD = "metadata"
SCORE_KEY = "score"

MAX_ID_LENGTH = 256
MAX_CONTENT_LENGTH = 65535


class MetricType(str, Enum):
    """Metric used to compare vectors.

    L2, HAMMING, JACCARD, TANIMOTO, SUBSTRUCTURE and SUPERSTRUCTURE are distances
    (lower is closer). IP and COSINE are similarities (higher is closer).
    """

    L2 = "L2"
    IP = "IP"
    COSINE = "COSINE"
    HAMMING = "HAMMING"
    JACCARD = "JACCARD"
    TANIMOTO = "TANIMOTO"
    SUBSTRUCTURE = "SUBSTRUCTURE"
    SUPERSTRUCTURE = "SUPERSTRUCTURE"

    @property
    def higher_is_better(self) -> bool:
        """True for similarity metrics, False for distance metrics."""
        return self in (MetricType.IP, MetricType.COSINE)


class ConsistencyLevel(str, Enum):
    """Read-freshness guarantee requested from Milvus."""

    STRONG = "Strong"
    SESSION = "Session"
    BOUNDED = "Bounded"
    EVENTUALLY = "Eventually"


class VectorType(str, Enum):
    """Kind of vector a field stores."""

    DENSE = "dense"
    SPARSE = "sparse"
