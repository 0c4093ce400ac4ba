"""Configuration for the Milvus retriever and indexer.

Two layers:
    - Settings (`MilvusBackendSettings` and friends) are plain, serializable
      values loaded from YAML files in conf/milvus/ with Hydra.
    - Runtime configs (`RetrieverConfig`, `IndexerConfig`) additionally hold live
      objects: the engine client, embedders, the search mode and converters.
      They are frozen once built; defaults are applied by field validators and
      `ensure_valid()` performs the semantic checks.
"""

from pathlib import Path
from typing import Any, Literal

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from milvus_backend.converter import DocumentConverter, default_document_converter
from milvus_backend.embedding import DenseEmbedder, EmbeddingConfig, create_embedding_client
from milvus_backend.errors import ConfigurationInvalid
from milvus_backend.index_params import (
    INDEX_SPEC_TYPES,
    AutoIndex,
    FlatIndex,
    HNSWIndex,
    IndexSpec,
    IVFFlatIndex,
)
from milvus_backend.search_mode import (
    SEARCH_MODE_TYPES,
    Approximate,
    Hybrid,
    Iterator,
    Range,
    Reranker,
    RRFReranker,
    Scalar,
    SearchMode,
    SubRequest,
    WeightedReranker,
)
from milvus_backend.types import (
    DEFAULT_COLLECTION,
    DEFAULT_DESCRIPTION,
    DEFAULT_OUTPUT_FIELDS,
    DEFAULT_TOP_K,
    DEFAULT_VECTOR_FIELD,
    ConsistencyLevel,
    MetricType,
    VectorType,
)


class ConnectionConfig(BaseModel):
    """Milvus connection settings.

    Attributes:
        uri: Server URI (e.g. "http://localhost:19530") or Zilliz Cloud endpoint
        token: Optional token ("user:password" or API key)
        db_name: Database name
        timeout_seconds: Optional per-call timeout passed to the SDK
    """

    uri: str = "http://localhost:19530"
    token: str | None = None
    db_name: str = "default"
    timeout_seconds: float | None = Field(default=None, gt=0.0)


class SubRequestConfig(BaseModel):
    """Declarative form of `search_mode.SubRequest`."""

    vector_field: str = ""
    metric_type: MetricType | None = None
    top_k: int = Field(default=0, ge=0)
    search_params: dict[str, Any] = Field(default_factory=dict)
    vector_type: VectorType = VectorType.DENSE


class SearchModeConfig(BaseModel):
    """Declarative search mode, turned into a variant by `build()`.

    Attributes:
        kind: Which search mode to use
        metric_type: Metric for approximate, range and iterator modes
        radius: Range outer boundary (required for kind="range")
        range_filter: Range inner boundary
        batch_size: Iterator batch size
        search_params: Iterator extra search parameters
        reranker: Hybrid fusion strategy
        rrf_k: RRF smoothing constant
        weights: Weighted reranker weights, one per sub-request
        top_k: Hybrid top-K override (0 = none)
        sub_requests: Hybrid sub-searches
    """

    kind: Literal["approximate", "range", "scalar", "hybrid", "iterator"] = "approximate"
    metric_type: MetricType = MetricType.L2
    radius: float | None = None
    range_filter: float | None = None
    batch_size: int = Field(default=100, ge=1)
    search_params: dict[str, Any] = Field(default_factory=dict)
    reranker: Literal["rrf", "weighted"] = "rrf"
    rrf_k: int = Field(default=60, ge=1)
    weights: list[float] = Field(default_factory=list)
    top_k: int = Field(default=0, ge=0)
    sub_requests: list[SubRequestConfig] = Field(default_factory=list)

    def build(self) -> SearchMode:
        """Create the search mode variant described by this config.

        Raises:
            ConfigurationInvalid: If required parameters for the kind are missing
        """
        if self.kind == "approximate":
            return Approximate(metric_type=self.metric_type)
        if self.kind == "range":
            if self.radius is None:
                raise ConfigurationInvalid("range search mode requires a radius")
            return Range(
                radius=self.radius, metric_type=self.metric_type, range_filter=self.range_filter
            )
        if self.kind == "scalar":
            return Scalar()
        if self.kind == "iterator":
            return Iterator(
                metric_type=self.metric_type,
                batch_size=self.batch_size,
                search_params=dict(self.search_params),
            )

        reranker: Reranker
        if self.reranker == "weighted":
            reranker = WeightedReranker(weights=tuple(self.weights))
        else:
            reranker = RRFReranker(k=self.rrf_k)
        return Hybrid(
            reranker=reranker,
            sub_requests=tuple(
                SubRequest(
                    vector_field=sub.vector_field,
                    metric_type=sub.metric_type,
                    top_k=sub.top_k,
                    search_params=dict(sub.search_params),
                    vector_type=sub.vector_type,
                )
                for sub in self.sub_requests
            ),
            top_k=self.top_k,
        )


class RetrieverSettings(BaseModel):
    """Serializable retriever settings."""

    collection: str = DEFAULT_COLLECTION
    partitions: list[str] = Field(default_factory=list)
    vector_field: str = DEFAULT_VECTOR_FIELD
    output_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_OUTPUT_FIELDS))
    top_k: int = DEFAULT_TOP_K
    score_threshold: float | None = None
    consistency_level: ConsistencyLevel = ConsistencyLevel.BOUNDED
    search_mode: SearchModeConfig = Field(default_factory=SearchModeConfig)


class IndexSettings(BaseModel):
    """Serializable dense index settings."""

    kind: Literal["auto", "flat", "hnsw", "ivf_flat"] = "auto"
    m: int = 16
    ef_construction: int = 200
    nlist: int = 128

    def build(self) -> IndexSpec:
        if self.kind == "flat":
            return FlatIndex()
        if self.kind == "hnsw":
            return HNSWIndex(m=self.m, ef_construction=self.ef_construction)
        if self.kind == "ivf_flat":
            return IVFFlatIndex(nlist=self.nlist)
        return AutoIndex()


class IndexerSettings(BaseModel):
    """Serializable indexer settings."""

    collection: str = DEFAULT_COLLECTION
    description: str = DEFAULT_DESCRIPTION
    dimension: int = Field(default=0, ge=0)
    partition_name: str = ""
    consistency_level: ConsistencyLevel = ConsistencyLevel.BOUNDED
    enable_dynamic_schema: bool = False
    metric_type: MetricType = MetricType.L2
    vector_field: str = ""
    sparse_vector_field: str = ""
    index: IndexSettings = Field(default_factory=IndexSettings)


class MilvusBackendSettings(BaseModel):
    """Top-level configuration loaded from conf/milvus/*.yaml.

    Attributes:
        connection: Milvus connection settings
        embedding: Dense embedding model (optional for scalar-only setups)
        retriever: Retriever settings
        indexer: Indexer settings
    """

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    embedding: EmbeddingConfig | None = None
    retriever: RetrieverSettings = Field(default_factory=RetrieverSettings)
    indexer: IndexerSettings = Field(default_factory=IndexerSettings)


def _require_client(client: Any, connection: ConnectionConfig | None) -> None:
    if client is None and connection is None:
        raise ConfigurationInvalid("milvus client or client config not provided")


class RetrieverConfig(BaseModel):
    """Runtime retriever configuration.

    Attributes:
        client: Engine client (an `EngineClient`); built from `connection` if None
        connection: Connection settings used when no client is given
        collection: Collection to search
        partitions: Partitions to search (empty = all)
        vector_field: Default dense vector field
        output_fields: Fields returned with each hit
        top_k: Default number of results
        score_threshold: Drop documents scoring below this value
        consistency_level: Read consistency requested from Milvus
        search_mode: One of the `search_mode` variants
        document_converter: Result set -> documents; defaults to the lenient converter
        embedding: Dense embedder
        sparse_embedding: Sparse embedder (hybrid mode only)
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    client: Any = None
    connection: ConnectionConfig | None = None
    collection: str = DEFAULT_COLLECTION
    partitions: tuple[str, ...] = ()
    vector_field: str = DEFAULT_VECTOR_FIELD
    output_fields: tuple[str, ...] = DEFAULT_OUTPUT_FIELDS
    top_k: int = DEFAULT_TOP_K
    score_threshold: float | None = None
    consistency_level: ConsistencyLevel = ConsistencyLevel.BOUNDED
    search_mode: Any = None
    document_converter: Any = None
    embedding: Any = None
    sparse_embedding: Any = None

    @field_validator("collection")
    @classmethod
    def default_collection(cls, v: str) -> str:
        return v or DEFAULT_COLLECTION

    @field_validator("vector_field")
    @classmethod
    def default_vector_field(cls, v: str) -> str:
        return v or DEFAULT_VECTOR_FIELD

    @field_validator("output_fields")
    @classmethod
    def default_output_fields(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return v or DEFAULT_OUTPUT_FIELDS

    @field_validator("top_k")
    @classmethod
    def default_top_k(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_TOP_K

    @property
    def converter(self) -> DocumentConverter:
        return self.document_converter or default_document_converter

    def ensure_valid(self) -> None:
        """Check that the configuration can serve retrievals.

        Raises:
            ConfigurationInvalid: If the client, search mode or a required embedder is missing
        """
        _require_client(self.client, self.connection)
        mode = self.search_mode
        if mode is None:
            raise ConfigurationInvalid("search mode not provided")
        if not isinstance(mode, SEARCH_MODE_TYPES):
            raise ConfigurationInvalid(f"unsupported search mode {type(mode).__name__}")
        if isinstance(mode, Scalar):
            return
        if isinstance(mode, Hybrid):
            dense_ok = mode.needs_dense and self.embedding is not None
            sparse_ok = mode.needs_sparse and self.sparse_embedding is not None
            if not (dense_ok or sparse_ok):
                raise ConfigurationInvalid(
                    "hybrid search mode requires an embedding for at least one of its "
                    "sub-request vector types"
                )
            return
        if self.embedding is None:
            raise ConfigurationInvalid(
                "embedding not provided; it is required for vector search modes. "
                "Provide an embedding or use the Scalar search mode for metadata-only filtering"
            )

    @classmethod
    def from_settings(
        cls,
        settings: MilvusBackendSettings,
        *,
        client: Any = None,
        embedding: DenseEmbedder | None = None,
        sparse_embedding: Any = None,
        document_converter: DocumentConverter | None = None,
    ) -> "RetrieverConfig":
        """Build a runtime config from loaded settings.

        If no dense embedder is passed and the settings describe one, it is
        created with `create_embedding_client`.
        """
        if embedding is None and settings.embedding is not None:
            embedding = create_embedding_client(settings.embedding)
        r = settings.retriever
        return cls(
            client=client,
            connection=settings.connection,
            collection=r.collection,
            partitions=tuple(r.partitions),
            vector_field=r.vector_field,
            output_fields=tuple(r.output_fields),
            top_k=r.top_k,
            score_threshold=r.score_threshold,
            consistency_level=r.consistency_level,
            search_mode=r.search_mode.build(),
            document_converter=document_converter,
            embedding=embedding,
            sparse_embedding=sparse_embedding,
        )


class IndexerConfig(BaseModel):
    """Runtime indexer configuration.

    Attributes:
        client: Engine client; built from `connection` if None
        connection: Connection settings used when no client is given
        collection: Collection to write to (created when missing)
        description: Collection description used on creation
        dimension: Dense vector dimension; required to create a dense field
        partition_name: Default partition for inserts
        consistency_level: Consistency level used on creation
        enable_dynamic_schema: Allow fields outside the fixed schema
        metric_type: Metric of the dense index
        index: Dense index spec (AutoIndex if None)
        sparse_index: Sparse index spec (SparseInvertedIndex if None)
        vector_field: Dense vector field; defaults to "vector" unless the
            collection is sparse-only
        sparse_vector_field: Optional sparse vector field
        document_converter: (docs, vectors) -> rows; defaults to the built-in one
        embedding: Dense embedder for document contents
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    client: Any = None
    connection: ConnectionConfig | None = None
    collection: str = DEFAULT_COLLECTION
    description: str = DEFAULT_DESCRIPTION
    dimension: int = Field(default=0, ge=0)
    partition_name: str = ""
    consistency_level: ConsistencyLevel = ConsistencyLevel.BOUNDED
    enable_dynamic_schema: bool = False
    metric_type: MetricType = MetricType.L2
    index: Any = None
    sparse_index: Any = None
    vector_field: str = ""
    sparse_vector_field: str = ""
    document_converter: Any = None
    embedding: Any = None

    @model_validator(mode="before")
    @classmethod
    def apply_defaults(cls, data: Any) -> Any:
        """Default collection/description, and the dense field unless sparse-only."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["collection"] = data.get("collection") or DEFAULT_COLLECTION
        data["description"] = data.get("description") or DEFAULT_DESCRIPTION
        sparse_only = not data.get("dimension") and bool(data.get("sparse_vector_field"))
        if not data.get("vector_field") and not sparse_only:
            data["vector_field"] = DEFAULT_VECTOR_FIELD
        return data

    def ensure_valid(self) -> None:
        """Check that the configuration can store documents.

        Raises:
            ConfigurationInvalid: If the client or every vector field is missing,
                or an index spec has the wrong type
        """
        _require_client(self.client, self.connection)
        if not self.vector_field and not self.sparse_vector_field:
            raise ConfigurationInvalid("at least one vector field (dense or sparse) is required")
        for spec in (self.index, self.sparse_index):
            if spec is not None and not isinstance(spec, INDEX_SPEC_TYPES):
                raise ConfigurationInvalid(f"unsupported index spec {type(spec).__name__}")

    @classmethod
    def from_settings(
        cls,
        settings: MilvusBackendSettings,
        *,
        client: Any = None,
        embedding: DenseEmbedder | None = None,
    ) -> "IndexerConfig":
        """Build a runtime indexer config from loaded settings."""
        if embedding is None and settings.embedding is not None:
            embedding = create_embedding_client(settings.embedding)
        s = settings.indexer
        return cls(
            client=client,
            connection=settings.connection,
            collection=s.collection,
            description=s.description,
            dimension=s.dimension,
            partition_name=s.partition_name,
            consistency_level=s.consistency_level,
            enable_dynamic_schema=s.enable_dynamic_schema,
            metric_type=s.metric_type,
            index=s.index.build(),
            vector_field=s.vector_field,
            sparse_vector_field=s.sparse_vector_field,
            embedding=embedding,
        )


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> MilvusBackendSettings:
    """Load backend settings from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/milvus/)
        overrides: List of config overrides (e.g., ["retriever.top_k=10"])

    Returns:
        Validated settings object

    Example:
        >>> settings = load_config("default", overrides=["retriever.search_mode.kind=scalar"])
        >>> settings.retriever.search_mode.kind
        'scalar'
    """
    if config_path is None:
        repo_root = Path(__file__).parent.parent.parent
        config_path = repo_root / "conf" / "milvus"

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(config_dir=str(config_path), version_base=None, job_name="milvus"):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return MilvusBackendSettings(**config_dict)  # type: ignore


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Example:
        >>> import yaml
        >>> with open("conf/milvus/default.yaml", "w") as f:
        ...     yaml.dump(create_default_config(), f)
    """
    return {
        "connection": {
            "uri": "${oc.env:MILVUS_URI,http://localhost:19530}",
            "token": "${oc.env:MILVUS_TOKEN,null}",
            "db_name": "default",
            "timeout_seconds": None,
        },
        "embedding": {
            "model": "openai/text-embedding-3-small",
            "dimensions": 1536,
            "batch_size": 100,
            "max_retries": 3,
            "timeout_seconds": 30.0,
            "api_key": "${oc.env:OPENAI_API_KEY,null}",
        },
        "retriever": {
            "collection": DEFAULT_COLLECTION,
            "partitions": [],
            "vector_field": DEFAULT_VECTOR_FIELD,
            "output_fields": list(DEFAULT_OUTPUT_FIELDS),
            "top_k": DEFAULT_TOP_K,
            "score_threshold": None,
            "consistency_level": ConsistencyLevel.BOUNDED.value,
            "search_mode": {"kind": "approximate", "metric_type": MetricType.L2.value},
        },
        "indexer": {
            "collection": DEFAULT_COLLECTION,
            "description": DEFAULT_DESCRIPTION,
            "dimension": 1536,
            "partition_name": "",
            "consistency_level": ConsistencyLevel.BOUNDED.value,
            "enable_dynamic_schema": False,
            "metric_type": MetricType.L2.value,
            "vector_field": DEFAULT_VECTOR_FIELD,
            "sparse_vector_field": "",
            "index": {"kind": "auto"},
        },
    }
