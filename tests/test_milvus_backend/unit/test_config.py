"""Unit tests for configuration models and loading.

Tests cover:
- Runtime config defaults and validation
- Declarative search mode and index settings
- Hydra config loading from YAML
- Environment variable interpolation and overrides
"""

import os
from unittest.mock import AsyncMock

import pytest
import yaml
from pydantic import ValidationError

from milvus_backend.config import (
    IndexerConfig,
    IndexSettings,
    MilvusBackendSettings,
    RetrieverConfig,
    SearchModeConfig,
    create_default_config,
    load_config,
)
from milvus_backend.converter import default_document_converter
from milvus_backend.errors import ConfigurationInvalid
from milvus_backend.index_params import AutoIndex, HNSWIndex, IVFFlatIndex
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


class TestRetrieverConfig:
    """Tests for runtime retriever config."""

    def test_defaults_applied(self) -> None:
        config = RetrieverConfig(
            client=AsyncMock(),
            collection="",
            vector_field="",
            output_fields=(),
            top_k=0,
            search_mode=Scalar(),
        )

        assert config.collection == "milvus_backend_collection"
        assert config.vector_field == "vector"
        assert config.output_fields == ("*",)
        assert config.top_k == 5
        assert config.consistency_level == ConsistencyLevel.BOUNDED
        assert config.converter is default_document_converter

    def test_frozen(self) -> None:
        config = RetrieverConfig(client=AsyncMock(), search_mode=Scalar())

        with pytest.raises(ValidationError):
            config.top_k = 10  # type: ignore[misc]

    def test_unsupported_search_mode(self) -> None:
        config = RetrieverConfig(client=AsyncMock(), search_mode="approximate")

        with pytest.raises(ConfigurationInvalid, match="unsupported search mode str"):
            config.ensure_valid()

    def test_connection_settings_satisfy_client_requirement(self) -> None:
        config = RetrieverConfig(
            connection=MilvusBackendSettings().connection, search_mode=Scalar()
        )

        config.ensure_valid()

    @pytest.mark.parametrize(
        "mode", [Approximate(), Range(radius=1.0), Iterator()], ids=lambda m: type(m).__name__
    )
    def test_vector_modes_require_embedding(self, mode) -> None:
        config = RetrieverConfig(client=AsyncMock(), search_mode=mode)

        with pytest.raises(ConfigurationInvalid, match="use the Scalar search mode"):
            config.ensure_valid()

    def test_hybrid_accepts_matching_sparse_embedder(self) -> None:
        mode = Hybrid(
            reranker=RRFReranker(),
            sub_requests=(SubRequest(vector_type=VectorType.SPARSE),),
        )
        config = RetrieverConfig(client=AsyncMock(), search_mode=mode, sparse_embedding=AsyncMock())

        config.ensure_valid()

    def test_hybrid_rejects_unmatched_embedder(self) -> None:
        mode = Hybrid(
            reranker=RRFReranker(),
            sub_requests=(SubRequest(vector_type=VectorType.SPARSE),),
        )
        config = RetrieverConfig(client=AsyncMock(), search_mode=mode, embedding=AsyncMock())

        with pytest.raises(ConfigurationInvalid, match="hybrid search mode requires"):
            config.ensure_valid()

    def test_from_settings(self) -> None:
        settings = MilvusBackendSettings(
            retriever={
                "collection": "papers",
                "partitions": ["2024"],
                "top_k": 12,
                "search_mode": {"kind": "range", "radius": 0.4, "metric_type": "COSINE"},
            }
        )
        embedding = AsyncMock()

        config = RetrieverConfig.from_settings(settings, client=AsyncMock(), embedding=embedding)

        assert config.collection == "papers"
        assert config.partitions == ("2024",)
        assert config.top_k == 12
        assert config.search_mode == Range(radius=0.4, metric_type=MetricType.COSINE)
        assert config.embedding is embedding
        config.ensure_valid()


class TestIndexerConfig:
    """Tests for runtime indexer config."""

    def test_defaults_applied(self) -> None:
        config = IndexerConfig(client=AsyncMock(), collection="", description="")

        assert config.collection == "milvus_backend_collection"
        assert config.description == "the collection for milvus_backend"
        assert config.vector_field == "vector"
        assert config.metric_type == MetricType.L2

    def test_sparse_only_keeps_dense_field_empty(self) -> None:
        config = IndexerConfig(client=AsyncMock(), sparse_vector_field="sparse")

        assert config.vector_field == ""
        config.ensure_valid()

    def test_dense_dimension_keeps_default_dense_field(self) -> None:
        config = IndexerConfig(client=AsyncMock(), dimension=8, sparse_vector_field="sparse")

        assert config.vector_field == "vector"

    def test_requires_client(self) -> None:
        with pytest.raises(ConfigurationInvalid, match="client or client config"):
            IndexerConfig().ensure_valid()

    def test_rejects_unknown_index_spec(self) -> None:
        config = IndexerConfig(client=AsyncMock(), index={"kind": "hnsw"})

        with pytest.raises(ConfigurationInvalid, match="unsupported index spec dict"):
            config.ensure_valid()

    def test_negative_dimension_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IndexerConfig(client=AsyncMock(), dimension=-1)


class TestSearchModeConfig:
    """Tests for declarative search modes."""

    def test_default_is_approximate_l2(self) -> None:
        assert SearchModeConfig().build() == Approximate(metric_type=MetricType.L2)

    def test_scalar(self) -> None:
        assert SearchModeConfig(kind="scalar").build() == Scalar()

    def test_range_requires_radius(self) -> None:
        with pytest.raises(ConfigurationInvalid, match="requires a radius"):
            SearchModeConfig(kind="range").build()

    def test_iterator(self) -> None:
        mode = SearchModeConfig(kind="iterator", batch_size=25, search_params={"ef": 32}).build()

        assert mode == Iterator(batch_size=25, search_params={"ef": 32})

    def test_hybrid_weighted(self) -> None:
        mode = SearchModeConfig(
            kind="hybrid",
            reranker="weighted",
            weights=[0.7, 0.3],
            top_k=4,
            sub_requests=[
                {"vector_field": "dense"},
                {"vector_field": "sparse", "vector_type": "sparse", "metric_type": "IP"},
            ],
        ).build()

        assert isinstance(mode, Hybrid)
        assert mode.reranker == WeightedReranker(weights=(0.7, 0.3))
        assert mode.top_k == 4
        assert mode.sub_requests[1].vector_type == VectorType.SPARSE
        assert mode.sub_requests[1].metric_type == MetricType.IP

    def test_hybrid_without_sub_requests_fails(self) -> None:
        with pytest.raises(ConfigurationInvalid):
            SearchModeConfig(kind="hybrid").build()

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SearchModeConfig(kind="fuzzy")


class TestIndexSettings:
    def test_build(self) -> None:
        assert IndexSettings().build() == AutoIndex()
        assert IndexSettings(kind="hnsw", m=32).build() == HNSWIndex(m=32, ef_construction=200)
        assert IndexSettings(kind="ivf_flat", nlist=64).build() == IVFFlatIndex(nlist=64)


class TestConfigCreation:
    """Tests for default config creation."""

    def test_create_default_config(self) -> None:
        config_dict = create_default_config()

        assert config_dict["retriever"]["top_k"] == 5
        assert config_dict["retriever"]["search_mode"]["kind"] == "approximate"
        assert config_dict["embedding"]["model"] == "openai/text-embedding-3-small"
        assert config_dict["indexer"]["index"]["kind"] == "auto"

    def test_default_config_has_all_sections(self) -> None:
        config_dict = create_default_config()

        assert all(s in config_dict for s in ["connection", "embedding", "retriever", "indexer"])

    def test_default_config_loads(self, tmp_path) -> None:
        """The bootstrapping dict should be loadable as a config file."""
        (tmp_path / "bootstrap.yaml").write_text(yaml.safe_dump(create_default_config()))

        settings = load_config("bootstrap", config_path=tmp_path)

        assert settings.retriever.search_mode.build() == Approximate()
        assert settings.indexer.dimension == 1536


class TestConfigLoading:
    """Tests for loading config from Hydra YAML."""

    def test_load_default_config(self) -> None:
        config = load_config("default")

        assert isinstance(config, MilvusBackendSettings)
        assert config.retriever.collection == "milvus_backend_collection"
        assert config.retriever.consistency_level == ConsistencyLevel.BOUNDED
        assert config.embedding is not None
        assert config.embedding.dimensions == 1536

    def test_load_config_with_overrides(self) -> None:
        config = load_config(
            "default",
            overrides=["retriever.top_k=10", "retriever.search_mode.kind=scalar"],
        )

        assert config.retriever.top_k == 10
        assert config.retriever.search_mode.build() == Scalar()

    def test_load_hybrid_config(self) -> None:
        config = load_config("hybrid")

        mode = config.retriever.search_mode.build()
        assert isinstance(mode, Hybrid)
        assert mode.needs_dense and mode.needs_sparse
        assert config.indexer.sparse_vector_field == "sparse_vector"

    def test_load_config_env_var_interpolation(self) -> None:
        os.environ["TEST_MILVUS_URI"] = "http://milvus.test:19530"

        try:
            config = load_config(
                "default",
                overrides=["connection.uri=${oc.env:TEST_MILVUS_URI}"],
            )

            assert config.connection.uri == "http://milvus.test:19530"
        finally:
            del os.environ["TEST_MILVUS_URI"]

    def test_load_config_missing_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_config("nonexistent", config_path="/nonexistent/path")

    def test_load_config_validates_structure(self, tmp_path) -> None:
        (tmp_path / "broken.yaml").write_text("retriever:\n  search_mode:\n    kind: fuzzy\n")

        with pytest.raises(ValidationError):
            load_config("broken", config_path=tmp_path)
