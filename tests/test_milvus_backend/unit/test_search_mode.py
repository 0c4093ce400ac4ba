"""Unit tests for search mode variants and request builders."""

from unittest.mock import AsyncMock

import numpy as np
import pytest

from milvus_backend.config import RetrieverConfig
from milvus_backend.errors import ConfigurationInvalid, RequestBuildError
from milvus_backend.models import CallOptions, Grouping
from milvus_backend.search_mode import (
    Approximate,
    Hybrid,
    Iterator,
    Range,
    RRFReranker,
    Scalar,
    SubRequest,
    WeightedReranker,
    build_filter_expression,
    build_hybrid_search_request,
    build_query_request,
    build_search_iterator_request,
    build_search_request,
    resolve_top_k,
)
from milvus_backend.types import ConsistencyLevel, MetricType, VectorType


@pytest.fixture
def config() -> RetrieverConfig:
    """Retriever config with a mocked client and embedder."""
    return RetrieverConfig(
        client=AsyncMock(),
        collection="docs",
        partitions=("p1",),
        top_k=5,
        consistency_level=ConsistencyLevel.STRONG,
        search_mode=Approximate(),
        embedding=AsyncMock(),
    )


@pytest.fixture
def query_vector() -> np.ndarray:
    return np.array([0.1, 0.2, 0.3], dtype=np.float32)


@pytest.fixture
def dense_and_sparse() -> Hybrid:
    return Hybrid(
        reranker=RRFReranker(),
        sub_requests=(
            SubRequest(vector_field="dense", metric_type=MetricType.L2, top_k=20),
            SubRequest(
                vector_field="sparse", metric_type=MetricType.IP, vector_type=VectorType.SPARSE
            ),
        ),
    )


class TestRerankers:
    """Tests for reranker validation."""

    def test_rrf_default_k(self):
        assert RRFReranker().k == 60

    def test_rrf_non_positive_k_raises(self):
        with pytest.raises(ConfigurationInvalid, match="RRF k must be positive"):
            RRFReranker(k=0)

    def test_weighted_requires_weights(self):
        with pytest.raises(ConfigurationInvalid, match="at least one weight"):
            WeightedReranker(weights=())

    def test_weighted_rejects_out_of_range(self):
        with pytest.raises(ConfigurationInvalid, match="within \\[0, 1\\]"):
            WeightedReranker(weights=(0.5, 1.5))

    def test_weighted_coerces_to_float_tuple(self):
        reranker = WeightedReranker(weights=[1, 0])  # type: ignore[arg-type]
        assert reranker.weights == (1.0, 0.0)


class TestModeVariants:
    """Tests for search mode construction."""

    def test_metric_coerced_from_string(self):
        assert Approximate(metric_type="COSINE").metric_type == MetricType.COSINE  # type: ignore[arg-type]

    def test_empty_metric_defaults_to_l2(self):
        assert Approximate(metric_type=None).metric_type == MetricType.L2  # type: ignore[arg-type]

    def test_unknown_metric_raises(self):
        with pytest.raises(ConfigurationInvalid, match="unknown metric type"):
            Approximate(metric_type="MANHATTAN")  # type: ignore[arg-type]

    def test_range_distance_ring(self):
        mode = Range(radius=1.0, range_filter=0.2, metric_type=MetricType.L2)
        assert mode.search_params() == {"radius": 1.0, "range_filter": 0.2}

    def test_range_distance_ring_inverted_raises(self):
        with pytest.raises(ConfigurationInvalid, match="must be less than radius"):
            Range(radius=1.0, range_filter=1.5, metric_type=MetricType.L2)

    def test_range_similarity_ring_inverted_raises(self):
        with pytest.raises(ConfigurationInvalid, match="must be greater than radius"):
            Range(radius=0.8, range_filter=0.5, metric_type=MetricType.COSINE)

    def test_range_without_inner_boundary(self):
        assert Range(radius=0.8, metric_type=MetricType.IP).search_params() == {"radius": 0.8}

    def test_range_non_finite_radius_raises(self):
        with pytest.raises(ConfigurationInvalid, match="radius must be finite"):
            Range(radius=float("inf"))

    def test_hybrid_requires_sub_requests(self):
        with pytest.raises(ConfigurationInvalid, match="at least one sub-request"):
            Hybrid(reranker=RRFReranker(), sub_requests=())

    def test_hybrid_weight_count_must_match(self):
        with pytest.raises(ConfigurationInvalid, match="1 weights for 2 sub-requests"):
            Hybrid(
                reranker=WeightedReranker(weights=(0.5,)),
                sub_requests=(SubRequest(), SubRequest(vector_type=VectorType.SPARSE)),
            )

    def test_hybrid_vector_needs(self, dense_and_sparse):
        assert dense_and_sparse.needs_dense
        assert dense_and_sparse.needs_sparse

        dense_only = Hybrid(reranker=RRFReranker(), sub_requests=[SubRequest()])
        assert dense_only.needs_dense
        assert not dense_only.needs_sparse
        assert isinstance(dense_only.sub_requests, tuple)

    def test_iterator_non_positive_batch_size_defaults(self):
        assert Iterator(batch_size=0).batch_size == 100
        assert Iterator(batch_size=25).batch_size == 25


class TestResolveTopK:
    """Top-K precedence: call option > mode override > config default."""

    def test_call_option_wins(self, config):
        assert resolve_top_k(config, CallOptions(top_k=3), mode_top_k=7) == 3

    def test_mode_override_beats_config(self, config):
        assert resolve_top_k(config, CallOptions(), mode_top_k=7) == 7

    def test_config_default(self, config):
        assert resolve_top_k(config, CallOptions()) == 5


class TestBuildFilterExpression:
    """Tests for combining query and call-option filters."""

    def test_only_call_filter(self):
        assert build_filter_expression("", 'lang == "en"') == 'lang == "en"'

    def test_only_query(self):
        assert build_filter_expression("year > 2020", "") == "year > 2020"

    def test_both_are_parenthesized(self):
        result = build_filter_expression("year > 2020", 'lang == "en"')
        assert result == '(year > 2020) and (lang == "en")'

    def test_both_empty(self):
        assert build_filter_expression("", "") == ""


class TestBuildSearchRequest:
    """Tests for the one-shot search builder."""

    def test_approximate_defaults(self, config, query_vector):
        request = build_search_request(Approximate(), config, query_vector)

        assert request.collection == "docs"
        assert request.anns_field == "vector"
        assert request.limit == 5
        assert request.partitions == ["p1"]
        assert request.output_fields == ["*"]
        assert request.consistency_level == ConsistencyLevel.STRONG
        assert request.engine_search_params() == {"metric_type": "L2", "params": {}}

    def test_call_options_flow_through(self, config, query_vector):
        grouping = Grouping(group_by_field="doc_id", group_size=2, strict_group_size=True)
        options = CallOptions(
            top_k=20, filter='lang == "en"', grouping=grouping, vector_field="title_vector"
        )

        request = build_search_request(
            Approximate(metric_type=MetricType.IP), config, query_vector, options
        )

        assert request.limit == 20
        assert request.filter == 'lang == "en"'
        assert request.grouping == grouping
        assert request.anns_field == "title_vector"
        assert request.engine_search_params()["metric_type"] == "IP"

    def test_range_adds_radius_params(self, config, query_vector):
        mode = Range(radius=0.5, range_filter=0.9, metric_type=MetricType.COSINE)

        request = build_search_request(mode, config, query_vector)

        assert request.engine_search_params() == {
            "metric_type": "COSINE",
            "params": {"radius": 0.5, "range_filter": 0.9},
        }

    def test_hybrid_requires_specialized_builder(self, config, query_vector, dense_and_sparse):
        with pytest.raises(RequestBuildError, match="build_hybrid_search_request"):
            build_search_request(dense_and_sparse, config, query_vector)

    def test_iterator_requires_specialized_builder(self, config, query_vector):
        with pytest.raises(RequestBuildError, match="build_search_iterator_request"):
            build_search_request(Iterator(), config, query_vector)

    def test_scalar_requires_query_builder(self, config, query_vector):
        with pytest.raises(RequestBuildError, match="build_query_request"):
            build_search_request(Scalar(), config, query_vector)

    def test_empty_vector_raises(self, config):
        with pytest.raises(RequestBuildError, match="query vector is empty"):
            build_search_request(Approximate(), config, np.array([], dtype=np.float32))


class TestBuildQueryRequest:
    """Tests for the scalar query builder."""

    def test_query_text_is_filter(self, config):
        request = build_query_request(Scalar(), config, "year > 2020")

        assert request.filter == "year > 2020"
        assert request.limit == 5
        assert request.partitions == ["p1"]
        assert request.consistency_level == ConsistencyLevel.STRONG

    def test_call_filter_is_anded(self, config):
        options = CallOptions(filter='lang == "en"', top_k=50)

        request = build_query_request(Scalar(), config, "year > 2020", options)

        assert request.filter == '(year > 2020) and (lang == "en")'
        assert request.limit == 50


class TestBuildHybridSearchRequest:
    """Tests for the multi-vector builder."""

    def test_builds_dense_and_sparse(self, config, query_vector, dense_and_sparse):
        request = build_hybrid_search_request(
            dense_and_sparse, config, query_vector, {3: 0.5, 1: 0.25}
        )

        assert len(request.requests) == 2
        dense, sparse = request.requests
        assert dense.anns_field == "dense"
        assert dense.limit == 20
        assert dense.engine_search_params() == {"metric_type": "L2", "params": {}}
        assert sparse.anns_field == "sparse"
        assert sparse.limit == 10
        assert list(sparse.data) == [1, 3]
        assert sparse.data == {1: 0.25, 3: 0.5}
        assert isinstance(request.reranker, RRFReranker)

    def test_sparse_sub_request_skipped_without_sparse_vector(
        self, config, query_vector, dense_and_sparse
    ):
        request = build_hybrid_search_request(dense_and_sparse, config, query_vector, None)

        assert [r.anns_field for r in request.requests] == ["dense"]

    def test_dense_sub_request_skipped_without_dense_vector(self, config, dense_and_sparse):
        request = build_hybrid_search_request(dense_and_sparse, config, None, {0: 1.0})

        assert [r.vector_type for r in request.requests] == [VectorType.SPARSE]

    def test_weights_follow_skipped_sub_requests(self, config, query_vector, dense_and_sparse):
        mode = Hybrid(
            reranker=WeightedReranker(weights=(0.7, 0.3)),
            sub_requests=dense_and_sparse.sub_requests,
        )

        dense_only = build_hybrid_search_request(mode, config, query_vector, None)
        sparse_only = build_hybrid_search_request(mode, config, None, {0: 1.0})

        assert len(dense_only.requests) == 1
        assert dense_only.reranker == WeightedReranker(weights=(0.7,))
        assert len(sparse_only.requests) == 1
        assert sparse_only.reranker == WeightedReranker(weights=(0.3,))

    def test_rrf_reranker_passed_through(self, config, query_vector, dense_and_sparse):
        request = build_hybrid_search_request(dense_and_sparse, config, query_vector, None)

        assert request.reranker is dense_and_sparse.reranker

    def test_nothing_resolved_raises(self, config, dense_and_sparse):
        with pytest.raises(RequestBuildError, match="resolved no sub-request"):
            build_hybrid_search_request(dense_and_sparse, config, None, None)

    def test_field_falls_back_to_config(self, config, query_vector):
        mode = Hybrid(reranker=RRFReranker(), sub_requests=(SubRequest(),))

        request = build_hybrid_search_request(mode, config, query_vector, None)

        assert request.requests[0].anns_field == "vector"
        assert request.requests[0].engine_search_params() == {"params": {}}

    def test_top_k_precedence(self, config, query_vector):
        mode = Hybrid(reranker=RRFReranker(), sub_requests=(SubRequest(),), top_k=8)

        assert build_hybrid_search_request(mode, config, query_vector, None).limit == 8
        overridden = build_hybrid_search_request(
            mode, config, query_vector, None, CallOptions(top_k=2)
        )
        assert overridden.limit == 2

    def test_filter_and_grouping_attached_to_sub_requests(self, config, query_vector):
        mode = Hybrid(reranker=RRFReranker(), sub_requests=(SubRequest(),))
        grouping = Grouping(group_by_field="doc_id")
        options = CallOptions(filter="year > 2020", grouping=grouping)

        request = build_hybrid_search_request(mode, config, query_vector, None, options)

        assert request.requests[0].filter == "year > 2020"
        assert request.requests[0].grouping == grouping

    def test_negative_sparse_index_raises(self, config, dense_and_sparse):
        with pytest.raises(RequestBuildError, match="failed to create sparse embedding"):
            build_hybrid_search_request(dense_and_sparse, config, None, {-1: 0.5})

    def test_non_finite_sparse_weight_raises(self, config, dense_and_sparse):
        with pytest.raises(RequestBuildError, match="non-finite weight"):
            build_hybrid_search_request(dense_and_sparse, config, None, {2: float("nan")})


class TestBuildSearchIteratorRequest:
    """Tests for the batched cursor builder."""

    def test_unlimited_by_default(self, config, query_vector):
        request = build_search_iterator_request(Iterator(batch_size=50), config, query_vector)

        assert request.batch_size == 50
        assert request.limit is None
        assert request.engine_search_params() == {"metric_type": "L2", "params": {}}

    def test_call_option_top_k_limits_cursor(self, config, query_vector):
        mode = Iterator(metric_type=MetricType.IP, search_params={"ef": 64})

        request = build_search_iterator_request(
            mode, config, query_vector, CallOptions(top_k=500, filter="year > 2020")
        )

        assert request.limit == 500
        assert request.filter == "year > 2020"
        assert request.engine_search_params() == {"metric_type": "IP", "params": {"ef": 64}}

    def test_empty_vector_raises(self, config):
        with pytest.raises(RequestBuildError, match="query vector is empty"):
            build_search_iterator_request(Iterator(), config, np.array([], dtype=np.float32))
