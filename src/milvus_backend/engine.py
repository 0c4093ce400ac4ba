"""Engine client interface and its pymilvus implementation.

The retriever and indexer only talk to an `EngineClient`. `MilvusEngine`
implements it over `pymilvus.MilvusClient`, whose calls are blocking, so each
one runs in a worker thread. Cancelling the awaiting task abandons the call.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger
from pymilvus import AnnSearchRequest, DataType, MilvusClient, RRFRanker, WeightedRanker
from pymilvus.client.types import LoadState

from milvus_backend.index_params import IndexSpec
from milvus_backend.models import Grouping, ResultSet
from milvus_backend.requests import (
    AnnRequest,
    HybridSearchRequest,
    QueryRequest,
    SearchIteratorRequest,
    SearchRequest,
)
from milvus_backend.search_mode import RRFReranker, WeightedReranker
from milvus_backend.types import (
    CONTENT_FIELD,
    ID_FIELD,
    MAX_CONTENT_LENGTH,
    MAX_ID_LENGTH,
    METADATA_FIELD,
    ConsistencyLevel,
    MetricType,
)

UNLIMITED = -1


@dataclass
class CollectionSpec:
    """Schema of a collection created by the indexer.

    The fixed fields are a varchar primary key, varchar content and JSON
    metadata. The dense field is created when `vector_field` and `dimension`
    are set; the sparse field when `sparse_vector_field` is set.
    """

    name: str
    description: str = ""
    vector_field: str = ""
    dimension: int = 0
    sparse_vector_field: str = ""
    enable_dynamic_schema: bool = False
    consistency_level: ConsistencyLevel = ConsistencyLevel.BOUNDED


class EngineIterator(Protocol):
    """Cursor returned by `EngineClient.search_iterator`."""

    async def next_batch(self) -> ResultSet | None:
        """Fetch the next batch; None means the engine has no more hits."""
        ...

    async def close(self) -> None: ...


class EngineClient(Protocol):
    """Operations the retriever and indexer need from the vector engine."""

    async def has_collection(self, collection: str) -> bool: ...

    async def is_loaded(self, collection: str) -> bool: ...

    async def load_collection(self, collection: str) -> None: ...

    async def create_collection(self, spec: CollectionSpec) -> None: ...

    async def list_indexes(self, collection: str) -> list[str]: ...

    async def create_index(
        self, collection: str, field: str, index: IndexSpec, metric_type: MetricType
    ) -> None: ...

    async def insert(
        self, collection: str, rows: list[dict[str, Any]], partition: str = ""
    ) -> list[str]: ...

    async def flush(self, collection: str) -> None: ...

    async def search(self, request: SearchRequest) -> list[ResultSet]: ...

    async def hybrid_search(self, request: HybridSearchRequest) -> list[ResultSet]: ...

    async def query(self, request: QueryRequest) -> ResultSet: ...

    async def search_iterator(self, request: SearchIteratorRequest) -> EngineIterator: ...


def _grouping_kwargs(grouping: Grouping | None) -> dict[str, Any]:
    if grouping is None:
        return {}
    return {
        "group_by_field": grouping.group_by_field,
        "group_size": grouping.group_size,
        "strict_group_size": grouping.strict_group_size,
    }


def _consistency_kwargs(level: ConsistencyLevel | None) -> dict[str, Any]:
    return {"consistency_level": level.value} if level is not None else {}


def _hits_to_result_set(hits: Any) -> ResultSet:
    rows: list[dict[str, Any]] = []
    scores: list[float] = []
    for hit in hits:
        row = {ID_FIELD: hit["id"]}
        row.update(hit.get("entity") or {})
        rows.append(row)
        scores.append(float(hit["distance"]))
    return ResultSet(rows=rows, scores=scores)


def _to_ranker(reranker: RRFReranker | WeightedReranker) -> Any:
    if isinstance(reranker, WeightedReranker):
        return WeightedRanker(*reranker.weights)
    return RRFRanker(reranker.k)


def _to_ann_search_request(request: AnnRequest) -> AnnSearchRequest:
    return AnnSearchRequest(
        data=[request.data],
        anns_field=request.anns_field,
        param=request.engine_search_params(),
        limit=request.limit,
        expr=request.filter or None,
    )


class MilvusSearchIterator:
    """`EngineIterator` over a pymilvus search iterator."""

    def __init__(self, iterator: Any):
        self._iterator = iterator

    async def next_batch(self) -> ResultSet | None:
        page = await asyncio.to_thread(self._iterator.next)
        if not page:
            return None
        return _hits_to_result_set(page)

    async def close(self) -> None:
        await asyncio.to_thread(self._iterator.close)


class MilvusEngine:
    """`EngineClient` backed by `pymilvus.MilvusClient`."""

    def __init__(self, client: MilvusClient, timeout: float | None = None):
        """Wrap an existing client.

        Args:
            client: Connected pymilvus client
            timeout: Optional timeout in seconds for every call
        """
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_connection(cls, connection: Any) -> "MilvusEngine":
        """Connect using a `ConnectionConfig`."""
        logger.info(f"Connecting to Milvus at {connection.uri} (db={connection.db_name})")
        client = MilvusClient(
            uri=connection.uri,
            token=connection.token or "",
            db_name=connection.db_name,
            timeout=connection.timeout_seconds,
        )
        return cls(client, timeout=connection.timeout_seconds)

    async def has_collection(self, collection: str) -> bool:
        return await asyncio.to_thread(
            self.client.has_collection, collection_name=collection, timeout=self.timeout
        )

    async def is_loaded(self, collection: str) -> bool:
        state = await asyncio.to_thread(
            self.client.get_load_state, collection_name=collection, timeout=self.timeout
        )
        return state.get("state") == LoadState.Loaded

    async def load_collection(self, collection: str) -> None:
        await asyncio.to_thread(
            self.client.load_collection, collection_name=collection, timeout=self.timeout
        )

    async def create_collection(self, spec: CollectionSpec) -> None:
        schema = MilvusClient.create_schema(
            auto_id=False,
            enable_dynamic_field=spec.enable_dynamic_schema,
            description=spec.description,
        )
        schema.add_field(
            field_name=ID_FIELD, datatype=DataType.VARCHAR, is_primary=True, max_length=MAX_ID_LENGTH
        )
        schema.add_field(
            field_name=CONTENT_FIELD, datatype=DataType.VARCHAR, max_length=MAX_CONTENT_LENGTH
        )
        schema.add_field(field_name=METADATA_FIELD, datatype=DataType.JSON)
        if spec.vector_field and spec.dimension > 0:
            schema.add_field(
                field_name=spec.vector_field, datatype=DataType.FLOAT_VECTOR, dim=spec.dimension
            )
        if spec.sparse_vector_field:
            schema.add_field(
                field_name=spec.sparse_vector_field, datatype=DataType.SPARSE_FLOAT_VECTOR
            )

        await asyncio.to_thread(
            self.client.create_collection,
            collection_name=spec.name,
            schema=schema,
            consistency_level=spec.consistency_level.value,
            timeout=self.timeout,
        )

    async def list_indexes(self, collection: str) -> list[str]:
        return await asyncio.to_thread(
            self.client.list_indexes, collection_name=collection, timeout=self.timeout
        )

    async def create_index(
        self, collection: str, field: str, index: IndexSpec, metric_type: MetricType
    ) -> None:
        index_params = MilvusClient.prepare_index_params()
        index_params.add_index(
            field_name=field,
            index_type=index.index_type,
            metric_type=metric_type.value,
            params=index.params(),
        )
        await asyncio.to_thread(
            self.client.create_index,
            collection_name=collection,
            index_params=index_params,
            timeout=self.timeout,
        )

    async def insert(
        self, collection: str, rows: list[dict[str, Any]], partition: str = ""
    ) -> list[str]:
        result = await asyncio.to_thread(
            self.client.insert,
            collection_name=collection,
            data=rows,
            partition_name=partition,
            timeout=self.timeout,
        )
        return [str(pk) for pk in result["ids"]]

    async def flush(self, collection: str) -> None:
        await asyncio.to_thread(self.client.flush, collection_name=collection, timeout=self.timeout)

    async def search(self, request: SearchRequest) -> list[ResultSet]:
        results = await asyncio.to_thread(
            self.client.search,
            collection_name=request.collection,
            data=[request.vector],
            filter=request.filter,
            limit=request.limit,
            output_fields=request.output_fields,
            search_params=request.engine_search_params(),
            anns_field=request.anns_field,
            partition_names=request.partitions or None,
            timeout=self.timeout,
            **_grouping_kwargs(request.grouping),
            **_consistency_kwargs(request.consistency_level),
        )
        return [_hits_to_result_set(hits) for hits in results]

    async def hybrid_search(self, request: HybridSearchRequest) -> list[ResultSet]:
        kwargs = _consistency_kwargs(request.consistency_level)
        # pymilvus applies grouping to the fused result, not per sub-request
        grouping = next((r.grouping for r in request.requests if r.grouping is not None), None)
        kwargs.update(_grouping_kwargs(grouping))

        results = await asyncio.to_thread(
            self.client.hybrid_search,
            collection_name=request.collection,
            reqs=[_to_ann_search_request(r) for r in request.requests],
            ranker=_to_ranker(request.reranker),
            limit=request.limit,
            output_fields=request.output_fields,
            partition_names=request.partitions or None,
            timeout=self.timeout,
            **kwargs,
        )
        return [_hits_to_result_set(hits) for hits in results]

    async def query(self, request: QueryRequest) -> ResultSet:
        rows = await asyncio.to_thread(
            self.client.query,
            collection_name=request.collection,
            filter=request.filter,
            output_fields=request.output_fields,
            limit=request.limit,
            partition_names=request.partitions or None,
            timeout=self.timeout,
            **_consistency_kwargs(request.consistency_level),
        )
        return ResultSet(rows=[dict(row) for row in rows])

    async def search_iterator(self, request: SearchIteratorRequest) -> EngineIterator:
        iterator = await asyncio.to_thread(
            self.client.search_iterator,
            collection_name=request.collection,
            data=[request.vector],
            batch_size=request.batch_size,
            filter=request.filter,
            limit=request.limit if request.limit is not None else UNLIMITED,
            output_fields=request.output_fields,
            search_params=request.engine_search_params(),
            anns_field=request.anns_field,
            partition_names=request.partitions or None,
            timeout=self.timeout,
            **_grouping_kwargs(request.grouping),
            **_consistency_kwargs(request.consistency_level),
        )
        return MilvusSearchIterator(iterator)
