"""Milvus-backed face vector store."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import numpy as np
from pymilvus import DataType, MilvusClient, MilvusException

from facematch.errors import InvalidInputError, TransportFailureError
from facematch.store.match_protocol import FaceRecord, MatchResult, MetricType, score_to_similarity

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facematch.config import Settings

logger = logging.getLogger(__name__)

FIELD_FACE_ID = "face_id"
FIELD_PERSON_ID = "person_id"
FIELD_NAME = "name"
FIELD_FEATURE = "feature"
FIELD_REMARK = "remark"
FIELD_REGISTER_TIME = "register_time"

RECORD_FIELDS = [FIELD_FACE_ID, FIELD_PERSON_ID, FIELD_NAME, FIELD_REMARK, FIELD_REGISTER_TIME]


def _eq_filter(field: str, value: str) -> str:
    # json.dumps yields a double-quoted, escaped string literal.
    return f"{field} == {json.dumps(value)}"


def _record_from_entity(entity: dict[str, Any]) -> FaceRecord:
    return FaceRecord(
        face_id=str(entity.get(FIELD_FACE_ID) or ""),
        person_id=str(entity.get(FIELD_PERSON_ID) or ""),
        name=str(entity.get(FIELD_NAME) or ""),
        remark=str(entity.get(FIELD_REMARK) or ""),
        register_time=int(entity.get(FIELD_REGISTER_TIME) or 0),
    )


class MilvusVectorStore:
    """Stores face embeddings in one Milvus collection keyed by ``face_id``.

    Every remote call carries the configured timeout. Failures surface as
    ``TransportFailureError``; nothing is retried.
    """

    def __init__(self, settings: Settings, client: MilvusClient | None = None) -> None:
        self._collection = settings.milvus_collection
        self._dimension = settings.embedding_dim
        self._metric = MetricType(settings.milvus_metric)
        self._index_type = settings.milvus_index_type
        self._nlist = settings.milvus_nlist
        self._nprobe = settings.milvus_nprobe
        self._timeout = settings.milvus_timeout

        if client is None:
            uri = f"http://{settings.milvus_host}:{settings.milvus_port}"
            try:
                client = MilvusClient(
                    uri=uri,
                    user=settings.milvus_user,
                    password=settings.milvus_password,
                    timeout=self._timeout,
                )
            except MilvusException as exc:
                raise TransportFailureError(f"Could not connect to Milvus at {uri}: {exc}") from exc
            logger.info("Connected to Milvus at %s", uri)
        self._client = client

    @property
    def metric(self) -> MetricType:
        return self._metric

    # -- Collection lifecycle -------------------------------------------------

    def ensure_collection(self) -> None:
        """Create and load the collection if it does not exist yet."""
        try:
            if self._client.has_collection(self._collection, timeout=self._timeout):
                self._client.load_collection(self._collection, timeout=self._timeout)
                logger.info("Milvus collection %s already exists, loaded", self._collection)
                return
            self._create_collection()
        except MilvusException as exc:
            raise TransportFailureError(f"Could not prepare collection {self._collection}: {exc}") from exc

    def _create_collection(self) -> None:
        schema = self._client.create_schema(auto_id=False, enable_dynamic_field=False)
        schema.add_field(field_name=FIELD_FACE_ID, datatype=DataType.VARCHAR, max_length=64, is_primary=True)
        schema.add_field(field_name=FIELD_PERSON_ID, datatype=DataType.VARCHAR, max_length=64)
        schema.add_field(field_name=FIELD_NAME, datatype=DataType.VARCHAR, max_length=128)
        schema.add_field(field_name=FIELD_FEATURE, datatype=DataType.FLOAT_VECTOR, dim=self._dimension)
        schema.add_field(field_name=FIELD_REMARK, datatype=DataType.VARCHAR, max_length=256)
        schema.add_field(field_name=FIELD_REGISTER_TIME, datatype=DataType.INT64)

        index_params = self._client.prepare_index_params()
        index_params.add_index(
            field_name=FIELD_FEATURE,
            index_type=self._index_type,
            metric_type=self._metric.value,
            params={"nlist": self._nlist},
        )

        self._client.create_collection(
            collection_name=self._collection,
            schema=schema,
            index_params=index_params,
            timeout=self._timeout,
        )
        self._client.load_collection(self._collection, timeout=self._timeout)
        logger.info(
            "Created Milvus collection %s (dim=%d, index=%s, metric=%s)",
            self._collection,
            self._dimension,
            self._index_type,
            self._metric,
        )

    # -- VectorStore ----------------------------------------------------------

    def insert(self, record: FaceRecord) -> None:
        if record.feature is None:
            raise InvalidInputError("Cannot store a face record without a feature")
        vector = self._check_dimension(record.feature)
        row = {
            FIELD_FACE_ID: record.face_id,
            FIELD_PERSON_ID: record.person_id,
            FIELD_NAME: record.name,
            FIELD_FEATURE: vector,
            FIELD_REMARK: record.remark or "",
            FIELD_REGISTER_TIME: record.register_time,
        }
        try:
            self._client.insert(collection_name=self._collection, data=[row], timeout=self._timeout)
        except MilvusException as exc:
            raise TransportFailureError(f"Insert of face {record.face_id} failed: {exc}") from exc
        logger.info("Inserted face %s for person %s", record.face_id, record.person_id)

    def search(self, feature: NDArray[np.float32], top_k: int) -> list[MatchResult]:
        vector = self._check_dimension(feature)
        try:
            results = self._client.search(
                collection_name=self._collection,
                data=[vector],
                limit=top_k,
                anns_field=FIELD_FEATURE,
                search_params={"metric_type": self._metric.value, "params": {"nprobe": self._nprobe}},
                output_fields=RECORD_FIELDS,
                timeout=self._timeout,
            )
        except MilvusException as exc:
            raise TransportFailureError(f"Search failed: {exc}") from exc

        hits = results[0] if results else []
        matches = [
            MatchResult(
                record=_record_from_entity(hit.get("entity") or {}),
                similarity=score_to_similarity(float(hit["distance"]), self._metric),
            )
            for hit in hits
        ]
        logger.debug("Search returned %d neighbours", len(matches))
        return matches

    def delete_face(self, face_id: str) -> None:
        self._delete(_eq_filter(FIELD_FACE_ID, face_id))
        logger.info("Deleted face %s", face_id)

    def delete_person(self, person_id: str) -> None:
        self._delete(_eq_filter(FIELD_PERSON_ID, person_id))
        logger.info("Deleted all faces of person %s", person_id)

    def query_by_person(self, person_id: str) -> list[FaceRecord]:
        return self._query(_eq_filter(FIELD_PERSON_ID, person_id))

    def query_by_name(self, name: str) -> list[FaceRecord]:
        return self._query(_eq_filter(FIELD_NAME, name))

    def list_faces(self, limit: int) -> list[FaceRecord]:
        return self._query("", limit=limit)

    def reset(self) -> None:
        """Drop the collection and create it again, empty."""
        try:
            self._client.drop_collection(self._collection, timeout=self._timeout)
            self._create_collection()
        except MilvusException as exc:
            raise TransportFailureError(f"Reset of collection {self._collection} failed: {exc}") from exc
        logger.info("Face collection %s reset", self._collection)

    def close(self) -> None:
        self._client.close()
        logger.info("Milvus connection closed")

    # -- Internal -------------------------------------------------------------

    def _check_dimension(self, feature: NDArray[np.float32]) -> list[float]:
        values = np.asarray(feature, dtype=np.float32).reshape(-1)
        if values.size != self._dimension:
            raise InvalidInputError(f"Feature dimension {values.size} != collection dimension {self._dimension}")
        return values.tolist()

    def _delete(self, expr: str) -> None:
        try:
            self._client.delete(collection_name=self._collection, filter=expr, timeout=self._timeout)
        except MilvusException as exc:
            raise TransportFailureError(f"Delete ({expr}) failed: {exc}") from exc

    def _query(self, expr: str, limit: int | None = None) -> list[FaceRecord]:
        kwargs: dict[str, Any] = {}
        if limit is not None:
            kwargs["limit"] = limit
        try:
            rows = self._client.query(
                collection_name=self._collection,
                filter=expr,
                output_fields=RECORD_FIELDS,
                timeout=self._timeout,
                **kwargs,
            )
        except MilvusException as exc:
            raise TransportFailureError(f"Query ({expr or 'all'}) failed: {exc}") from exc
        return [_record_from_entity(row) for row in rows]
