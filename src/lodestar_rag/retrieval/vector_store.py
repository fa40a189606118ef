"""lodestar_rag.retrieval.vector_store

Vector store interfaces and factories for the retrieval layer.

This module defines a narrow point-level interface to an approximate nearest
neighbour service and a concrete implementation backed by Qdrant. The main
responsibilities are:
- provisioning the collection (vector size, metric, index parameters)
- inserting and deleting single ``(chunk_id, vector)`` points
- running top-K searches and deriving a metric-aware similarity score

Classes
-------
BaseVectorStore
    Abstract interface for vector store adapters.
QdrantVectorStore
    Qdrant-backed vector store adapter.

Functions
---------
similarity_from_score
    Convert a raw Qdrant score into ``(distance, similarity)`` for a metric.
create_vector_store
    Create a vector store implementation from a configuration mapping.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import yaml
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HnswConfigDiff,
    MatchAny,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from lodestar_rag.common.errors import VectorStoreFailed
from lodestar_rag.common.schemas import VectorSearchResult

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = "lodestar_chunks"
DEFAULT_DIMENSION = 1024
DEFAULT_METRIC = "cosine"
DEFAULT_MIN_SIMILARITY = 0.5

_METRICS = {
    "cosine": Distance.COSINE,
    "l2": Distance.EUCLID,
    "euclid": Distance.EUCLID,
    "dot": Distance.DOT,
}


def _normalize_metric(metric: Optional[str]) -> str:
    m = (metric or DEFAULT_METRIC).lower()
    if m == "euclid":
        m = "l2"
    if m not in _METRICS:
        raise ValueError(f"Unknown metric: {metric!r}. Use 'cosine', 'l2' or 'dot'.")
    return m


def similarity_from_score(score: float, metric: str) -> Tuple[float, float]:
    """Convert a raw Qdrant score into a ``(distance, similarity)`` pair.

    Parameters
    ----------
    score : float
        Score reported by Qdrant for a point. For cosine and dot product this is
        a similarity (larger is closer); for Euclidean it is a distance.
    metric : {"cosine", "l2", "dot"}
        Collection metric.

    Returns
    -------
    tuple[float, float]
        ``distance`` (smaller is closer) and ``similarity`` (larger is closer).
        For cosine, ``similarity == 1 - distance``. For L2, similarity is
        ``1 / (1 + distance)``. For dot product, the raw score is used as the
        similarity and its negation as the distance.
    """
    m = _normalize_metric(metric)
    if m == "cosine":
        distance = 1.0 - score
        return distance, 1.0 - distance
    if m == "l2":
        return score, 1.0 / (1.0 + score)
    return -score, score


class BaseVectorStore(ABC):
    """Abstract interface for vector store adapters.

    Concrete implementations wrap an external ANN service. Only point-level
    operations are exposed; chunk text and metadata live in the chunk store.
    """

    @classmethod
    @abstractmethod
    def from_config_dict(
            cls,
            config: dict
        ) -> "BaseVectorStore":
        """Create a vector store instance from a configuration mapping."""
        pass

    @classmethod
    def from_config(
            cls,
            config_path: str
        ) -> "BaseVectorStore":
        """Load YAML configuration and create a vector store.

        Parameters
        ----------
        config_path : str
            Path to a YAML file whose top level is the vector store section.

        Returns
        -------
        BaseVectorStore
            Initialised vector store instance.
        """
        with open(config_path, "r") as f:
            cfg = yaml.safe_load(f) or {}
        return cls.from_config_dict(cfg)

    @abstractmethod
    def ensure_collection(
            self,
            name: Optional[str] = None,
            dimension: Optional[int] = None,
            metric: Optional[str] = None,
            index_params: Optional[dict] = None,
        ) -> None:
        """Create the collection if missing and make sure its indexes exist."""

    @abstractmethod
    def insert(
            self,
            chunk_id: int,
            vector: Sequence[float],
            *,
            document_id: Optional[int] = None,
            ordinal_index: Optional[int] = None,
        ) -> None:
        """Insert a single point without waiting for index build completion."""

    @abstractmethod
    def search(
            self,
            query_vector: Sequence[float],
            top_k: int,
            min_similarity: float = DEFAULT_MIN_SIMILARITY,
            metric: Optional[str] = None,
            *,
            document_ids: Optional[Iterable[int]] = None,
        ) -> List[VectorSearchResult]:
        """Return at most ``top_k`` matches with similarity ``>= min_similarity``."""

    @abstractmethod
    def delete(self, chunk_id: int) -> None:
        """Delete a single point. Deleting a missing id is not an error."""


class QdrantVectorStore(BaseVectorStore):
    """Qdrant-backed vector store adapter.

    Each point uses the chunk id as its Qdrant point id and carries a small
    payload (``document_id``, ``ordinal_index``) so that searches can be scoped
    to a set of documents.

    Parameters
    ----------
    client : QdrantClient, optional
        Pre-built client. When omitted a client is created from ``location``,
        ``url`` or ``host``/``port`` (in that order of precedence).
    host : str, optional
        Qdrant host address. Defaults to ``"localhost"``.
    port : int, optional
        Qdrant port number. Defaults to ``6333``.
    url : str, optional
        Full Qdrant URL (e.g. ``"https://qdrant.example:6333"``).
    location : str, optional
        Qdrant location string, e.g. ``":memory:"`` for an in-process store.
    api_key : str, optional
        API key for Qdrant Cloud or secured deployments.
    timeout : int, optional
        Request timeout in seconds.
    collection_name : str, optional
        Collection name. Defaults to ``"lodestar_chunks"``.
    dimension : int, optional
        Vector dimension. Defaults to ``1024``.
    metric : {"cosine", "l2", "dot"}, optional
        Distance metric. Defaults to ``"cosine"``.
    index_type : {"hnsw", "flat"}, optional
        ``"flat"`` disables the HNSW graph so that searches are exhaustive.
        Defaults to ``"hnsw"``.
    index_params : dict, optional
        HNSW parameters (``m``, ``ef_construct``).
    """

    @classmethod
    def from_config_dict(
            cls,
            config: dict,
        ) -> "QdrantVectorStore":
        """Create a QdrantVectorStore instance from a configuration mapping.

        Parameters
        ----------
        config : dict
            Configuration mapping. Recognised keys: ``host``, ``port``, ``url``,
            ``location``, ``api_key``, ``timeout``, ``collection_name``,
            ``dimension``, ``metric``, ``index_type``, ``index_params``.

        Returns
        -------
        QdrantVectorStore
            Initialised QdrantVectorStore instance.
        """
        return cls(
            host=config.get("host", "localhost"),
            port=int(config.get("port", 6333)),
            url=config.get("url"),
            location=config.get("location"),
            api_key=config.get("api_key"),
            timeout=config.get("timeout"),
            collection_name=config.get("collection_name", DEFAULT_COLLECTION_NAME),
            dimension=int(config.get("dimension", DEFAULT_DIMENSION)),
            metric=config.get("metric", DEFAULT_METRIC),
            index_type=config.get("index_type", "hnsw"),
            index_params=config.get("index_params"),
        )

    def __init__(
        self,
        *,
        client: Optional[QdrantClient] = None,
        host: str = "localhost",
        port: int = 6333,
        url: Optional[str] = None,
        location: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        dimension: int = DEFAULT_DIMENSION,
        metric: str = DEFAULT_METRIC,
        index_type: str = "hnsw",
        index_params: Optional[dict] = None,
    ):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")

        self.collection_name = collection_name
        self.dimension = dimension
        self.metric = _normalize_metric(metric)
        self.index_type = (index_type or "hnsw").lower()
        if self.index_type not in {"hnsw", "flat"}:
            raise ValueError(f"Unknown index_type: {index_type!r}. Use 'hnsw' or 'flat'.")
        self.index_params = dict(index_params or {})

        if client is not None:
            self.client = client
        elif location:
            self.client = QdrantClient(location=location)
        elif url:
            self.client = QdrantClient(url=url, api_key=api_key, timeout=timeout)
        else:
            self.client = QdrantClient(host=host, port=port, api_key=api_key, timeout=timeout)

    def _hnsw_config(self, index_type: str, index_params: dict) -> HnswConfigDiff:
        if index_type == "flat":
            return HnswConfigDiff(m=0)
        kwargs = {k: int(v) for k, v in index_params.items() if k in {"m", "ef_construct"}}
        return HnswConfigDiff(**kwargs)

    def ensure_collection(
            self,
            name: Optional[str] = None,
            dimension: Optional[int] = None,
            metric: Optional[str] = None,
            index_params: Optional[dict] = None,
        ) -> None:
        """Create the collection if it does not exist and ensure its payload index.

        Calling this repeatedly is safe. An existing collection whose vector
        size or distance differs from the configuration is kept and logged as
        a warning, as is a rejected payload index request (already exists,
        schema mismatch); a previous run may already have provisioned it.

        Raises
        ------
        VectorStoreFailed
            If the collection or payload index calls fail to reach the server.
        """
        name = name or self.collection_name
        dimension = dimension or self.dimension
        metric = _normalize_metric(metric or self.metric)
        params = dict(self.index_params)
        params.update(index_params or {})

        try:
            if not self.client.collection_exists(collection_name=name):
                self.client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=dimension, distance=_METRICS[metric]),
                    hnsw_config=self._hnsw_config(self.index_type, params),
                )
                logger.info(
                    "Created collection %s (dimension=%d, metric=%s, index=%s)",
                    name,
                    dimension,
                    metric,
                    self.index_type,
                )
            else:
                logger.debug("Collection %s already exists", name)
                self._warn_on_schema_mismatch(name, dimension, metric)
        except Exception as exc:
            raise VectorStoreFailed(
                f"Failed to ensure collection {name}: {exc}",
                operation="ensure_collection",
                details={"collection": name},
            ) from exc

        try:
            self.client.create_payload_index(
                collection_name=name,
                field_name="document_id",
                field_schema=PayloadSchemaType.INTEGER,
            )
        except UnexpectedResponse as exc:
            logger.warning("Payload index on %s.document_id not created: %s", name, exc)
        except Exception as exc:
            raise VectorStoreFailed(
                f"Failed to create payload index on {name}: {exc}",
                operation="ensure_collection",
                details={"collection": name, "field": "document_id"},
            ) from exc

    def _warn_on_schema_mismatch(self, name: str, dimension: int, metric: str) -> None:
        vectors = self.client.get_collection(collection_name=name).config.params.vectors
        if not isinstance(vectors, VectorParams):
            logger.warning("Collection %s does not use a single unnamed vector; schema not checked", name)
            return
        if vectors.size != dimension or vectors.distance != _METRICS[metric]:
            logger.warning(
                "Collection %s has dimension=%s distance=%s, configured dimension=%d metric=%s",
                name,
                vectors.size,
                vectors.distance,
                dimension,
                metric,
            )

    def insert(
            self,
            chunk_id: int,
            vector: Sequence[float],
            *,
            document_id: Optional[int] = None,
            ordinal_index: Optional[int] = None,
        ) -> None:
        """Upsert a single point keyed by ``chunk_id``.

        Raises
        ------
        VectorStoreFailed
            If the vector has the wrong dimension or the upsert fails.
        """
        if len(vector) != self.dimension:
            raise VectorStoreFailed(
                f"Vector for chunk {chunk_id} has dimension {len(vector)}, expected {self.dimension}",
                operation="insert",
                details={"chunk_id": chunk_id},
            )

        payload: dict[str, Any] = {}
        if document_id is not None:
            payload["document_id"] = document_id
        if ordinal_index is not None:
            payload["ordinal_index"] = ordinal_index

        try:
            self.client.upsert(
                collection_name=self.collection_name,
                points=[PointStruct(id=chunk_id, vector=list(vector), payload=payload)],
                wait=False,
            )
        except Exception as exc:
            raise VectorStoreFailed(
                f"Failed to insert vector for chunk {chunk_id}: {exc}",
                operation="insert",
                details={"chunk_id": chunk_id},
            ) from exc

    def search(
            self,
            query_vector: Sequence[float],
            top_k: int,
            min_similarity: float = DEFAULT_MIN_SIMILARITY,
            metric: Optional[str] = None,
            *,
            document_ids: Optional[Iterable[int]] = None,
        ) -> List[VectorSearchResult]:
        """Run a top-K similarity search.

        Parameters
        ----------
        query_vector : Sequence[float]
            Query embedding.
        top_k : int
            Maximum number of raw matches to request.
        min_similarity : float, optional
            Matches whose derived similarity is below this are dropped after the
            search. Defaults to ``0.5``.
        metric : str, optional
            Metric used for similarity derivation. Defaults to the collection
            metric.
        document_ids : Iterable[int], optional
            Restrict matches to these documents.

        Returns
        -------
        list[VectorSearchResult]
            Matches in the order returned by Qdrant (best first).

        Raises
        ------
        ValueError
            If ``top_k < 1``.
        VectorStoreFailed
            If the query fails.
        """
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")

        query_filter = None
        if document_ids is not None:
            query_filter = Filter(
                must=[FieldCondition(key="document_id", match=MatchAny(any=list(document_ids)))]
            )

        try:
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                limit=top_k,
                query_filter=query_filter,
                with_payload=False,
            )
        except Exception as exc:
            raise VectorStoreFailed(
                f"Vector search failed: {exc}",
                operation="search",
                details={"collection": self.collection_name, "top_k": top_k},
            ) from exc

        metric = metric or self.metric
        results: List[VectorSearchResult] = []
        for point in response.points:
            distance, similarity = similarity_from_score(point.score, metric)
            if similarity < min_similarity:
                continue
            results.append(
                VectorSearchResult(chunk_id=int(point.id), distance=distance, similarity=similarity)
            )

        logger.debug(
            "Vector search returned %d/%d matches above %.2f",
            len(results),
            len(response.points),
            min_similarity,
        )
        return results

    def delete(self, chunk_id: int) -> None:
        """Delete the point ``chunk_id``.

        Raises
        ------
        VectorStoreFailed
            If the delete request fails.
        """
        try:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=[chunk_id]),
            )
        except Exception as exc:
            raise VectorStoreFailed(
                f"Failed to delete vector for chunk {chunk_id}: {exc}",
                operation="delete",
                details={"chunk_id": chunk_id},
            ) from exc


def _get_vector_store_kind(cfg):
    """Extract the vector store kind/type/provider discriminator from a config mapping."""
    for key in ("kind", "type", "provider", "backend", "impl"):
        val = cfg.get(key)
        if val is not None:
            return val
    return None


def _normalize_vector_store_kind(kind):
    """Normalise a vector store kind string to a stable registry key (default ``"qdrant"``)."""
    if not kind:
        return "qdrant"
    k = str(kind).lower()
    if k in {"qdrant", "qdrantvectorstore", "qdrant_vector_store"}:
        return "qdrant"
    return k


def create_vector_store(config: dict) -> BaseVectorStore:
    """Create a vector store implementation from a configuration mapping.

    Parameters
    ----------
    config : dict
        Configuration mapping used to construct the vector store.

    Returns
    -------
    BaseVectorStore
        Initialised vector store implementation.

    Raises
    ------
    ValueError
        If the requested backend kind is not supported.

    Notes
    -----
    The backend kind is selected using one of the discriminator keys:
    ``kind``, ``type``, ``provider``, ``backend``, or ``impl``. If none are
    provided, the default is Qdrant.
    """
    kind = _normalize_vector_store_kind(_get_vector_store_kind(config))
    if kind == "qdrant":
        return QdrantVectorStore.from_config_dict(config)
    raise ValueError(f"Unknown vector store kind: {kind!r}")


__all__ = [
    "BaseVectorStore",
    "QdrantVectorStore",
    "create_vector_store",
    "similarity_from_score",
]
