"""Shared fakes for the retrieval tests.

The fakes stand in for the embedding provider and the vector store so that
tests run without network access. The chunk store used in tests is the real
in-memory :class:`~lodestar_rag.retrieval.chunk_store.DocstoreChunkStore`.
"""

import threading

import pytest

from lodestar_rag.common.errors import EmbeddingFailed, VectorStoreFailed
from lodestar_rag.common.schemas import VectorSearchResult
from lodestar_rag.retrieval.chunk_store import DocstoreChunkStore


class FakeEmbedder:
    """Deterministic embedder returning a small vector derived from the text.

    ``fail_on`` makes any text containing that substring raise
    :class:`EmbeddingFailed`.
    """

    def __init__(self, dimension: int = 4, fail_on: str | None = None):
        self.dimension = dimension
        self.fail_on = fail_on
        self.calls = []
        self._lock = threading.Lock()

    def _vector(self, text: str):
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingFailed(f"provider rejected {text[:10]!r}", model="fake")
        base = float(len(text) % 7 + 1)
        return [base + i for i in range(self.dimension)]

    def embed(self, text, mode="query"):
        with self._lock:
            self.calls.append((text, mode))
        return self._vector(text)

    def embed_documents(self, texts):
        with self._lock:
            self.calls.extend((t, "document") for t in texts)
        return [self._vector(t) for t in texts]


class FakeVectorStore:
    """In-memory vector store with scripted search similarities.

    ``similarities`` maps chunk ids to the similarity that :meth:`search`
    reports for them. Inserted points are recorded in ``points``.
    """

    def __init__(self, similarities=None):
        self.similarities = dict(similarities or {})
        self.documents = {}
        self.points = {}
        self.insert_order = []
        self.deleted = []
        self.fail_insert_on = set()
        self.fail_delete_on = set()
        self.search_calls = []

    def ensure_collection(self, *args, **kwargs):
        return None

    def insert(self, chunk_id, vector, *, document_id=None, ordinal_index=None):
        if chunk_id in self.fail_insert_on:
            raise VectorStoreFailed(f"insert of {chunk_id} failed", operation="insert")
        self.points[chunk_id] = list(vector)
        self.documents[chunk_id] = document_id
        self.insert_order.append(ordinal_index)

    def search(self, query_vector, top_k, min_similarity=0.5, metric=None, *, document_ids=None):
        self.search_calls.append(
            {"top_k": top_k, "min_similarity": min_similarity, "document_ids": document_ids}
        )
        matches = sorted(self.similarities.items(), key=lambda kv: kv[1], reverse=True)
        results = []
        for chunk_id, similarity in matches:
            if document_ids is not None and self.documents.get(chunk_id) not in document_ids:
                continue
            if similarity < min_similarity:
                continue
            results.append(
                VectorSearchResult(chunk_id=chunk_id, distance=1.0 - similarity, similarity=similarity)
            )
        return results[:top_k]

    def delete(self, chunk_id):
        if chunk_id in self.fail_delete_on:
            raise VectorStoreFailed(f"delete of {chunk_id} failed", operation="delete")
        self.deleted.append(chunk_id)
        self.points.pop(chunk_id, None)


class FailingSearchVectorStore(FakeVectorStore):
    def search(self, *args, **kwargs):
        raise VectorStoreFailed("search unavailable", operation="search")


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_vector_store():
    return FakeVectorStore()


@pytest.fixture
def chunk_store():
    return DocstoreChunkStore()


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def failing_vector_store():
    return FailingSearchVectorStore()
