import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from lodestar_rag.common.errors import (
    DocumentIndexingError,
    EmbeddingFailed,
    TooLarge,
    UnsupportedDocument,
    VectorStoreFailed,
)
from lodestar_rag.common.ids import SnowflakeIdGenerator
from lodestar_rag.common.schemas import Document
from lodestar_rag.retrieval.indexer import ChunkIndexer
from lodestar_rag.retrieval.text_splitter import BoundaryAwareSplitter

# Four 10-character blocks without sentence terminators split into exactly four chunks.
TEXT = "aaaaaaaaaa" "bbbbbbbbbb" "ccFAILcccc" "dddddddddd"


def _counter_ids(start=1):
    return SimpleNamespace(next_id=itertools.count(start).__next__)


def _indexer(embedder, vector_store, chunk_store, **kwargs):
    kwargs.setdefault("id_generator", _counter_ids())
    return ChunkIndexer(
        splitter=BoundaryAwareSplitter(chunk_size=10, overlap=0, window=0),
        embedder=embedder,
        vector_store=vector_store,
        chunk_store=chunk_store,
        **kwargs,
    )


def _bounds(chunks):
    return [(c.ordinal_index, c.start_offset, c.end_offset) for c in chunks]


def test_process_document_stores_records_and_vectors(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)

    count = indexer.process_document(Document(document_id=7, text=TEXT))

    stored = chunk_store.list_by_document(7)
    assert count == 4
    assert _bounds(stored) == [(0, 0, 10), (1, 10, 20), (2, 20, 30), (3, 30, 40)]
    assert sorted(fake_vector_store.points) == [c.chunk_id for c in stored]
    assert set(fake_vector_store.documents.values()) == {7}
    assert fake_vector_store.insert_order == [0, 1, 2, 3]
    assert all(mode == "document" for _, mode in fake_embedder.calls)


def test_metadata_is_written_before_vector(fake_embedder, fake_vector_store, chunk_store, monkeypatch):
    events = []
    chunk_insert = chunk_store.insert
    vector_insert = fake_vector_store.insert

    def record_chunk(chunk):
        events.append(("chunk", chunk.chunk_id))
        chunk_insert(chunk)

    def record_vector(chunk_id, vector, **kwargs):
        events.append(("vector", chunk_id))
        vector_insert(chunk_id, vector, **kwargs)

    monkeypatch.setattr(chunk_store, "insert", record_chunk)
    monkeypatch.setattr(fake_vector_store, "insert", record_vector)

    _indexer(fake_embedder, fake_vector_store, chunk_store).process_text(1, TEXT)

    for chunk_id in range(1, 5):
        assert events.index(("chunk", chunk_id)) < events.index(("vector", chunk_id))


def test_unchunkable_document_is_rejected(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)

    with pytest.raises(UnsupportedDocument):
        indexer.process_document(Document(document_id=1, text=TEXT, can_chunk=False))

    assert chunk_store.list_by_document(1) == []
    assert fake_embedder.calls == []


def test_oversized_document_is_rejected(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store, max_text_chars=39)

    with pytest.raises(TooLarge) as excinfo:
        indexer.process_text(1, TEXT)

    assert excinfo.value.size == 40
    assert excinfo.value.limit == 39
    assert fake_vector_store.points == {}


@pytest.mark.parametrize("text", ["", None])
def test_empty_document_indexes_nothing(fake_embedder, fake_vector_store, chunk_store, text):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)

    assert indexer.process_text(1, text) == 0
    assert fake_vector_store.points == {}


def test_embedding_failure_aborts_at_failing_ordinal(make_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(make_embedder(fail_on="FAIL"), fake_vector_store, chunk_store)

    with pytest.raises(DocumentIndexingError) as excinfo:
        indexer.process_text(3, TEXT)

    err = excinfo.value
    assert err.document_id == 3
    assert err.ordinal == 2
    assert err.completed == 2
    assert err.retryable is True
    assert isinstance(err.__cause__, EmbeddingFailed)
    assert fake_vector_store.insert_order == [0, 1]
    # The failing chunk's record was written before its embedding was attempted.
    assert [c.ordinal_index for c in chunk_store.list_by_document(3)] == [0, 1, 2]


def test_vector_insert_failure_aborts(fake_embedder, fake_vector_store, chunk_store):
    fake_vector_store.fail_insert_on = {2}
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)

    with pytest.raises(DocumentIndexingError) as excinfo:
        indexer.process_text(3, TEXT)

    assert excinfo.value.ordinal == 1
    assert excinfo.value.completed == 1
    assert isinstance(excinfo.value.__cause__, VectorStoreFailed)
    assert fake_vector_store.insert_order == [0]


def test_concurrent_embedding_keeps_ordinal_order(fake_embedder, fake_vector_store, chunk_store):
    text = "".join(ch * 10 for ch in "abcdefghij")
    indexer = _indexer(
        fake_embedder, fake_vector_store, chunk_store, embed_workers=3, embed_batch_size=3
    )

    assert indexer.process_text(5, text) == 10
    assert fake_vector_store.insert_order == list(range(10))
    assert len(chunk_store.list_by_document(5)) == 10


def test_concurrent_failure_reports_first_ordinal_of_batch(make_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(
        make_embedder(fail_on="FAIL"),
        fake_vector_store,
        chunk_store,
        embed_workers=2,
        embed_batch_size=2,
    )
    text = "aaaaaaaaaa" "bbbbbbbbbb" "cccccccccc" "ddFAILdddd" "eeeeeeeeee"

    with pytest.raises(DocumentIndexingError) as excinfo:
        indexer.process_text(4, text)

    assert excinfo.value.ordinal == 2
    assert excinfo.value.completed == 2
    assert fake_vector_store.insert_order == [0, 1]


def test_concurrent_mode_limits_batches_embedded_ahead(fake_embedder, fake_vector_store, chunk_store, monkeypatch):
    embedded_at_first_insert = []
    vector_insert = fake_vector_store.insert

    def recording_insert(chunk_id, vector, **kwargs):
        if not embedded_at_first_insert:
            embedded_at_first_insert.append(len(fake_embedder.calls))
        vector_insert(chunk_id, vector, **kwargs)

    monkeypatch.setattr(fake_vector_store, "insert", recording_insert)
    text = "".join(ch * 10 for ch in "abcdefghijklmnopqrst")
    indexer = _indexer(
        fake_embedder, fake_vector_store, chunk_store, embed_workers=2, embed_batch_size=1
    )

    assert indexer.process_text(5, text) == 20
    # Four batches in flight, plus the one submitted when the first is taken.
    assert embedded_at_first_insert[0] <= 5
    assert fake_vector_store.insert_order == list(range(20))


def test_documents_indexed_concurrently_share_stores(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store, id_generator=SnowflakeIdGenerator())
    texts = {document_id: "x" * 10 * (document_id % 4 + 1) for document_id in range(1, 17)}

    with ThreadPoolExecutor(max_workers=8) as pool:
        counts = dict(zip(texts, pool.map(lambda item: indexer.process_text(*item), texts.items())))

    for document_id, count in counts.items():
        assert count == document_id % 4 + 1
        assert len(chunk_store.list_by_document(document_id)) == count
    assert len(fake_vector_store.points) == sum(counts.values())


def test_delete_document_chunks_removes_everything(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)
    indexer.process_text(1, TEXT)
    indexer.process_text(2, "keep this one")

    removed = indexer.delete_document_chunks(1)

    assert removed == 4
    assert sorted(fake_vector_store.deleted) == [1, 2, 3, 4]
    assert chunk_store.list_by_document(1) == []
    assert len(chunk_store.list_by_document(2)) == 2


def test_vector_delete_failure_is_best_effort(fake_embedder, fake_vector_store, chunk_store, caplog):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)
    indexer.process_text(1, TEXT)
    fake_vector_store.fail_delete_on = {2}

    with caplog.at_level(logging.WARNING, logger="lodestar_rag.retrieval.indexer"):
        removed = indexer.delete_document(1)

    assert removed == 4
    assert sorted(fake_vector_store.deleted) == [1, 3, 4]
    assert chunk_store.list_by_document(1) == []
    assert "Failed to delete vector for chunk 2" in caplog.text


def test_delete_unknown_document_is_noop(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)

    assert indexer.delete_document_chunks(404) == 0


def test_reindex_is_deterministic(fake_embedder, fake_vector_store, chunk_store):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store)
    text = "第一段内容。第二段内容比较长，需要继续写下去。第三段！" * 3
    document = Document(document_id=9, text=text)

    first_count = indexer.process_document(document)
    first = chunk_store.list_by_document(9)
    second_count = indexer.reindex_document(document)
    second = chunk_store.list_by_document(9)

    assert first_count == second_count
    assert _bounds(first) == _bounds(second)
    assert {c.chunk_id for c in first}.isdisjoint(c.chunk_id for c in second)
    assert sorted(fake_vector_store.points) == sorted(c.chunk_id for c in second)


def test_progress_is_logged(fake_embedder, fake_vector_store, chunk_store, caplog):
    indexer = _indexer(fake_embedder, fake_vector_store, chunk_store, progress_every=2)

    with caplog.at_level(logging.INFO, logger="lodestar_rag.retrieval.indexer"):
        indexer.process_text(1, TEXT)

    assert "indexed 2/4 chunks" in caplog.text
    assert "indexed 4/4 chunks" in caplog.text


def test_from_config_dict(fake_embedder, fake_vector_store, chunk_store):
    indexer = ChunkIndexer.from_config_dict(
        {"max_text_chars": 100, "embed_workers": 4, "worker_id": 3, "datacenter_id": 2},
        splitter=BoundaryAwareSplitter(),
        embedder=fake_embedder,
        vector_store=fake_vector_store,
        chunk_store=chunk_store,
    )

    assert indexer.max_text_chars == 100
    assert indexer.embed_workers == 4
    assert isinstance(indexer.id_generator, SnowflakeIdGenerator)
    assert indexer.id_generator.worker_id == 3
    assert indexer.id_generator.datacenter_id == 2


def test_invalid_worker_count():
    with pytest.raises(ValueError):
        ChunkIndexer(
            splitter=BoundaryAwareSplitter(),
            embedder=None,
            vector_store=None,
            chunk_store=None,
            embed_workers=0,
        )
