import asyncio

import pytest

from lodestar_rag.common.schemas import Chunk, VectorSearchResult
from lodestar_rag.retrieval.keywords import KeywordExtractor
from lodestar_rag.retrieval.query_expansion import DEFAULT_SUFFIX
from lodestar_rag.retrieval.reranker import HeuristicReranker
from lodestar_rag.retrieval.retriever import RetrievalEngine


def _add_document(chunk_store, vector_store, document_id, texts, similarities, first_id):
    """Store ``texts`` as consecutive chunks and script their search similarity.

    ``similarities`` holds one value per chunk; ``None`` leaves the chunk out of
    the vector search results.
    """
    chunks = []
    offset = 0
    for ordinal, (text, similarity) in enumerate(zip(texts, similarities)):
        chunk = Chunk(
            chunk_id=first_id + ordinal,
            document_id=document_id,
            ordinal_index=ordinal,
            start_offset=offset,
            end_offset=offset + len(text),
            text=text,
        )
        offset += len(text)
        chunk_store.insert(chunk)
        vector_store.documents[chunk.chunk_id] = document_id
        if similarity is not None:
            vector_store.similarities[chunk.chunk_id] = similarity
        chunks.append(chunk)
    return chunks


@pytest.fixture
def engine(fake_embedder, fake_vector_store, chunk_store):
    return RetrievalEngine(
        embedder=fake_embedder,
        vector_store=fake_vector_store,
        chunk_store=chunk_store,
    )


def test_keyword_gate_beats_vector_similarity(engine, fake_vector_store, chunk_store):
    a = _add_document(chunk_store, fake_vector_store, 1, ["报销流程：先提交申请，再由主管审批。"], [0.6], 100)
    _add_document(chunk_store, fake_vector_store, 2, ["差旅标准按照职级执行。"], [0.95], 200)

    result = engine.retrieve("报销流程")

    assert [c.chunk_id for c in result] == [a[0].chunk_id]


def test_document_without_any_keyword_never_returned(engine, fake_vector_store, chunk_store):
    _add_document(chunk_store, fake_vector_store, 1, ["年假规则", "加班调休"], [0.99, 0.98], 100)

    assert engine.retrieve("报销流程") == []


def test_threshold_above_all_matches_returns_empty(engine, fake_vector_store, chunk_store):
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程说明"], [0.4], 100)

    assert engine.retrieve("报销流程", top_k=5, min_similarity=0.9) == []
    assert fake_vector_store.search_calls[-1]["min_similarity"] == 0.9


def test_returns_every_chunk_of_qualifying_documents(engine, fake_vector_store, chunk_store):
    chunks = _add_document(
        chunk_store,
        fake_vector_store,
        1,
        ["报销流程第一步", "填写单据", "报销流程最后一步"],
        [0.8, None, None],
        100,
    )

    result = engine.retrieve("报销流程")

    assert {c.chunk_id for c in result} == {c.chunk_id for c in chunks}


def test_keyword_gate_checks_whole_document_text(engine, fake_vector_store, chunk_store):
    # Only the unrelated chunk is a vector match; the keyword lives in another chunk.
    chunks = _add_document(
        chunk_store,
        fake_vector_store,
        1,
        ["审批需要两天", "报销流程见附件"],
        [0.7, None],
        100,
    )

    result = engine.retrieve("报销流程")

    assert [c.chunk_id for c in result] == [chunks[1].chunk_id, chunks[0].chunk_id]


def test_top_k_limits_documents_by_max_similarity(fake_embedder, fake_vector_store, chunk_store):
    engine = RetrievalEngine(
        embedder=fake_embedder,
        vector_store=fake_vector_store,
        chunk_store=chunk_store,
        reranker=HeuristicReranker(keyword_weight=0.0, exact_match_weight=0.0, length_weight=0.0),
    )
    _add_document(chunk_store, fake_vector_store, 1, ["invoice one"], [0.5], 100)
    _add_document(chunk_store, fake_vector_store, 2, ["invoice two"], [0.9], 200)
    _add_document(chunk_store, fake_vector_store, 3, ["invoice three"], [0.7], 300)

    result = engine.retrieve("invoice approval", top_k=2)

    assert {c.document_id for c in result} == {2, 3}
    assert fake_vector_store.search_calls[-1]["top_k"] == 4


def test_empty_keyword_set_skips_gate(engine, fake_vector_store, chunk_store):
    chunks = _add_document(chunk_store, fake_vector_store, 1, ["完全无关的内容"], [0.8], 100)

    result = engine.retrieve("的 是")

    assert [c.chunk_id for c in result] == [chunks[0].chunk_id]


def test_short_query_is_expanded_before_embedding(engine, fake_embedder, fake_vector_store, chunk_store):
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [0.8], 100)

    engine.retrieve("报销流程")

    assert fake_embedder.calls == [("报销流程" + DEFAULT_SUFFIX, "query")]


@pytest.mark.parametrize("query", ["", "   "])
def test_blank_query_returns_empty_without_embedding(engine, fake_embedder, query):
    assert engine.retrieve(query) == []
    assert fake_embedder.calls == []


def test_search_failure_degrades_to_empty(fake_embedder, failing_vector_store, chunk_store):
    engine = RetrievalEngine(
        embedder=fake_embedder,
        vector_store=failing_vector_store,
        chunk_store=chunk_store,
    )

    assert engine.retrieve("报销流程") == []


def test_embedding_failure_degrades_to_empty(make_embedder, fake_vector_store, chunk_store):
    engine = RetrievalEngine(
        embedder=make_embedder(fail_on="报销"),
        vector_store=fake_vector_store,
        chunk_store=chunk_store,
    )
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [0.8], 100)

    assert engine.retrieve("报销流程") == []


def test_similarity_slightly_above_one_is_clamped(engine, fake_vector_store, chunk_store):
    chunks = _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [1.0000004], 100)

    result = engine.retrieve("报销流程", min_similarity=1.0)
    scores = engine._aggregate(fake_vector_store.search([0.0], 5, 1.0))

    assert [c.chunk_id for c in result] == [chunks[0].chunk_id]
    assert scores[1].max_similarity == 1.0


def test_negative_similarity_is_clamped_to_zero(engine, chunk_store):
    chunk_store.insert(
        Chunk(chunk_id=100, document_id=1, ordinal_index=0, start_offset=0, end_offset=4, text="报销流程")
    )

    scores = engine._aggregate([VectorSearchResult(chunk_id=100, distance=1.0000002, similarity=-0.0000002)])

    assert scores[1].max_similarity == 0.0


def test_chunk_store_read_failure_degrades_to_empty(engine, fake_vector_store, chunk_store, monkeypatch):
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [0.8], 100)

    def broken(*args, **kwargs):
        raise RuntimeError("docstore unavailable")

    monkeypatch.setattr(chunk_store.docstore, "get_ref_doc_info", broken)

    assert engine.retrieve("报销流程") == []


def test_dangling_vector_match_is_skipped(engine, fake_vector_store, chunk_store):
    chunks = _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [0.6], 100)
    fake_vector_store.similarities[999] = 0.99

    result = engine.retrieve("报销流程")

    assert [c.chunk_id for c in result] == [chunks[0].chunk_id]


def test_document_ids_are_forwarded(engine, fake_vector_store, chunk_store):
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程甲"], [0.8], 100)
    b = _add_document(chunk_store, fake_vector_store, 2, ["报销流程乙"], [0.7], 200)

    result = engine.retrieve("报销流程", document_ids=[2])

    assert [c.chunk_id for c in result] == [b[0].chunk_id]
    assert fake_vector_store.search_calls[-1]["document_ids"] == [2]


def test_retrieve_scored_exposes_rerank_scores(engine, fake_vector_store, chunk_store):
    _add_document(chunk_store, fake_vector_store, 1, ["报销流程", "报销"], [0.8, 0.7], 100)

    scored = engine.retrieve_scored("报销流程")

    assert [item.chunk.chunk_id for item in scored] == [100, 101]
    assert scored[0].score > scored[1].score


def test_invalid_top_k_raises(engine):
    with pytest.raises(ValueError):
        engine.retrieve("报销流程", top_k=0)


def test_aretrieve_matches_retrieve(engine, fake_vector_store, chunk_store):
    chunks = _add_document(chunk_store, fake_vector_store, 1, ["报销流程"], [0.8], 100)

    result = asyncio.run(engine.aretrieve("报销流程"))

    assert [c.chunk_id for c in result] == [chunks[0].chunk_id]


def test_from_config_dict(fake_embedder, fake_vector_store, chunk_store):
    engine = RetrievalEngine.from_config_dict(
        {
            "top_k": 3,
            "min_similarity": 0.5,
            "candidate_multiplier": 4,
            "keywords": {"cjk_ngrams": False},
            "query_expansion": {"min_length": 2},
            "rerank": {"type": "heuristic", "exact_match_weight": 0.5},
        },
        embedder=fake_embedder,
        vector_store=fake_vector_store,
        chunk_store=chunk_store,
    )

    assert engine.top_k == 3
    assert engine.min_similarity == 0.5
    assert engine.candidate_multiplier == 4
    assert isinstance(engine.keyword_extractor, KeywordExtractor)
    assert engine.keyword_extractor.cjk_ngrams is False
    assert engine.query_expander.min_length == 2
    assert engine.reranker.exact_match_weight == 0.5
