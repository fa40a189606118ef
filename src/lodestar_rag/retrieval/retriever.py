"""lodestar_rag.retrieval.retriever

Multi-stage retrieval over the chunk and vector stores.

Given a free-text query, :class:`RetrievalEngine` runs four stages:

1. short queries are padded before embedding (:mod:`.query_expansion`);
2. the query vector is searched with over-fetching, and matches are resolved
   to chunks and aggregated per document;
3. documents must share at least one keyword with the original query and
   reach the similarity threshold; the best ``top_k`` documents survive;
4. every chunk of the surviving documents is reranked (:mod:`.reranker`).

Failures of the embedding provider or the stores are caught once, at the top
of the pipeline, and turned into an empty result so that callers degrade to
"no context found".

Classes
-------
RetrievalEngine
    Orchestrates query expansion, vector search, keyword gating and rerank.
"""

import asyncio
import functools
import logging
from typing import Dict, Iterable, List, Optional

from lodestar_rag.common.errors import LodestarError
from lodestar_rag.common.schemas import Chunk, DocumentScore, ScoredChunk, VectorSearchResult
from lodestar_rag.retrieval.chunk_store import BaseChunkStore
from lodestar_rag.retrieval.embedder import BaseEmbedder
from lodestar_rag.retrieval.keywords import KeywordExtractor, contains_any_keyword
from lodestar_rag.retrieval.query_expansion import QueryExpander
from lodestar_rag.retrieval.reranker import BaseReranker, HeuristicReranker, create_reranker
from lodestar_rag.retrieval.vector_store import BaseVectorStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
DEFAULT_MIN_SIMILARITY = 0.35
DEFAULT_CANDIDATE_MULTIPLIER = 2


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class RetrievalEngine:
    """Retrieve the chunks most relevant to a query.

    Parameters
    ----------
    embedder : BaseEmbedder
        Embeds the (possibly expanded) query in ``"query"`` mode.
    vector_store : BaseVectorStore
        ANN index searched for candidate chunk ids.
    chunk_store : BaseChunkStore
        Resolves chunk ids and lists every chunk of a document.
    reranker : BaseReranker, optional
        Final-stage reranker. Defaults to :class:`HeuristicReranker`.
    keyword_extractor : KeywordExtractor, optional
        Keyword policy for the gate and rerank.
    query_expander : QueryExpander, optional
        Short-query padding policy.
    top_k : int, optional
        Default number of documents kept after gating. Defaults to ``5``.
    min_similarity : float, optional
        Default similarity threshold. Defaults to ``0.35``.
    candidate_multiplier : int, optional
        Vector search requests ``top_k * candidate_multiplier`` matches.
        Defaults to ``2``.
    """

    def __init__(
            self,
            *,
            embedder: BaseEmbedder,
            vector_store: BaseVectorStore,
            chunk_store: BaseChunkStore,
            reranker: Optional[BaseReranker] = None,
            keyword_extractor: Optional[KeywordExtractor] = None,
            query_expander: Optional[QueryExpander] = None,
            top_k: int = DEFAULT_TOP_K,
            min_similarity: float = DEFAULT_MIN_SIMILARITY,
            candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER,
        ):
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")
        if candidate_multiplier < 1:
            raise ValueError(f"candidate_multiplier must be at least 1, got {candidate_multiplier}")

        self.embedder = embedder
        self.vector_store = vector_store
        self.chunk_store = chunk_store
        self.reranker = reranker or HeuristicReranker()
        self.keyword_extractor = keyword_extractor or KeywordExtractor()
        self.query_expander = query_expander or QueryExpander()
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.candidate_multiplier = candidate_multiplier

    @classmethod
    def from_config_dict(
            cls,
            config: Optional[dict],
            *,
            embedder: BaseEmbedder,
            vector_store: BaseVectorStore,
            chunk_store: BaseChunkStore,
        ) -> "RetrievalEngine":
        """Create an engine from the ``retrieval`` configuration section."""
        cfg = dict(config or {})
        return cls(
            embedder=embedder,
            vector_store=vector_store,
            chunk_store=chunk_store,
            reranker=create_reranker(cfg.get("rerank")),
            keyword_extractor=KeywordExtractor.from_config_dict(cfg.get("keywords")),
            query_expander=QueryExpander.from_config_dict(cfg.get("query_expansion")),
            top_k=int(cfg.get("top_k", DEFAULT_TOP_K)),
            min_similarity=float(cfg.get("min_similarity", DEFAULT_MIN_SIMILARITY)),
            candidate_multiplier=int(cfg.get("candidate_multiplier", DEFAULT_CANDIDATE_MULTIPLIER)),
        )

    def retrieve(
            self,
            query: str,
            top_k: Optional[int] = None,
            min_similarity: Optional[float] = None,
            *,
            document_ids: Optional[Iterable[int]] = None,
        ) -> List[Chunk]:
        """Return chunks relevant to ``query``, best first.

        Parameters
        ----------
        query : str
            Natural-language query.
        top_k : int, optional
            Maximum number of documents whose chunks are returned.
        min_similarity : float, optional
            Vector similarity threshold.
        document_ids : Iterable[int], optional
            Restrict the search to these documents.

        Returns
        -------
        list[Chunk]
            Every chunk of the qualifying documents, reranked. Empty when
            nothing qualifies or when embedding/search fails.
        """
        scored = self.retrieve_scored(
            query, top_k, min_similarity, document_ids=document_ids
        )
        return [item.chunk for item in scored]

    def retrieve_scored(
            self,
            query: str,
            top_k: Optional[int] = None,
            min_similarity: Optional[float] = None,
            *,
            document_ids: Optional[Iterable[int]] = None,
        ) -> List[ScoredChunk]:
        """Like :meth:`retrieve` but keeps the rerank score of each chunk.

        Raises
        ------
        ValueError
            If ``top_k < 1``.
        """
        top_k = self.top_k if top_k is None else top_k
        min_similarity = self.min_similarity if min_similarity is None else min_similarity
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")

        if not query or not query.strip():
            logger.warning("Empty query; returning no chunks")
            return []

        try:
            return self._run(query, top_k, min_similarity, document_ids)
        except LodestarError:
            logger.exception("Retrieval failed for query %r; returning no chunks", query)
            return []

    async def aretrieve(
            self,
            query: str,
            top_k: Optional[int] = None,
            min_similarity: Optional[float] = None,
            *,
            document_ids: Optional[Iterable[int]] = None,
        ) -> List[Chunk]:
        """Asynchronously run :meth:`retrieve` in a thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            functools.partial(
                self.retrieve, query, top_k, min_similarity, document_ids=document_ids
            ),
        )

    def _run(
            self,
            query: str,
            top_k: int,
            min_similarity: float,
            document_ids: Optional[Iterable[int]],
        ) -> List[ScoredChunk]:
        expanded = self.query_expander.expand(query)
        if expanded != query:
            logger.debug("Expanded query %r -> %r", query, expanded)

        vector = self.embedder.embed(expanded, mode="query")
        results = self.vector_store.search(
            vector,
            top_k * self.candidate_multiplier,
            min_similarity,
            document_ids=list(document_ids) if document_ids is not None else None,
        )

        scores = self._aggregate(results)
        keywords = self.keyword_extractor.extract(query)
        logger.debug("Query keywords: %s", keywords)

        chunk_cache: Dict[int, List[Chunk]] = {}
        qualified = self._select_documents(scores, keywords, min_similarity, top_k, chunk_cache)
        if not qualified:
            logger.warning("No documents qualified for query %r", query)
            return []

        candidates = [
            chunk
            for document_id in qualified
            for chunk in self._document_chunks(document_id, chunk_cache)
        ]
        reranked = self.reranker.rerank(candidates, query, keywords)

        logger.info(
            "Retrieved %d chunks from %d documents (%d vector matches)",
            len(reranked),
            len(qualified),
            len(results),
        )
        return reranked

    def _aggregate(self, results: List[VectorSearchResult]) -> Dict[int, DocumentScore]:
        """Resolve matches to chunks and accumulate a score per document."""
        scores: Dict[int, DocumentScore] = {}
        for result in results:
            chunk = self.chunk_store.get(result.chunk_id)
            if chunk is None:
                logger.warning("Vector match %s has no chunk record; skipping", result.chunk_id)
                continue

            similarity = _clamp(result.similarity)
            score = scores.get(chunk.document_id)
            if score is None:
                score = scores[chunk.document_id] = DocumentScore(document_id=chunk.document_id)
            score.add_match(similarity)

            logger.debug(
                "Match chunk=%s document=%s similarity=%.4f distance=%.4f preview=%r",
                result.chunk_id,
                chunk.document_id,
                similarity,
                result.distance,
                chunk.preview(),
            )
        return scores

    def _document_chunks(self, document_id: int, cache: Dict[int, List[Chunk]]) -> List[Chunk]:
        if document_id not in cache:
            cache[document_id] = self.chunk_store.list_by_document(document_id)
        return cache[document_id]

    def _select_documents(
            self,
            scores: Dict[int, DocumentScore],
            keywords: List[str],
            min_similarity: float,
            top_k: int,
            cache: Dict[int, List[Chunk]],
        ) -> List[int]:
        """Apply the keyword gate and threshold, then keep the ``top_k`` best documents."""
        survivors: List[DocumentScore] = []
        for score in scores.values():
            logger.debug(
                "Document %s max=%.4f avg=%.4f matches=%d",
                score.document_id,
                score.max_similarity,
                score.avg_similarity,
                score.match_count,
            )
            if keywords:
                full_text = " ".join(c.text for c in self._document_chunks(score.document_id, cache))
                if not contains_any_keyword(full_text, keywords):
                    logger.debug("Document %s dropped: no keyword match", score.document_id)
                    continue
            if score.max_similarity < min_similarity:
                continue
            survivors.append(score)

        survivors.sort(key=lambda s: s.max_similarity, reverse=True)
        return [s.document_id for s in survivors[:top_k]]


__all__ = ["RetrievalEngine"]
