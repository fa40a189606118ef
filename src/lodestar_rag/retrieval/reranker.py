"""lodestar_rag.retrieval.reranker

Reranker abstractions and implementations for the final retrieval stage.

This module defines:
- an abstract reranker interface over candidate chunks
- a concrete heuristic reranker combining keyword coverage, verbatim query
  match and a chunk length prior
- a small reranker factory for configuration-driven construction
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

from lodestar_rag.common.schemas import Chunk, ScoredChunk

logger = logging.getLogger(__name__)


class BaseReranker(ABC):
    """Abstract interface for reranking retrieved chunks."""

    @abstractmethod
    def rerank(
            self,
            chunks: Sequence[Chunk],
            query: str,
            keywords: Sequence[str],
        ) -> list[ScoredChunk]:
        """Return ``chunks`` scored and ordered best first."""
        raise NotImplementedError


class HeuristicReranker(BaseReranker):
    """Composite lexical reranker.

    Each chunk scores:

    - ``keyword_weight * matched / total`` for the fraction of query keywords
      found in the chunk (skipped when there are no keywords);
    - ``exact_match_weight`` if the chunk contains the whole original query;
    - ``length_weight`` if its length is within ``[min_length, max_length]``,
      ``long_length_weight`` if longer, nothing if shorter.

    Matching ignores case. Ties keep input order.
    """

    def __init__(
            self,
            *,
            keyword_weight: float = 0.6,
            exact_match_weight: float = 0.3,
            length_weight: float = 0.1,
            long_length_weight: float = 0.05,
            min_length: int = 50,
            max_length: int = 1000,
        ):
        if min_length > max_length:
            raise ValueError("'rerank.min_length' must not exceed 'rerank.max_length'.")
        self.keyword_weight = float(keyword_weight)
        self.exact_match_weight = float(exact_match_weight)
        self.length_weight = float(length_weight)
        self.long_length_weight = float(long_length_weight)
        self.min_length = int(min_length)
        self.max_length = int(max_length)

    def score(self, chunk: Chunk, query: str, keywords: Sequence[str]) -> float:
        text = chunk.text.lower()
        score = 0.0

        if keywords:
            matched = sum(1 for kw in keywords if kw.lower() in text)
            score += (matched / len(keywords)) * self.keyword_weight

        if query and query.lower() in text:
            score += self.exact_match_weight

        length = len(chunk.text)
        if self.min_length <= length <= self.max_length:
            score += self.length_weight
        elif length > self.max_length:
            score += self.long_length_weight

        return score

    def rerank(
            self,
            chunks: Sequence[Chunk],
            query: str,
            keywords: Sequence[str],
        ) -> list[ScoredChunk]:
        """Score every chunk and sort descending (stable)."""
        scored = [ScoredChunk(chunk=c, score=self.score(c, query, keywords)) for c in chunks]
        scored.sort(key=lambda item: item.score, reverse=True)

        for item in scored:
            logger.debug(
                "Rerank chunk %s score=%.4f preview=%r",
                item.chunk.chunk_id,
                item.score,
                item.chunk.preview(),
            )
        return scored


def create_reranker(config: Mapping[str, Any] | None = None) -> BaseReranker:
    """Create a reranker from the ``retrieval.rerank`` configuration section."""
    cfg = dict(config or {})
    kind = str(cfg.pop("type", "heuristic")).lower().strip()

    if kind == "heuristic":
        return HeuristicReranker(**cfg)

    raise ValueError(f"Unsupported rerank type {kind!r}. Supported rerankers: ['heuristic'].")


__all__ = [
    "BaseReranker",
    "HeuristicReranker",
    "create_reranker",
]
