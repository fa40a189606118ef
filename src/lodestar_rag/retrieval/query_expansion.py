"""lodestar_rag.retrieval.query_expansion

Padding for short queries before they are embedded.

Very short queries under-specify intent for embedding models, so queries
below a length threshold get a fixed descriptive suffix. The expanded text is
only ever sent to the embedding provider; keyword extraction and rerank use
the original query.
"""

from typing import Any, Mapping, Optional

DEFAULT_MIN_LENGTH = 10
DEFAULT_SUFFIX = " 的详细信息、背景、事迹"


class QueryExpander:
    """Append ``suffix`` to queries shorter than ``min_length`` characters."""

    def __init__(self, min_length: int = DEFAULT_MIN_LENGTH, suffix: str = DEFAULT_SUFFIX):
        self.min_length = min_length
        self.suffix = suffix

    @classmethod
    def from_config_dict(cls, cfg: Optional[Mapping[str, Any]]) -> "QueryExpander":
        cfg = dict(cfg or {})
        return cls(
            min_length=int(cfg.get("min_length", DEFAULT_MIN_LENGTH)),
            suffix=cfg.get("suffix", DEFAULT_SUFFIX),
        )

    def expand(self, query: str) -> str:
        if len(query) < self.min_length:
            return query + self.suffix
        return query


__all__ = ["QueryExpander", "DEFAULT_SUFFIX"]
