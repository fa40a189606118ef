"""lodestar_rag.retrieval.keywords

Lexical keyword extraction for the retrieval keyword gate and rerank.

Queries are tokenised on whitespace and punctuation, stop-words and
single-character tokens are dropped, and tokens containing CJK ideographs are
additionally expanded into their short contiguous substrings. The substring
expansion approximates word segmentation for Chinese text without a
segmenter; it can be switched off for corpora where it only adds noise.

Classes
-------
KeywordExtractor
    Configurable keyword extractor.

Functions
---------
extract_keywords
    Extract keywords with the default policy.
contains_any_keyword
    Case-insensitive substring test used by the keyword gate.
"""

import re
from typing import Any, Iterable, List, Mapping, Optional

DEFAULT_STOP_WORDS = frozenset(
    {"的", "是", "一个", "什么", "样", "人", "详细", "信息", "背景", "事迹", "相关", "文件"}
)

_TOKEN_SPLIT = re.compile(r"[\W_]+")
_CJK = re.compile(r"[\u4e00-\u9fa5]")


class KeywordExtractor:
    """Extract a de-duplicated, ordered keyword list from a query.

    Parameters
    ----------
    stop_words : Iterable[str], optional
        Tokens never emitted as keywords. Defaults to a small list of Chinese
        function words and query filler.
    cjk_ngrams : bool, optional
        Whether to expand CJK tokens into contiguous substrings. Defaults to ``True``.
    ngram_min, ngram_max : int, optional
        Substring length bounds for the CJK expansion. Default to 2 and 3.
    min_token_length : int, optional
        Tokens shorter than this are discarded. Defaults to ``2``.
    """

    def __init__(
        self,
        stop_words: Optional[Iterable[str]] = None,
        *,
        cjk_ngrams: bool = True,
        ngram_min: int = 2,
        ngram_max: int = 3,
        min_token_length: int = 2,
    ):
        if ngram_min < 1 or ngram_max < ngram_min:
            raise ValueError(
                f"Invalid n-gram bounds ({ngram_min}, {ngram_max}); need 1 <= ngram_min <= ngram_max"
            )
        self.stop_words = frozenset(stop_words) if stop_words is not None else DEFAULT_STOP_WORDS
        self.cjk_ngrams = cjk_ngrams
        self.ngram_min = ngram_min
        self.ngram_max = ngram_max
        self.min_token_length = min_token_length

    @classmethod
    def from_config_dict(cls, cfg: Optional[Mapping[str, Any]]) -> "KeywordExtractor":
        """Build an extractor from the ``retrieval.keywords`` configuration section."""
        cfg = dict(cfg or {})
        stop_words = cfg.get("stop_words")
        return cls(
            stop_words=stop_words,
            cjk_ngrams=bool(cfg.get("cjk_ngrams", True)),
            ngram_min=int(cfg.get("ngram_min", 2)),
            ngram_max=int(cfg.get("ngram_max", 3)),
            min_token_length=int(cfg.get("min_token_length", 2)),
        )

    def _keep(self, token: str) -> bool:
        return len(token) >= self.min_token_length and token not in self.stop_words

    def _ngrams(self, token: str) -> List[str]:
        grams = []
        for size in range(self.ngram_min, self.ngram_max + 1):
            for i in range(0, len(token) - size + 1):
                grams.append(token[i:i + size])
        return grams

    def extract(self, query: Optional[str]) -> List[str]:
        """Return the keywords of ``query`` in first-seen order.

        An empty list means the gate should be skipped.
        """
        if not query:
            return []

        keywords: dict[str, None] = {}
        for token in _TOKEN_SPLIT.split(query):
            if not self._keep(token):
                continue
            keywords[token] = None
            if self.cjk_ngrams and _CJK.search(token):
                for gram in self._ngrams(token):
                    if self._keep(gram):
                        keywords[gram] = None
        return list(keywords)


def extract_keywords(query: Optional[str]) -> List[str]:
    """Extract keywords from ``query`` using the default policy."""
    return KeywordExtractor().extract(query)


def contains_any_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Return ``True`` if ``text`` contains any keyword, ignoring case."""
    haystack = (text or "").lower()
    return any(keyword.lower() in haystack for keyword in keywords)


__all__ = [
    "DEFAULT_STOP_WORDS",
    "KeywordExtractor",
    "extract_keywords",
    "contains_any_keyword",
]
