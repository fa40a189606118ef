"""lodestar_rag.retrieval.text_splitter

Text splitting and chunking utilities for the retrieval layer.

This module turns decoded document text into overlapping character spans
suitable for embedding. Chunk boundaries are snapped back to the nearest
sentence terminator inside a small window so that sentences are not severed
when a natural break is nearby, and a hard ceiling on the number of chunks
protects against runaway allocation.

Classes
-------
BoundaryAwareSplitter
    :class:`llama_index.core.node_parser.TextSplitter` producing overlapping,
    terminator-snapped chunks with span offsets.

Functions
---------
split_text_spans
    Pure splitting routine returning :class:`~lodestar_rag.common.schemas.TextSpan`
    objects.
"""

import logging
from typing import List, Optional

from llama_index.core.bridge.pydantic import Field
from llama_index.core.callbacks.base import CallbackManager
from llama_index.core.node_parser import TextSplitter

from lodestar_rag.common import TextSpan
from lodestar_rag.common.errors import OverCapacity

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 800
DEFAULT_OVERLAP = 100
DEFAULT_WINDOW = 50
DEFAULT_MAX_CHUNKS = 50_000
DEFAULT_TERMINATORS = "。！？\n.!?"


def _validate_policy(chunk_size: int, overlap: int, window: int, max_chunks: int) -> None:
    if overlap < 0:
        raise ValueError(f"overlap must be non-negative, got {overlap}")
    if chunk_size <= overlap:
        raise ValueError(
            f"chunk_size ({chunk_size}) must be greater than overlap ({overlap})"
        )
    if window < 0:
        raise ValueError(f"window must be non-negative, got {window}")
    if max_chunks < 1:
        raise ValueError(f"max_chunks must be at least 1, got {max_chunks}")


def _snap_boundary(
    text: str,
    start: int,
    candidate: int,
    window: int,
    terminators: str,
) -> int:
    """Return the end offset just after the nearest terminator at or before ``candidate``.

    Only positions within ``window`` characters of ``candidate`` and not before
    ``start`` are considered. Returns ``candidate`` unchanged when none exists.
    """
    lowest = max(start, candidate - window)
    for i in range(candidate, lowest - 1, -1):
        if text[i] in terminators:
            return i + 1
    return candidate


def split_text_spans(
    text: Optional[str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    *,
    window: int = DEFAULT_WINDOW,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
    terminators: str = DEFAULT_TERMINATORS,
) -> List[TextSpan]:
    """Split ``text`` into overlapping spans.

    Starting from offset ``0``, the raw end candidate is
    ``min(start + chunk_size, len(text))``. When the candidate is not the end of
    the text, it is snapped to just after the nearest sentence terminator found
    within ``window`` characters at or before it. A snap that would stop the
    next span from advancing is discarded in favour of the raw candidate. The
    next span starts at ``end - overlap``.

    Parameters
    ----------
    text : str or None
        Text to split. ``None`` and ``""`` yield an empty list.
    chunk_size : int, optional
        Target span length in characters. Defaults to ``800``.
    overlap : int, optional
        Characters shared by consecutive spans. Defaults to ``100``.
    window : int, optional
        Search radius for sentence terminators. Defaults to ``50``.
    max_chunks : int, optional
        Ceiling on the number of spans. Defaults to ``50_000``.
    terminators : str, optional
        Characters treated as sentence terminators.

    Returns
    -------
    list[TextSpan]
        Spans in ordinal order. Consecutive spans overlap but never leave a gap,
        and the last span ends at ``len(text)``.

    Raises
    ------
    ValueError
        If ``chunk_size <= overlap``, ``overlap < 0``, ``window < 0`` or
        ``max_chunks < 1``.
    OverCapacity
        If more than ``max_chunks`` spans would be produced.
    """
    _validate_policy(chunk_size, overlap, window, max_chunks)
    if not text:
        return []

    length = len(text)
    spans: List[TextSpan] = []
    start = 0

    while True:
        end = min(start + chunk_size, length)
        if end < length:
            snapped = _snap_boundary(text, start, end, window, terminators)
            if snapped - overlap > start:
                end = snapped

        if len(spans) >= max_chunks:
            raise OverCapacity(max_chunks)

        spans.append(
            TextSpan(
                text=text[start:end],
                start_offset=start,
                end_offset=end,
                ordinal_index=len(spans),
            )
        )

        if end >= length:
            break

        next_start = end - overlap
        if next_start <= start or next_start >= length:
            break
        start = next_start

    logger.debug(
        "Split %d characters into %d spans (chunk_size=%d, overlap=%d)",
        length,
        len(spans),
        chunk_size,
        overlap,
    )
    return spans


class BoundaryAwareSplitter(TextSplitter):
    """Overlapping character splitter that prefers sentence boundaries.

    Attributes
    ----------
    chunk_size : int
        Target chunk length in characters.
    overlap : int
        Characters shared by consecutive chunks.
    window : int
        Search radius around each raw boundary for a sentence terminator.
    max_chunks : int
        Ceiling on chunks per text; exceeding it raises
        :class:`~lodestar_rag.common.errors.OverCapacity`.
    terminators : str
        Characters treated as sentence terminators.
    """

    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE, description="Target chunk size in characters.", gt=0
    )

    overlap: int = Field(
        default=DEFAULT_OVERLAP, description="Overlap between adjacent chunks.", ge=0
    )

    window: int = Field(
        default=DEFAULT_WINDOW, description="Sentence terminator search radius.", ge=0
    )

    max_chunks: int = Field(
        default=DEFAULT_MAX_CHUNKS, description="Maximum chunks per text.", gt=0
    )

    terminators: str = Field(
        default=DEFAULT_TERMINATORS, description="Sentence terminating characters."
    )

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        window: int = DEFAULT_WINDOW,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        terminators: str = DEFAULT_TERMINATORS,
        callback_manager: Optional[CallbackManager] = None,
        **kwargs,
    ):
        _validate_policy(chunk_size, overlap, window, max_chunks)
        super().__init__(
            chunk_size=chunk_size,
            overlap=overlap,
            window=window,
            max_chunks=max_chunks,
            terminators=terminators,
            callback_manager=callback_manager or CallbackManager([]),
            **kwargs,
        )

    @classmethod
    def from_config_dict(cls, cfg: Optional[dict]) -> "BoundaryAwareSplitter":
        """Build a splitter from the ``splitter`` configuration section."""
        cfg = dict(cfg or {})
        return cls(
            chunk_size=int(cfg.get("chunk_size", DEFAULT_CHUNK_SIZE)),
            overlap=int(cfg.get("overlap", DEFAULT_OVERLAP)),
            window=int(cfg.get("window", DEFAULT_WINDOW)),
            max_chunks=int(cfg.get("max_chunks", DEFAULT_MAX_CHUNKS)),
            terminators=cfg.get("terminators", DEFAULT_TERMINATORS),
        )

    @classmethod
    def class_name(cls) -> str:
        return "BoundaryAwareSplitter"

    def split_spans(self, text: Optional[str]) -> List[TextSpan]:
        """Split ``text`` into spans carrying offsets and ordinals."""
        return split_text_spans(
            text,
            self.chunk_size,
            self.overlap,
            window=self.window,
            max_chunks=self.max_chunks,
            terminators=self.terminators,
        )

    def split_text(self, text: str) -> List[str]:
        return [span.text for span in self.split_spans(text)]


__all__ = [
    "BoundaryAwareSplitter",
    "split_text_spans",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_OVERLAP",
]
