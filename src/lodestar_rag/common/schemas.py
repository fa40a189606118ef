"""lodestar_rag.common.schemas

Core data schemas shared across the retrieval core.

These lightweight dataclasses describe the canonical shapes passed between
splitting, indexing, storage and retrieval. Persistent records
(:class:`Chunk`) and ephemeral per-query structures
(:class:`VectorSearchResult`, :class:`DocumentScore`, :class:`ScoredChunk`)
live side by side so that adapters do not need to depend on each other.

Classes
-------
Document
    A decoded source document handed to the indexer.
TextSpan
    One slice produced by the text splitter.
Chunk
    A persisted slice of a document; the unit of embedding and retrieval.
VectorSearchResult
    One raw match returned by the vector store.
DocumentScore
    Per-document aggregation of vector matches for a single query.
ScoredChunk
    A chunk paired with its rerank score.

Notes
-----
``metadata`` is intentionally untyped (``dict[str, Any]``). Downstream code
should treat missing keys defensively.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class Document:
    """Container for a decoded source document.

    Attributes
    ----------
    document_id : int
        Identifier of the owning document record. The core only references
        documents by id.
    text : str or None
        Full decoded text, prior to chunking. ``None`` is treated as empty.
    can_chunk : bool
        Whether the reader that produced ``text`` permits chunking (media files,
        for example, only yield metadata and must not be chunked).
    metadata : Dict[str, Any]
        Arbitrary metadata (e.g. ``{"filename": "handbook.txt"}``).
    """
    document_id: int
    text: Optional[str]
    can_chunk: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextSpan:
    """A contiguous slice of a text produced by a single splitting pass.

    Attributes
    ----------
    text : str
        The slice content, equal to ``source[start_offset:end_offset]``.
    start_offset : int
        Inclusive character offset into the source text.
    end_offset : int
        Exclusive character offset into the source text.
    ordinal_index : int
        0-based position of the span within the pass.
    """
    text: str
    start_offset: int
    end_offset: int
    ordinal_index: int


@dataclass
class Chunk:
    """A contiguous slice of a document's text.

    Attributes
    ----------
    chunk_id : int
        Globally unique 64-bit identifier. Primary key for both the chunk
        store and the vector store entry.
    document_id : int
        Identifier of the owning document.
    ordinal_index : int
        0-based position among chunks produced from the same document.
    start_offset : int
        Inclusive character offset into the document text.
    end_offset : int
        Exclusive character offset into the document text.
    text : str
        The chunk content.

    Raises
    ------
    ValueError
        If the offsets do not describe a non-empty range.
    """
    chunk_id: int
    document_id: int
    ordinal_index: int
    start_offset: int
    end_offset: int
    text: str

    def __post_init__(self):
        if self.start_offset < 0 or self.end_offset <= self.start_offset:
            raise ValueError(
                f"Invalid chunk span [{self.start_offset}, {self.end_offset}) "
                f"for chunk {self.chunk_id}"
            )

    @classmethod
    def from_span(cls, span: TextSpan, *, chunk_id: int, document_id: int) -> "Chunk":
        """Build a chunk record from a splitter span."""
        return cls(
            chunk_id=chunk_id,
            document_id=document_id,
            ordinal_index=span.ordinal_index,
            start_offset=span.start_offset,
            end_offset=span.end_offset,
            text=span.text,
        )

    def preview(self, length: int = 30) -> str:
        return self.text[:length]


@dataclass(frozen=True)
class VectorSearchResult:
    """One match returned by a vector store search.

    Attributes
    ----------
    chunk_id : int
        Identifier of the matched chunk.
    distance : float
        Raw metric value in distance form (smaller is closer).
    similarity : float
        Normalised score derived from ``distance`` for the configured metric.
        For cosine, ``similarity = 1 - distance``. Not strictly bounded to
        ``[0, 1]`` because of floating point; clamp before comparing ranges.
    """
    chunk_id: int
    distance: float
    similarity: float


@dataclass
class DocumentScore:
    """Aggregation of every vector match that maps to one document."""
    document_id: int
    max_similarity: float = 0.0
    sum_similarity: float = 0.0
    match_count: int = 0

    def add_match(self, similarity: float) -> None:
        self.max_similarity = max(self.max_similarity, similarity)
        self.sum_similarity += similarity
        self.match_count += 1

    @property
    def avg_similarity(self) -> float:
        if self.match_count == 0:
            return 0.0
        return self.sum_similarity / self.match_count


@dataclass(frozen=True)
class ScoredChunk:
    """A chunk paired with the composite rerank score it was ordered by."""
    chunk: Chunk
    score: float
