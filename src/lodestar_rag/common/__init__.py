"""
Common building blocks shared across the retrieval core.

This package provides small, widely-used primitives (schemas, the error
hierarchy and id generation) imported by every layer of the system.

Classes
-------
Document
    Decoded source document handed to the indexer.
Chunk
    Persisted slice of a document's text.
TextSpan
    Slice emitted by the text splitter.
VectorSearchResult
    Raw vector store match.
DocumentScore
    Per-document aggregation of vector matches.
ScoredChunk
    Chunk paired with its rerank score.
SnowflakeIdGenerator
    64-bit chunk id generator.

Attributes
----------
DocId : TypeAlias
    Type alias for document identifiers.
ChunkId : TypeAlias
    Type alias for chunk identifiers.

See Also
--------
lodestar_rag.common.errors
    Exception hierarchy rooted at :class:`~lodestar_rag.common.errors.LodestarError`.
"""
from __future__ import annotations
from typing import TypeAlias

from .schemas import (
    Chunk,
    Document,
    DocumentScore,
    ScoredChunk,
    TextSpan,
    VectorSearchResult,
)
from .ids import SnowflakeIdGenerator

DocId: TypeAlias = int
ChunkId: TypeAlias = int

__all__ = [
    "Chunk",
    "Document",
    "DocumentScore",
    "ScoredChunk",
    "TextSpan",
    "VectorSearchResult",
    "SnowflakeIdGenerator",
    "DocId",
    "ChunkId",
]
