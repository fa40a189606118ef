"""lodestar_rag.retrieval.chunk_store

Chunk metadata store abstractions and implementations.

The chunk store is the durable record of every chunk produced by the indexer:
id, owning document, ordinal, span offsets and text. The vector store only
holds ``(chunk_id, vector)`` pairs, so retrieval resolves vector matches back
to chunk records through this store.

Classes
-------
BaseChunkStore
    Abstract interface for chunk metadata stores.
DocstoreChunkStore
    Chunk store backed by a LlamaIndex document store.

Functions
---------
create_chunk_store
    Factory that instantiates a chunk store by backend kind.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

from llama_index.core.schema import NodeRelationship, RelatedNodeInfo, TextNode
from llama_index.core.storage.docstore import BaseDocumentStore, SimpleDocumentStore

from lodestar_rag.common import Chunk
from lodestar_rag.common.errors import ChunkStoreFailed

logger = logging.getLogger(__name__)


class BaseChunkStore(ABC):
    """Abstract interface for chunk metadata stores.

    Implementations must be safe for concurrent writers: several documents may
    be indexed at the same time against one store.
    """

    @abstractmethod
    def insert(self, chunk: Chunk) -> None:
        """Persist a chunk record, replacing any record with the same id."""

    @abstractmethod
    def get(self, chunk_id: int) -> Optional[Chunk]:
        """Return the chunk with ``chunk_id`` or ``None`` when it does not exist."""

    @abstractmethod
    def list_by_document(self, document_id: int) -> List[Chunk]:
        """Return every chunk of ``document_id`` ordered by ordinal index."""

    @abstractmethod
    def delete_by_document(self, document_id: int) -> int:
        """Delete every chunk of ``document_id`` and return how many were removed."""

    def persist(self) -> None:
        """Flush state to durable storage. No-op for stores that write through."""


class DocstoreChunkStore(BaseChunkStore):
    """Chunk store backed by a LlamaIndex document store.

    Each chunk is stored as a :class:`llama_index.core.schema.TextNode` whose
    ``SOURCE`` relationship points at the owning document, so the docstore's
    reference-document bookkeeping provides listing and bulk deletion by
    document id.

    Parameters
    ----------
    docstore : BaseDocumentStore, optional
        Backing document store. Defaults to a fresh
        :class:`~llama_index.core.storage.docstore.SimpleDocumentStore`, or one
        loaded from ``persist_path`` when that file exists.
    persist_path : str or Path, optional
        JSON file used by :meth:`persist`.
    """

    def __init__(
        self,
        docstore: Optional[BaseDocumentStore] = None,
        persist_path: Optional[str | Path] = None,
    ):
        self.persist_path = Path(persist_path).expanduser() if persist_path else None

        if docstore is None:
            if self.persist_path is not None and self.persist_path.exists():
                docstore = SimpleDocumentStore.from_persist_path(str(self.persist_path))
                logger.info("Loaded chunk store from %s", self.persist_path)
            else:
                docstore = SimpleDocumentStore()

        self.docstore = docstore
        self._lock = threading.Lock()

    @staticmethod
    def _to_node(chunk: Chunk) -> TextNode:
        return TextNode(
            id_=str(chunk.chunk_id),
            text=chunk.text,
            metadata={
                "document_id": chunk.document_id,
                "ordinal_index": chunk.ordinal_index,
                "start_offset": chunk.start_offset,
                "end_offset": chunk.end_offset,
            },
            relationships={
                NodeRelationship.SOURCE: RelatedNodeInfo(node_id=str(chunk.document_id)),
            },
        )

    @staticmethod
    def _from_node(node: Any) -> Chunk:
        metadata = node.metadata or {}
        return Chunk(
            chunk_id=int(node.node_id),
            document_id=int(metadata["document_id"]),
            ordinal_index=int(metadata["ordinal_index"]),
            start_offset=int(metadata["start_offset"]),
            end_offset=int(metadata["end_offset"]),
            text=node.text,
        )

    def insert(self, chunk: Chunk) -> None:
        try:
            with self._lock:
                self.docstore.add_documents([self._to_node(chunk)], allow_update=True)
        except Exception as exc:
            raise ChunkStoreFailed(
                f"Failed to insert chunk {chunk.chunk_id}: {exc}",
                operation="insert",
                details={"chunk_id": chunk.chunk_id, "document_id": chunk.document_id},
            ) from exc

    def get(self, chunk_id: int) -> Optional[Chunk]:
        try:
            with self._lock:
                node = self.docstore.get_document(str(chunk_id), raise_error=False)
            if node is None:
                return None
            return self._from_node(node)
        except Exception as exc:
            raise ChunkStoreFailed(
                f"Failed to read chunk {chunk_id}: {exc}",
                operation="get",
                details={"chunk_id": chunk_id},
            ) from exc

    def list_by_document(self, document_id: int) -> List[Chunk]:
        try:
            with self._lock:
                info = self.docstore.get_ref_doc_info(str(document_id))
                if info is None:
                    return []
                nodes = [
                    self.docstore.get_document(node_id, raise_error=False)
                    for node_id in info.node_ids
                ]
            chunks = [self._from_node(node) for node in nodes if node is not None]
        except Exception as exc:
            raise ChunkStoreFailed(
                f"Failed to list chunks of document {document_id}: {exc}",
                operation="list_by_document",
                details={"document_id": document_id},
            ) from exc

        chunks.sort(key=lambda c: c.ordinal_index)
        return chunks

    def delete_by_document(self, document_id: int) -> int:
        try:
            with self._lock:
                info = self.docstore.get_ref_doc_info(str(document_id))
                if info is None:
                    return 0
                count = len(info.node_ids)
                self.docstore.delete_ref_doc(str(document_id), raise_error=False)
        except Exception as exc:
            raise ChunkStoreFailed(
                f"Failed to delete chunks of document {document_id}: {exc}",
                operation="delete_by_document",
                details={"document_id": document_id},
            ) from exc

        logger.debug("Deleted %d chunk records for document %s", count, document_id)
        return count

    def persist(self) -> None:
        """Write the docstore to ``persist_path`` when one is configured."""
        if self.persist_path is None:
            return
        self.persist_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self.docstore.persist(persist_path=str(self.persist_path))
        logger.info("Persisted chunk store to %s", self.persist_path)


def create_chunk_store(
        kind: str = "simple",
        **kwargs: Any,
    ) -> BaseChunkStore:
    """Create a chunk store by backend kind.

    Parameters
    ----------
    kind : {"simple"}, optional
        Backend to use. ``"simple"`` wraps a
        :class:`~llama_index.core.storage.docstore.SimpleDocumentStore`, held in
        memory and optionally persisted to JSON. Defaults to ``"simple"``.
    **kwargs : Any
        Backend-specific keyword arguments (``persist_path`` for ``"simple"``).

    Returns
    -------
    BaseChunkStore
        Instantiated chunk store.

    Raises
    ------
    ValueError
        If ``kind`` does not correspond to a supported backend.
    """
    k = (kind or "").lower()
    if k == "simple":
        return DocstoreChunkStore(persist_path=kwargs.get("persist_path"))

    raise ValueError(f"Unknown chunk store kind: {kind!r}. Use 'simple'.")


__all__ = [
    "BaseChunkStore",
    "DocstoreChunkStore",
    "create_chunk_store",
]
