"""lodestar_rag.retrieval.indexer

Document indexing: split, persist, embed and store vectors.

:class:`ChunkIndexer` turns one document's decoded text into chunk records
and vectors, and reverses that operation. For every chunk the metadata row is
written before its vector is inserted, so an interrupted run leaves at most
unembedded metadata rows, never vectors without a record.

A failure on any chunk aborts the document with
:class:`~lodestar_rag.common.errors.DocumentIndexingError`, naming the failed
ordinal. Chunks completed before the failure are kept; callers should run
:meth:`ChunkIndexer.delete_document_chunks` (or :meth:`ChunkIndexer.reindex_document`)
before retrying.

Classes
-------
ChunkIndexer
    Per-document indexing orchestrator.
"""

import itertools
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Deque, List, Optional, Tuple

from lodestar_rag.common.errors import (
    DocumentIndexingError,
    LodestarError,
    TooLarge,
    UnsupportedDocument,
    VectorStoreFailed,
)
from lodestar_rag.common.ids import SnowflakeIdGenerator
from lodestar_rag.common.schemas import Chunk, Document
from lodestar_rag.retrieval.chunk_store import BaseChunkStore
from lodestar_rag.retrieval.embedder import BaseEmbedder
from lodestar_rag.retrieval.text_splitter import BoundaryAwareSplitter
from lodestar_rag.retrieval.vector_store import BaseVectorStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEXT_CHARS = 50 * 1024 * 1024
DEFAULT_PROGRESS_EVERY = 50
DEFAULT_EMBED_BATCH_SIZE = 10


class ChunkIndexer:
    """Index documents into the chunk store and vector store.

    Parameters
    ----------
    splitter : BoundaryAwareSplitter
        Chunking policy.
    embedder : BaseEmbedder
        Embeds chunk text in ``"document"`` mode.
    vector_store : BaseVectorStore
        Receives one point per chunk.
    chunk_store : BaseChunkStore
        Receives one record per chunk.
    id_generator : SnowflakeIdGenerator, optional
        Chunk id source. Defaults to a generator with worker and datacenter 1.
    max_text_chars : int, optional
        Documents longer than this are rejected. Defaults to 50 MiB.
    embed_workers : int, optional
        With more than one worker, embedding runs concurrently in batches
        while records and vectors are still written in ordinal order. At most
        ``2 * embed_workers`` batches are embedded ahead of the inserts.
        Defaults to ``1`` (sequential).
    embed_batch_size : int, optional
        Texts per embedding request in concurrent mode. Defaults to ``10``.
    progress_every : int, optional
        Log progress every this many chunks. Defaults to ``50``.
    """

    def __init__(
            self,
            *,
            splitter: BoundaryAwareSplitter,
            embedder: BaseEmbedder,
            vector_store: BaseVectorStore,
            chunk_store: BaseChunkStore,
            id_generator: Optional[SnowflakeIdGenerator] = None,
            max_text_chars: int = DEFAULT_MAX_TEXT_CHARS,
            embed_workers: int = 1,
            embed_batch_size: int = DEFAULT_EMBED_BATCH_SIZE,
            progress_every: int = DEFAULT_PROGRESS_EVERY,
        ):
        if embed_workers < 1:
            raise ValueError(f"embed_workers must be at least 1, got {embed_workers}")
        if embed_batch_size < 1:
            raise ValueError(f"embed_batch_size must be at least 1, got {embed_batch_size}")

        self.splitter = splitter
        self.embedder = embedder
        self.vector_store = vector_store
        self.chunk_store = chunk_store
        self.id_generator = id_generator or SnowflakeIdGenerator()
        self.max_text_chars = max_text_chars
        self.embed_workers = embed_workers
        self.embed_batch_size = embed_batch_size
        self.progress_every = max(1, progress_every)

    @classmethod
    def from_config_dict(
            cls,
            config: Optional[dict],
            *,
            splitter: BoundaryAwareSplitter,
            embedder: BaseEmbedder,
            vector_store: BaseVectorStore,
            chunk_store: BaseChunkStore,
        ) -> "ChunkIndexer":
        """Create an indexer from the ``indexer`` configuration section."""
        cfg = dict(config or {})
        return cls(
            splitter=splitter,
            embedder=embedder,
            vector_store=vector_store,
            chunk_store=chunk_store,
            id_generator=SnowflakeIdGenerator(
                worker_id=int(cfg.get("worker_id", 1)),
                datacenter_id=int(cfg.get("datacenter_id", 1)),
            ),
            max_text_chars=int(cfg.get("max_text_chars", DEFAULT_MAX_TEXT_CHARS)),
            embed_workers=int(cfg.get("embed_workers", 1)),
            embed_batch_size=int(cfg.get("embed_batch_size", DEFAULT_EMBED_BATCH_SIZE)),
            progress_every=int(cfg.get("progress_every", DEFAULT_PROGRESS_EVERY)),
        )

    def process_document(self, document: Document) -> int:
        """Split, persist and embed one document.

        Parameters
        ----------
        document : Document
            Decoded document.

        Returns
        -------
        int
            Number of chunks fully indexed.

        Raises
        ------
        UnsupportedDocument
            If ``document.can_chunk`` is false.
        TooLarge
            If the text exceeds ``max_text_chars``.
        OverCapacity
            If splitting trips the chunk ceiling.
        DocumentIndexingError
            If persisting, embedding or inserting any chunk fails.
        """
        if not document.can_chunk:
            raise UnsupportedDocument(document.document_id)

        text = document.text or ""
        if len(text) > self.max_text_chars:
            raise TooLarge(document.document_id, len(text), self.max_text_chars)

        spans = self.splitter.split_spans(text)
        logger.info(
            "Document %s split into %d chunks (%d characters)",
            document.document_id,
            len(spans),
            len(text),
        )

        chunks = [
            Chunk.from_span(span, chunk_id=self.id_generator.next_id(), document_id=document.document_id)
            for span in spans
        ]

        if self.embed_workers > 1 and len(chunks) > 1:
            completed = self._index_concurrently(document.document_id, chunks)
        else:
            completed = self._index_sequentially(document.document_id, chunks)

        logger.info("Document %s indexed: %d chunks", document.document_id, completed)
        return completed

    def process_text(self, document_id: int, text: Optional[str], can_chunk: bool = True) -> int:
        """Convenience wrapper around :meth:`process_document`."""
        return self.process_document(Document(document_id=document_id, text=text, can_chunk=can_chunk))

    def _store(self, chunk: Chunk, vector: List[float]) -> None:
        self.vector_store.insert(
            chunk.chunk_id,
            vector,
            document_id=chunk.document_id,
            ordinal_index=chunk.ordinal_index,
        )

    def _log_progress(self, document_id: int, completed: int, total: int) -> None:
        if completed % self.progress_every == 0:
            logger.info("Document %s: indexed %d/%d chunks", document_id, completed, total)

    def _fail(self, document_id: int, chunk: Chunk, completed: int, exc: LodestarError) -> DocumentIndexingError:
        logger.error(
            "Indexing document %s failed at ordinal %d (chunk %s): %s",
            document_id,
            chunk.ordinal_index,
            chunk.chunk_id,
            exc.message,
        )
        return DocumentIndexingError(document_id, chunk.ordinal_index, completed, reason=exc.message)

    def _index_sequentially(self, document_id: int, chunks: List[Chunk]) -> int:
        completed = 0
        for chunk in chunks:
            try:
                self.chunk_store.insert(chunk)
                vector = self.embedder.embed(chunk.text, mode="document")
                self._store(chunk, vector)
            except LodestarError as exc:
                raise self._fail(document_id, chunk, completed, exc) from exc

            completed += 1
            logger.debug(
                "Indexed chunk %s (document %s, ordinal %d)",
                chunk.chunk_id,
                document_id,
                chunk.ordinal_index,
            )
            self._log_progress(document_id, completed, len(chunks))
        return completed

    def _index_concurrently(self, document_id: int, chunks: List[Chunk]) -> int:
        batches = (
            chunks[i:i + self.embed_batch_size]
            for i in range(0, len(chunks), self.embed_batch_size)
        )
        # At most this many embedded batches wait for their inserts at once.
        max_in_flight = self.embed_workers * 2
        pending: Deque[Tuple[List[Chunk], Future]] = deque()
        completed = 0

        with ThreadPoolExecutor(max_workers=self.embed_workers) as pool:
            for batch in itertools.islice(batches, max_in_flight):
                pending.append((batch, pool.submit(self.embedder.embed_documents, [c.text for c in batch])))
            try:
                while pending:
                    batch, future = pending.popleft()
                    try:
                        vectors = future.result()
                    except LodestarError as exc:
                        raise self._fail(document_id, batch[0], completed, exc) from exc

                    following = next(batches, None)
                    if following is not None:
                        pending.append(
                            (following, pool.submit(self.embedder.embed_documents, [c.text for c in following]))
                        )

                    for chunk, vector in zip(batch, vectors):
                        try:
                            self.chunk_store.insert(chunk)
                            self._store(chunk, vector)
                        except LodestarError as exc:
                            raise self._fail(document_id, chunk, completed, exc) from exc
                        completed += 1
                        self._log_progress(document_id, completed, len(chunks))
            except DocumentIndexingError:
                for _, future in pending:
                    future.cancel()
                raise

        return completed

    def delete_document_chunks(self, document_id: int) -> int:
        """Remove every vector and chunk record of a document.

        Vectors are deleted first, one by one. A failed vector delete is logged
        and does not stop the rest; chunk records are removed afterwards.

        Returns
        -------
        int
            Number of chunk records removed.
        """
        chunks = self.chunk_store.list_by_document(document_id)
        failed = 0
        for chunk in chunks:
            try:
                self.vector_store.delete(chunk.chunk_id)
            except VectorStoreFailed as exc:
                failed += 1
                logger.warning(
                    "Failed to delete vector for chunk %s of document %s: %s",
                    chunk.chunk_id,
                    document_id,
                    exc.message,
                )

        removed = self.chunk_store.delete_by_document(document_id)
        logger.info(
            "Deleted %d chunks of document %s (%d vector deletes failed)",
            removed,
            document_id,
            failed,
        )
        return removed

    delete_document = delete_document_chunks

    def reindex_document(self, document: Document) -> int:
        """Delete a document's existing chunks, then index it again."""
        self.delete_document_chunks(document.document_id)
        return self.process_document(document)


__all__ = ["ChunkIndexer"]
