"""lodestar_rag.common.errors

Exception hierarchy for the retrieval core.

Every error raised deliberately by the indexing and retrieval layers derives
from :class:`LodestarError`, so callers can catch the whole family in one
place. Library and provider exceptions are translated at the adapter
boundary and chained via ``raise ... from exc``.

Classes
-------
LodestarError
    Base class; carries ``message``, ``code`` and ``details``.
UnsupportedDocument
    The document reader does not permit chunking.
TooLarge
    Document text exceeds the configured ceiling.
OverCapacity
    The splitter safety cap was tripped.
EmbeddingFailed
    The embedding provider rejected or failed a request.
VectorStoreFailed
    An insert, search, delete or collection call to the vector store failed.
ChunkStoreFailed
    The chunk metadata store failed to read or write a record.
NotFound
    A chunk or document is missing.
DocumentIndexingError
    Indexing of one document aborted at a specific chunk ordinal.
"""

from typing import Any, Dict, Optional


class LodestarError(Exception):
    """Base exception for all retrieval core errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a plain dictionary suitable for logging or JSON."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


class UnsupportedDocument(LodestarError):
    """Raised when a document is flagged as not chunkable."""

    def __init__(self, document_id: int, message: Optional[str] = None):
        super().__init__(
            message=message or f"Document {document_id} does not support chunking",
            code="UNSUPPORTED_DOCUMENT",
            details={"document_id": document_id},
        )
        self.document_id = document_id


class TooLarge(LodestarError):
    """Raised when a document's text exceeds the configured maximum size."""

    def __init__(self, document_id: int, size: int, limit: int):
        super().__init__(
            message=f"Document {document_id} is too large ({size} > {limit} characters)",
            code="TOO_LARGE",
            details={"document_id": document_id, "size": size, "limit": limit},
        )
        self.document_id = document_id
        self.size = size
        self.limit = limit


class OverCapacity(LodestarError):
    """Raised when splitting would exceed the chunk ceiling."""

    def __init__(self, limit: int):
        super().__init__(
            message=f"Text splitting exceeded the maximum of {limit} chunks",
            code="OVER_CAPACITY",
            details={"limit": limit},
        )
        self.limit = limit


class EmbeddingFailed(LodestarError):
    """Raised when the embedding provider fails; the provider's message is kept."""

    retryable = True

    def __init__(
        self,
        message: str = "Embedding generation failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            code="EMBEDDING_FAILED",
            details=error_details,
        )


class VectorStoreFailed(LodestarError):
    """Raised when a vector store operation fails."""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["operation"] = operation
        super().__init__(
            message=message,
            code="VECTOR_STORE_FAILED",
            details=error_details,
        )
        self.operation = operation


class ChunkStoreFailed(LodestarError):
    """Raised when the chunk metadata store fails."""

    def __init__(
        self,
        message: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["operation"] = operation
        super().__init__(
            message=message,
            code="CHUNK_STORE_FAILED",
            details=error_details,
        )
        self.operation = operation


class NotFound(LodestarError):
    """Raised when a chunk or document cannot be found."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} {identifier} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )


class DocumentIndexingError(LodestarError):
    """Raised when indexing a document aborts partway through.

    Parameters
    ----------
    document_id : int
        Document whose indexing was aborted.
    ordinal : int
        Ordinal index of the chunk that failed.
    completed : int
        Number of chunks fully indexed (metadata and vector) before the failure.
        These are not rolled back; call ``delete_document_chunks`` before
        retrying.
    reason : str, optional
        Message of the underlying error.
    """

    def __init__(
        self,
        document_id: int,
        ordinal: int,
        completed: int,
        reason: Optional[str] = None,
    ):
        message = f"Indexing document {document_id} failed at chunk ordinal {ordinal}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            code="DOCUMENT_INDEXING_FAILED",
            details={
                "document_id": document_id,
                "ordinal": ordinal,
                "completed": completed,
            },
        )
        self.document_id = document_id
        self.ordinal = ordinal
        self.completed = completed

    @property
    def retryable(self) -> bool:
        cause = self.__cause__
        return bool(getattr(cause, "retryable", False))
