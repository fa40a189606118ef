"""lodestar_rag

Lodestar retrieval core package.

This package contains the retrieval pipeline for a retrieval-augmented
question-answering system: document chunking, embedding, chunk and vector
storage, and multi-stage retrieval with keyword gating and rerank.

Subpackages
-----------
config
    YAML settings and logging setup.
app
    The container that wires configured components together.
retrieval
    Chunking, embedding, stores, indexing and retrieval.
common
    Schemas, the error taxonomy and chunk id generation.

The installed distribution version is exposed as ``__version__``; a source
checkout without metadata reports ``"0.0.0-dev"``.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lodestar-rag")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from .config import GlobalConfig
from .app.container import LodestarContainer, build_container
from .common import Chunk, Document

__all__ = [
    "__version__",
    "GlobalConfig",
    "LodestarContainer",
    "build_container",
    "Chunk",
    "Document",
]
