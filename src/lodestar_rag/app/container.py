"""lodestar_rag.app.container

Composition root for the retrieval core.

Concrete components (embedder, chunk store, vector store, splitter, indexer
and retrieval engine) are built here from the loaded configuration, each on
first access, and then cached so that the indexer and the retrieval engine
share one embedder, one vector store client and one chunk store.

Notes
-----
Importing this module has no side effects. Nothing is constructed, read from
disk or sent over the network until a component property is first accessed;
the vector store property is where the collection gets provisioned.

Examples
--------
>>> from lodestar_rag.config import GlobalConfig
>>> from lodestar_rag.app.container import build_container
>>> container = build_container(GlobalConfig.load("config.yaml"))
>>> container.indexer.process_text(1, "报销流程：员工提交申请。")
>>> chunks = container.retrieval_engine.retrieve("报销流程")
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Any, Mapping


@dataclass(frozen=True)
class LodestarContainer:
    """Holds the configured, cached runtime components for the application.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`lodestar_rag.config.GlobalConfig`).
    """

    config: Any

    @cached_property
    def embedder(self) -> Any:
        """Return the embedding client configured by the ``embedder`` section."""
        from lodestar_rag.retrieval.embedder import create_embedder

        section = _as_mapping(self.config.embedder)
        return create_embedder(dict(section))

    @cached_property
    def vector_store(self) -> Any:
        """Return the vector store, provisioning its collection when configured to.

        Returns
        -------
        Any
            Configured vector store instance (e.g., Qdrant-backed store).
        """
        from lodestar_rag.retrieval.vector_store import create_vector_store

        section = _as_mapping(self.config.vector_store)
        store = create_vector_store(dict(section))
        if section.get("ensure_collection", True):
            store.ensure_collection()
        return store

    @cached_property
    def chunk_store(self) -> Any:
        """Return the chunk metadata store."""
        from lodestar_rag.retrieval.chunk_store import create_chunk_store

        section = dict(_as_mapping(getattr(self.config, "chunk_store", {}) or {}))
        kind = section.pop("type", "simple")
        return create_chunk_store(kind, **section)

    @cached_property
    def splitter(self) -> Any:
        """Return the text splitter configured by the ``splitter`` section."""
        from lodestar_rag.retrieval.text_splitter import BoundaryAwareSplitter

        return BoundaryAwareSplitter.from_config_dict(
            dict(_as_mapping(getattr(self.config, "splitter", {}) or {}))
        )

    @cached_property
    def indexer(self) -> Any:
        """Return the document indexer.

        Returns
        -------
        Any
            A :class:`lodestar_rag.retrieval.indexer.ChunkIndexer` instance.
        """
        from lodestar_rag.retrieval.indexer import ChunkIndexer

        return ChunkIndexer.from_config_dict(
            dict(_as_mapping(getattr(self.config, "indexer", {}) or {})),
            splitter=self.splitter,
            embedder=self.embedder,
            vector_store=self.vector_store,
            chunk_store=self.chunk_store,
        )

    @cached_property
    def retrieval_engine(self) -> Any:
        """Return the retrieval engine.

        Returns
        -------
        Any
            A :class:`lodestar_rag.retrieval.retriever.RetrievalEngine` instance.
        """
        from lodestar_rag.retrieval.retriever import RetrievalEngine

        return RetrievalEngine.from_config_dict(
            dict(_as_mapping(getattr(self.config, "retrieval", {}) or {})),
            embedder=self.embedder,
            vector_store=self.vector_store,
            chunk_store=self.chunk_store,
        )


def build_container(config: Any) -> LodestarContainer:
    """Create a :class:`~lodestar_rag.app.container.LodestarContainer`.

    The ingestion and retrieval scripts and the tests all build their
    components through here.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`lodestar_rag.config.GlobalConfig`).

    Returns
    -------
    LodestarContainer
        Container instance with cached component accessors.
    """

    return LodestarContainer(config=config)


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    """Return a configuration section as a mapping.

    Sections are normally plain dicts from :class:`~lodestar_rag.config.GlobalConfig`;
    attribute-style objects (``SimpleNamespace`` in tests) are read through
    ``vars``.

    Raises
    ------
    TypeError
        If ``obj`` is neither a mapping nor an object with attributes.
    """
    if isinstance(obj, Mapping):
        return obj

    if hasattr(obj, "__dict__"):
        return dict(vars(obj))

    raise TypeError(f"Configuration section must be a mapping, got {type(obj).__name__}")


__all__ = ["LodestarContainer", "build_container"]
