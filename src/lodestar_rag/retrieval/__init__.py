"""
Retrieval layer of the retrieval core.

This package covers everything needed to turn decoded document text into
searchable vectors and to fetch the most relevant chunks for a query: a
boundary-aware text splitter, embedding model wrappers, chunk and vector store
adapters, the indexer, and the multi-stage retrieval engine with its keyword
gate and reranker.

Submodules
----------
text_splitter
    Overlapping, sentence-snapped chunking.
chunk_store
    Chunk metadata store adapters.
vector_store
    Vector store adapters (Qdrant).
embedder
    Embedding model wrappers and factory.
indexer
    Per-document split/embed/store orchestration and deletion.
query_expansion
    Short-query padding.
keywords
    Keyword extraction for the keyword gate.
reranker
    Final-stage chunk reranking.
retriever
    Multi-stage retrieval engine.
"""
