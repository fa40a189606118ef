"""Application wiring for lodestar_rag."""
