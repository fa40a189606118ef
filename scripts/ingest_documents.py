"""Plain-text ingestion entrypoint.

This script reads UTF-8 text files, splits them into chunks, and writes the
chunk records and vectors to the configured chunk and vector stores.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lodestar_rag.app.container import build_container
from lodestar_rag.common import Document
from lodestar_rag.common.errors import LodestarError
from lodestar_rag.config import GlobalConfig, configure_logging

logger = logging.getLogger("ingest_documents")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest plain-text documents into the retrieval stores")

    parser.add_argument(
        "files",
        nargs="+",
        type=str,
        help="Text files to ingest.",
    )

    parser.add_argument(
        "--config-file",
        "-c",
        required=True,
        type=str,
        help="Path to the YAML configuration file.",
    )

    parser.add_argument(
        "--document-id",
        "-d",
        action="append",
        type=int,
        default=None,
        help=(
            "Document id for each file, in order. Repeat once per file. "
            "Defaults to 1..N in the order given."
        ),
    )

    parser.add_argument(
        "--reindex",
        "-r",
        action="store_true",
        help="Delete existing chunks of each document before indexing it.",
    )

    parser.add_argument(
        "--collection-name",
        required=False,
        type=str,
        default=None,
        help="Override the vector store collection name from config (optional).",
    )

    parser.add_argument(
        "--embedding-workers",
        required=False,
        type=int,
        default=None,
        help="Override indexer.embed_workers. Values > 1 embed chunk batches concurrently.",
    )

    return parser.parse_args()


def _override_collection_name(cfg: GlobalConfig, cli_value: str | None) -> None:
    if not cli_value:
        return

    vector_store = cfg.raw.get("vector_store")
    if vector_store is None:
        cfg.raw["vector_store"] = {
            "type": "qdrant",
            "collection_name": cli_value,
        }
        return

    if isinstance(vector_store, dict):
        vector_store["collection_name"] = cli_value
        return

    raise TypeError("'vector_store' config must be a mapping to override collection_name.")


def _resolve_document_ids(files: list[str], ids: list[int] | None) -> list[int]:
    if not ids:
        return list(range(1, len(files) + 1))
    if len(ids) != len(files):
        raise ValueError(
            f"Got {len(ids)} --document-id values for {len(files)} files; pass one per file."
        )
    return ids


def main() -> int:
    args = parse_args()

    cfg = GlobalConfig.load(args.config_file)
    configure_logging(cfg.logging)

    if args.embedding_workers is not None:
        if args.embedding_workers < 1:
            raise ValueError("--embedding-workers must be >= 1 when provided.")
        indexer_cfg = cfg.raw.setdefault("indexer", {})
        indexer_cfg["embed_workers"] = int(args.embedding_workers)

    _override_collection_name(cfg, args.collection_name)
    container = build_container(cfg)
    indexer = container.indexer

    document_ids = _resolve_document_ids(args.files, args.document_id)
    failures = 0

    for path, document_id in zip(args.files, document_ids):
        text = Path(path).read_text(encoding="utf-8")
        document = Document(
            document_id=document_id,
            text=text,
            metadata={"filename": Path(path).name},
        )

        print(f"Indexing {path} as document {document_id} ({len(text)} characters)...")
        try:
            if args.reindex:
                count = indexer.reindex_document(document)
            else:
                count = indexer.process_document(document)
        except LodestarError as exc:
            failures += 1
            logger.error("Failed to index %s: %s", path, exc.message)
            print(f"  failed: {exc.message}")
            continue

        print(f"  {count} chunks indexed")

    print("Persisting chunk store...")
    container.chunk_store.persist()

    if failures:
        print(f"Ingestion finished with {failures} failed document(s).")
        return 1

    print("Ingestion complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
