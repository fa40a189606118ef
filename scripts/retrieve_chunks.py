"""Retrieval entrypoint.

Runs one query through the retrieval engine and prints the ranked chunks.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lodestar_rag.app.container import build_container
from lodestar_rag.config import GlobalConfig, configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Retrieve chunks for a query")

    parser.add_argument(
        "query",
        type=str,
        help="Natural-language query.",
    )

    parser.add_argument(
        "--config-file",
        "-c",
        required=True,
        type=str,
        help="Path to the YAML configuration file.",
    )

    parser.add_argument(
        "--top-k",
        "-k",
        required=False,
        type=int,
        default=None,
        help="Maximum number of documents to return chunks from (default: from config).",
    )

    parser.add_argument(
        "--min-similarity",
        "-s",
        required=False,
        type=float,
        default=None,
        help="Vector similarity threshold (default: from config).",
    )

    parser.add_argument(
        "--document-id",
        "-d",
        action="append",
        type=int,
        default=None,
        help="Restrict the search to this document. Repeatable.",
    )

    parser.add_argument(
        "--preview-chars",
        required=False,
        type=int,
        default=120,
        help="Characters of chunk text to print (default: 120).",
    )

    return parser.parse_args()


def main() -> None:
    args = parse_args()

    cfg = GlobalConfig.load(args.config_file)
    configure_logging(cfg.logging)
    container = build_container(cfg)

    results = container.retrieval_engine.retrieve_scored(
        args.query,
        top_k=args.top_k,
        min_similarity=args.min_similarity,
        document_ids=args.document_id,
    )

    if not results:
        print("No chunks found.")
        return

    for rank, item in enumerate(results, start=1):
        chunk = item.chunk
        preview = chunk.text[: args.preview_chars].replace("\n", " ")
        print(
            f"{rank:>3}. score={item.score:.3f} document={chunk.document_id} "
            f"ordinal={chunk.ordinal_index} [{chunk.start_offset}, {chunk.end_offset})"
        )
        print(f"     {preview}")


if __name__ == "__main__":
    main()
