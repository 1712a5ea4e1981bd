#!/usr/bin/env python
"""Re-vectorize documents from the command line.

Usage:
    python scripts/reindex.py 12              # Ingest document 12
    python scripts/reindex.py 12 15 --reset   # Reset state first, then ingest
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from article_rag import config
from article_rag.errors import DocumentNotFoundError
from article_rag.main import build_components, configure_logging
from article_rag.rag.progress import StageEvent
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Progress bar fed by ingestion stage events."""

    def __init__(self):
        self.start_time = None

    def start(self, document_id: int):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n  Document {document_id}")

    async def on_stage(self, event: StageEvent) -> None:
        bar_length = 40
        filled = int(bar_length * event.progress / 100)
        bar = "█" * filled + "░" * (bar_length - filled)
        print(
            f"\r  [{bar}] {event.progress:3d}% {event.stage.value:<10}",
            end="",
            flush=True,
        )

    def finish(self, result):
        """Finish progress reporting."""
        elapsed = (datetime.now() - self.start_time).total_seconds()
        print("\n")
        print(f"  Status:     {result.status.value}")
        print(f"  Fragments:  {result.fragment_count}")
        print(f"  Elapsed:    {elapsed:.1f}s")
        if result.error:
            print(f"  Error:      {result.error}")


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Re-vectorize documents for the RAG index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("document_ids", type=int, nargs="+", help="Document ids")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset vector status/progress to pending/0 before ingesting",
    )

    args = parser.parse_args()
    configure_logging("WARNING")

    print("\n📋 Configuration:")
    print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
    print(f"   Dimension:        {config.EMBEDDING_DIM}")
    print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
    print(f"   Batch size:       {config.EMBED_BATCH_SIZE}")

    components = build_components()
    reporter = ProgressReporter()
    components.pipeline.observers.append(reporter)

    failures = 0
    for document_id in args.document_ids:
        if args.reset:
            components.db.reset_vector_state(document_id)

        reporter.start(document_id)
        try:
            result = await components.pipeline.run(document_id)
        except DocumentNotFoundError as e:
            print(f"\n❌ {e}")
            failures += 1
            continue

        reporter.finish(result)
        if result.error:
            failures += 1

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n⚠️  Indexing cancelled by user.\n")
        sys.exit(1)
