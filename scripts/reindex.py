#!/usr/bin/env python
"""Rebuild the notes collection used for chat.

Usage:
    python scripts/reindex.py                    # Reindex the whole vault
    python scripts/reindex.py --max-documents 10 # Only the first 10 notes
    python scripts/reindex.py --verbose          # Show detailed progress
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import ValidationError

from notechat import config
from notechat.config import RagConfig
from notechat.errors import NoteChatError, PartialIndexFailure
from notechat.llm_client import OpenAIClient
from notechat.rag.embeddings import EmbeddingClient
from notechat.rag.ingest import IndexStats, Indexer
from notechat.rag.md_parser import Document
from notechat.rag.store_faiss import VectorIndex
from notechat.settings import SettingsStore

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document: Document):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "#" * filled + "-" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {document.name[:30]:<30}",
            end="",
            flush=True,
        )
        if self.verbose:
            print()

    def finish(self, stats: IndexStats):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing complete")
        print(f"{'=' * 60}\n")
        print(f"  Notes processed:   {stats.processed}")
        print(f"  Notes skipped:     {stats.skipped}")
        print(f"  Notes failed:      {stats.failed}")
        print(f"  Chunks indexed:    {stats.chunks_indexed}")
        print(f"  Time elapsed:      {elapsed_seconds:.1f}s")

        if stats.chunks_indexed > 0 and elapsed_seconds > 0:
            print(f"  Indexing rate:     {stats.chunks_indexed / elapsed_seconds:.1f} chunks/sec")

        for doc_id, error in stats.failures.items():
            print(f"    failed: {doc_id}: {error}")
        print(f"\n{'=' * 60}\n")


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Rebuild the notes collection used for chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--notes-dir",
        type=Path,
        default=config.NOTES_DIR,
        help=f"Notes directory (default: {config.NOTES_DIR})",
    )
    parser.add_argument(
        "--max-documents",
        type=int,
        default=None,
        help="Only index the first N notes (default: all)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")
    args = parser.parse_args()

    rag_config = RagConfig()
    if args.max_documents is not None:
        try:
            rag_config = rag_config.with_overrides(max_documents=args.max_documents)
        except ValidationError as e:
            parser.error(f"invalid --max-documents: {e.errors()[0]['msg']}")

    settings = SettingsStore().settings
    llm = OpenAIClient(settings)
    indexer = Indexer(
        VectorIndex(config.INDEX_DIR, rag_config.embedding_model),
        EmbeddingClient(llm, rag_config),
        rag_config,
    )

    print("\nConfiguration:")
    print(f"   Notes directory:  {args.notes_dir}")
    print(f"   Embedding model:  {rag_config.embedding_model}")
    print(f"   Chunk size:       {rag_config.chunk_size} chars")
    print(f"   Chunk overlap:    {rag_config.chunk_overlap} chars")
    print(f"   Max documents:    {rag_config.max_documents or 'all'}")

    progress = ProgressReporter(verbose=args.verbose)
    progress.start("Reindexing notes")

    try:
        stats = await indexer.reindex_notes(args.notes_dir, progress_callback=progress.update)
        progress.finish(stats)
        stats.raise_for_failures()

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except PartialIndexFailure as e:
        print(f"Warning: {e}. Check logs for details.\n")
        sys.exit(1)

    except (FileNotFoundError, NoteChatError) as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
