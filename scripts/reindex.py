#!/usr/bin/env python
"""Build or inspect the course material knowledge base.

Usage:
    python scripts/reindex.py              # Load the cache, or build it if missing
    python scripts/reindex.py --rebuild    # Discard caches and rebuild from documents
    python scripts/reindex.py --verbose    # Show detailed progress
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from course_rag import config
from course_rag.logging_config import configure_logging
from course_rag.rag.embeddings import EmbeddingProvider
from course_rag.rag.engine import RAGEngine
from course_rag.rag.ingest import DocumentProcessor
from course_rag.rag.persistence import KnowledgeCache
from course_rag.rag.store import KnowledgeStore
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, engine: RAGEngine, cache: KnowledgeCache):
        """Print the knowledge base summary."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()
        stats = engine.get_stats()
        processor_stats = stats["processor"]
        store_stats = stats["store"]
        embedding_stats = store_stats["embedding_stats"]

        print(f"{'=' * 60}")
        print("  Knowledge Base Ready")
        print(f"{'=' * 60}\n")
        print(f"  Files processed:      {processor_stats['files_processed']}")
        print(f"  Files failed:         {processor_stats['files_failed']}")
        print(f"  Files skipped:        {processor_stats['files_skipped']}")
        print(f"  Units indexed:        {store_stats['unit_count']}")
        print(f"  Sources:              {store_stats['sources']}")
        print(f"  Vector dimensions:    {store_stats['dimensions']}")
        print(f"  Remote batches:       {embedding_stats['remote_batches']}")
        print(f"  Fallback batches:     {embedding_stats['fallback_batches']}")
        print(f"  Time elapsed:         {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        if processor_stats["files_failed"] > 0:
            print(f"Warning: {processor_stats['files_failed']} file(s) failed to process.")
            print("   Check logs for details.\n")

        if cache.cache_exists():
            print(f"Cache at: {cache.cache_path}\n")


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Build or inspect the course material knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py              # Load the cache, or build it if missing
  python scripts/reindex.py --rebuild    # Full rebuild from the documents
  python scripts/reindex.py --verbose    # Show detailed progress
        """,
    )

    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Discard the cache file and rebuild from the documents",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    parser.add_argument(
        "--corpus-dir",
        type=Path,
        default=None,
        help=f"Course materials directory (default: {config.CORPUS_DIR})",
    )

    args = parser.parse_args()
    configure_logging("DEBUG" if args.verbose else "WARNING")

    progress = ProgressReporter(verbose=args.verbose)

    try:
        print("\nConfiguration:")
        print(f"   Corpus directory:  {args.corpus_dir or config.CORPUS_DIR}")
        print(f"   Embedding model:   {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:        {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:     {config.CHUNK_OVERLAP} chars")
        print(f"   Top-K retrieval:   {config.MAX_RETRIEVAL_RESULTS}")
        print(f"   API key set:       {'yes' if config.LLM_API_KEY else 'no (fallback embeddings)'}")

        if args.rebuild:
            print("\nRebuild mode: the cache file will be deleted!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)

        action = "Rebuilding" if args.rebuild else "Loading"
        progress.start(f"{action} Knowledge Base")

        cache = KnowledgeCache()
        processor = DocumentProcessor(
            corpus_dir=args.corpus_dir,
            progress_callback=progress.update,
        )
        store = KnowledgeStore(provider=EmbeddingProvider(), cache=cache)
        engine = RAGEngine(processor=processor, store=store)

        if args.rebuild:
            await engine.reinitialize()
        else:
            await engine.initialize()

        progress.finish(engine, cache)

        if processor.stats["files_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
