#!/usr/bin/env python
"""Ask a question about the course materials.

Usage:
    python scripts/ask.py "What is a closure?"
    python scripts/ask.py "Why does this loop never end?" --code snippet.py
    python scripts/ask.py "What is recursion?" --no-stream
    python scripts/ask.py "What is recursion?" --show-scores
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from course_rag.logging_config import configure_logging
from course_rag.rag.engine import RAGEngine
import structlog

logger = structlog.get_logger()


async def main():
    """Main entry point for ask script."""
    parser = argparse.ArgumentParser(description="Ask a question about the course materials")
    parser.add_argument("question", help="Question to ask")
    parser.add_argument(
        "--code",
        type=Path,
        default=None,
        help="File holding a code snippet the question is about",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for the full answer instead of streaming tokens",
    )
    parser.add_argument(
        "--show-scores",
        action="store_true",
        help="Print the best matching units and their similarity",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs")

    args = parser.parse_args()
    configure_logging("DEBUG" if args.verbose else "WARNING")

    code_snippet = None
    if args.code is not None:
        try:
            code_snippet = args.code.read_text(encoding="utf-8")
        except OSError as e:
            print(f"\nError: cannot read {args.code}: {e}\n")
            sys.exit(1)

    engine = RAGEngine()

    try:
        await engine.initialize()

        if args.show_scores:
            scores = await engine.store.top_similarities(args.question)
            print("\nBest matches:")
            for label, similarity in scores.items():
                print(f"   {similarity:.3f}  {label}")
            if not scores:
                print("   (none above the similarity floor)")
            print()

        if args.no_stream:
            answer = await engine.answer_question(args.question, code_snippet)
            print(answer.text)
            return

        stream = await engine.answer_stream(args.question, code_snippet)
        async with stream:
            async for token in stream:
                print(token, end="", flush=True)
        print()

    except KeyboardInterrupt:
        print("\n\nCancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("ask_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
