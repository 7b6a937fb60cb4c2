"""Context block assembly for retrieved units.

Results come back from search in similarity order; for the prompt they are
grouped per source document and put back into page order so each document
reads as chronological excerpts.
"""
from typing import Dict, List, Optional

import structlog

from course_rag.rag.models import SearchResult

logger = structlog.get_logger()


def group_by_source(results: List[SearchResult]) -> List[List[SearchResult]]:
    """Group results by source, ordered by locator within each group.

    Groups appear in the order their best result was ranked.

    Args:
        results: Search results, best first

    Returns:
        List of groups, one per source
    """
    groups: Dict[str, List[SearchResult]] = {}
    for result in results:
        groups.setdefault(result.unit.source, []).append(result)

    return [sorted(group, key=lambda r: r.unit.locator) for group in groups.values()]


def build_citations(groups: List[List[SearchResult]]) -> List[str]:
    """Unique ``"<source> (page <n>)"`` citations in grouped order."""
    citations: List[str] = []
    for group in groups:
        for result in group:
            citation = result.unit.citation
            if citation not in citations:
                citations.append(citation)
    return citations


def build_context(
    groups: List[List[SearchResult]], max_chars: Optional[int] = None
) -> str:
    """Format grouped results as a context block for the prompt.

    Args:
        groups: Output of group_by_source
        max_chars: Maximum total characters of context (None or 0 = unlimited)

    Returns:
        Formatted context string ready for the prompt
    """
    parts = []
    total_chars = 0

    for group in groups:
        for result in group:
            block = f"[Source: {result.unit.citation}]\n{result.unit.text.strip()}\n"

            if max_chars and total_chars + len(block) > max_chars:
                # Try to fit a truncated version
                remaining = max_chars - total_chars
                if remaining > 200:
                    parts.append(block[:remaining] + "...\n")
                logger.debug("context_truncated", max_chars=max_chars, blocks=len(parts))
                return "\n".join(parts)

            parts.append(block)
            total_chars += len(block)

    return "\n".join(parts)
