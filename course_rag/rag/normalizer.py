"""Cleanup of raw extracted text before chunking."""
import re
from typing import Optional

# C0 controls except tab/newline, DEL, and C1 controls
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_WHITESPACE_RUN = re.compile(r"\s+")


def normalize(raw: Optional[str], collapse_whitespace: bool = False) -> str:
    """Normalize extracted text.

    Line endings become LF and non-printable control characters are removed.
    Page/slide bounded text keeps its newline structure; size-bounded text
    (``collapse_whitespace=True``) has every whitespace run turned into a
    single space.

    Args:
        raw: Raw extracted text (None is treated as empty)
        collapse_whitespace: Collapse whitespace runs, including newlines

    Returns:
        Normalized, trimmed text
    """
    if not raw:
        return ""

    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)

    if collapse_whitespace:
        text = _WHITESPACE_RUN.sub(" ", text)

    return text.strip()
