"""Core data types for the retrieval pipeline."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import numpy as np


class DocumentType(str, Enum):
    """Supported course material formats."""

    PDF = "pdf"
    DOCX = "docx"
    PPTX = "pptx"
    TXT = "txt"

    @property
    def is_bounded(self) -> bool:
        """Whether extraction reports natural page/slide boundaries."""
        return self is not DocumentType.TXT

    @classmethod
    def from_path(cls, path: Path) -> Optional["DocumentType"]:
        """Map a file suffix to a document type (None if unsupported)."""
        suffix = Path(path).suffix.lower().lstrip(".")
        try:
            return cls(suffix)
        except ValueError:
            return None


@dataclass
class RetrievalUnit:
    """One indexed, embeddable span of document text with provenance."""

    id: str
    text: str
    source: str
    locator: int
    document_type: DocumentType
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ValueError(f"Retrieval unit {self.id!r} has empty text")
        self.document_type = DocumentType(self.document_type)
        if self.embedding is not None:
            self.embedding = np.asarray(self.embedding, dtype=np.float64)

    @staticmethod
    def make_id(source: str, locator: int, index: int) -> str:
        """Build the stable id for the index-th unit of a page/slide."""
        return f"{source}_p{locator}_c{index}"

    @property
    def citation(self) -> str:
        """Human-readable source reference."""
        return f"{self.source} (page {self.locator})"

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and self.embedding.size > 0


@dataclass
class SearchResult:
    """A retrieval unit paired with its similarity to a query."""

    unit: RetrievalUnit
    similarity: float


@dataclass
class RAGAnswer:
    """Generated answer text plus the citations it was grounded on."""

    text: str
    sources: List[str] = field(default_factory=list)

    @property
    def grounded(self) -> bool:
        return bool(self.sources)
