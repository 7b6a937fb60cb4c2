"""Knowledge base cache file.

Handles:
- Versioned JSON schema (validated with pydantic)
- Bundled read-only snapshot vs. writable per-installation cache
- Atomic writes (temp file + rename)
"""
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from course_rag import config
from course_rag.rag.models import DocumentType, RetrievalUnit

logger = structlog.get_logger()


class CacheSchemaError(Exception):
    """Raised when a cache file has an incompatible or missing schema version."""


class UnitRecord(BaseModel):
    """Serialized form of a retrieval unit."""

    id: str
    text: str = Field(min_length=1)
    source: str
    locator: int
    document_type: DocumentType
    embedding: List[float] = Field(default_factory=list)


class CacheFile(BaseModel):
    """Top-level cache document."""

    version: int
    created_at: str
    embedding_model: Optional[str] = None
    unit_count: int
    units: List[UnitRecord]


def _to_record(unit: RetrievalUnit) -> UnitRecord:
    return UnitRecord(
        id=unit.id,
        text=unit.text,
        source=unit.source,
        locator=unit.locator,
        document_type=unit.document_type,
        embedding=unit.embedding.tolist() if unit.has_embedding else [],
    )


def _from_record(record: UnitRecord) -> RetrievalUnit:
    return RetrievalUnit(
        id=record.id,
        text=record.text,
        source=record.source,
        locator=record.locator,
        document_type=record.document_type,
        embedding=record.embedding or None,
    )


class KnowledgeCache:
    """Loads and saves the embedded knowledge base."""

    def __init__(
        self,
        cache_dir: Path = None,
        bundled_path: Optional[Path] = None,
        embedding_model: str = None,
    ):
        """Initialize the cache.

        Args:
            cache_dir: Writable directory for the cache file (default: DATA_DIR)
            bundled_path: Read-only snapshot shipped with the package
            embedding_model: Model name recorded in saved files
        """
        self.cache_dir = Path(cache_dir or config.DATA_DIR)
        self.cache_path = self.cache_dir / config.CACHE_FILE_NAME
        self.bundled_path = Path(bundled_path) if bundled_path else config.BUNDLED_CACHE_PATH
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

        logger.debug(
            "knowledge_cache_initialized",
            cache_path=str(self.cache_path),
            bundled_path=str(self.bundled_path),
        )

    def _candidates(self) -> List[Path]:
        """Cache files in load-preference order (bundled snapshot first)."""
        paths = []
        for path in (self.bundled_path, self.cache_path):
            if path is not None and path.is_file() and path not in paths:
                paths.append(path)
        return paths

    def cache_exists(self) -> bool:
        """Check if any cache file (bundled or writable) exists."""
        return bool(self._candidates())

    def cache_timestamp(self) -> float:
        """Modification time of the writable cache file (0 if absent)."""
        try:
            return self.cache_path.stat().st_mtime
        except OSError:
            return 0.0

    def _read(self, path: Path) -> List[RetrievalUnit]:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        version = raw.get("version") if isinstance(raw, dict) else None
        if version != config.CACHE_SCHEMA_VERSION:
            raise CacheSchemaError(
                f"Cache schema version {version!r} is not supported "
                f"(expected {config.CACHE_SCHEMA_VERSION})"
            )

        document = CacheFile.model_validate(raw)

        seen = set()
        for record in document.units:
            if record.id in seen:
                raise CacheSchemaError(f"Duplicate retrieval unit id in cache: {record.id}")
            seen.add(record.id)

        return [_from_record(record) for record in document.units]

    def load_from_file(self) -> List[RetrievalUnit]:
        """Load units from the preferred cache file.

        Unreadable or incompatible files are logged and skipped; an empty list
        means a cache miss.

        Returns:
            List of RetrievalUnit objects with their embeddings
        """
        for path in self._candidates():
            try:
                units = self._read(path)
            except (OSError, ValueError, ValidationError, CacheSchemaError) as e:
                logger.warning(
                    "knowledge_cache_unreadable",
                    path=str(path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            logger.info("knowledge_cache_loaded", path=str(path), unit_count=len(units))
            return units

        logger.info("knowledge_cache_miss", cache_path=str(self.cache_path))
        return []

    def save_to_file(self, units: List[RetrievalUnit]) -> bool:
        """Persist units atomically to the writable cache file.

        Failures are logged; the in-memory store stays usable.

        Args:
            units: Units to persist (with embeddings)

        Returns:
            True if the file was written
        """
        document = CacheFile(
            version=config.CACHE_SCHEMA_VERSION,
            created_at=datetime.now(timezone.utc).isoformat(),
            embedding_model=self.embedding_model,
            unit_count=len(units),
            units=[_to_record(unit) for unit in units],
        )

        tmp_path = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.cache_dir), prefix=".kb-", suffix=".json.tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document.model_dump(mode="json"), f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.cache_path)
            tmp_path = None
        except OSError as e:
            logger.error(
                "knowledge_cache_save_failed",
                path=str(self.cache_path),
                error=str(e),
            )
            return False
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.info(
            "knowledge_cache_saved",
            path=str(self.cache_path),
            unit_count=len(units),
        )
        return True

    def clear_cache(self) -> None:
        """Delete the writable cache file (the bundled snapshot is read-only)."""
        try:
            if self.cache_path.exists():
                self.cache_path.unlink()
                logger.info("knowledge_cache_cleared", path=str(self.cache_path))
        except OSError as e:
            logger.error("knowledge_cache_clear_failed", path=str(self.cache_path), error=str(e))
