"""Ingest pipeline turning course materials into retrieval units.

Orchestrates:
- File discovery (manifest or directory walk)
- Text extraction
- Chunking
"""
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import structlog

from course_rag import config
from course_rag.rag import extractors
from course_rag.rag.chunker import TextChunker, get_chunker
from course_rag.rag.models import DocumentType, RetrievalUnit

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Path], None]


class DocumentProcessor:
    """Processes every document of the corpus into retrieval units."""

    def __init__(
        self,
        corpus_dir: Path = None,
        chunker: Optional[TextChunker] = None,
        extractor: Callable = None,
        manifest_name: str = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """Initialize the document processor.

        Args:
            corpus_dir: Directory containing course materials (default from config)
            chunker: Text chunker (default: shared chunker from config)
            extractor: ``extract(path, document_type)`` callable
            manifest_name: File listing the documents to load, one per line
            progress_callback: Default callback function(current, total, file_path)
        """
        self.corpus_dir = Path(corpus_dir or config.CORPUS_DIR)
        self.chunker = chunker or get_chunker()
        self.extractor = extractor or extractors.extract
        self.manifest_name = manifest_name or config.CORPUS_MANIFEST
        self.progress_callback = progress_callback

        self._document_cache: Dict[Tuple[str, float], List[RetrievalUnit]] = {}
        self.stats = self._empty_stats()

        logger.info(
            "document_processor_initialized",
            corpus_dir=str(self.corpus_dir),
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "files_processed": 0,
            "files_failed": 0,
            "files_skipped": 0,
            "units_created": 0,
        }

    def discover_documents(self) -> List[Path]:
        """List the documents to process, in processing order.

        Uses the manifest file when the corpus root has one, otherwise every
        supported file under the corpus root.

        Returns:
            List of document paths
        """
        if not self.corpus_dir.exists():
            logger.warning("corpus_dir_not_found", corpus_dir=str(self.corpus_dir))
            return []

        manifest = self.corpus_dir / self.manifest_name
        if manifest.is_file():
            documents = []
            for line in manifest.read_text(encoding="utf-8").splitlines():
                name = line.strip()
                if name and not name.startswith("#"):
                    documents.append(self.corpus_dir / name)
            logger.info(
                "documents_listed_from_manifest",
                manifest=str(manifest),
                count=len(documents),
            )
            return documents

        documents = sorted(
            p
            for p in self.corpus_dir.rglob("*")
            if p.is_file() and DocumentType.from_path(p) is not None
        )
        logger.info(
            "documents_discovered",
            corpus_dir=str(self.corpus_dir),
            count=len(documents),
        )
        return documents

    def _source_name(self, path: Path) -> str:
        try:
            return path.relative_to(self.corpus_dir).as_posix()
        except ValueError:
            return path.name

    def process_document(self, path: Path) -> List[RetrievalUnit]:
        """Extract and chunk a single document.

        Args:
            path: Path to the document

        Returns:
            List of RetrievalUnit objects (empty if nothing was extractable)

        Raises:
            FileNotFoundError: If the document doesn't exist
            ValueError: If the document type is unsupported
            ExtractionError: If the parser fails
        """
        document_type = DocumentType.from_path(path)
        if document_type is None:
            raise ValueError(f"Unsupported document type: {path.suffix or path.name}")

        cache_key = (str(path), path.stat().st_mtime)
        cached = self._document_cache.get(cache_key)
        if cached is not None:
            logger.debug("document_cache_hit", path=str(path), unit_count=len(cached))
            return list(cached)

        segments = self.extractor(path, document_type)
        units = self.chunker.chunk_document(self._source_name(path), document_type, segments)

        self._document_cache[cache_key] = units
        return list(units)

    def process_all(
        self, progress_callback: Optional[ProgressCallback] = None
    ) -> List[RetrievalUnit]:
        """Process every document of the corpus.

        A failing document is logged and skipped; the rest of the corpus is
        still processed.

        Args:
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            All retrieval units, in document order
        """
        progress_callback = progress_callback or self.progress_callback
        self.stats = self._empty_stats()
        documents = self.discover_documents()

        all_units: List[RetrievalUnit] = []
        seen = set()
        for idx, path in enumerate(documents, 1):
            if progress_callback:
                progress_callback(idx, len(documents), path)

            if path in seen:
                logger.warning("duplicate_document_skipped", path=str(path))
                self.stats["files_skipped"] += 1
                continue
            seen.add(path)

            try:
                units = self.process_document(path)
            except Exception as e:
                logger.error(
                    "document_processing_failed",
                    path=str(path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.stats["files_failed"] += 1
                continue

            if not units:
                logger.warning("no_units_created", path=str(path))
                self.stats["files_skipped"] += 1
                continue

            all_units.extend(units)
            self.stats["files_processed"] += 1
            self.stats["units_created"] += len(units)

        logger.info("corpus_processed", stats=self.stats)
        return all_units

    def clear_cache(self) -> None:
        """Forget memoised per-document results."""
        self._document_cache.clear()
