"""Unit tests for corpus discovery and document processing."""
import pytest

from course_rag.rag.chunker import TextChunker
from course_rag.rag.extractors import ExtractionError, extract
from course_rag.rag.ingest import DocumentProcessor
from course_rag.rag.models import DocumentType


@pytest.fixture
def corpus(tmp_path):
    root = tmp_path / "materials"
    root.mkdir()
    (root / "b_notes.txt").write_text("Loops repeat statements.", encoding="utf-8")
    (root / "a_intro.txt").write_text("Closures capture variables.", encoding="utf-8")
    (root / "ignored.md").write_text("# not a course format", encoding="utf-8")
    return root


def make_processor(root, **kwargs):
    return DocumentProcessor(
        corpus_dir=root, chunker=TextChunker(chunk_size=500, chunk_overlap=50), **kwargs
    )


@pytest.mark.unit
class TestDiscovery:
    def test_walk_sorted_supported_only(self, corpus):
        documents = make_processor(corpus).discover_documents()
        assert [p.name for p in documents] == ["a_intro.txt", "b_notes.txt"]

    def test_manifest_order(self, corpus):
        (corpus / "course_materials.txt").write_text(
            "# lecture order\nb_notes.txt\n\na_intro.txt\n", encoding="utf-8"
        )
        documents = make_processor(corpus).discover_documents()
        assert [p.name for p in documents] == ["b_notes.txt", "a_intro.txt"]

    def test_missing_corpus_dir(self, tmp_path):
        assert make_processor(tmp_path / "missing").discover_documents() == []


@pytest.mark.unit
class TestProcessing:
    def test_process_all(self, corpus):
        processor = make_processor(corpus)
        units = processor.process_all()

        assert [u.id for u in units] == ["a_intro.txt_p1_c0", "b_notes.txt_p1_c0"]
        assert units[0].document_type is DocumentType.TXT
        assert processor.stats["files_processed"] == 2
        assert processor.stats["units_created"] == 2

    def test_failing_document_is_isolated(self, corpus):
        def extractor(path, document_type):
            if path.name == "a_intro.txt":
                raise ExtractionError("corrupt file")
            return extract(path, document_type)

        processor = make_processor(corpus, extractor=extractor)
        units = processor.process_all()

        assert [u.source for u in units] == ["b_notes.txt"]
        assert processor.stats["files_failed"] == 1
        assert processor.stats["files_processed"] == 1

    def test_manifest_with_missing_and_unsupported_entries(self, corpus):
        (corpus / "course_materials.txt").write_text(
            "gone.pdf\nignored.md\na_intro.txt\n", encoding="utf-8"
        )
        processor = make_processor(corpus)
        units = processor.process_all()

        assert [u.source for u in units] == ["a_intro.txt"]
        assert processor.stats["files_failed"] == 2

    def test_empty_document_skipped(self, corpus):
        (corpus / "c_empty.txt").write_text("   \n", encoding="utf-8")
        processor = make_processor(corpus)
        processor.process_all()
        assert processor.stats["files_skipped"] == 1

    def test_unsupported_type_raises(self, corpus):
        with pytest.raises(ValueError):
            make_processor(corpus).process_document(corpus / "ignored.md")

    def test_results_memoised_until_cleared(self, corpus):
        calls = []

        def extractor(path, document_type):
            calls.append(path.name)
            return extract(path, document_type)

        processor = make_processor(corpus, extractor=extractor)
        processor.process_all()
        processor.process_all()
        assert calls == ["a_intro.txt", "b_notes.txt"]

        processor.clear_cache()
        processor.process_all()
        assert len(calls) == 4

    def test_progress_callback(self, corpus):
        progress = []
        processor = make_processor(
            corpus, progress_callback=lambda current, total, path: progress.append((current, total))
        )
        processor.process_all()
        assert progress == [(1, 2), (2, 2)]

    def test_nested_source_uses_relative_path(self, corpus):
        (corpus / "week1").mkdir()
        (corpus / "week1" / "recap.txt").write_text("Recap text.", encoding="utf-8")

        units = make_processor(corpus).process_all()

        assert "week1/recap.txt" in {u.source for u in units}


@pytest.mark.unit
class TestExtract:
    def test_txt(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes("Café notes\n".encode("utf-8") + b"\xff")
        segments = extract(path, DocumentType.TXT)
        assert segments[0][0] == 1
        assert segments[0][1].startswith("Café notes")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            extract(tmp_path / "missing.pdf", DocumentType.PDF)

    def test_corrupt_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")
        with pytest.raises(ExtractionError):
            extract(path, DocumentType.PDF)
