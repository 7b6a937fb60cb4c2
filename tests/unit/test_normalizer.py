"""Unit tests for text normalization."""
import pytest

from course_rag.rag.normalizer import normalize


@pytest.mark.unit
class TestNormalize:
    def test_none_and_empty(self):
        assert normalize(None) == ""
        assert normalize("") == ""
        assert normalize("   \n\t ") == ""

    def test_line_endings_become_lf(self):
        assert normalize("a\r\nb\rc") == "a\nb\nc"

    def test_control_characters_removed(self):
        assert normalize("he\x00llo\x07 wor\x7fld\x9b") == "hello world"

    def test_tab_and_newline_kept(self):
        assert normalize("a\tb\nc") == "a\tb\nc"

    def test_newline_structure_preserved_by_default(self):
        assert normalize("  Title\n\n  body text  ") == "Title\n\n  body text"

    def test_collapse_whitespace(self):
        assert normalize("a  b\n\n c\t\td", collapse_whitespace=True) == "a b c d"

    def test_non_ascii_text_kept(self):
        assert normalize("函数是一等公民。 café") == "函数是一等公民。 café"

    @pytest.mark.parametrize("collapse", [False, True])
    @pytest.mark.parametrize(
        "raw",
        [
            "  mixed\r\n line\x01 endings \r ",
            "\x00\x00",
            "tabs\t\tand   spaces\n\n\nnewlines",
            "一二三\r\n四五",
        ],
    )
    def test_idempotent(self, raw, collapse):
        once = normalize(raw, collapse_whitespace=collapse)
        assert normalize(once, collapse_whitespace=collapse) == once
