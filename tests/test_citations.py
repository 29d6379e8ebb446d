"""
Tests for source name formatting and citation rendering
"""

import pytest

from contextrag.chunk import Chunk
from contextrag.citations import (
    CitationFormat,
    build_citation,
    format_source_name,
    generate_citations,
    render_citation,
    resolve_citation_format,
)


class TestFormatSourceName:
    """Test document name normalization"""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Fund_Manager_Glossary_v2.pdf", "Fund Manager Glossary v2"),
            ("userGuide.PDF", "User Guide"),
            ("fund manager user guide V 3.1", "Fund Manager User Guide v3.1"),
            ("Operations Guide", "Operations Guide"),
        ],
    )
    def test_format(self, raw, expected):
        assert format_source_name(raw) == expected

    def test_missing_source(self):
        assert format_source_name(None) == "Unknown Source"
        assert format_source_name("") == "Unknown Source"


class TestCitations:
    """Test citation formats and numbering"""

    def test_inline_citation(self, chunk_by_id):
        citation = build_citation(chunk_by_id["fund-hierarchy"], 1, "inline")

        assert citation.formatted == "(Guide User Guide, p.12)"
        assert citation.source == "User Guide"
        assert citation.section == "Fund Hierarchy"

    def test_other_formats(self):
        assert render_citation(2, "User Guide", 12, "Fund Hierarchy", "detailed") == (
            "(Source: User Guide, Page: 12, Section: Fund Hierarchy)"
        )
        assert render_citation(2, "User Guide", 12, "", CitationFormat.ACADEMIC) == "[User Guide, p.12]"
        assert render_citation(2, "User Guide", 12, "", "numbered") == "[2]"

    def test_unknown_format_renders_inline(self):
        assert resolve_citation_format("harvard") == CitationFormat.INLINE
        assert resolve_citation_format(None) == CitationFormat.INLINE
        assert render_citation(1, "User Guide", 3, "", "harvard") == "(Guide User Guide, p.3)"

    def test_missing_page_and_filename_fallback(self):
        chunk = Chunk(chunk_id="a", content="x", filename="Ops_Manual.pdf", subheading="Closing")

        citation = build_citation(chunk, 4, "detailed")

        assert citation.page == "N/A"
        assert citation.formatted == "(Source: Ops Manual, Page: N/A, Section: Closing)"

    def test_generate_numbers_in_order(self, corpus):
        citations = generate_citations(corpus[:3], "numbered")

        assert [c.number for c in citations] == [1, 2, 3]
        assert [c.formatted for c in citations] == ["[1]", "[2]", "[3]"]
        assert [c.chunk_id for c in citations] == ["fund-toc", "fund-create", "fund-hierarchy"]
        assert citations[0].to_dict()["chunk_id"] == "fund-toc"
