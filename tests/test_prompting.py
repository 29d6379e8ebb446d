"""
Tests for prompt assembly, templates and token budget enforcement
"""

import pytest
from unittest.mock import Mock, patch

from contextrag.chunk import Chunk
from contextrag.context import Message
from contextrag.errors import PromptAssemblyError
from contextrag.options import PromptOptions
from contextrag.prompt_templates import TemplateType, customize_template, TEMPLATES
from contextrag.prompting import (
    PromptAssembler,
    estimate_tokens,
    truncate_content,
)


@pytest.fixture
def assembler():
    return PromptAssembler()


@pytest.fixture
def ranked_chunks(corpus):
    return [
        chunk.with_scores(relevance_score=0.9 - 0.1 * idx)
        for idx, chunk in enumerate(corpus[1:6])
    ]


def long_chunk(chunk_id: str, relevance: float, sentences: int = 60) -> Chunk:
    content = " ".join(f"Sentence {i} about fund valuation and reporting rules." for i in range(sentences))
    return Chunk(
        chunk_id=chunk_id,
        content=content,
        source_title="User Guide",
        page_number=5,
        relevance_score=relevance,
    )


class TestTextHelpers:
    """Test token estimation and truncation"""

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_short_content_is_unchanged(self):
        assert truncate_content("Short text.", 10) == "Short text."

    def test_truncates_at_sentence_boundary(self):
        content = "A" * 30 + ". " + "B" * 30

        assert truncate_content(content, 10) == "A" * 30 + "."

    def test_hard_cut_when_no_late_period(self):
        content = "A. " + "B" * 60

        truncated = truncate_content(content, 10)

        assert truncated == content[:40] + "..."


class TestTemplateSelection:
    """Test automatic template selection"""

    @pytest.mark.parametrize(
        "query, expected",
        [
            ("What is NAV?", TemplateType.DEFINITION),
            ("How to run the rollforward", TemplateType.PROCEDURE),
            ("Difference between open and closed funds", TemplateType.COMPARISON),
            ("List all fund types", TemplateType.LIST),
            ("Fix the valuation error", TemplateType.TROUBLESHOOTING),
            ("Fund hierarchy levels", TemplateType.STANDARD),
        ],
    )
    def test_patterns(self, assembler, query, expected):
        assert assembler.select_template(query, []) == expected

    def test_conversational_chunks_select_contextual(self, assembler):
        chunk = Chunk(chunk_id="a", content="x", annotations={"conversational": True})
        assert assembler.select_template("And the levels?", [chunk]) == TemplateType.CONTEXTUAL

    def test_customize_template(self):
        text = customize_template(TEMPLATES[TemplateType.PROCEDURE], "procedure", 3, has_conversation=False)

        assert "step-by-step procedure request, 3 context sections, without prior context" in text
        assert text.endswith("Provide step-by-step instructions when appropriate.")


class TestPromptAssembly:
    """Test the assembled prompt and its metadata"""

    def test_prompt_structure(self, assembler, ranked_chunks):
        result = assembler.assemble_rag_prompt("What is NAV?", ranked_chunks)

        system = result.prompt.system
        assert system.startswith(TEMPLATES[TemplateType.DEFINITION].split("\n")[0])
        assert "RETRIEVED CONTEXT FROM FUND MANAGEMENT GUIDES:" in system
        assert "[Context 1] (Guide User Guide, p.7)" in system
        assert result.prompt.user.startswith("USER QUERY: What is NAV?")
        assert len(result.citations) == len(ranked_chunks)
        assert [c.number for c in result.citations] == list(range(1, len(ranked_chunks) + 1))

    def test_chunks_ordered_by_relevance(self, assembler, ranked_chunks):
        result = assembler.assemble_rag_prompt("Fund hierarchy", list(reversed(ranked_chunks)))

        assert [c.chunk_id for c in result.citations] == [c.chunk_id for c in ranked_chunks]
        assert result.processed_chunks[0]["chunk_id"] == "fund-create"

    def test_metadata(self, assembler, ranked_chunks):
        history = [{"role": "user", "content": "Hi"}, Message("assistant", "Hello, how can I help?")]

        result = assembler.assemble_rag_prompt("What is NAV?", ranked_chunks, history, {"citation_format": "academic"})

        metadata = result.metadata
        assert metadata["template_type"] == "definition"
        assert metadata["citation_format"] == "academic"
        assert metadata["chunks_used"] == len(ranked_chunks)
        assert metadata["citations_generated"] == len(ranked_chunks)
        assert metadata["conversation_turns"] == 2
        assert metadata["token_validation"]["is_valid"]
        assert metadata["estimated_tokens"] == metadata["token_validation"]["total_tokens"]
        assert "CONVERSATION HISTORY:\nUser: Hi\nAssistant: Hello, how can I help?" in result.prompt.system

    def test_citation_summary(self, assembler, ranked_chunks):
        result = assembler.assemble_rag_prompt(
            "Fund hierarchy", ranked_chunks, options=PromptOptions(include_citation_summary=True)
        )

        summary = result.prompt.system.split("SOURCES REFERENCED:")[1]
        assert "1. User Guide" in summary
        assert "2. Fund Manager Glossary v2" in summary

    def test_condensed_content_is_preferred(self, assembler):
        chunk = Chunk(chunk_id="a", content="full text", annotations={"condensed_content": "condensed text"})

        result = assembler.assemble_rag_prompt("Fund hierarchy", [chunk])

        assert "condensed text" in result.prompt.system
        assert "full text" not in result.prompt.system

    def test_per_chunk_cap(self, assembler):
        chunk = long_chunk("long", 0.9)

        result = assembler.assemble_rag_prompt("Fund hierarchy", [chunk], options={"max_tokens_per_chunk": 50})

        context = result.prompt.system.split("[Context 1] (Guide User Guide, p.5)\n")[1]
        assert len(context.split("\n")[0]) <= 50 * 4 + 3

    def test_content_filters(self, assembler, ranked_chunks):
        options = PromptOptions(
            filter_content=True,
            min_quality_score=0.75,
            preferred_content_types=["definition"],
        )

        result = assembler.assemble_rag_prompt("Fund hierarchy", ranked_chunks, options=options)

        ids = [c.chunk_id for c in result.citations]
        assert ids[0] == "nav-definition"
        assert set(ids) == {"nav-definition", "fund-create", "fund-hierarchy"}

    def test_explicit_template(self, assembler, ranked_chunks):
        result = assembler.assemble_rag_prompt("What is NAV?", ranked_chunks, options={"template_type": "list"})
        assert result.metadata["template_type"] == "list"

    def test_empty_chunks(self, assembler):
        result = assembler.assemble_rag_prompt("What is NAV?", [])

        assert result.citations == []
        assert result.metadata["chunks_used"] == 0

    def test_unexpected_failure_raises_assembly_error(self, assembler, ranked_chunks):
        with patch("contextrag.prompting.generate_citations", side_effect=RuntimeError("boom")):
            with pytest.raises(PromptAssemblyError):
                assembler.assemble_rag_prompt("What is NAV?", ranked_chunks)

    def test_tokenizer_counts_when_available(self):
        encoding = Mock()
        encoding.encode.return_value = list(range(7))
        with patch("contextrag.prompting.tiktoken.get_encoding", return_value=encoding):
            assembler = PromptAssembler()

        assert assembler.count_tokens("anything") == 7

    def test_character_approximation_without_tokenizer(self, assembler):
        assert assembler.tokenizer is None
        assert assembler.count_tokens("a" * 40) == 10


class TestTokenBudget:
    """Test validation and budget fitting"""

    def test_validation_numbers(self, assembler, ranked_chunks):
        options = PromptOptions(context_window_size=8000, reserved_tokens_for_response=1000)

        result = assembler.assemble_rag_prompt("What is NAV?", ranked_chunks, options=options)

        validation = result.metadata["token_validation"]
        assert validation["max_allowed"] == 7000
        assert validation["total_tokens"] == validation["system_tokens"] + validation["user_tokens"]
        assert validation["exceeds_by"] == 0
        assert not validation["adjusted"]

    def test_over_budget_prompt_is_shrunk(self, assembler):
        chunks = [long_chunk(f"c{i}", 0.9 - 0.05 * i) for i in range(8)]
        options = PromptOptions(context_window_size=2500, reserved_tokens_for_response=500)

        result = assembler.assemble_rag_prompt("What is NAV?", chunks, options=options)

        validation = result.metadata["token_validation"]
        assert validation["adjusted"]
        assert validation["adjustments"]
        assert result.metadata["template_type"] == "standard"
        assert validation["is_valid"] or validation["exceeds_by"] > 0
        assert validation["total_tokens"] <= 2000 or not validation["is_valid"]
        assert result.metadata["chunks_used"] == len(result.citations)
        assert result.metadata["chunks_used"] <= len(chunks)

    def test_budget_fit_succeeds_for_reasonable_window(self, assembler):
        chunks = [long_chunk(f"c{i}", 0.9 - 0.05 * i) for i in range(6)]
        history = [Message("user", "Earlier question " * 100), Message("assistant", "Earlier answer " * 100)]
        options = PromptOptions(context_window_size=3000, reserved_tokens_for_response=500)

        result = assembler.assemble_rag_prompt("Fund hierarchy", chunks, history, options)

        validation = result.metadata["token_validation"]
        assert validation["adjusted"]
        assert validation["is_valid"]
        assert validation["total_tokens"] <= 2500

    def test_impossible_budget_reports_invalid(self, assembler, ranked_chunks):
        options = PromptOptions(context_window_size=300, reserved_tokens_for_response=200)

        result = assembler.assemble_rag_prompt("What is NAV?", ranked_chunks, options=options)

        validation = result.metadata["token_validation"]
        assert validation["adjusted"]
        assert not validation["is_valid"]
        assert validation["exceeds_by"] > 0
