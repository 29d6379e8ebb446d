"""
Citation Module
Source name normalization and citation rendering for prompt context sections
"""

from enum import Enum
from typing import List, Dict, Any, Optional, Union
from dataclasses import dataclass
import re
from loguru import logger

from .chunk import Chunk


class CitationFormat(str, Enum):
    """Supported citation renderings"""
    INLINE = "inline"
    DETAILED = "detailed"
    ACADEMIC = "academic"
    NUMBERED = "numbered"


CITATION_TEMPLATES: Dict[CitationFormat, str] = {
    CitationFormat.INLINE: "(Guide {source}, p.{page})",
    CitationFormat.DETAILED: "(Source: {source}, Page: {page}, Section: {section})",
    CitationFormat.ACADEMIC: "[{source}, p.{page}]",
    CitationFormat.NUMBERED: "[{number}]",
}

UNKNOWN_SOURCE = "Unknown Source"
MISSING_PAGE = "N/A"


def resolve_citation_format(value: Union[str, CitationFormat, None]) -> CitationFormat:
    """Citation format by name; unknown names render inline"""
    if value is None:
        return CitationFormat.INLINE
    try:
        return CitationFormat(value)
    except ValueError:
        logger.warning(f"Unknown citation format '{value}', using inline")
        return CitationFormat.INLINE


def format_source_name(raw_source: Optional[str]) -> str:
    """
    Normalize a document name for citations

    Strips a .pdf extension, turns underscores into spaces, splits camelCase
    and standardizes common guide names and version markers.

    Args:
        raw_source: Source title or filename

    Returns:
        Human-readable source name
    """
    if not raw_source:
        return UNKNOWN_SOURCE

    formatted = re.sub(r"\.pdf$", "", raw_source, flags=re.IGNORECASE)
    formatted = formatted.replace("_", " ")
    formatted = re.sub(r"([a-z])([A-Z])", r"\1 \2", formatted)

    formatted = re.sub(r"user guide", "User Guide", formatted, count=1, flags=re.IGNORECASE)
    formatted = re.sub(r"fund manager", "Fund Manager", formatted, count=1, flags=re.IGNORECASE)
    formatted = re.sub(r"v\s*(\d+\.?\d*)", r"v\1", formatted, count=1, flags=re.IGNORECASE)

    return formatted


@dataclass
class Citation:
    """Rendered attribution for one context chunk"""
    number: int
    source: str
    page: Union[int, str]
    section: str
    chunk_id: str
    formatted: str
    relevance_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "number": self.number,
            "source": self.source,
            "page": self.page,
            "section": self.section,
            "chunk_id": self.chunk_id,
            "formatted": self.formatted,
            "relevance_score": self.relevance_score,
        }


def render_citation(
    number: int,
    source: str,
    page: Union[int, str],
    section: str,
    citation_format: Union[str, CitationFormat] = CitationFormat.INLINE,
) -> str:
    """Render citation fields with the given format"""
    template = CITATION_TEMPLATES[resolve_citation_format(citation_format)]
    return template.format(number=number, source=source, page=page, section=section)


def build_citation(
    chunk: Chunk,
    number: int,
    citation_format: Union[str, CitationFormat] = CitationFormat.INLINE,
) -> Citation:
    """Citation for a chunk at a 1-based position in the context section"""
    source = format_source_name(chunk.source_title or chunk.filename)
    page = chunk.page_number if chunk.page_number is not None else MISSING_PAGE
    section = chunk.heading or chunk.subheading or ""

    return Citation(
        number=number,
        source=source,
        page=page,
        section=section,
        chunk_id=chunk.chunk_id,
        formatted=render_citation(number, source, page, section, citation_format),
        relevance_score=chunk.relevance_score,
    )


def generate_citations(
    chunks: List[Chunk],
    citation_format: Union[str, CitationFormat] = CitationFormat.INLINE,
) -> List[Citation]:
    """
    Build one citation per chunk, numbered in context order

    Args:
        chunks: Chunks in the order they appear in the prompt
        citation_format: inline, detailed, academic or numbered

    Returns:
        List of citations
    """
    citation_format = resolve_citation_format(citation_format)
    citations = [build_citation(chunk, idx, citation_format) for idx, chunk in enumerate(chunks, start=1)]
    logger.debug(f"Generated {len(citations)} {citation_format.value} citations")
    return citations
