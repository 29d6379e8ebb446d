"""
Chunk Data Model
Read-only document chunks plus the per-request score fields attached during retrieval
"""

from typing import List, Dict, Any, Optional, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime


@dataclass
class Chunk:
    """
    Represents a retrievable document chunk

    Store-owned fields describe the chunk as ingested. Score fields are
    per-request state; pipeline stages never mutate a chunk handed out by the
    store and work on copies made with ``with_scores``.
    """

    chunk_id: str
    content: str
    source_id: str = ""
    version: int = 1
    chunk_index: int = 0
    heading: Optional[str] = None
    subheading: Optional[str] = None
    page_number: Optional[int] = None
    token_count: int = 0
    character_count: int = 0
    quality_score: float = 0.5
    embedding: Optional[List[float]] = None
    parent_chunk_id: Optional[str] = None
    child_chunk_ids: List[str] = field(default_factory=list)
    sibling_chunk_ids: List[str] = field(default_factory=list)
    scale: Optional[str] = None              # document, section or paragraph
    hierarchy_path: List[str] = field(default_factory=list)
    content_type: str = "text"
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_title: Optional[str] = None
    filename: Optional[str] = None
    created_at: Optional[datetime] = None

    # Per-request scoring state
    similarity_score: float = 0.0
    vector_similarity: Optional[float] = None
    text_similarity: Optional[float] = None
    enhanced_score: Optional[float] = None
    relevance_score: Optional[float] = None
    retrieval_strategy: Optional[str] = None
    annotations: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.character_count:
            self.character_count = len(self.content)
        if not self.token_count:
            # Approximate: ~4 chars per token
            self.token_count = len(self.content) // 4

    def with_scores(self, **changes) -> "Chunk":
        """Return a copy with updated fields; annotations are merged, not replaced"""
        annotations = {**self.annotations, **changes.pop("annotations", {})}
        return replace(self, annotations=annotations, **changes)

    @property
    def final_score(self) -> float:
        """Best available score: relevance, then enhanced, then similarity"""
        if self.relevance_score is not None:
            return self.relevance_score
        if self.enhanced_score is not None:
            return self.enhanced_score
        return self.similarity_score

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        """Convert to dictionary (embedding omitted)"""
        data = {
            "chunk_id": self.chunk_id,
            "source_id": self.source_id,
            "source_title": self.source_title,
            "page_number": self.page_number,
            "heading": self.heading,
            "content_type": self.content_type,
            "quality_score": self.quality_score,
            "similarity_score": self.similarity_score,
            "enhanced_score": self.enhanced_score,
            "relevance_score": self.relevance_score,
            "final_score": self.final_score,
            "retrieval_strategy": self.retrieval_strategy,
        }
        if include_content:
            data["content"] = self.content
        return data


def deduplicate_by_id(chunks: Iterable[Chunk], keep: str = "best") -> List[Chunk]:
    """
    Remove repeated chunk_ids

    The position of the first occurrence is preserved so callers that rely on
    retrieval order are not reshuffled.

    Args:
        chunks: Chunks possibly containing the same chunk_id more than once
        keep: "best" keeps the highest-scoring copy, "first" the first one seen

    Returns:
        List with each chunk_id at most once
    """
    best: Dict[str, Chunk] = {}
    order: List[str] = []

    for chunk in chunks:
        existing = best.get(chunk.chunk_id)
        if existing is None:
            best[chunk.chunk_id] = chunk
            order.append(chunk.chunk_id)
        elif keep == "best" and chunk.final_score > existing.final_score:
            best[chunk.chunk_id] = chunk

    return [best[chunk_id] for chunk_id in order]


def sort_by_score(chunks: Iterable[Chunk], attribute: str = "similarity_score") -> List[Chunk]:
    """Sort chunks descending by a score attribute (missing scores count as 0)"""
    return sorted(chunks, key=lambda c: getattr(c, attribute) or 0.0, reverse=True)
