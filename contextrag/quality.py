"""
Context Quality Optimization
Coherence scoring, redundancy removal and complementarity-driven selection
"""

from typing import List, Dict, Any, Tuple
from dataclasses import dataclass
import numpy as np
from loguru import logger

from .chunk import Chunk
from .text_similarity import lexical_overlap_score, query_coverage


@dataclass(frozen=True)
class ComplementarityWeights:
    """Weights of the pairwise complementarity score"""
    content_difference: float = 0.4
    source_diversity: float = 0.2
    scale_diversity: float = 0.2
    topic_diversity: float = 0.2


DEFAULT_COMPLEMENTARITY_WEIGHTS = ComplementarityWeights()

REDUNDANCY_THRESHOLD = 0.9
MAX_SELECTED_CHUNKS = 5
# Candidate sets this small skip complementarity selection
MIN_CANDIDATES_FOR_SELECTION = 3
SELECTION_COMPLEMENTARITY_WEIGHT = 0.7
SELECTION_RELEVANCE_WEIGHT = 0.3

TOPIC_TERMS = [
    "fund", "investment", "portfolio", "nav", "compliance", "audit",
    "valuation", "performance", "risk", "allocation", "management",
]


def extract_topics(chunk: Chunk) -> List[str]:
    """Heading words longer than 3 characters plus domain terms near the start of the chunk"""
    topics = []
    heading = (chunk.heading or "").lower()
    if heading:
        topics.extend(word for word in heading.split() if len(word) > 3)

    lead = chunk.content[:200].lower()
    topics.extend(term for term in TOPIC_TERMS if term in lead or term in heading)

    return list(dict.fromkeys(topics))


def topic_diversity(topics1: List[str], topics2: List[str]) -> float:
    if not topics1 or not topics2:
        return 0.5
    set1, set2 = set(topics1), set(topics2)
    return 1 - len(set1 & set2) / len(set1 | set2)


@dataclass
class QualityReport:
    """Quality metrics of the optimized context"""
    overall_quality: float
    average_relevance: float
    average_coherence: float
    redundant_removed: int
    selected_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_quality": self.overall_quality,
            "average_relevance": self.average_relevance,
            "average_coherence": self.average_coherence,
            "redundant_removed": self.redundant_removed,
            "selected_count": self.selected_count,
        }


class QualityOptimizer:
    """
    Improves the candidate set before reranking

    Coherence (query word coverage) is recorded but never blocks a chunk.
    Redundancy reduction keeps the earlier of any two chunks whose lexical
    overlap exceeds 0.9. Complementarity selection greedily builds a set of
    at most five chunks that differ in content, source, scale and topic.
    """

    def __init__(
        self,
        weights: ComplementarityWeights = DEFAULT_COMPLEMENTARITY_WEIGHTS,
        redundancy_threshold: float = REDUNDANCY_THRESHOLD,
        max_selected: int = MAX_SELECTED_CHUNKS,
    ):
        self.weights = weights
        self.redundancy_threshold = redundancy_threshold
        self.max_selected = max_selected

    def optimize(self, chunks: List[Chunk], query: str) -> Tuple[List[Chunk], QualityReport]:
        """
        Run coherence scoring, redundancy reduction and complementarity selection

        Args:
            chunks: Candidates in their current order
            query: User query

        Returns:
            Tuple of (selected chunks, QualityReport)
        """
        scored = self.score_coherence(chunks, query)
        unique = self.reduce_redundancy(scored)
        selected = self.maximize_complementarity(unique)

        report = self.report(selected, removed=len(scored) - len(unique))
        logger.info(
            f"Quality optimization: {len(chunks)} -> {len(selected)} chunks "
            f"({report.redundant_removed} redundant, quality {report.overall_quality:.3f})"
        )
        return selected, report

    @staticmethod
    def score_coherence(chunks: List[Chunk], query: str) -> List[Chunk]:
        return [
            chunk.with_scores(annotations={"coherence_score": query_coverage(query, chunk.content)})
            for chunk in chunks
        ]

    def reduce_redundancy(self, chunks: List[Chunk]) -> List[Chunk]:
        kept: List[Chunk] = []
        for chunk in chunks:
            if all(
                lexical_overlap_score(chunk.content, other.content) <= self.redundancy_threshold
                for other in kept
            ):
                kept.append(chunk)
        return kept

    def complementarity(self, chunk1: Chunk, chunk2: Chunk) -> float:
        """Pairwise complementarity in [0, 1]"""
        score = (
            self.weights.content_difference * (1 - lexical_overlap_score(chunk1.content, chunk2.content))
            + self.weights.source_diversity * (chunk1.source_id != chunk2.source_id)
            + self.weights.scale_diversity * (chunk1.scale != chunk2.scale)
            + self.weights.topic_diversity * topic_diversity(extract_topics(chunk1), extract_topics(chunk2))
        )
        return min(1.0, score)

    def complementarity_matrix(self, chunks: List[Chunk]) -> np.ndarray:
        n = len(chunks)
        matrix = np.zeros((n, n))
        for i in range(n):
            for j in range(i + 1, n):
                matrix[i, j] = matrix[j, i] = self.complementarity(chunks[i], chunks[j])
        return matrix

    def maximize_complementarity(self, chunks: List[Chunk]) -> List[Chunk]:
        """
        Greedy complementarity selection

        Starts from the most relevant chunk and repeatedly adds the candidate
        maximizing 0.7 * mean complementarity with the selection
        + 0.3 * similarity. Selected chunks keep their incoming order, so an
        earlier lost-in-middle arrangement survives; each chunk records its
        selection order as ``complementarity_rank``.
        """
        if len(chunks) <= MIN_CANDIDATES_FOR_SELECTION:
            return list(chunks)

        matrix = self.complementarity_matrix(chunks)
        target = min(len(chunks), self.max_selected)

        selected = [max(range(len(chunks)), key=lambda i: chunks[i].similarity_score)]
        remaining = [i for i in range(len(chunks)) if i != selected[0]]

        while len(selected) < target and remaining:
            best = max(
                remaining,
                key=lambda i: SELECTION_COMPLEMENTARITY_WEIGHT * matrix[i, selected].mean()
                + SELECTION_RELEVANCE_WEIGHT * chunks[i].similarity_score,
            )
            selected.append(best)
            remaining.remove(best)

        rank = {idx: position for position, idx in enumerate(selected, start=1)}
        return [
            chunks[idx].with_scores(
                annotations={
                    "complementarity_rank": rank[idx],
                    "complementarity_score": float(matrix[idx, [s for s in selected if s != idx]].mean()),
                }
            )
            for idx in sorted(selected)
        ]

    @staticmethod
    def report(chunks: List[Chunk], removed: int = 0) -> QualityReport:
        if not chunks:
            return QualityReport(0.0, 0.0, 0.0, removed, 0)

        average_relevance = float(np.mean([c.similarity_score for c in chunks]))
        average_quality = float(np.mean([c.quality_score for c in chunks]))
        average_coherence = float(np.mean([c.annotations.get("coherence_score", 0.0) for c in chunks]))

        return QualityReport(
            overall_quality=(average_relevance + average_quality) / 2,
            average_relevance=average_relevance,
            average_coherence=average_coherence,
            redundant_removed=removed,
            selected_count=len(chunks),
        )
