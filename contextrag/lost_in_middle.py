"""
Lost-in-Middle Mitigation
Reorders candidates so relevant chunks and sources are spread across the context
"""

from typing import List, Dict
from loguru import logger

from .chunk import Chunk, sort_by_score


HIGH_RELEVANCE_THRESHOLD = 0.8
MEDIUM_RELEVANCE_THRESHOLD = 0.6


def _round_robin(groups: List[List[Chunk]]) -> List[Chunk]:
    """Take the i-th element of every group in turn until all are exhausted"""
    ordered = []
    longest = max((len(group) for group in groups), default=0)
    for i in range(longest):
        for group in groups:
            if i < len(group):
                ordered.append(group[i])
    return ordered


class LostInMiddleMitigator:
    """
    Two-pass reordering

    1. Split by similarity into high (> 0.8), medium (0.6-0.8] and low
       (<= 0.6) tiers and interleave them one chunk per tier at a time.
    2. Group by source in first-seen order and round-robin across sources.
    """

    def __init__(
        self,
        high_threshold: float = HIGH_RELEVANCE_THRESHOLD,
        medium_threshold: float = MEDIUM_RELEVANCE_THRESHOLD,
    ):
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold

    def interleave_by_relevance(self, chunks: List[Chunk]) -> List[Chunk]:
        ordered = sort_by_score(chunks)
        high = [c for c in ordered if c.similarity_score > self.high_threshold]
        medium = [
            c for c in ordered
            if self.medium_threshold < c.similarity_score <= self.high_threshold
        ]
        low = [c for c in ordered if c.similarity_score <= self.medium_threshold]
        return _round_robin([high, medium, low])

    @staticmethod
    def interleave_by_source(chunks: List[Chunk]) -> List[Chunk]:
        by_source: Dict[str, List[Chunk]] = {}
        for chunk in chunks:
            by_source.setdefault(chunk.source_id, []).append(chunk)
        return _round_robin(list(by_source.values()))

    def mitigate(self, chunks: List[Chunk]) -> List[Chunk]:
        """
        Reorder chunks

        Args:
            chunks: Candidates in any order

        Returns:
            Same chunks, reordered
        """
        if len(chunks) <= 1:
            return list(chunks)

        reordered = self.interleave_by_source(self.interleave_by_relevance(chunks))
        logger.debug(f"Lost-in-middle mitigation reordered {len(reordered)} chunks")
        return reordered
