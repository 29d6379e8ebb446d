"""
Context Expansion Module
Adds hierarchically and lexically related chunks around the retrieved candidates
"""

from typing import List, Dict, Any, Tuple
from dataclasses import dataclass
from loguru import logger

from .chunk import Chunk, deduplicate_by_id
from .errors import StoreQueryError
from .store import ChunkStore
from .text_similarity import extract_keywords, merge_keywords, lexical_overlap_score


PARENT_SCORE_FACTOR = 0.8
CHILD_SCORE_FACTOR = 0.9


@dataclass
class ExpansionReport:
    """What context expansion did for one request"""
    hierarchical_expansion: bool
    semantic_expansion: bool
    original_count: int
    expanded_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hierarchical_expansion": self.hierarchical_expansion,
            "semantic_expansion": self.semantic_expansion,
            "original_count": self.original_count,
            "expanded_count": self.expanded_count,
        }


class ContextExpander:
    """
    Expands a candidate set with related chunks

    Hierarchical expansion pulls each candidate's parent (score x0.8) and
    children (score x0.9). Semantic expansion runs a keyword search per
    candidate and keeps lexically similar chunks; its similarity is a
    token overlap, not an embedding comparison.
    """

    def __init__(
        self,
        store: ChunkStore,
        semantic_per_seed: int = 2,
        semantic_total: int = 3,
        min_overlap: float = 0.2,
        max_keywords: int = 10,
        keyword_search_limit: int = 10,
        keyword_min_quality: float = 0.4,
    ):
        """
        Initialize context expander

        Args:
            store: Chunk store
            semantic_per_seed: Semantic matches kept per candidate
            semantic_total: Semantic matches kept overall
            min_overlap: Minimum lexical overlap with the seed chunk
            max_keywords: Keywords used per keyword search
            keyword_search_limit: Rows fetched per keyword search
            keyword_min_quality: Minimum quality of keyword search rows
        """
        self.store = store
        self.semantic_per_seed = semantic_per_seed
        self.semantic_total = semantic_total
        self.min_overlap = min_overlap
        self.max_keywords = max_keywords
        self.keyword_search_limit = keyword_search_limit
        self.keyword_min_quality = keyword_min_quality

    def expand(
        self,
        chunks: List[Chunk],
        query: str,
        hierarchical: bool = True,
        semantic: bool = True,
    ) -> Tuple[List[Chunk], ExpansionReport]:
        """
        Expand candidates and deduplicate the result

        Args:
            chunks: Retrieved candidates
            query: User query
            hierarchical: Fetch parents and children
            semantic: Fetch keyword-related chunks

        Returns:
            Tuple of (candidates followed by expansions, ExpansionReport)
        """
        expanded = list(chunks)

        if hierarchical:
            expanded.extend(self.expand_hierarchical(chunks))

        if semantic:
            expanded.extend(self.expand_semantic(chunks, query))

        # Retrieved candidates come first, so they win over their expansions
        unique = deduplicate_by_id(expanded, keep="first")

        report = ExpansionReport(
            hierarchical_expansion=hierarchical,
            semantic_expansion=semantic,
            original_count=len(chunks),
            expanded_count=len(unique),
        )
        logger.info(f"Context expansion: {report.original_count} -> {report.expanded_count} chunks")

        return unique, report

    def expand_hierarchical(self, chunks: List[Chunk]) -> List[Chunk]:
        """Parents and children of every candidate"""
        related: List[Chunk] = []

        for chunk in chunks:
            try:
                if chunk.parent_chunk_id:
                    for parent in self.store.fetch_by_ids([chunk.parent_chunk_id]):
                        related.append(
                            parent.with_scores(
                                similarity_score=chunk.similarity_score * PARENT_SCORE_FACTOR,
                                retrieval_strategy=chunk.retrieval_strategy,
                                annotations={"expansion_type": "parent", "expanded_from": chunk.chunk_id},
                            )
                        )

                if chunk.child_chunk_ids:
                    for child in self.store.fetch_by_ids(chunk.child_chunk_ids):
                        related.append(
                            child.with_scores(
                                similarity_score=chunk.similarity_score * CHILD_SCORE_FACTOR,
                                retrieval_strategy=chunk.retrieval_strategy,
                                annotations={"expansion_type": "child", "expanded_from": chunk.chunk_id},
                            )
                        )
            except StoreQueryError as e:
                logger.warning(f"Hierarchical expansion failed for {chunk.chunk_id}: {e}")

        logger.debug(f"Hierarchical expansion found {len(related)} related chunks")
        return related

    def expand_semantic(self, chunks: List[Chunk], query: str) -> List[Chunk]:
        """Keyword-related chunks not already among the candidates, capped overall"""
        if not chunks:
            return []

        existing_ids = {chunk.chunk_id for chunk in chunks}
        query_keywords = extract_keywords(query)

        matches: List[Chunk] = []
        for chunk in chunks:
            keywords = merge_keywords(query_keywords, extract_keywords(chunk.content))
            matches.extend(self._similar_to(chunk, keywords, existing_ids))

        unique = [
            chunk for chunk in deduplicate_by_id(matches, keep="first")
            if chunk.chunk_id not in existing_ids
        ]
        selected = unique[: self.semantic_total]

        logger.debug(f"Semantic expansion found {len(selected)} additional chunks")
        return selected

    def _similar_to(self, seed: Chunk, keywords: List[str], exclude_ids: set) -> List[Chunk]:
        if not keywords:
            return []

        try:
            rows = self.store.lexical_search(
                " ".join(keywords[: self.max_keywords]),
                top_k=self.keyword_search_limit + 1,
                min_quality_score=self.keyword_min_quality,
            )
        except StoreQueryError as e:
            logger.warning(f"Semantic expansion search failed for {seed.chunk_id}: {e}")
            return []

        candidates = []
        for row in rows:
            if row.chunk_id == seed.chunk_id or row.chunk_id in exclude_ids:
                continue
            overlap = lexical_overlap_score(seed.content, row.content)
            if overlap <= self.min_overlap:
                continue
            candidates.append(
                row.with_scores(
                    similarity_score=overlap,
                    retrieval_strategy=seed.retrieval_strategy,
                    annotations={
                        "expansion_type": "semantic",
                        "expanded_from": seed.chunk_id,
                        "semantic_relevance": row.similarity_score,
                    },
                )
            )

        candidates.sort(
            key=lambda c: c.similarity_score + c.annotations["semantic_relevance"],
            reverse=True,
        )
        return candidates[: self.semantic_per_seed]
