"""
Tests for context expansion, lost-in-middle mitigation and quality optimization
"""

import numpy as np
import pytest
from itertools import combinations
from unittest.mock import MagicMock

from contextrag.chunk import Chunk
from contextrag.context_expansion import ContextExpander, PARENT_SCORE_FACTOR, CHILD_SCORE_FACTOR
from contextrag.errors import StoreQueryError
from contextrag.lost_in_middle import LostInMiddleMitigator
from contextrag.quality import QualityOptimizer, extract_topics, topic_diversity
from contextrag.store import ChunkStore
from contextrag.text_similarity import lexical_overlap_score


def mean_pairwise_overlap(chunks):
    return float(np.mean([lexical_overlap_score(a.content, b.content) for a, b in combinations(chunks, 2)]))


class TestContextExpander:
    """Test hierarchical and semantic expansion"""

    def test_parent_and_child_expansion(self, store, chunk_by_id):
        expander = ContextExpander(store)
        child = chunk_by_id["fund-hierarchy-levels"].with_scores(similarity_score=0.5, retrieval_strategy="hybrid")
        parent = chunk_by_id["fund-hierarchy"].with_scores(similarity_score=0.9, retrieval_strategy="hybrid")

        from_child = expander.expand_hierarchical([child])
        from_parent = expander.expand_hierarchical([parent])

        assert [c.chunk_id for c in from_child] == ["fund-hierarchy"]
        assert from_child[0].similarity_score == pytest.approx(0.5 * PARENT_SCORE_FACTOR)
        assert from_child[0].annotations["expansion_type"] == "parent"
        assert from_child[0].retrieval_strategy == "hybrid"

        assert [c.chunk_id for c in from_parent] == ["fund-hierarchy-levels"]
        assert from_parent[0].similarity_score == pytest.approx(0.9 * CHILD_SCORE_FACTOR)
        assert from_parent[0].annotations["expanded_from"] == "fund-hierarchy"

    def test_expand_keeps_retrieved_candidates_first(self, store, chunk_by_id):
        candidates = [
            chunk_by_id["fund-hierarchy"].with_scores(similarity_score=0.9),
            chunk_by_id["fund-hierarchy-levels"].with_scores(similarity_score=0.7),
        ]

        expanded, report = ContextExpander(store).expand(candidates, "fund hierarchy", semantic=False)

        ids = [c.chunk_id for c in expanded]
        assert ids[:2] == ["fund-hierarchy", "fund-hierarchy-levels"]
        assert len(ids) == len(set(ids))
        # Retrieved score wins over the expansion copy
        assert expanded[1].similarity_score == 0.7
        assert report.original_count == 2
        assert report.expanded_count == len(expanded)
        assert report.hierarchical_expansion and not report.semantic_expansion

    def test_store_failure_is_skipped(self):
        store = MagicMock(spec=ChunkStore)
        store.fetch_by_ids.side_effect = StoreQueryError("fetch_by_ids", "down")
        chunk = Chunk(chunk_id="a", content="x", parent_chunk_id="p")

        assert ContextExpander(store).expand_hierarchical([chunk]) == []

    def test_semantic_expansion_uses_lexical_overlap(self):
        seed = Chunk(chunk_id="seed", content="fund hierarchy groups funds under parent entities")
        similar = Chunk(
            chunk_id="similar",
            content="fund hierarchy groups funds under parent companies",
            similarity_score=0.6,
        )
        unrelated = Chunk(chunk_id="unrelated", content="reporting currency", similarity_score=0.9)
        store = MagicMock(spec=ChunkStore)
        store.lexical_search.return_value = [seed, similar, unrelated]

        expanded = ContextExpander(store).expand_semantic([seed], "fund hierarchy")

        assert [c.chunk_id for c in expanded] == ["similar"]
        assert expanded[0].similarity_score == pytest.approx(6 / 8)
        assert expanded[0].annotations["semantic_relevance"] == 0.6
        assert expanded[0].annotations["expansion_type"] == "semantic"
        assert store.lexical_search.call_args.kwargs["min_quality_score"] == 0.4

    def test_semantic_expansion_is_capped(self):
        seeds = [Chunk(chunk_id=f"seed-{i}", content="alpha beta gamma delta") for i in range(3)]
        rows = [Chunk(chunk_id=f"row-{i}", content="alpha beta gamma delta epsilon") for i in range(6)]
        store = MagicMock(spec=ChunkStore)
        store.lexical_search.side_effect = [rows[0:2], rows[2:4], rows[4:6]]

        expanded = ContextExpander(store).expand_semantic(seeds, "alpha")

        assert len(expanded) == 3
        assert not {c.chunk_id for c in expanded} & {c.chunk_id for c in seeds}


class TestLostInMiddleMitigator:
    """Test relevance-tier and source interleaving"""

    def test_interleaves_tiers_and_sources(self):
        chunks = [
            Chunk(chunk_id="d", content="d", source_id="z", similarity_score=0.3),
            Chunk(chunk_id="b", content="b", source_id="x", similarity_score=0.9),
            Chunk(chunk_id="e", content="e", source_id="x", similarity_score=0.65),
            Chunk(chunk_id="a", content="a", source_id="x", similarity_score=0.95),
            Chunk(chunk_id="c", content="c", source_id="y", similarity_score=0.7),
        ]

        reordered = LostInMiddleMitigator().mitigate(chunks)

        assert [c.chunk_id for c in reordered] == ["a", "c", "d", "b", "e"]

    def test_source_round_robin_within_one_tier(self):
        chunks = [
            Chunk(chunk_id="a", content="a", source_id="x", similarity_score=0.9),
            Chunk(chunk_id="b", content="b", source_id="x", similarity_score=0.85),
            Chunk(chunk_id="c", content="c", source_id="y", similarity_score=0.82),
        ]

        assert [c.chunk_id for c in LostInMiddleMitigator().mitigate(chunks)] == ["a", "c", "b"]

    def test_is_a_permutation(self, corpus):
        chunks = [chunk.with_scores(similarity_score=0.1 * i) for i, chunk in enumerate(corpus)]

        reordered = LostInMiddleMitigator().mitigate(chunks)

        assert sorted(c.chunk_id for c in reordered) == sorted(c.chunk_id for c in chunks)

    def test_single_chunk(self):
        chunk = Chunk(chunk_id="a", content="a")
        assert LostInMiddleMitigator().mitigate([chunk]) == [chunk]


class TestQualityOptimizer:
    """Test coherence, redundancy removal and complementarity selection"""

    @pytest.fixture
    def optimizer(self):
        return QualityOptimizer()

    @pytest.fixture
    def scored_corpus(self, corpus):
        return [chunk.with_scores(similarity_score=0.9 - 0.1 * i) for i, chunk in enumerate(corpus)]

    def test_redundant_chunks_keep_the_earlier(self, optimizer):
        chunks = [
            Chunk(chunk_id="first", content="the fund hierarchy groups funds"),
            Chunk(chunk_id="copy", content="the fund hierarchy groups funds"),
            Chunk(chunk_id="other", content="reporting currency"),
        ]

        assert [c.chunk_id for c in optimizer.reduce_redundancy(chunks)] == ["first", "other"]

    def test_small_sets_skip_selection(self, optimizer):
        chunks = [Chunk(chunk_id=str(i), content=str(i), similarity_score=0.5) for i in range(3)]
        assert optimizer.maximize_complementarity(chunks) == chunks

    def test_selection_limits_and_orders(self, optimizer, scored_corpus):
        selected = optimizer.maximize_complementarity(scored_corpus)

        assert len(selected) == 5
        scores = [c.similarity_score for c in selected]
        assert scores == sorted(scores, reverse=True)
        # Most relevant chunk is always picked first
        assert selected[0].chunk_id == "fund-toc"
        assert selected[0].annotations["complementarity_rank"] == 1
        assert sorted(c.annotations["complementarity_rank"] for c in selected) == [1, 2, 3, 4, 5]

    def test_selection_keeps_incoming_order(self, optimizer, scored_corpus):
        interleaved = scored_corpus[::2] + scored_corpus[1::2]

        selected = optimizer.maximize_complementarity(interleaved)

        order = [c.chunk_id for c in interleaved]
        positions = [order.index(c.chunk_id) for c in selected]
        assert positions == sorted(positions)
        by_rank = min(selected, key=lambda c: c.annotations["complementarity_rank"])
        assert by_rank.chunk_id == "fund-toc"

    def test_selection_lowers_pairwise_overlap(self, optimizer, corpus):
        pool = []
        for idx, chunk in enumerate(corpus[1:7]):
            pool.append(chunk.with_scores(similarity_score=0.9 - 0.05 * idx))
            pool.append(
                chunk.with_scores(
                    chunk_id=f"{chunk.chunk_id}-copy",
                    content=chunk.content + " See also the appendix.",
                    similarity_score=0.88 - 0.05 * idx,
                )
            )

        selected = optimizer.maximize_complementarity(pool)

        assert len(selected) <= 5
        assert mean_pairwise_overlap(selected) < mean_pairwise_overlap(pool)

    def test_kept_pairs_are_never_redundant(self, optimizer, corpus):
        mixed = []
        for chunk in corpus:
            mixed.append(chunk)
            mixed.append(chunk.with_scores(chunk_id=f"{chunk.chunk_id}-dup"))
            words = chunk.content.split()
            mixed.append(chunk.with_scores(chunk_id=f"{chunk.chunk_id}-edit", content=" ".join(words[:-1])))
            mixed.append(
                chunk.with_scores(chunk_id=f"{chunk.chunk_id}-half", content=" ".join(words[: len(words) // 2]))
            )

        kept = optimizer.reduce_redundancy(mixed)

        assert len(kept) < len(mixed)
        for first, second in combinations(kept, 2):
            assert lexical_overlap_score(first.content, second.content) <= 0.9

    def test_optimize_reports_quality(self, optimizer, scored_corpus):
        selected, report = optimizer.optimize(scored_corpus, "fund hierarchy")

        assert report.selected_count == len(selected) <= 5
        assert report.redundant_removed == 0
        assert all("coherence_score" in c.annotations for c in selected)
        assert 0.0 <= report.overall_quality <= 1.0

    def test_complementarity_of_identical_chunks(self, optimizer, chunk_by_id):
        chunk = chunk_by_id["fund-create"]
        assert optimizer.complementarity(chunk, chunk) == 0.0

    def test_complementarity_of_different_sources(self, optimizer, chunk_by_id):
        score = optimizer.complementarity(chunk_by_id["fund-create"], chunk_by_id["nav-definition"])
        assert 0.4 < score <= 1.0

    def test_topics(self, chunk_by_id):
        topics = extract_topics(chunk_by_id["fund-hierarchy"])

        assert topics[:2] == ["fund", "hierarchy"]
        assert len(topics) == len(set(topics))
        assert topic_diversity([], ["fund"]) == 0.5
        assert topic_diversity(["fund"], ["fund"]) == 0.0

    def test_empty_report(self):
        report = QualityOptimizer.report([])
        assert report.selected_count == 0
        assert report.overall_quality == 0.0
