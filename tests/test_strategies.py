"""
Tests for retrieval strategies, the strategy registry and concurrent fan-out
"""

import time
import pytest
from unittest.mock import MagicMock, Mock

from contextrag.chunk import Chunk
from contextrag.context import ConversationContext
from contextrag.errors import EmbeddingUnavailable, StoreQueryError, UnknownStrategy
from contextrag.options import RetrievalOptions
from contextrag.query_analysis import QueryAnalysis, QueryType
from contextrag.store import ChunkStore
from contextrag.strategy_selector import StrategyName
from contextrag.strategies import (
    StrategyContext,
    StrategyRegistry,
    VectorOnlyStrategy,
    HybridStrategy,
    ContextualStrategy,
    MultiQueryStrategy,
    HierarchicalStrategy,
    AdvancedMultiFeatureStrategy,
    AdvancedMultiFeatureConsensusStrategy,
    SECTION_SIBLING_SIMILARITY,
    apply_diversity_filter,
    apply_similarity_threshold,
    boundary_feature,
    build_strategy_registry,
    decompose_query,
    length_feature,
    quality_feature,
    run_concurrently,
)
from tests.conftest import FailingEmbeddingProvider


def make_context(query="query", conversation=None, **options) -> StrategyContext:
    return StrategyContext(
        analysis=QueryAnalysis(original_query=query),
        conversation=conversation or ConversationContext(),
        options=RetrievalOptions(**options),
    )


class TestFilters:
    """Test similarity and diversity filters"""

    def test_similarity_threshold(self):
        chunks = [
            Chunk(chunk_id="a", content="a", similarity_score=0.9),
            Chunk(chunk_id="b", content="b", similarity_score=0.4),
        ]
        assert [c.chunk_id for c in apply_similarity_threshold(chunks, 0.5)] == ["a"]

    def test_diversity_filter_drops_near_duplicates(self):
        chunks = [
            Chunk(chunk_id="a", content="fund hierarchy groups funds under parents"),
            Chunk(chunk_id="b", content="Fund hierarchy groups funds under parents."),
            Chunk(chunk_id="c", content="reporting currency settings page"),
        ]

        kept = apply_diversity_filter(chunks, 0.8)

        assert [c.chunk_id for c in kept] == ["a", "c"]


class TestRunConcurrently:
    """Test fan-out ordering and failure isolation"""

    def test_results_keep_task_order(self):
        def slow():
            time.sleep(0.05)
            return [Chunk(chunk_id="slow", content="s")]

        def fast():
            return [Chunk(chunk_id="fast", content="f")]

        results, warnings = run_concurrently([("slow", slow), ("fast", fast)], max_workers=2, timeout=5)

        assert [r[0].chunk_id for r in results] == ["slow", "fast"]
        assert warnings == []

    def test_failed_task_contributes_empty_list(self):
        def broken():
            raise RuntimeError("boom")

        results, warnings = run_concurrently(
            [("broken", broken), ("ok", lambda: [Chunk(chunk_id="ok", content="x")])],
            max_workers=2,
            timeout=5,
        )

        assert results[0] == []
        assert results[1][0].chunk_id == "ok"
        assert len(warnings) == 1
        assert "broken" in warnings[0]

    def test_single_task_failure(self):
        def broken():
            raise StoreQueryError("vector_search", "down")

        results, warnings = run_concurrently([("vector_only", broken)])

        assert results == [[]]
        assert "vector_only" in warnings[0]

    def test_timeout_produces_warning(self):
        def stuck():
            time.sleep(1.0)
            return [Chunk(chunk_id="late", content="x")]

        results, warnings = run_concurrently(
            [("stuck", stuck), ("ok", lambda: [])], max_workers=2, timeout=0.1
        )

        assert results[0] == []
        assert any("timed out" in warning for warning in warnings)

    def test_no_tasks(self):
        assert run_concurrently([]) == ([], [])


class TestStrategyRegistry:
    """Test registry validation and lookup"""

    def test_registry_requires_every_strategy(self, store):
        with pytest.raises(ValueError, match="contextual"):
            StrategyRegistry({
                StrategyName.VECTOR_ONLY: VectorOnlyStrategy(store),
                StrategyName.HYBRID: HybridStrategy(store),
            })

    def test_build_registers_all_names(self, store, embedder):
        registry = build_strategy_registry(store, embedder)
        assert set(registry.names()) == {name.value for name in StrategyName}

    def test_strict_get(self, store):
        registry = build_strategy_registry(store)

        assert isinstance(registry.get("hierarchical"), HierarchicalStrategy)
        with pytest.raises(UnknownStrategy):
            registry.get("quantum_search")

    def test_resolve_falls_back_to_hybrid(self, store):
        registry = build_strategy_registry(store)

        strategy, warning = registry.resolve("quantum_search")

        assert isinstance(strategy, HybridStrategy)
        assert "quantum_search" in warning

    def test_resolve_known_name_has_no_warning(self, store):
        strategy, warning = build_strategy_registry(store).resolve(StrategyName.VECTOR_ONLY)

        assert isinstance(strategy, VectorOnlyStrategy)
        assert warning is None


class TestBasicStrategies:
    """Test vector-only, hybrid and contextual retrieval"""

    def test_vector_only_tags_and_thresholds(self, store, embedder, chunk_by_id):
        embedding = embedder.embed(chunk_by_id["nav-definition"].content)

        chunks = VectorOnlyStrategy(store).execute("NAV", embedding, make_context(), 5)

        assert chunks[0].chunk_id == "nav-definition"
        assert all(c.similarity_score >= 0.5 for c in chunks)
        assert all(c.retrieval_strategy == "vector_only" for c in chunks)
        # Store chunks are never tagged
        assert chunk_by_id["nav-definition"].retrieval_strategy is None

    def test_hybrid_finds_lexical_matches(self, store, embedder):
        query = "rollforward audit"

        chunks = HybridStrategy(store).execute(query, embedder.embed(query), make_context(query), 5)

        assert chunks[0].chunk_id == "rollforward"
        assert chunks[0].retrieval_strategy == "hybrid"
        assert chunks[0].text_similarity > 0

    def test_contextual_expands_and_filters(self, store, embedder):
        conversation = ConversationContext(
            previous_topics=["valuation", "hierarchy", "nav"],
            current_topic="subscriptions",
            source_ids=["glossary"],
        )
        query = "What is it?"

        chunks = ContextualStrategy(store, embedder).execute(
            query, embedder.embed(query), make_context(query, conversation), 5
        )

        assert embedder.calls[-1] == "What is it? hierarchy nav subscriptions"
        assert chunks
        assert all(c.source_id == "glossary" for c in chunks)
        assert all(c.retrieval_strategy == "contextual" for c in chunks)

    def test_contextual_min_quality_from_conversation(self, store, embedder):
        conversation = ConversationContext(previous_topics=["fund"], min_quality_score=0.8)
        query = "hierarchy"

        chunks = ContextualStrategy(store, embedder).execute(
            query, embedder.embed(query), make_context(query, conversation), 10
        )

        assert all(c.quality_score >= 0.8 for c in chunks)

    def test_contextual_survives_embedding_failure(self, store, embedder):
        conversation = ConversationContext(previous_topics=["nav"])
        query = "net asset value"

        chunks = ContextualStrategy(store, FailingEmbeddingProvider()).execute(
            query, embedder.embed(query), make_context(query, conversation), 5
        )

        assert "nav-definition" in [c.chunk_id for c in chunks]

    def test_expand_query_without_topics(self):
        assert ContextualStrategy.expand_query("q", ConversationContext()) == "q"


class TestMultiQuery:
    """Test query decomposition and multi-query retrieval"""

    def test_decompose_with_entities_and_intents(self):
        analysis = QueryAnalysis(
            original_query="q",
            entities=["nav", "rollforward"],
            intent=[QueryType.PROCEDURE, QueryType.DEFINITION],
            domain="fund management",
        )

        assert decompose_query("q", analysis) == [
            "q",
            "nav in fund management",
            "rollforward in fund management",
            "steps process procedure",
        ]

    def test_single_entity_is_not_decomposed(self):
        analysis = QueryAnalysis(original_query="q", entities=["nav"], intent=[QueryType.DEFINITION])

        assert decompose_query("q", analysis) == ["q", "definition meaning explanation"]

    def test_multi_query_unions_unique_results(self, store, embedder):
        query = "What is NAV and how does the rollforward work"
        context = make_context(query)
        context.analysis = QueryAnalysis(
            original_query=query, entities=["nav", "rollforward"], domain="fund management"
        )

        chunks = MultiQueryStrategy(store, embedder).execute(query, embedder.embed(query), context, 10)

        ids = [c.chunk_id for c in chunks]
        assert len(ids) == len(set(ids))
        assert {"nav-definition", "rollforward"} <= set(ids)
        scores = [c.similarity_score for c in chunks]
        assert scores == sorted(scores, reverse=True)
        assert all(c.retrieval_strategy == "multi_query" for c in chunks)

    def test_without_embedder_only_original_query_is_searched(self, store, embedder):
        spy = MagicMock(wraps=store)
        query = "NAV and rollforward"
        context = make_context(query)
        context.analysis = QueryAnalysis(original_query=query, entities=["nav", "rollforward"])

        MultiQueryStrategy(spy).execute(query, embedder.embed(query), context, 10)

        assert spy.hybrid_search.call_count == 1
        assert spy.hybrid_search.call_args.kwargs["top_k"] == 10

    def test_limit_is_split_over_sub_queries_that_run(self, store, embedder):
        spy = MagicMock(wraps=store)
        flaky = Mock()
        flaky.embed.side_effect = [embedder.embed("nav"), EmbeddingUnavailable("down")]
        query = "NAV and rollforward"
        context = make_context(query)
        context.analysis = QueryAnalysis(
            original_query=query, entities=["nav", "rollforward"], domain="fund management"
        )

        MultiQueryStrategy(spy, flaky).execute(query, embedder.embed(query), context, 10)

        assert spy.hybrid_search.call_count == 2
        assert [call.kwargs["top_k"] for call in spy.hybrid_search.call_args_list] == [5, 5]


class TestHierarchical:
    """Test section sibling expansion"""

    @pytest.fixture
    def seed(self):
        return Chunk(
            chunk_id="seed", content="seed", source_id="doc",
            hierarchy_path=["Section"], similarity_score=0.9,
        )

    def test_adds_section_siblings(self, seed):
        sibling = Chunk(chunk_id="sibling", content="sibling", source_id="doc", hierarchy_path=["Section"])
        store = MagicMock(spec=ChunkStore)
        store.hybrid_search.return_value = [seed]
        store.fetch_by_section.return_value = [sibling]

        chunks = HierarchicalStrategy(store).execute("q", Mock(), make_context(), 10)

        assert [c.chunk_id for c in chunks] == ["seed", "sibling"]
        assert chunks[1].similarity_score == SECTION_SIBLING_SIMILARITY
        assert chunks[1].annotations["related_to"] == "seed"
        assert all(c.retrieval_strategy == "hierarchical" for c in chunks)
        store.fetch_by_section.assert_called_once_with("doc", ["Section"], exclude_chunk_id="seed", limit=5)

    def test_section_lookup_failure_keeps_initial(self, seed):
        store = MagicMock(spec=ChunkStore)
        store.hybrid_search.return_value = [seed]
        store.fetch_by_section.side_effect = StoreQueryError("fetch_by_section", "down")

        chunks = HierarchicalStrategy(store).execute("q", Mock(), make_context(), 10)

        assert [c.chunk_id for c in chunks] == ["seed"]

    def test_seed_without_path_is_not_expanded(self):
        store = MagicMock(spec=ChunkStore)
        store.hybrid_search.return_value = [Chunk(chunk_id="flat", content="x")]

        HierarchicalStrategy(store).execute("q", Mock(), make_context(), 10)

        store.fetch_by_section.assert_not_called()


class TestCompositeFeatures:
    """Test the composite multi-feature strategy"""

    def test_feature_helpers(self):
        assert quality_feature(0.9) == pytest.approx(1.08)
        assert quality_feature(0.7) == 0.7
        assert quality_feature(0.5) == pytest.approx(0.4)

        assert length_feature(500) == 0.1
        assert length_feature(150) == 0.05
        assert length_feature(2000) == -0.05
        assert length_feature(50) == -0.1

        assert boundary_feature(Chunk(chunk_id="a", content="x", heading="H")) == 0.1
        assert boundary_feature(Chunk(chunk_id="a", content="x", metadata={"semantic_boundary": "True"})) == 0.15
        assert boundary_feature(Chunk(chunk_id="a", content="x")) == 0.0

    def test_composite_scores_and_filters(self, store, embedder):
        query = "net asset value"

        chunks = AdvancedMultiFeatureStrategy(store).execute(query, embedder.embed(query), make_context(query), 3)

        assert 0 < len(chunks) <= 3
        assert "low-quality-note" not in [c.chunk_id for c in chunks]
        for chunk in chunks:
            assert 0.0 <= chunk.similarity_score <= 1.0
            assert set(chunk.annotations["feature_breakdown"]) == {
                "vector_score", "text_score", "quality_boost",
                "position_boost", "length_optimization", "boundary_boost",
            }
            assert chunk.retrieval_strategy == "advanced_multi_feature"
        scores = [c.similarity_score for c in chunks]
        assert scores == sorted(scores, reverse=True)

    def test_store_failure_falls_back_to_hybrid(self):
        store = MagicMock(spec=ChunkStore)
        store.vector_search.side_effect = StoreQueryError("vector_search", "down")
        store.hybrid_search.return_value = [Chunk(chunk_id="a", content="x", similarity_score=0.7)]

        chunks = AdvancedMultiFeatureStrategy(store).execute("q", Mock(), make_context(), 5)

        assert [c.chunk_id for c in chunks] == ["a"]
        assert chunks[0].retrieval_strategy == "hybrid"


class TestConsensus:
    """Test the parallel consensus strategy"""

    def test_rewards_instructions_for_procedure_queries(self, store, embedder):
        query = "How do I create a new fund?"
        context = make_context(query, similarity_threshold=0.0)
        context.analysis = QueryAnalysis(original_query=query, query_type=QueryType.PROCEDURE)

        chunks = AdvancedMultiFeatureConsensusStrategy(store, embedder).execute(
            query, embedder.embed(query), context, 10
        )

        by_id = {c.chunk_id: c for c in chunks}
        assert "fund-create" in by_id
        assert by_id["fund-create"].annotations["instruction_bonus"] == 0.2
        for chunk in chunks:
            found_by = chunk.annotations["found_by_strategies"]
            assert chunk.annotations["strategy_consensus"] == pytest.approx(0.1 * (found_by - 1))
            assert 0.01 <= chunk.similarity_score <= 1.0
            assert chunk.retrieval_strategy == "advanced_multi_feature_consensus"

    def test_all_sub_strategies_failing_falls_back_to_hybrid(self, store):
        strategy = AdvancedMultiFeatureConsensusStrategy(store, max_workers=3, timeout=5)
        fallback_chunk = Chunk(chunk_id="fallback", content="x", retrieval_strategy="hybrid")
        strategy.vector = Mock()
        strategy.vector.name = StrategyName.VECTOR_ONLY
        strategy.vector.execute.side_effect = RuntimeError("down")
        strategy.contextual = Mock()
        strategy.contextual.name = StrategyName.CONTEXTUAL
        strategy.contextual.execute.side_effect = RuntimeError("down")
        strategy.hybrid = Mock()
        strategy.hybrid.name = StrategyName.HYBRID
        strategy.hybrid.execute.side_effect = [RuntimeError("down"), [fallback_chunk]]

        chunks = strategy.execute("q", Mock(), make_context(), 5)

        assert chunks == [fallback_chunk]
        assert strategy.hybrid.execute.call_count == 2
