"""
Retrieval Strategies Module
Interchangeable candidate retrieval strategies behind one execute() interface,
a registry keyed by StrategyName and a concurrent fan-out helper
"""

from typing import List, Dict, Any, Optional, Tuple, Callable, Union
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeout
import math
import numpy as np
from loguru import logger

from .chunk import Chunk, deduplicate_by_id, sort_by_score
from .context import ConversationContext
from .embeddings import EmbeddingProvider
from .errors import EmbeddingUnavailable, StoreQueryError, UnknownStrategy
from .options import RetrievalOptions
from .query_analysis import QueryAnalysis, QueryType
from .scoring import EnhancedScorer, detect_content_type
from .content_analysis import ContentType
from .store import ChunkStore
from .strategy_selector import StrategyName, DEFAULT_STRATEGY
from .text_similarity import word_overlap_score
from config.settings import settings


@dataclass
class StrategyContext:
    """Per-request inputs shared by every strategy"""
    analysis: QueryAnalysis
    conversation: ConversationContext = field(default_factory=ConversationContext)
    options: RetrievalOptions = field(default_factory=RetrievalOptions)


def apply_similarity_threshold(chunks: List[Chunk], threshold: float) -> List[Chunk]:
    """Keep chunks whose similarity is at least the threshold"""
    return [chunk for chunk in chunks if chunk.similarity_score >= threshold]


def apply_diversity_filter(chunks: List[Chunk], threshold: float) -> List[Chunk]:
    """
    Drop near-duplicates by word overlap

    The first chunk is always kept; later chunks are dropped when their word
    overlap with any kept chunk exceeds the threshold.
    """
    kept: List[Chunk] = []
    for chunk in chunks:
        if all(word_overlap_score(chunk.content, other.content) <= threshold for other in kept):
            kept.append(chunk)
    return kept


def run_concurrently(
    tasks: List[Tuple[str, Callable[[], List[Chunk]]]],
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Tuple[List[List[Chunk]], List[str]]:
    """
    Run retrieval callables concurrently and collect results in task order

    A task that raises or does not finish in time contributes an empty list
    and a warning; the other tasks are unaffected.

    Args:
        tasks: (label, callable) pairs
        max_workers: Thread pool size (defaults to settings.STRATEGY_MAX_WORKERS)
        timeout: Seconds to wait for all tasks (defaults to settings.STRATEGY_TIMEOUT)

    Returns:
        Tuple of (results in task order, warning messages)
    """
    if not tasks:
        return [], []

    max_workers = max_workers or settings.STRATEGY_MAX_WORKERS
    timeout = timeout or settings.STRATEGY_TIMEOUT
    results: List[List[Chunk]] = [[] for _ in tasks]
    warnings: List[str] = []

    if len(tasks) == 1:
        label, task = tasks[0]
        try:
            results[0] = task()
        except Exception as e:
            warning = f"Strategy {label} failed: {e}"
            logger.warning(warning)
            warnings.append(warning)
        return results, warnings

    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(tasks)))
    # Map futures to their original index to preserve order
    future_to_idx = {executor.submit(task): idx for idx, (_, task) in enumerate(tasks)}
    pending = set(future_to_idx)

    try:
        for future in as_completed(future_to_idx, timeout=timeout):
            pending.discard(future)
            idx = future_to_idx[future]
            try:
                results[idx] = future.result()
            except Exception as e:
                warning = f"Strategy {tasks[idx][0]} failed: {e}"
                logger.warning(warning)
                warnings.append(warning)
    except FuturesTimeout:
        for future in pending:
            warning = f"Strategy {tasks[future_to_idx[future]][0]} timed out after {timeout}s"
            logger.warning(warning)
            warnings.append(warning)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results, warnings


class RetrievalStrategy(ABC):
    """
    Base class for retrieval strategies

    Strategies return fresh chunk copies tagged with ``retrieval_strategy``
    and may raise StoreQueryError; the caller decides how to degrade.
    """

    name: StrategyName

    def __init__(self, store: ChunkStore):
        self.store = store

    @abstractmethod
    def execute(
        self,
        query: str,
        query_embedding: np.ndarray,
        context: StrategyContext,
        limit: int,
    ) -> List[Chunk]:
        """
        Retrieve candidate chunks

        Args:
            query: Query text
            query_embedding: Embedding of the (context-enriched) query
            context: Analysis, conversation and options for this request
            limit: Maximum number of chunks to retrieve

        Returns:
            Scored chunks, best first
        """
        pass

    def _tag(self, chunks: List[Chunk]) -> List[Chunk]:
        return [chunk.with_scores(retrieval_strategy=self.name.value) for chunk in chunks]

    def _vector(
        self,
        query_embedding: np.ndarray,
        options: RetrievalOptions,
        limit: int,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        chunks = self.store.vector_search(
            query_embedding,
            top_k=limit,
            metric=options.similarity_metric,
            source_ids=source_ids,
            min_quality_score=min_quality_score,
        )
        chunks = apply_similarity_threshold(chunks, options.similarity_threshold)
        return apply_diversity_filter(chunks, options.diversity_threshold)

    def _hybrid(
        self,
        query: str,
        query_embedding: np.ndarray,
        options: RetrievalOptions,
        limit: int,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        chunks = self.store.hybrid_search(
            query,
            query_embedding,
            top_k=limit,
            metric=options.similarity_metric,
            vector_threshold=options.similarity_threshold,
            source_ids=source_ids,
            min_quality_score=min_quality_score,
        )
        return apply_diversity_filter(chunks, options.diversity_threshold)

    def _search(
        self,
        query: str,
        query_embedding: np.ndarray,
        options: RetrievalOptions,
        limit: int,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        """Hybrid search, or vector search when hybrid search is disabled"""
        if options.enable_hybrid_search:
            return self._hybrid(query, query_embedding, options, limit, source_ids, min_quality_score)
        return self._vector(query_embedding, options, limit, source_ids, min_quality_score)


def bind_strategy(
    strategy: RetrievalStrategy, query: str, query_embedding: np.ndarray, context: StrategyContext, limit: int
) -> Callable[[], List[Chunk]]:
    """Zero-argument callable running one strategy, for run_concurrently"""
    return lambda: strategy.execute(query, query_embedding, context, limit)


class VectorOnlyStrategy(RetrievalStrategy):
    """Top-K by embedding similarity"""

    name = StrategyName.VECTOR_ONLY

    def execute(self, query, query_embedding, context, limit):
        chunks = self._vector(query_embedding, context.options, limit)
        logger.debug(f"Vector-only retrieval: {len(chunks)} chunks")
        return self._tag(chunks)


class HybridStrategy(RetrievalStrategy):
    """Weighted vector + lexical ranking over the union of both candidate sets"""

    name = StrategyName.HYBRID

    def execute(self, query, query_embedding, context, limit):
        chunks = self._hybrid(query, query_embedding, context.options, limit)
        logger.debug(f"Hybrid retrieval: {len(chunks)} chunks")
        return self._tag(chunks)


class ContextualStrategy(RetrievalStrategy):
    """
    Conversation-aware retrieval

    The query is extended with the two most recent previous topics and the
    current topic, re-embedded, and searched with the context's source and
    quality filters.
    """

    name = StrategyName.CONTEXTUAL

    def __init__(self, store: ChunkStore, embedder: Optional[EmbeddingProvider] = None):
        super().__init__(store)
        self.embedder = embedder

    @staticmethod
    def expand_query(query: str, conversation: ConversationContext) -> str:
        parts = [query]
        parts.extend(conversation.previous_topics[-2:])
        if conversation.current_topic:
            parts.append(conversation.current_topic)
        return " ".join(parts)

    def execute(self, query, query_embedding, context, limit):
        conversation = context.conversation
        expanded_query = self.expand_query(query, conversation)

        embedding = query_embedding
        if expanded_query != query and self.embedder is not None:
            try:
                embedding = self.embedder.embed(expanded_query)
            except EmbeddingUnavailable as e:
                logger.warning(f"Could not embed expanded query, using original embedding: {e}")

        chunks = self._search(
            expanded_query,
            embedding,
            context.options,
            limit,
            source_ids=conversation.source_ids or None,
            min_quality_score=conversation.min_quality_score,
        )

        logger.debug(f"Contextual retrieval for '{expanded_query}': {len(chunks)} chunks")
        return self._tag(chunks)


def decompose_query(query: str, analysis: QueryAnalysis, max_sub_queries: int = 4) -> List[str]:
    """
    Break a query into sub-queries

    The original query always comes first, followed by one query per entity
    (only when there are several entities) and canonical phrases for
    procedure and definition intents.
    """
    sub_queries = [query]
    domain = analysis.domain or settings.KNOWLEDGE_DOMAIN

    if len(analysis.entities) > 1:
        sub_queries.extend(f"{entity} in {domain}" for entity in analysis.entities)

    if QueryType.PROCEDURE in analysis.intent:
        sub_queries.append("steps process procedure")

    if QueryType.DEFINITION in analysis.intent:
        sub_queries.append("definition meaning explanation")

    return sub_queries[:max_sub_queries]


class MultiQueryStrategy(RetrievalStrategy):
    """Retrieve for each sub-query and union the results"""

    name = StrategyName.MULTI_QUERY

    def __init__(self, store: ChunkStore, embedder: Optional[EmbeddingProvider] = None):
        super().__init__(store)
        self.embedder = embedder

    def execute(self, query, query_embedding, context, limit):
        sub_queries = decompose_query(query, context.analysis)

        runnable = [(sub_queries[0], query_embedding)]
        for sub_query in sub_queries[1:]:
            if self.embedder is None:
                break
            try:
                runnable.append((sub_query, self.embedder.embed(sub_query)))
            except EmbeddingUnavailable as e:
                logger.warning(f"Skipping sub-query '{sub_query}': {e}")

        # Split the limit over the sub-queries that actually run
        per_query = math.ceil(limit / len(runnable))
        logger.info(f"Multi-query retrieval with {len(runnable)} sub-queries: {[q for q, _ in runnable]}")

        all_chunks: List[Chunk] = []
        for sub_query, embedding in runnable:
            all_chunks.extend(self._search(sub_query, embedding, context.options, per_query))

        unique = deduplicate_by_id(all_chunks)
        logger.debug(f"Multi-query results: {len(all_chunks)} total, {len(unique)} unique")
        return self._tag(sort_by_score(unique))


# Similarity assigned to chunks pulled in from the same section
SECTION_SIBLING_SIMILARITY = 0.8


class HierarchicalStrategy(RetrievalStrategy):
    """Initial search plus section siblings of the top chunks"""

    name = StrategyName.HIERARCHICAL

    def __init__(self, store: ChunkStore, seed_count: int = 3, siblings_per_seed: int = 5):
        super().__init__(store)
        self.seed_count = seed_count
        self.siblings_per_seed = siblings_per_seed

    def execute(self, query, query_embedding, context, limit):
        initial = self._search(query, query_embedding, context.options, limit)

        related: List[Chunk] = []
        for seed in initial[: self.seed_count]:
            if not seed.hierarchy_path:
                continue
            try:
                siblings = self.store.fetch_by_section(
                    seed.source_id,
                    seed.hierarchy_path,
                    exclude_chunk_id=seed.chunk_id,
                    limit=self.siblings_per_seed,
                )
            except StoreQueryError as e:
                logger.warning(f"Section lookup failed for {seed.chunk_id}: {e}")
                continue

            related.extend(
                sibling.with_scores(
                    similarity_score=SECTION_SIBLING_SIMILARITY,
                    annotations={"related_to": seed.chunk_id},
                )
                for sibling in siblings
            )

        unique = deduplicate_by_id(initial + related, keep="first")
        logger.debug(
            f"Hierarchical results: {len(initial)} initial, {len(related)} related, "
            f"{len(unique)} unique"
        )
        return self._tag(unique)


@dataclass(frozen=True)
class CompositeFeatureWeights:
    """Weights of the composite multi-feature ranking"""
    vector: float = 0.4
    text: float = 0.2
    quality: float = 0.15
    position: float = 0.1
    length: float = 0.1
    boundary: float = 0.05


DEFAULT_COMPOSITE_WEIGHTS = CompositeFeatureWeights()

# Vector similarity multiplier per stored content type; others get 0.8
CONTENT_TYPE_VECTOR_WEIGHTS = {"heading": 1.1, "summary": 1.0, "table": 0.9}
DEFAULT_CONTENT_TYPE_VECTOR_WEIGHT = 0.8

COMPOSITE_MIN_QUALITY = 0.3
# Equivalent to a cosine distance below 0.6
COMPOSITE_MIN_VECTOR_SIMILARITY = 0.4
COMPOSITE_CANDIDATE_MULTIPLIER = 3


def quality_feature(quality_score: float) -> float:
    if quality_score >= 0.8:
        return quality_score * 1.2
    if quality_score >= 0.6:
        return quality_score
    return quality_score * 0.8


def length_feature(character_count: int) -> float:
    if 200 <= character_count <= 1500:
        return 0.1
    if 100 <= character_count < 200:
        return 0.05
    if character_count > 1500:
        return -0.05
    return -0.1


def boundary_feature(chunk: Chunk) -> float:
    if chunk.heading:
        return 0.1
    if str(chunk.metadata.get("semantic_boundary", "")).lower() == "true":
        return 0.15
    return 0.0


class AdvancedMultiFeatureStrategy(RetrievalStrategy):
    """
    Composite multi-feature ranking

    Every candidate from a widened vector and lexical search gets

        vector*0.4 + text*0.2 + quality*0.15 + position*0.1
        + length*0.1 + boundary*0.05

    and only the best chunk per (source, page, chunk index) group is kept.
    Falls back to hybrid retrieval when the store fails.
    """

    name = StrategyName.ADVANCED_MULTI_FEATURE

    def __init__(self, store: ChunkStore, weights: CompositeFeatureWeights = DEFAULT_COMPOSITE_WEIGHTS):
        super().__init__(store)
        self.weights = weights
        self.fallback = HybridStrategy(store)

    def execute(self, query, query_embedding, context, limit):
        try:
            chunks = self._composite(query, query_embedding, context.options, limit)
        except StoreQueryError as e:
            logger.warning(f"Advanced multi-feature retrieval failed, falling back to hybrid: {e}")
            return self.fallback.execute(query, query_embedding, context, limit)

        logger.debug(f"Advanced multi-feature retrieval: {len(chunks)} chunks")
        return self._tag(chunks)

    def _composite(self, query, query_embedding, options: RetrievalOptions, limit: int) -> List[Chunk]:
        candidate_count = limit * COMPOSITE_CANDIDATE_MULTIPLIER
        vector_hits = self.store.vector_search(
            query_embedding, top_k=candidate_count, metric=options.similarity_metric
        )
        text_hits = self.store.lexical_search(query, top_k=candidate_count)

        vector_scores = {chunk.chunk_id: chunk.similarity_score for chunk in vector_hits}
        text_scores = {chunk.chunk_id: chunk.similarity_score for chunk in text_hits}
        candidates = deduplicate_by_id(vector_hits + text_hits, keep="first")

        best_per_group: Dict[Tuple[Any, ...], Chunk] = {}
        for chunk in candidates:
            vector_similarity = vector_scores.get(chunk.chunk_id, 0.0)
            text_rank = text_scores.get(chunk.chunk_id, 0.0)

            if chunk.quality_score <= COMPOSITE_MIN_QUALITY:
                continue
            if vector_similarity <= COMPOSITE_MIN_VECTOR_SIMILARITY and text_rank <= 0:
                continue

            features = {
                "vector_score": vector_similarity
                * CONTENT_TYPE_VECTOR_WEIGHTS.get(chunk.content_type, DEFAULT_CONTENT_TYPE_VECTOR_WEIGHT),
                "text_score": text_rank,
                "quality_boost": quality_feature(chunk.quality_score),
                "position_boost": 0.05 if chunk.page_number is not None else 0.0,
                "length_optimization": length_feature(chunk.character_count),
                "boundary_boost": boundary_feature(chunk),
            }
            score = (
                features["vector_score"] * self.weights.vector
                + features["text_score"] * self.weights.text
                + features["quality_boost"] * self.weights.quality
                + features["position_boost"] * self.weights.position
                + features["length_optimization"] * self.weights.length
                + features["boundary_boost"] * self.weights.boundary
            )
            scored = chunk.with_scores(
                similarity_score=max(0.0, min(1.0, score)),
                vector_similarity=vector_similarity,
                text_similarity=text_rank,
                annotations={"feature_breakdown": features},
            )

            group = (chunk.source_id, chunk.page_number, chunk.chunk_index)
            current = best_per_group.get(group)
            if current is None or scored.similarity_score > current.similarity_score:
                best_per_group[group] = scored

        return sort_by_score(best_per_group.values())[:limit]


# Consensus scoring bonuses
CONSENSUS_BONUS_PER_STRATEGY = 0.1
CONSENSUS_QUALITY_WEIGHT = 0.1
CONSENSUS_INSTRUCTION_BONUS = 0.2


class AdvancedMultiFeatureConsensusStrategy(RetrievalStrategy):
    """
    Parallel consensus variant

    Runs vector-only, hybrid and contextual retrieval concurrently, rescores
    the union with the enhanced scorer and rewards chunks several strategies
    agree on, high-quality chunks and instructions for procedure queries.
    """

    name = StrategyName.ADVANCED_MULTI_FEATURE_CONSENSUS

    def __init__(
        self,
        store: ChunkStore,
        embedder: Optional[EmbeddingProvider] = None,
        scorer: Optional[EnhancedScorer] = None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(store)
        self.scorer = scorer or EnhancedScorer()
        self.vector = VectorOnlyStrategy(store)
        self.hybrid = HybridStrategy(store)
        self.contextual = ContextualStrategy(store, embedder)
        self.max_workers = max_workers
        self.timeout = timeout

    def execute(self, query, query_embedding, context, limit):
        tasks = [
            (strategy.name.value, bind_strategy(strategy, query, query_embedding, context, sub_limit))
            for strategy, sub_limit in (
                (self.vector, math.ceil(limit / 2)),
                (self.hybrid, math.ceil(limit / 2)),
                (self.contextual, math.ceil(limit / 3)),
            )
        ]
        results, warnings = run_concurrently(tasks, self.max_workers, self.timeout)

        if len(warnings) == len(tasks):
            logger.warning("All consensus sub-strategies failed, falling back to hybrid")
            return self.hybrid.execute(query, query_embedding, context, limit)

        found_by: Dict[str, int] = {}
        for chunks in results:
            for chunk_id in {chunk.chunk_id for chunk in chunks}:
                found_by[chunk_id] = found_by.get(chunk_id, 0) + 1

        unique = deduplicate_by_id([chunk for chunks in results for chunk in chunks], keep="first")
        enhanced = self.scorer.score_chunks(unique, query, context.conversation)
        is_procedure = context.analysis.query_type == QueryType.PROCEDURE

        rescored = []
        for chunk in enhanced:
            base = chunk.enhanced_score if chunk.enhanced_score is not None else chunk.similarity_score
            consensus = CONSENSUS_BONUS_PER_STRATEGY * (found_by.get(chunk.chunk_id, 1) - 1)
            quality_bonus = chunk.quality_score * CONSENSUS_QUALITY_WEIGHT
            instruction_bonus = 0.0
            if is_procedure and detect_content_type(self.scorer, chunk) == ContentType.INSTRUCTIONS:
                instruction_bonus = CONSENSUS_INSTRUCTION_BONUS

            score = max(0.01, min(1.0, base + consensus + quality_bonus + instruction_bonus))
            rescored.append(
                chunk.with_scores(
                    similarity_score=score,
                    annotations={
                        "strategy_consensus": consensus,
                        "found_by_strategies": found_by.get(chunk.chunk_id, 1),
                        "quality_bonus": quality_bonus,
                        "instruction_bonus": instruction_bonus,
                    },
                )
            )

        final = sort_by_score(rescored)[:limit]
        logger.info(f"Consensus retrieval: {len(final)} chunks from {len(unique)} candidates")
        return self._tag(final)


class StrategyRegistry:
    """
    Registry of retrieval strategies keyed by StrategyName

    Construction fails unless every StrategyName has an implementation.
    ``get`` is strict; ``resolve`` falls back to hybrid with a warning.
    """

    def __init__(self, strategies: Dict[StrategyName, RetrievalStrategy]):
        missing = [name.value for name in StrategyName if name not in strategies]
        if missing:
            raise ValueError(f"No implementation registered for strategies: {missing}")
        self._strategies = dict(strategies)

    def names(self) -> List[str]:
        return [name.value for name in self._strategies]

    def get(self, name: Union[str, StrategyName]) -> RetrievalStrategy:
        try:
            return self._strategies[StrategyName(name)]
        except ValueError:
            raise UnknownStrategy(str(name)) from None

    def resolve(self, name: Union[str, StrategyName]) -> Tuple[RetrievalStrategy, Optional[str]]:
        """
        Lenient lookup

        Returns:
            Tuple of (strategy, warning message or None)
        """
        try:
            return self.get(name), None
        except UnknownStrategy as e:
            warning = f"{e}, falling back to '{DEFAULT_STRATEGY.value}'"
            logger.warning(warning)
            return self._strategies[DEFAULT_STRATEGY], warning


def build_strategy_registry(
    store: ChunkStore,
    embedder: Optional[EmbeddingProvider] = None,
    scorer: Optional[EnhancedScorer] = None,
    composite_weights: CompositeFeatureWeights = DEFAULT_COMPOSITE_WEIGHTS,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
) -> StrategyRegistry:
    """Create a registry with the standard implementation of every strategy"""
    return StrategyRegistry({
        StrategyName.VECTOR_ONLY: VectorOnlyStrategy(store),
        StrategyName.HYBRID: HybridStrategy(store),
        StrategyName.CONTEXTUAL: ContextualStrategy(store, embedder),
        StrategyName.MULTI_QUERY: MultiQueryStrategy(store, embedder),
        StrategyName.HIERARCHICAL: HierarchicalStrategy(store),
        StrategyName.ADVANCED_MULTI_FEATURE: AdvancedMultiFeatureStrategy(store, composite_weights),
        StrategyName.ADVANCED_MULTI_FEATURE_CONSENSUS: AdvancedMultiFeatureConsensusStrategy(
            store, embedder, scorer, max_workers, timeout
        ),
    })
