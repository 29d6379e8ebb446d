"""
Contextual Retrieval Pipeline
Query analysis, strategy fan-out, context expansion, quality optimization,
reranking and prompt assembly behind retrieve() and assemble_rag_prompt()
"""

from typing import List, Dict, Any, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import chain
import re
import time
import numpy as np
from loguru import logger

from .chunk import Chunk, deduplicate_by_id, sort_by_score
from .context import ConversationContext, Message
from .context_expansion import ContextExpander, ExpansionReport
from .embeddings import EmbeddingProvider, OllamaEmbeddingProvider
from .errors import EmptyQuery, SystemProbeQuery, RetrievalFailed
from .lost_in_middle import LostInMiddleMitigator
from .observability import TimingMetrics, RetrievalStats, measure_time
from .options import RetrievalOptions, PromptOptions
from .prompting import PromptAssembler, AssembledPrompt
from .quality import QualityOptimizer
from .query_analysis import QueryAnalysis, QueryAnalyzer, Complexity
from .reranking import RerankerRegistry, build_reranker_registry
from .scoring import EnhancedScorer
from .store import ChunkStore
from .strategies import StrategyContext, StrategyRegistry, bind_strategy, build_strategy_registry, run_concurrently
from .strategy_selector import StrategySelector, StrategySelection
from config.settings import settings


SYSTEM_PROBE_PHRASES = [
    "health check",
    "system status",
    "service test",
    "ping",
    "status check",
    "health test",
]

# Matched as whole words, so "mapping" does not match "ping"
_SYSTEM_PROBE_PATTERNS = [
    (phrase, re.compile(rf"\b{re.escape(phrase)}\b")) for phrase in SYSTEM_PROBE_PHRASES
]

EMPTY_QUERY_STRATEGY = "empty_query"
SYSTEM_BYPASS_STRATEGY = "system_bypass"
TEXT_FALLBACK_STRATEGY = "text_search_fallback"

RECENT_CONTEXT_MESSAGES = 3
SUBSTRING_MATCH_SCORE = 0.05
FALLBACK_MAX_QUALITY = 0.9

# Post-processing
COMPLEX_QUERY_MIN_TOKENS = 50
MAX_PER_CONTENT_TYPE = 2
MIN_DIVERSE_RESULTS = 3
DIVERSITY_TOP_UP = 5

# Confidence
COUNT_BONUS = 0.1
QUALITY_BONUS = 0.1
SPARSE_COMPLEX_PENALTY = 0.1

_PUNCTUATION = re.compile(r"[^\w\s]")


def guard_query(query: Optional[str]) -> str:
    """
    Reject queries that must not reach the store

    Raises:
        EmptyQuery: Query is empty or whitespace only
        SystemProbeQuery: Query looks like a health/status probe
    """
    if not query or not query.strip():
        raise EmptyQuery("Query is empty")

    query_lower = query.lower()
    for phrase, pattern in _SYSTEM_PROBE_PATTERNS:
        if pattern.search(query_lower):
            raise SystemProbeQuery(phrase)

    return query.strip()


def retrieval_confidence(chunks: List[Chunk], analysis: QueryAnalysis) -> float:
    """Confidence from the top score, result count, average quality and query complexity"""
    if not chunks:
        return 0.0

    top_relevance = chunks[0].final_score
    count_bonus = min(len(chunks) / 3, 1.0) * COUNT_BONUS
    quality_bonus = float(np.mean([c.quality_score for c in chunks])) * QUALITY_BONUS
    penalty = (
        SPARSE_COMPLEX_PENALTY
        if analysis.complexity == Complexity.COMPLEX and len(chunks) < 3
        else 0.0
    )

    return max(0.0, min(1.0, top_relevance + count_bonus + quality_bonus - penalty))


def diversify_content_types(chunks: List[Chunk]) -> List[Chunk]:
    """At most two chunks per content type, topped up to five if fewer than three survive"""
    per_type: Dict[str, int] = {}
    diverse = []
    for chunk in chunks:
        if per_type.get(chunk.content_type, 0) < MAX_PER_CONTENT_TYPE:
            per_type[chunk.content_type] = per_type.get(chunk.content_type, 0) + 1
            diverse.append(chunk)

    if len(diverse) < MIN_DIVERSE_RESULTS:
        kept = {chunk.chunk_id for chunk in diverse}
        for chunk in chunks:
            if len(diverse) >= DIVERSITY_TOP_UP:
                break
            if chunk.chunk_id not in kept:
                diverse.append(chunk)

    return diverse


@dataclass
class RetrievalResult:
    """Chunks returned by retrieve() plus how they were obtained"""
    query: str
    strategy: str
    reranking_model: Optional[str]
    chunks: List[Chunk]
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    system_query: bool = False

    @property
    def fallback_applied(self) -> bool:
        return bool(self.metadata.get("fallback_applied"))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "query": self.query,
            "strategy": self.strategy,
            "reranking_model": self.reranking_model,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "confidence": self.confidence,
            "system_query": self.system_query,
            "metadata": self.metadata,
        }


class ContextualRetrievalPipeline:
    """
    Contextual retrieval and prompt assembly

    Every collaborator is injected; defaults are built from settings. Flow:
    guard -> analyze -> select -> embed -> strategies (concurrent) -> dedup ->
    expand -> lost-in-middle -> quality -> rerank -> filter -> top-N.

    Failures of a single strategy, expansion path or chunk degrade the result
    and are reported in ``metadata["warnings"]``. Only a failing embedding
    combined with a failing lexical fallback raises (RetrievalFailed).
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: Optional[EmbeddingProvider] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        selector: Optional[StrategySelector] = None,
        scorer: Optional[EnhancedScorer] = None,
        strategy_registry: Optional[StrategyRegistry] = None,
        reranker_registry: Optional[RerankerRegistry] = None,
        expander: Optional[ContextExpander] = None,
        mitigator: Optional[LostInMiddleMitigator] = None,
        optimizer: Optional[QualityOptimizer] = None,
        assembler: Optional[PromptAssembler] = None,
        stats: Optional[RetrievalStats] = None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize pipeline

        Args:
            store: Chunk store (read-only from the pipeline's perspective)
            embedder: Query embedding provider (defaults to Ollama)
            analyzer: Query analyzer
            selector: Strategy selector
            scorer: Enhanced scorer shared by rerankers and consensus retrieval
            strategy_registry: Registry of retrieval strategies
            reranker_registry: Registry of rerankers
            expander: Context expander
            mitigator: Lost-in-middle mitigator
            optimizer: Quality optimizer
            assembler: Prompt assembler
            stats: Retrieval statistics accumulator
            max_workers: Thread pool size for strategy fan-out
            timeout: Seconds to wait for fanned-out strategies
        """
        self.store = store
        self.embedder = embedder or OllamaEmbeddingProvider()
        self.analyzer = analyzer or QueryAnalyzer()
        self.selector = selector or StrategySelector()
        self.scorer = scorer or EnhancedScorer()
        self.max_workers = max_workers or settings.STRATEGY_MAX_WORKERS
        self.timeout = timeout or settings.STRATEGY_TIMEOUT
        self.strategy_registry = strategy_registry or build_strategy_registry(
            store, self.embedder, self.scorer, max_workers=self.max_workers, timeout=self.timeout
        )
        self.reranker_registry = reranker_registry or build_reranker_registry(self.scorer)
        self.expander = expander or ContextExpander(store)
        self.mitigator = mitigator or LostInMiddleMitigator()
        self.optimizer = optimizer or QualityOptimizer()
        self.assembler = assembler or PromptAssembler()
        self.stats = stats or RetrievalStats()

        logger.info(f"Contextual retrieval pipeline ready with strategies: {self.strategy_registry.names()}")

    def close(self):
        """Release the embedding provider's resources"""
        close = getattr(self.embedder, "close", None)
        if close is not None:
            close()

    @staticmethod
    def embedding_text(query: str, conversation: ConversationContext) -> str:
        """Query text enriched with recent conversation and domain for embedding"""
        text = query
        if conversation.message_history:
            recent = " ".join(m.content for m in conversation.recent_messages(RECENT_CONTEXT_MESSAGES))
            text = f"Context: {recent}\n\nQuery: {query}"
        if conversation.domain:
            text = f"Domain: {conversation.domain}\n\n{text}"
        return text

    def retrieve(
        self,
        query: str,
        context: Union[ConversationContext, Dict[str, Any], None] = None,
        options: Union[RetrievalOptions, Dict[str, Any], None] = None,
    ) -> RetrievalResult:
        """
        Retrieve the most relevant chunks for a query

        Args:
            query: User query
            context: Conversation context (object or dict)
            options: RetrievalOptions (object or dict)

        Returns:
            RetrievalResult with chunks sorted by final score

        Raises:
            RetrievalFailed: Embedding and the lexical fallback both failed
        """
        start_time = time.perf_counter()
        conversation = ConversationContext.from_value(context)
        options = RetrievalOptions.from_value(options)
        metrics = TimingMetrics()

        try:
            query = guard_query(query)
        except EmptyQuery:
            logger.warning("Empty query, skipping retrieval")
            return self._short_circuit(query or "", EMPTY_QUERY_STRATEGY, 0.0, start_time)
        except SystemProbeQuery as e:
            logger.info(f"{e}, bypassing retrieval")
            return self._short_circuit(query, SYSTEM_BYPASS_STRATEGY, 1.0, start_time, system_query=True)

        logger.info(f"Starting contextual retrieval for query: '{query[:50]}'")

        analysis = self.analyzer.analyze(query, conversation)
        selection = self.selector.select(analysis, options.strategy, options.reranking_model)
        warnings = list(selection.warnings)

        try:
            with measure_time(metrics, "embedding_time"):
                query_embedding = self.embedder.embed(self.embedding_text(query, conversation))
        except Exception as e:
            logger.warning(f"Query embedding failed: {e}, falling back to text search")
            warnings.append(f"Query embedding failed: {e}")
            return self._lexical_fallback(query, analysis, selection, options, metrics, warnings, start_time)

        strategy_context = StrategyContext(analysis=analysis, conversation=conversation, options=options)

        # Step 1: strategy fan-out
        with measure_time(metrics, "retrieval_time"):
            candidates, strategies_used = self._run_strategies(
                query, query_embedding, strategy_context, selection, warnings
            )

        # Step 2: context expansion
        with measure_time(metrics, "expansion_time"):
            if options.enable_context_expansion and candidates:
                candidates, expansion = self.expander.expand(
                    candidates,
                    query,
                    hierarchical=options.enable_hierarchical_expansion,
                    semantic=options.enable_semantic_expansion,
                )
            else:
                expansion = ExpansionReport(
                    hierarchical_expansion=False,
                    semantic_expansion=False,
                    original_count=len(candidates),
                    expanded_count=len(candidates),
                )

        # Step 3: lost-in-middle mitigation and quality optimization
        with measure_time(metrics, "optimization_time"):
            if options.enable_lost_in_middle_mitigation:
                candidates = self.mitigator.mitigate(candidates)
            if options.enable_quality_optimization and candidates:
                candidates, _ = self.optimizer.optimize(candidates, query)

        # Step 4: reranking
        with measure_time(metrics, "reranking_time"):
            if options.enable_reranking and candidates:
                reranker, warning = self.reranker_registry.resolve(selection.reranking_model)
                if warning:
                    warnings.append(warning)
                candidates = reranker.rerank(query, candidates, strategy_context)
            else:
                candidates = [chunk.with_scores(relevance_score=chunk.similarity_score) for chunk in candidates]

        chunks = self.post_process(candidates, analysis, options)
        if conversation.has_context:
            chunks = [chunk.with_scores(annotations={"conversational": True}) for chunk in chunks]

        strategy = "+".join(strategies_used) if strategies_used else selection.strategy.value
        metrics.total_time = (time.perf_counter() - start_time) * 1000
        quality = QualityOptimizer.report(chunks)
        confidence = retrieval_confidence(chunks, analysis)

        metadata = {
            "total_retrieval_time": metrics.total_time,
            "chunks_retrieved": len(chunks),
            "average_relevance_score": float(np.mean([c.final_score for c in chunks])) if chunks else 0.0,
            "confidence_score": confidence,
            "retrieval_strategy": selection.strategy.value,
            "strategy_reasoning": selection.reasoning,
            "strategies_used": strategies_used,
            "reranking_model": selection.reranking_model.value if options.enable_reranking else None,
            "quality_score": quality.overall_quality,
            "context_expansion": {
                "original_count": expansion.original_count,
                "expanded_count": expansion.expanded_count,
            },
            "query_analysis": analysis.to_dict(),
            "warnings": warnings,
            "fallback_applied": False,
            "system_query": False,
            "timing": metrics.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        self.stats.record(strategy, metrics.total_time, quality.overall_quality)

        logger.info(
            f"Retrieved {len(chunks)} chunks in {metrics.total_time:.0f}ms "
            f"(strategy {strategy}, confidence {confidence:.3f})"
        )

        return RetrievalResult(
            query=query,
            strategy=strategy,
            reranking_model=metadata["reranking_model"],
            chunks=chunks,
            confidence=confidence,
            metadata=metadata,
        )

    def _run_strategies(
        self,
        query: str,
        query_embedding: np.ndarray,
        context: StrategyContext,
        selection: StrategySelection,
        warnings: List[str],
    ) -> Tuple[List[Chunk], List[str]]:
        """Run the requested strategies concurrently and merge their results"""
        requested = context.options.strategies or [selection.strategy.value]

        strategies = []
        for name in requested:
            strategy, warning = self.strategy_registry.resolve(name)
            if warning:
                warnings.append(warning)
            if strategy not in strategies:
                strategies.append(strategy)

        limit = context.options.top_k
        tasks = [
            (strategy.name.value, bind_strategy(strategy, query, query_embedding, context, limit))
            for strategy in strategies
        ]
        results, task_warnings = run_concurrently(tasks, self.max_workers, self.timeout)
        warnings.extend(task_warnings)

        strategies_used = [strategy.name.value for strategy, result in zip(strategies, results) if result]
        merged = deduplicate_by_id(chain.from_iterable(results), keep="best")

        logger.info(f"Multi-strategy retrieval completed: {len(merged)} unique chunks from {strategies_used}")
        return merged, strategies_used

    @staticmethod
    def post_process(chunks: List[Chunk], analysis: QueryAnalysis, options: RetrievalOptions) -> List[Chunk]:
        """Quality and size filters, optional content-type diversity, final ordering and cap"""
        filtered = [chunk for chunk in chunks if chunk.quality_score >= options.min_quality_score]

        if analysis.complexity == Complexity.COMPLEX:
            filtered = [chunk for chunk in filtered if chunk.token_count >= COMPLEX_QUERY_MIN_TOKENS]

        ordered = sort_by_score(deduplicate_by_id(filtered, keep="best"), "final_score")

        if options.ensure_content_type_diversity:
            ordered = diversify_content_types(ordered)

        return ordered[: options.max_retrieved_chunks]

    def _lexical_fallback(
        self,
        query: str,
        analysis: QueryAnalysis,
        selection: StrategySelection,
        options: RetrievalOptions,
        metrics: TimingMetrics,
        warnings: List[str],
        start_time: float,
    ) -> RetrievalResult:
        """Text search, then substring search, when no query embedding is available"""
        limit = options.max_retrieved_chunks
        sanitized = _PUNCTUATION.sub(" ", query).strip()

        try:
            with measure_time(metrics, "retrieval_time"):
                chunks = self.store.lexical_search(sanitized, top_k=limit)
                if not chunks:
                    chunks = [
                        chunk.with_scores(similarity_score=SUBSTRING_MATCH_SCORE, text_similarity=SUBSTRING_MATCH_SCORE)
                        for chunk in self.store.substring_search(query, top_k=limit)
                    ]
        except Exception as e:
            logger.error(f"Text search fallback failed: {e}")
            raise RetrievalFailed(f"Embedding and text search fallback both failed: {e}", cause=e) from e

        chunks = sort_by_score(
            chunk.with_scores(retrieval_strategy=TEXT_FALLBACK_STRATEGY, relevance_score=chunk.similarity_score)
            for chunk in deduplicate_by_id(chunks)
        )[:limit]

        average_relevance = float(np.mean([c.similarity_score for c in chunks])) if chunks else 0.0
        quality_score = min(FALLBACK_MAX_QUALITY, average_relevance)
        confidence = retrieval_confidence(chunks, analysis)
        metrics.total_time = (time.perf_counter() - start_time) * 1000

        self.stats.record(TEXT_FALLBACK_STRATEGY, metrics.total_time, quality_score)
        logger.info(f"Text search fallback returned {len(chunks)} chunks")

        metadata = {
            "total_retrieval_time": metrics.total_time,
            "chunks_retrieved": len(chunks),
            "average_relevance_score": average_relevance,
            "confidence_score": confidence,
            "retrieval_strategy": TEXT_FALLBACK_STRATEGY,
            "strategies_used": [TEXT_FALLBACK_STRATEGY],
            "reranking_model": None,
            "quality_score": quality_score,
            "context_expansion": None,
            "query_analysis": analysis.to_dict(),
            "warnings": warnings,
            "fallback_applied": True,
            "fallback_reason": "embedding_unavailable",
            "system_query": False,
            "timing": metrics.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        return RetrievalResult(
            query=query,
            strategy=TEXT_FALLBACK_STRATEGY,
            reranking_model=None,
            chunks=chunks,
            confidence=confidence,
            metadata=metadata,
        )

    def _short_circuit(
        self,
        query: str,
        strategy: str,
        confidence: float,
        start_time: float,
        system_query: bool = False,
    ) -> RetrievalResult:
        elapsed = (time.perf_counter() - start_time) * 1000
        return RetrievalResult(
            query=query,
            strategy=strategy,
            reranking_model=None,
            chunks=[],
            confidence=confidence,
            system_query=system_query,
            metadata={
                "total_retrieval_time": elapsed,
                "chunks_retrieved": 0,
                "average_relevance_score": 0.0,
                "confidence_score": confidence,
                "retrieval_strategy": strategy,
                "strategies_used": [],
                "warnings": [],
                "fallback_applied": False,
                "system_query": system_query,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    def assemble_rag_prompt(
        self,
        query: str,
        chunks: List[Chunk],
        history: Optional[List[Union[Message, Dict[str, Any]]]] = None,
        options: Union[PromptOptions, Dict[str, Any], None] = None,
    ) -> AssembledPrompt:
        """Assemble a cited, budget-checked prompt from retrieved chunks"""
        return self.assembler.assemble_rag_prompt(query, chunks, history, options)

    def get_stats(self) -> Dict[str, Any]:
        """Retrieval statistics plus store statistics"""
        return {
            **self.stats.snapshot().to_dict(),
            "store": self.store.get_stats(),
        }
