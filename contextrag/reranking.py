"""
Reranking Module
Final scoring passes that set relevance_score on every candidate
"""

from typing import List, Dict, Optional, Tuple, Union
from abc import ABC, abstractmethod
import re
from loguru import logger

from .chunk import Chunk, sort_by_score
from .context import ConversationContext
from .errors import UnknownRerankModel
from .query_analysis import QueryType
from .scoring import EnhancedScorer, clamp_score
from .strategies import StrategyContext
from .strategy_selector import RerankModel, DEFAULT_RERANK_MODEL


ENHANCED_WEIGHT = 0.8
TERM_FREQUENCY_WEIGHT = 0.2
CONTEXT_RELEVANCE_WEIGHT = 0.2

PREVIOUS_TOPIC_BOOST = 0.1
CURRENT_TOPIC_BOOST = 0.15
RELEVANT_SECTION_BOOST = 0.1

# Store content_type relevance per query type, used when enhanced scoring is unavailable
CONTENT_TYPE_RELEVANCE: Dict[QueryType, Dict[str, float]] = {
    QueryType.PROCEDURE: {"procedure": 1.0, "list": 0.8, "text": 0.6, "table": 0.4},
    QueryType.DEFINITION: {"text": 1.0, "definition": 0.9, "table": 0.5, "list": 0.3},
    QueryType.LIST: {"list": 1.0, "table": 0.8, "procedure": 0.6, "text": 0.4},
    QueryType.COMPARISON: {"table": 1.0, "text": 0.8, "list": 0.6, "procedure": 0.3},
}

_NON_WORD = re.compile(r"[^\w\s]")


def term_frequency(query: str, content: str) -> float:
    """
    Sum over query terms of the share of chunk words containing the term, capped at 1

    Query terms are punctuation-stripped words longer than two characters.
    """
    terms = {word for word in _NON_WORD.sub(" ", query.lower()).split() if len(word) > 2}
    words = _NON_WORD.sub(" ", content.lower()).split()
    if not terms or not words:
        return 0.0
    return clamp_score(sum(sum(1 for word in words if term in word) / len(words) for term in terms))


def context_relevance(chunk: Chunk, conversation: ConversationContext) -> float:
    """Boost for overlap with previous topics, the current topic and earlier sections, capped at 1"""
    content = chunk.content.lower()
    relevance = sum(
        PREVIOUS_TOPIC_BOOST for topic in conversation.previous_topics if topic.lower() in content
    )

    if conversation.current_topic and conversation.current_topic.lower() in content:
        relevance += CURRENT_TOPIC_BOOST

    if any(section in chunk.hierarchy_path for section in conversation.previously_relevant_sections):
        relevance += RELEVANT_SECTION_BOOST

    return clamp_score(relevance)


class Reranker(ABC):
    """Sets relevance_score on every chunk and returns them best first"""

    model: RerankModel

    def __init__(self, scorer: Optional[EnhancedScorer] = None):
        self.scorer = scorer or EnhancedScorer()

    @abstractmethod
    def rerank(self, query: str, chunks: List[Chunk], context: StrategyContext) -> List[Chunk]:
        """Rerank chunks for a query"""
        pass

    def _enhance(self, query: str, chunks: List[Chunk], context: StrategyContext) -> List[Chunk]:
        return self.scorer.score_chunks(chunks, query, context.conversation)


class SimilarityBasedReranker(Reranker):
    """Relevance is the enhanced content-aware score"""

    model = RerankModel.SIMILARITY_BASED

    def rerank(self, query, chunks, context):
        reranked = [
            chunk.with_scores(
                relevance_score=clamp_score(
                    chunk.enhanced_score
                    if chunk.enhanced_score is not None
                    else chunk.similarity_score
                )
            )
            for chunk in self._enhance(query, chunks, context)
        ]
        return sort_by_score(reranked, "relevance_score")


class RelevanceBasedReranker(Reranker):
    """Enhanced score (80%) plus query term frequency (20%)"""

    model = RerankModel.RELEVANCE_BASED

    def rerank(self, query, chunks, context):
        query_type = context.analysis.query_type
        reranked = []

        for chunk in self._enhance(query, chunks, context):
            tf = term_frequency(query, chunk.content)

            if chunk.enhanced_score is not None:
                score = chunk.enhanced_score * ENHANCED_WEIGHT + tf * TERM_FREQUENCY_WEIGHT
                boost = None
            else:
                # Enhanced scoring failed; weigh raw signals instead
                boost = CONTENT_TYPE_RELEVANCE.get(query_type, {}).get(chunk.content_type, 0.5)
                score = (
                    chunk.similarity_score * 0.6
                    + tf * 0.3
                    + boost * 0.05
                    + chunk.quality_score * 0.2 * 0.05
                )

            annotations = {"term_frequency": tf}
            if boost is not None:
                annotations["content_type_boost"] = boost
            reranked.append(chunk.with_scores(relevance_score=clamp_score(score), annotations=annotations))

        return sort_by_score(reranked, "relevance_score")


class ContextAwareReranker(Reranker):
    """Enhanced score (80%) plus conversation context relevance (20%)"""

    model = RerankModel.CONTEXT_AWARE

    def rerank(self, query, chunks, context):
        reranked = []

        for chunk in self._enhance(query, chunks, context):
            relevance = context_relevance(chunk, context.conversation)

            if chunk.enhanced_score is not None:
                score = chunk.enhanced_score * ENHANCED_WEIGHT + relevance * CONTEXT_RELEVANCE_WEIGHT
            else:
                score = chunk.similarity_score * 0.7 + relevance * 0.3

            reranked.append(
                chunk.with_scores(relevance_score=clamp_score(score), annotations={"context_relevance": relevance})
            )

        return sort_by_score(reranked, "relevance_score")


class UserPreferenceReranker(SimilarityBasedReranker):
    """Extension point for learned, per-user reranking; scores like similarity_based for now"""

    model = RerankModel.USER_PREFERENCE


class RerankerRegistry:
    """
    Registry of rerankers keyed by RerankModel

    ``get`` is strict; ``resolve`` falls back to similarity_based with a warning.
    """

    def __init__(self, rerankers: Dict[RerankModel, Reranker]):
        missing = [model.value for model in RerankModel if model not in rerankers]
        if missing:
            raise ValueError(f"No implementation registered for reranking models: {missing}")
        self._rerankers = dict(rerankers)

    def get(self, name: Union[str, RerankModel]) -> Reranker:
        try:
            return self._rerankers[RerankModel(name)]
        except ValueError:
            raise UnknownRerankModel(str(name)) from None

    def resolve(self, name: Union[str, RerankModel]) -> Tuple[Reranker, Optional[str]]:
        try:
            return self.get(name), None
        except UnknownRerankModel as e:
            warning = f"{e}, falling back to '{DEFAULT_RERANK_MODEL.value}'"
            logger.warning(warning)
            return self._rerankers[DEFAULT_RERANK_MODEL], warning


def build_reranker_registry(scorer: Optional[EnhancedScorer] = None) -> RerankerRegistry:
    """Create a registry with every reranking model sharing one scorer"""
    scorer = scorer or EnhancedScorer()
    return RerankerRegistry({
        RerankModel.SIMILARITY_BASED: SimilarityBasedReranker(scorer),
        RerankModel.RELEVANCE_BASED: RelevanceBasedReranker(scorer),
        RerankModel.CONTEXT_AWARE: ContextAwareReranker(scorer),
        RerankModel.USER_PREFERENCE: UserPreferenceReranker(scorer),
    })
