"""
Enhanced Content-Aware Scoring Module
Rescores retrieved chunks by vector similarity, content type fit, instructional
value, quality and context so that real instructions outrank tables of contents
"""

from typing import List, Dict, Optional, Pattern
from dataclasses import dataclass
from datetime import datetime, timezone
import re
from loguru import logger

from .chunk import Chunk
from .context import ConversationContext
from .content_analysis import (
    ContentAnalysis,
    ContentClassifier,
    ContentType,
    ContentTypeAnalyzer,
    apply_content_type_tag,
)
from .query_analysis import QueryType


@dataclass(frozen=True)
class EnhancedScoreWeights:
    """Weights of the enhanced score components"""
    vector_similarity: float = 0.4
    content_type_match: float = 0.25
    instructional_value: float = 0.2
    quality: float = 0.1
    contextual_relevance: float = 0.05


DEFAULT_SCORE_WEIGHTS = EnhancedScoreWeights()

# Scorer query-type detection, first match wins. Wider than the analyzer's
# patterns: "create", "setup" and "configure" count as procedure requests.
SCORER_QUERY_TYPE_PATTERNS: Dict[QueryType, str] = {
    QueryType.PROCEDURE: r"(?:how\s+to|steps?\s+to|process\s+for|procedure|guide|tutorial|walkthrough|create|setup|configure)",
    QueryType.DEFINITION: r"(?:what\s+is|define|definition\s+of|meaning\s+of|explain)",
    QueryType.COMPARISON: r"(?:difference\s+between|compare|versus|vs\.?|better|best)",
    QueryType.LIST: r"(?:list|enumerate|what\s+are|types?\s+of|kinds?\s+of)",
    QueryType.EXAMPLE: r"(?:example|sample|instance|demonstrate|show\s+me)",
    QueryType.TROUBLESHOOTING: r"(?:error|problem|issue|fix|solve|troubleshoot|debug)",
}

# Content type fit per query type; missing entries count as 1.0
CONTENT_TYPE_MODIFIERS: Dict[QueryType, Dict[ContentType, float]] = {
    QueryType.PROCEDURE: {
        ContentType.INSTRUCTIONS: 2.5,
        ContentType.EXAMPLES: 1.2,
        ContentType.DEFINITIONS: 0.8,
        ContentType.TABLE_OF_CONTENTS: 0.1,
        ContentType.FAQ: 1.0,
        ContentType.TEXT: 0.7,
    },
    QueryType.DEFINITION: {
        ContentType.DEFINITIONS: 1.4,
        ContentType.TEXT: 1.0,
        ContentType.INSTRUCTIONS: 0.7,
        ContentType.EXAMPLES: 0.8,
        ContentType.TABLE_OF_CONTENTS: 0.3,
        ContentType.FAQ: 0.9,
    },
    QueryType.LIST: {
        ContentType.INSTRUCTIONS: 1.2,
        ContentType.EXAMPLES: 1.1,
        ContentType.TABLE_OF_CONTENTS: 0.6,
        ContentType.DEFINITIONS: 0.8,
        ContentType.TEXT: 0.9,
        ContentType.FAQ: 1.0,
    },
}

# Content type score for a table of contents answering a procedure query
TOC_PROCEDURE_CONTENT_SCORE = 0.1
# Hard cap on the final enhanced score of that combination
TOC_PROCEDURE_SCORE_CAP = 0.15

DETAIL_REQUEST_WORDS = ["detailed", "step by step", "complete", "comprehensive", "full"]

# (lower bound exclusive, multiplier), checked top down
CONTENT_LENGTH_BOOSTS = [(3000, 1.2), (1500, 1.1), (500, 1.0), (200, 0.9)]
SHORT_CONTENT_BOOST = 0.8
# (lower bound inclusive, multiplier)
STEP_COUNT_BOOSTS = [(6, 1.3), (3, 1.2), (1, 1.1)]
ACTION_WORD_BOOSTS = [(6, 1.15), (3, 1.1), (1, 1.05)]

RECENT_DAYS = 30
RECENT_BOOST = 0.1
SEMI_RECENT_DAYS = 90
SEMI_RECENT_BOOST = 0.05
GUIDE_SOURCE_BOOST = 0.1
METADATA_BOOST = 0.05


def clamp_score(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class EnhancedScorer:
    """
    Content-aware chunk scorer

    enhanced = vector*0.4 + content_type*0.25 + instructional*0.2
               + quality*0.1 + contextual*0.05

    Every sub-score and the final score is clamped to [0, 1].
    """

    def __init__(
        self,
        classifier: Optional[ContentClassifier] = None,
        weights: EnhancedScoreWeights = DEFAULT_SCORE_WEIGHTS,
        content_type_modifiers: Optional[Dict[QueryType, Dict[ContentType, float]]] = None,
        query_type_patterns: Optional[Dict[QueryType, str]] = None,
        toc_procedure_cap: float = TOC_PROCEDURE_SCORE_CAP,
    ):
        """
        Initialize scorer

        Args:
            classifier: Content classifier (defaults to ContentTypeAnalyzer)
            weights: Component weights
            content_type_modifiers: Per-query-type content type modifiers
            query_type_patterns: Ordered query type regexes
            toc_procedure_cap: Final score cap for tables of contents on procedure queries
        """
        self.classifier = classifier or ContentTypeAnalyzer()
        self.weights = weights
        self.content_type_modifiers = content_type_modifiers or CONTENT_TYPE_MODIFIERS
        self.toc_procedure_cap = toc_procedure_cap
        self.query_type_patterns: Dict[QueryType, Pattern] = {
            query_type: re.compile(pattern, re.IGNORECASE)
            for query_type, pattern in (query_type_patterns or SCORER_QUERY_TYPE_PATTERNS).items()
        }

    def detect_query_type(self, query: str) -> QueryType:
        """First matching scorer pattern, general if none matches"""
        for query_type, pattern in self.query_type_patterns.items():
            if pattern.search(query):
                return query_type
        return QueryType.GENERAL

    def analyze_chunk(self, chunk: Chunk) -> ContentAnalysis:
        """Classify chunk content; a known store content_type tag wins over detection"""
        analysis = self.classifier.classify(chunk.content, chunk.heading, chunk.metadata)
        return apply_content_type_tag(analysis, chunk.content_type)

    def score_chunks(
        self,
        chunks: List[Chunk],
        query: str,
        context: Optional[ConversationContext] = None,
        now: Optional[datetime] = None,
    ) -> List[Chunk]:
        """
        Attach enhanced scores and sort descending

        Args:
            chunks: Chunks with similarity scores
            query: Original user query
            context: Conversation context (optional)
            now: Reference time for recency boosts (defaults to current time)

        Returns:
            Copies of the chunks with ``enhanced_score`` set, best first.
            On failure ``enhanced_score`` is cleared and the chunks are
            returned sorted by similarity.
        """
        if not chunks:
            return []

        try:
            query_type = self.detect_query_type(query)
            logger.debug(f"Enhancing scores for {len(chunks)} chunks (query type {query_type.value})")

            scored = [self.score_chunk(chunk, query, query_type, now) for chunk in chunks]
            scored.sort(key=lambda c: c.enhanced_score, reverse=True)

            for chunk in scored[:5]:
                details = chunk.annotations["scoring_details"]
                logger.debug(
                    f"{chunk.chunk_id}: enhanced={chunk.enhanced_score:.3f} "
                    f"type={details['content_type']} sim={details['base_similarity']:.3f} "
                    f"content_type={details['content_type_score']:.3f} "
                    f"instructional={details['instructional_score']:.3f}"
                )

            return scored

        except Exception as e:
            logger.error(f"Enhanced scoring failed: {e}, using similarity order")
            unscored = [chunk.with_scores(enhanced_score=None) for chunk in chunks]
            return sorted(unscored, key=lambda c: c.similarity_score, reverse=True)

    def score_chunk(
        self,
        chunk: Chunk,
        query: str,
        query_type: QueryType,
        now: Optional[datetime] = None,
    ) -> Chunk:
        """Score a single chunk for an already detected query type"""
        analysis = self.analyze_chunk(chunk)

        base_similarity = clamp_score(chunk.similarity_score)
        content_type_score = self.content_type_score(analysis, query_type)
        instructional_score = self.instructional_score(analysis, query_type, query)
        quality_boost = self.quality_boost(chunk, analysis)
        contextual_score = self.contextual_score(chunk, now)

        enhanced = (
            base_similarity * self.weights.vector_similarity
            + content_type_score * self.weights.content_type_match
            + instructional_score * self.weights.instructional_value
            + quality_boost * self.weights.quality
            + contextual_score * self.weights.contextual_relevance
        )
        if query_type == QueryType.PROCEDURE and analysis.is_table_of_contents:
            enhanced = min(enhanced, self.toc_procedure_cap)

        return chunk.with_scores(
            enhanced_score=clamp_score(enhanced),
            annotations={
                "scoring_details": {
                    "query_type": query_type.value,
                    "content_type": analysis.content_type.value,
                    "base_similarity": base_similarity,
                    "content_type_score": content_type_score,
                    "instructional_score": instructional_score,
                    "quality_boost": quality_boost,
                    "contextual_score": contextual_score,
                    "analysis_confidence": analysis.confidence,
                },
            },
        )

    def content_type_score(self, analysis: ContentAnalysis, query_type: QueryType) -> float:
        modifier = self.content_type_modifiers.get(query_type, {}).get(analysis.content_type, 1.0)

        if query_type == QueryType.PROCEDURE and analysis.is_table_of_contents:
            return TOC_PROCEDURE_CONTENT_SCORE

        if query_type == QueryType.PROCEDURE and analysis.instructional_value > 0.8:
            return clamp_score(modifier * 1.2)

        if analysis.confidence > 0.8:
            return clamp_score(modifier * 1.1)

        return clamp_score(modifier)

    @staticmethod
    def instructional_score(analysis: ContentAnalysis, query_type: QueryType, query: str) -> float:
        score = analysis.instructional_value

        if query_type == QueryType.PROCEDURE:
            if analysis.is_instructional:
                score *= 1.5
            if analysis.is_table_of_contents:
                score *= 0.2
            if analysis.step_count > 1:
                score *= 1 + analysis.step_count * 0.1

        query_lower = query.lower()
        if analysis.is_instructional and any(word in query_lower for word in DETAIL_REQUEST_WORDS):
            score *= 1.3

        return clamp_score(score)

    @staticmethod
    def quality_boost(chunk: Chunk, analysis: ContentAnalysis) -> float:
        boost = chunk.quality_score

        content_length = len(chunk.content)
        for bound, multiplier in CONTENT_LENGTH_BOOSTS:
            if content_length > bound:
                boost *= multiplier
                break
        else:
            boost *= SHORT_CONTENT_BOOST

        for bound, multiplier in STEP_COUNT_BOOSTS:
            if analysis.step_count >= bound:
                boost *= multiplier
                break

        for bound, multiplier in ACTION_WORD_BOOSTS:
            if analysis.action_word_count >= bound:
                boost *= multiplier
                break

        return clamp_score(boost)

    @staticmethod
    def contextual_score(chunk: Chunk, now: Optional[datetime] = None) -> float:
        relevance = 0.5

        if chunk.created_at is not None:
            if now is None:
                now = datetime.now(timezone.utc) if chunk.created_at.tzinfo else datetime.now()
            age_days = (now - chunk.created_at).total_seconds() / 86400
            if age_days < RECENT_DAYS:
                relevance += RECENT_BOOST
            elif age_days < SEMI_RECENT_DAYS:
                relevance += SEMI_RECENT_BOOST

        if chunk.source_title and "guide" in chunk.source_title.lower():
            relevance += GUIDE_SOURCE_BOOST

        if chunk.metadata:
            relevance += METADATA_BOOST

        return clamp_score(relevance)


def detect_content_type(scorer: EnhancedScorer, chunk: Chunk) -> ContentType:
    """Content type as the scorer sees it (store tag first, then detection)"""
    return scorer.analyze_chunk(chunk).content_type
