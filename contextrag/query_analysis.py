"""
Query Analysis Module
Classifies queries into type, intent and complexity and extracts keywords and entities
"""

from enum import Enum
from typing import List, Dict, Any, Optional, Pattern
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
import re
from loguru import logger

from .context import ConversationContext
from config.settings import settings


class QueryType(str, Enum):
    """Query intent families"""
    DEFINITION = "definition"
    PROCEDURE = "procedure"
    COMPARISON = "comparison"
    LIST = "list"
    EXAMPLE = "example"
    TROUBLESHOOTING = "troubleshooting"
    GENERAL = "general"


class Complexity(str, Enum):
    """Query complexity buckets"""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


# Intent patterns, checked in declaration order; the first match is the query type
INTENT_PATTERNS: Dict[QueryType, str] = {
    QueryType.DEFINITION: r"(?:what is|define|definition of|meaning of)",
    QueryType.PROCEDURE: r"(?:how to|steps to|process for|procedure)",
    QueryType.COMPARISON: r"(?:difference between|compare|versus|vs)",
    QueryType.LIST: r"(?:list|enumerate|what are)",
    QueryType.EXAMPLE: r"(?:example|instance|sample)",
    QueryType.TROUBLESHOOTING: r"(?:error|problem|issue|fix|solve)",
}

QUESTION_WORDS_PATTERN = r"\b(what|how|when|where|why|which|who)\b"

KEYWORD_STOP_WORDS = {
    "what", "how", "when", "where", "why", "which", "who",
    "the", "and", "or", "but", "for", "with",
}

# Fund management vocabulary recognised as entities
DOMAIN_ENTITIES = [
    "fund", "portfolio", "investment", "nav", "asset", "security", "risk",
    "compliance", "audit", "rollforward", "hierarchy", "valuation", "performance",
]


@dataclass
class QueryAnalysis:
    """Analysis result for a query, recomputed per request"""
    original_query: str
    query_type: QueryType = QueryType.GENERAL
    complexity: Complexity = Complexity.SIMPLE
    intent: List[QueryType] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    word_count: int = 0
    query_length: int = 0
    has_question_words: bool = False
    domain: str = ""
    has_context: bool = False
    conversation_length: int = 0
    previous_topics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "original_query": self.original_query,
            "query_type": self.query_type.value,
            "complexity": self.complexity.value,
            "intent": [intent.value for intent in self.intent],
            "entities": self.entities,
            "keywords": self.keywords,
            "word_count": self.word_count,
            "query_length": self.query_length,
            "has_question_words": self.has_question_words,
            "domain": self.domain,
            "contextual": {
                "has_context": self.has_context,
                "conversation_length": self.conversation_length,
                "previous_topics": self.previous_topics,
            },
        }


class QueryClassifier(ABC):
    """
    Classifier interface for query analysis

    The pattern implementation below can be swapped for a trained model
    without touching QueryAnalyzer callers.
    """

    @abstractmethod
    def classify(self, query: str, context: ConversationContext) -> QueryAnalysis:
        """Classify a query"""
        pass


class PatternQueryClassifier(QueryClassifier):
    """Regex-based query classifier"""

    def __init__(
        self,
        intent_patterns: Optional[Dict[QueryType, str]] = None,
        domain_entities: Optional[List[str]] = None,
        domain: Optional[str] = None,
    ):
        """
        Initialize pattern classifier

        Args:
            intent_patterns: Ordered mapping of query type to regex
            domain_entities: Domain terms reported as entities
            domain: Knowledge domain label attached to every analysis
        """
        self.domain = domain or settings.KNOWLEDGE_DOMAIN
        self.domain_entities = domain_entities or DOMAIN_ENTITIES
        self.patterns: Dict[QueryType, Pattern] = {
            query_type: re.compile(pattern, re.IGNORECASE)
            for query_type, pattern in (intent_patterns or INTENT_PATTERNS).items()
        }
        self.question_words = re.compile(QUESTION_WORDS_PATTERN, re.IGNORECASE)

    def classify(self, query: str, context: ConversationContext) -> QueryAnalysis:
        intent = [
            query_type for query_type, pattern in self.patterns.items()
            if pattern.search(query)
        ]
        word_count = len(query.split())

        analysis = QueryAnalysis(
            original_query=query,
            query_type=intent[0] if intent else QueryType.GENERAL,
            complexity=self._assess_complexity(word_count, len(intent)),
            intent=intent,
            entities=self._extract_entities(query),
            keywords=self._extract_keywords(query),
            word_count=word_count,
            query_length=len(query),
            has_question_words=bool(self.question_words.search(query)),
            domain=self.domain,
            has_context=context.has_context,
            conversation_length=context.conversation_length,
            previous_topics=list(context.previous_topics),
        )

        return analysis

    @staticmethod
    def _assess_complexity(word_count: int, intent_count: int) -> Complexity:
        if word_count > 15 or intent_count > 2:
            return Complexity.COMPLEX
        if word_count > 8 or intent_count > 1:
            return Complexity.MODERATE
        return Complexity.SIMPLE

    @staticmethod
    def _extract_keywords(query: str) -> List[str]:
        """Stop-word filtered tokens longer than 3 characters"""
        tokens = re.sub(r"[^\w\s]", " ", query.lower()).split()
        return [
            token for token in tokens
            if len(token) > 3 and token not in KEYWORD_STOP_WORDS
        ]

    def _extract_entities(self, query: str) -> List[str]:
        query_lower = query.lower()
        return [entity for entity in self.domain_entities if entity in query_lower]


class QueryAnalyzer:
    """
    Entry point for query analysis

    Never raises: a classifier failure yields a general/simple analysis.
    """

    def __init__(self, classifier: Optional[QueryClassifier] = None):
        self.classifier = classifier or PatternQueryClassifier()

    def analyze(
        self, query: str, context: Optional[ConversationContext] = None
    ) -> QueryAnalysis:
        """
        Analyze a query

        Args:
            query: Raw user query
            context: Conversation context (optional)

        Returns:
            QueryAnalysis for the query
        """
        context = context or ConversationContext()

        try:
            analysis = self.classifier.classify(query, context)
        except Exception as e:
            logger.warning(f"Query classification failed: {e}, using general analysis")
            analysis = QueryAnalysis(
                original_query=query,
                word_count=len(query.split()),
                query_length=len(query),
                has_context=context.has_context,
                conversation_length=context.conversation_length,
                previous_topics=list(context.previous_topics),
            )

        logger.info(
            f"Query analyzed as {analysis.query_type.value} "
            f"({analysis.complexity.value}, intents={len(analysis.intent)}, "
            f"entities={analysis.entities})"
        )

        return analysis
