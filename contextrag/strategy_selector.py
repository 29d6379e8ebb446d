"""
Strategy Selector Module
Maps a query analysis to a retrieval strategy and a reranking model
"""

from typing import Dict, Any, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum
from loguru import logger

from .query_analysis import QueryAnalysis, QueryType, Complexity


class StrategyName(str, Enum):
    """Registered retrieval strategies"""
    VECTOR_ONLY = "vector_only"
    HYBRID = "hybrid"
    CONTEXTUAL = "contextual"
    MULTI_QUERY = "multi_query"
    HIERARCHICAL = "hierarchical"
    ADVANCED_MULTI_FEATURE = "advanced_multi_feature"
    ADVANCED_MULTI_FEATURE_CONSENSUS = "advanced_multi_feature_consensus"


class RerankModel(str, Enum):
    """Registered reranking models"""
    SIMILARITY_BASED = "similarity_based"
    RELEVANCE_BASED = "relevance_based"
    CONTEXT_AWARE = "context_aware"
    USER_PREFERENCE = "user_preference"


DEFAULT_STRATEGY = StrategyName.HYBRID
DEFAULT_RERANK_MODEL = RerankModel.SIMILARITY_BASED


@dataclass
class StrategySelection:
    """Selected strategy and reranking model for a query"""
    strategy: StrategyName
    reranking_model: RerankModel
    reasoning: str = ""
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "strategy": self.strategy.value,
            "reranking_model": self.reranking_model.value,
            "reasoning": self.reasoning,
            "warnings": self.warnings,
        }


def resolve_strategy(
    name: Union[str, StrategyName, None],
) -> Tuple[Optional[StrategyName], Optional[str]]:
    """
    Resolve a requested strategy name

    Returns:
        Tuple of (strategy or None when unknown, warning message or None)
    """
    if name is None:
        return None, None
    try:
        return StrategyName(name), None
    except ValueError:
        warning = f"Strategy '{name}' not found, falling back to '{DEFAULT_STRATEGY.value}'"
        logger.warning(warning)
        return None, warning


def resolve_rerank_model(
    name: Union[str, RerankModel, None],
) -> Tuple[Optional[RerankModel], Optional[str]]:
    """
    Resolve a requested reranking model name

    Returns:
        Tuple of (model or None when unknown, warning message or None)
    """
    if name is None:
        return None, None
    try:
        return RerankModel(name), None
    except ValueError:
        warning = (
            f"Reranking model '{name}' not found, "
            f"falling back to '{DEFAULT_RERANK_MODEL.value}'"
        )
        logger.warning(warning)
        return None, warning


class StrategySelector:
    """
    Deterministic decision table over QueryAnalysis

    Strategy rules, first match wins:
    - complex query or more than two intents -> multi_query
    - procedure or list query -> hierarchical
    - conversation with at least 3 prior turns -> contextual
    - entities or more than one keyword -> hybrid
    - otherwise -> vector_only
    """

    def __init__(self, contextual_min_turns: int = 3):
        self.contextual_min_turns = contextual_min_turns

    def select_strategy(self, analysis: QueryAnalysis) -> Tuple[StrategyName, str]:
        """Pick a retrieval strategy with a short reason"""
        if analysis.complexity == Complexity.COMPLEX or len(analysis.intent) > 2:
            return StrategyName.MULTI_QUERY, "complex query"

        if analysis.query_type in (QueryType.PROCEDURE, QueryType.LIST):
            return StrategyName.HIERARCHICAL, f"{analysis.query_type.value} query"

        if analysis.has_context and analysis.conversation_length >= self.contextual_min_turns:
            return StrategyName.CONTEXTUAL, "conversation history"

        if analysis.entities or len(analysis.keywords) > 1:
            return StrategyName.HYBRID, "entities or keywords present"

        return StrategyName.VECTOR_ONLY, "no lexical signal"

    def select_reranking_model(self, analysis: QueryAnalysis) -> RerankModel:
        """Pick a reranking model"""
        if analysis.has_context:
            return RerankModel.CONTEXT_AWARE

        if analysis.query_type in (QueryType.DEFINITION, QueryType.COMPARISON):
            return RerankModel.RELEVANCE_BASED

        return RerankModel.SIMILARITY_BASED

    def select(
        self,
        analysis: QueryAnalysis,
        requested_strategy: Union[str, StrategyName, None] = None,
        requested_reranking_model: Union[str, RerankModel, None] = None,
    ) -> StrategySelection:
        """
        Select strategy and reranking model, honouring explicit requests

        An unknown requested name falls back to hybrid / similarity_based and
        the warning is returned in the selection instead of raising.

        Args:
            analysis: Query analysis
            requested_strategy: Explicit strategy override (optional)
            requested_reranking_model: Explicit reranker override (optional)

        Returns:
            StrategySelection
        """
        warnings = []

        strategy, warning = resolve_strategy(requested_strategy)
        if warning:
            warnings.append(warning)
            strategy, reasoning = DEFAULT_STRATEGY, "fallback for unknown strategy"
        elif strategy is not None:
            reasoning = "explicitly requested"
        else:
            strategy, reasoning = self.select_strategy(analysis)

        model, warning = resolve_rerank_model(requested_reranking_model)
        if warning:
            warnings.append(warning)
            model = DEFAULT_RERANK_MODEL
        elif model is None:
            model = self.select_reranking_model(analysis)

        selection = StrategySelection(
            strategy=strategy,
            reranking_model=model,
            reasoning=reasoning,
            warnings=warnings,
        )

        logger.info(
            f"Selected strategy {strategy.value} ({reasoning}), "
            f"reranking model {model.value}"
        )

        return selection
