"""
Per-call Options
Request models for retrieval and prompt assembly; defaults come from settings
"""

from typing import List, Optional, Literal, Union, Dict, Any
from pydantic import BaseModel, Field

from config.settings import settings


class RetrievalOptions(BaseModel):
    """Options accepted by retrieve()"""

    strategy: Optional[str] = Field(
        None, description="Force a retrieval strategy (unknown names fall back to hybrid)"
    )
    strategies: Optional[List[str]] = Field(
        None, description="Run several strategies concurrently and merge their results"
    )
    reranking_model: Optional[str] = Field(
        None, description="Force a reranking model (unknown names fall back to similarity_based)"
    )
    top_k: int = Field(settings.TOP_K, description="Candidates per strategy", ge=1, le=500)
    similarity_threshold: float = Field(
        settings.SIMILARITY_THRESHOLD, description="Minimum similarity for vector-side results", ge=0.0, le=1.0
    )
    max_retrieved_chunks: int = Field(
        settings.MAX_RETRIEVED_CHUNKS, description="Chunks returned to the caller", ge=1, le=100
    )
    enable_reranking: bool = Field(settings.ENABLE_RERANKING, description="Apply reranking")
    enable_hybrid_search: bool = Field(
        settings.ENABLE_HYBRID_SEARCH, description="Use hybrid search inside composite strategies"
    )
    diversity_threshold: float = Field(
        settings.DIVERSITY_THRESHOLD, description="Word-overlap above which near-duplicates are dropped", ge=0.0, le=1.0
    )
    similarity_metric: Literal["cosine", "l2", "inner_product"] = Field(
        settings.SIMILARITY_METRIC, description="Vector similarity metric"
    )
    min_quality_score: float = Field(
        settings.MIN_QUALITY_SCORE, description="Minimum chunk quality after reranking", ge=0.0, le=1.0
    )
    ensure_content_type_diversity: bool = Field(
        False, description="Keep at most two chunks per content type"
    )
    enable_context_expansion: bool = Field(
        settings.ENABLE_CONTEXT_EXPANSION, description="Fetch parent/child and keyword-related chunks"
    )
    enable_hierarchical_expansion: bool = Field(True, description="Expand via parent/child links")
    enable_semantic_expansion: bool = Field(True, description="Expand via keyword overlap")
    enable_lost_in_middle_mitigation: bool = Field(
        settings.ENABLE_LOST_IN_MIDDLE_MITIGATION, description="Interleave by relevance tier and source"
    )
    enable_quality_optimization: bool = Field(
        settings.ENABLE_QUALITY_OPTIMIZATION, description="Redundancy removal and complementarity selection"
    )

    @classmethod
    def from_value(cls, value: Union["RetrievalOptions", Dict[str, Any], None]) -> "RetrievalOptions":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)


class PromptOptions(BaseModel):
    """Options accepted by assemble_rag_prompt()"""

    template_type: Optional[str] = Field(None, description="Override automatic template selection")
    citation_format: str = Field(
        settings.CITATION_FORMAT, description="inline, detailed, academic or numbered"
    )
    max_tokens_per_chunk: int = Field(
        settings.MAX_TOKENS_PER_CHUNK, description="Per-chunk token cap", ge=10
    )
    context_window_size: int = Field(
        settings.CONTEXT_WINDOW_SIZE, description="Model context window in tokens", ge=100
    )
    system_prompt_max_length: int = Field(
        settings.SYSTEM_PROMPT_MAX_LENGTH, description="Soft cap for the system prompt in tokens", ge=100
    )
    reserved_tokens_for_response: int = Field(
        settings.RESERVED_TOKENS_FOR_RESPONSE, description="Tokens kept free for the answer", ge=0
    )
    max_conversation_messages: int = Field(
        settings.MAX_CONVERSATION_MESSAGES, description="Conversation turns included", ge=0
    )
    query_type: Optional[str] = Field(
        None, description="Query type from analysis, used to customize the template"
    )
    include_citation_summary: bool = Field(False, description="Append a SOURCES REFERENCED list")
    filter_content: bool = Field(False, description="Apply the content filters below")
    min_content_length: Optional[int] = Field(None, description="Drop chunks shorter than this")
    min_quality_score: Optional[float] = Field(None, description="Drop chunks below this quality")
    preferred_content_types: Optional[List[str]] = Field(
        None, description="Content types moved to the front"
    )

    @classmethod
    def from_value(cls, value: Union["PromptOptions", Dict[str, Any], None]) -> "PromptOptions":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)
