"""
Configuration settings for the contextual retrieval pipeline
Infrastructure settings plus the defaults used when a call does not override them
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings with environment variable support

    Philosophy:
    - Infrastructure settings here (embedding endpoint, worker pool, logging)
    - Behavior settings are defaults; RetrievalOptions / PromptOptions override them per call
    """

    # =============================================================================
    # LOGGING
    # =============================================================================
    LOG_LEVEL: str = "INFO"

    # =============================================================================
    # EMBEDDING PROVIDER (Remote, one blocking call per query)
    # =============================================================================
    EMBEDDING_BASE_URL: str = "http://localhost:11434"
    EMBEDDING_MODEL: str = "nomic-embed-text"
    EMBEDDING_DIMENSION: int = 768
    EMBEDDING_TIMEOUT: float = 30.0

    # =============================================================================
    # STRATEGY EXECUTION (Fan-out / fan-in)
    # =============================================================================
    STRATEGY_MAX_WORKERS: int = 4
    STRATEGY_TIMEOUT: float = 30.0

    # =============================================================================
    # KNOWLEDGE DOMAIN
    # =============================================================================
    KNOWLEDGE_DOMAIN: str = "fund management"

    # =============================================================================
    # TOKEN COUNTING
    # =============================================================================
    TOKENIZER_NAME: str = "cl100k_base"

    # =============================================================================
    # RETRIEVAL DEFAULTS
    # =============================================================================
    TOP_K: int = 10
    SIMILARITY_THRESHOLD: float = 0.5
    MAX_RETRIEVED_CHUNKS: int = 5
    ENABLE_RERANKING: bool = True
    ENABLE_HYBRID_SEARCH: bool = True
    DIVERSITY_THRESHOLD: float = 0.8
    SIMILARITY_METRIC: str = "cosine"     # cosine, l2 or inner_product
    MIN_QUALITY_SCORE: float = 0.3

    # =============================================================================
    # CONTEXT PIPELINE
    # =============================================================================
    ENABLE_CONTEXT_EXPANSION: bool = True
    ENABLE_LOST_IN_MIDDLE_MITIGATION: bool = True
    ENABLE_QUALITY_OPTIMIZATION: bool = True

    # =============================================================================
    # PROMPT ASSEMBLY
    # =============================================================================
    CONTEXT_WINDOW_SIZE: int = 8000
    SYSTEM_PROMPT_MAX_LENGTH: int = 4000
    RESERVED_TOKENS_FOR_RESPONSE: int = 1000
    MAX_TOKENS_PER_CHUNK: int = 500
    CITATION_FORMAT: str = "inline"       # inline, detailed, academic or numbered
    MAX_CONVERSATION_MESSAGES: int = 6

    class Config:
        env_file = ".env"
        case_sensitive = True


# Create settings instance
settings = Settings()
