"""
Contextual RAG retrieval and prompt assembly
"""

from .chunk import Chunk
from .context import ConversationContext, Message
from .errors import (
    ContextRAGError,
    EmbeddingUnavailable,
    StoreQueryError,
    UnknownStrategy,
    UnknownRerankModel,
    EmptyQuery,
    SystemProbeQuery,
    RetrievalFailed,
    PromptAssemblyError,
)
from .options import RetrievalOptions, PromptOptions
from .pipeline import ContextualRetrievalPipeline, RetrievalResult
from .prompting import PromptAssembler, AssembledPrompt
from .store import ChunkStore, InMemoryChunkStore
from .embeddings import EmbeddingProvider, OllamaEmbeddingProvider
from .strategy_selector import StrategyName, RerankModel

__version__ = "1.0.0"

__all__ = [
    "Chunk",
    "ConversationContext",
    "Message",
    "ContextRAGError",
    "EmbeddingUnavailable",
    "StoreQueryError",
    "UnknownStrategy",
    "UnknownRerankModel",
    "EmptyQuery",
    "SystemProbeQuery",
    "RetrievalFailed",
    "PromptAssemblyError",
    "RetrievalOptions",
    "PromptOptions",
    "ContextualRetrievalPipeline",
    "RetrievalResult",
    "PromptAssembler",
    "AssembledPrompt",
    "ChunkStore",
    "InMemoryChunkStore",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "StrategyName",
    "RerankModel",
]
