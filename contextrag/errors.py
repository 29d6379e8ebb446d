"""
Error Taxonomy
Exceptions raised by collaborators and guards of the retrieval pipeline
"""

from typing import Optional


class ContextRAGError(Exception):
    """Base class for all pipeline errors"""


class EmbeddingUnavailable(ContextRAGError):
    """Query embedding could not be produced; retrieval degrades to lexical search"""


class StoreQueryError(ContextRAGError):
    """A chunk store call failed; the affected strategy or expansion step is skipped"""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Chunk store {operation} failed: {detail}")


class UnknownStrategy(ContextRAGError):
    """Requested retrieval strategy is not registered"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown retrieval strategy: '{name}'")


class UnknownRerankModel(ContextRAGError):
    """Requested reranking model is not registered"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown reranking model: '{name}'")


class EmptyQuery(ContextRAGError):
    """Query is empty or whitespace only"""


class SystemProbeQuery(ContextRAGError):
    """Query is a health/status probe and must not hit the store"""

    def __init__(self, phrase: str):
        self.phrase = phrase
        super().__init__(f"System probe query detected: '{phrase}'")


class RetrievalFailed(ContextRAGError):
    """Neither embedding search nor the lexical fallback produced a result"""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class PromptAssemblyError(ContextRAGError):
    """Prompt could not be assembled from the given chunks"""
