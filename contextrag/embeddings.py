"""
Embedding Provider Module
Query embedding through a remote Ollama-compatible endpoint
"""

from typing import List, Optional
from abc import ABC, abstractmethod
import numpy as np
import httpx
from loguru import logger

from .errors import EmbeddingUnavailable
from config.settings import settings


class EmbeddingProvider(ABC):
    """Produces fixed-dimension query embeddings; may raise EmbeddingUnavailable"""

    dimension: Optional[int] = None

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """Embed a single text"""
        pass


class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Ollama embedding client

    One blocking HTTP call per text. Transport errors, non-2xx responses,
    malformed payloads and dimension mismatches all surface as
    EmbeddingUnavailable so the pipeline can degrade to lexical search.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: Optional[float] = None,
        normalize: bool = True,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize Ollama embedding provider

        Args:
            model_name: Ollama model name (e.g., "nomic-embed-text")
            base_url: Ollama API base URL
            dimension: Expected embedding dimension
            timeout: Per-request timeout in seconds
            normalize: Whether to L2-normalize embeddings
            client: Pre-built httpx client (owned by the caller)
        """
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.base_url = (base_url or settings.EMBEDDING_BASE_URL).rstrip("/")
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT
        self.normalize = normalize
        self._client = client
        self._owns_client = client is None

        logger.info(f"Initialized Ollama embedding provider: {self.model_name} (dim={self.dimension})")

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self):
        """Close the HTTP client if this provider created it"""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def embed(self, text: str) -> np.ndarray:
        """
        Embed a single text using the Ollama API

        Args:
            text: Text to embed

        Returns:
            1D numpy array of the configured dimension
        """
        url = f"{self.base_url}/api/embed"
        payload = {"model": self.model_name, "input": text}

        try:
            response = self._get_client().post(url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Embedding request failed: {e}")
            raise EmbeddingUnavailable(f"Embedding request failed: {e}") from e

        if not response.is_success:
            raise EmbeddingUnavailable(
                f"Ollama API error ({response.status_code}): {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingUnavailable(f"Invalid JSON in embedding response: {e}") from e

        embedding = self._extract_embedding(data)

        if self.dimension and embedding.shape[0] != self.dimension:
            raise EmbeddingUnavailable(
                f"Embedding dimension {embedding.shape[0]} does not match expected {self.dimension}"
            )

        if self.normalize:
            norm = np.linalg.norm(embedding)
            if norm > 0:
                embedding = embedding / norm

        return embedding

    @staticmethod
    def _extract_embedding(data: dict) -> np.ndarray:
        if "embedding" in data:
            values: List[float] = data["embedding"]
        elif data.get("embeddings"):
            values = data["embeddings"][0]
        else:
            raise EmbeddingUnavailable("No embedding in Ollama response")

        return np.array(values, dtype=np.float32)
