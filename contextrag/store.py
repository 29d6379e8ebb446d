"""
Chunk Store Module
Interface to the external chunk storage/query engine plus an in-memory reference store
"""

from typing import List, Dict, Any, Optional, Iterable, Sequence
from abc import ABC, abstractmethod
import re
import numpy as np
from rank_bm25 import BM25Okapi
from loguru import logger

from .chunk import Chunk
from .errors import StoreQueryError
from .text_similarity import EXPANSION_STOP_WORDS


SIMILARITY_METRICS = ("cosine", "l2", "inner_product")

# Hybrid ranking weights
HYBRID_VECTOR_WEIGHT = 0.7
HYBRID_TEXT_WEIGHT = 0.3


def normalize_by_max(scores: Sequence[float]) -> List[float]:
    """
    Scale non-negative scores so the best one is 1.0

    Args:
        scores: Raw scores (negative values are clipped to 0)

    Returns:
        Scores in [0, 1]
    """
    if len(scores) == 0:
        return []

    scores_array = np.clip(np.array(scores, dtype=float), 0.0, None)
    max_score = scores_array.max()

    if max_score <= 0:
        return [0.0] * len(scores)

    return (scores_array / max_score).tolist()


def distance_to_similarity(
    query_embedding: np.ndarray,
    embeddings: np.ndarray,
    metric: str = "cosine",
) -> np.ndarray:
    """
    Convert raw vector comparisons to similarities in [0, 1], higher is better

    cosine -> 1 - cosine distance, l2 -> 1 / (1 + distance),
    inner_product -> dot product; all clipped to [0, 1].

    Args:
        query_embedding: Query vector (dimension d)
        embeddings: Corpus matrix (n x d)
        metric: Similarity metric name

    Returns:
        Array of n similarities
    """
    if metric not in SIMILARITY_METRICS:
        logger.warning(f"Unknown similarity metric '{metric}', using cosine")
        metric = "cosine"

    if metric == "l2":
        distances = np.linalg.norm(embeddings - query_embedding, axis=1)
        similarities = 1.0 / (1.0 + distances)
    elif metric == "inner_product":
        similarities = embeddings @ query_embedding
    else:
        norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query_embedding)
        norms = np.where(norms == 0, 1, norms)  # Avoid division by zero
        similarities = (embeddings @ query_embedding) / norms

    return np.clip(similarities, 0.0, 1.0)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens without stop words, used for lexical ranking"""
    return [
        token for token in re.findall(r"\w+", text.lower())
        if token not in EXPANSION_STOP_WORDS
    ]


class ChunkStore(ABC):
    """
    Read-only view of the chunk storage/query engine

    Every search returns copies of chunks with ``similarity_score`` set to a
    value in [0, 1]. Implementations raise StoreQueryError on failure.
    """

    @abstractmethod
    def vector_search(
        self,
        query_embedding: Sequence[float],
        top_k: int = 10,
        metric: str = "cosine",
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        """
        Nearest chunks by embedding

        Args:
            query_embedding: Query vector
            top_k: Number of results to return
            metric: cosine, l2 or inner_product
            source_ids: Restrict to these sources (optional)
            min_quality_score: Minimum chunk quality (optional)

        Returns:
            Chunks sorted by similarity descending
        """
        pass

    @abstractmethod
    def lexical_search(
        self,
        text: str,
        top_k: int = 10,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        """Full-text matches ranked by lexical relevance (``text_similarity``)"""
        pass

    @abstractmethod
    def hybrid_search(
        self,
        text: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        metric: str = "cosine",
        vector_threshold: float = 0.5,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        """
        Union of chunks above the vector threshold or with a lexical match,
        scored ``0.7 * vector_similarity + 0.3 * text_similarity``
        """
        pass

    @abstractmethod
    def fetch_by_ids(self, chunk_ids: List[str]) -> List[Chunk]:
        """Chunks with the given ids (missing ids are skipped)"""
        pass

    @abstractmethod
    def fetch_by_section(
        self,
        source_id: str,
        section_path: List[str],
        exclude_chunk_id: str,
        limit: int = 5,
    ) -> List[Chunk]:
        """Chunks of the same source sharing any element of the section path"""
        pass

    def substring_search(self, text: str, top_k: int = 5) -> List[Chunk]:
        """Case-insensitive partial match; stores without support return nothing"""
        return []

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""
        return {}


class InMemoryChunkStore(ChunkStore):
    """
    Brute-force chunk store backed by numpy and BM25

    Suitable for tests, demos and small corpora.
    """

    def __init__(self, chunks: Optional[Iterable[Chunk]] = None):
        self.chunks: List[Chunk] = []
        self._by_id: Dict[str, Chunk] = {}
        self._embeddings: Optional[np.ndarray] = None
        self._embedded_ids: List[str] = []
        self._bm25: Optional[BM25Okapi] = None
        self._tokenized: List[List[str]] = []

        if chunks:
            self.add_chunks(list(chunks))

    def add_chunks(self, chunks: List[Chunk]) -> None:
        """Add chunks and rebuild the vector matrix and BM25 index"""
        if not chunks:
            return

        for chunk in chunks:
            if chunk.chunk_id in self._by_id:
                raise ValueError(f"Duplicate chunk_id: {chunk.chunk_id}")
            self._by_id[chunk.chunk_id] = chunk
            self.chunks.append(chunk)

        self._rebuild_indexes()
        logger.info(f"In-memory store now holds {len(self.chunks)} chunks")

    def _rebuild_indexes(self):
        embedded = [chunk for chunk in self.chunks if chunk.embedding is not None]
        dimensions = {len(chunk.embedding) for chunk in embedded}
        if len(dimensions) > 1:
            raise ValueError(f"Inconsistent embedding dimensions: {sorted(dimensions)}")

        if embedded:
            self._embeddings = np.array([chunk.embedding for chunk in embedded], dtype=float)
            self._embedded_ids = [chunk.chunk_id for chunk in embedded]
        else:
            self._embeddings = None
            self._embedded_ids = []

        self._tokenized = [tokenize(chunk.content) for chunk in self.chunks]
        # BM25Okapi cannot handle an all-empty corpus
        if any(self._tokenized):
            self._bm25 = BM25Okapi(self._tokenized)
        else:
            self._bm25 = None

    @staticmethod
    def _passes_filters(
        chunk: Chunk,
        source_ids: Optional[List[str]],
        min_quality_score: Optional[float],
    ) -> bool:
        if source_ids and chunk.source_id not in source_ids:
            return False
        if min_quality_score is not None and chunk.quality_score < min_quality_score:
            return False
        return True

    def _vector_scores(self, query_embedding: Sequence[float], metric: str) -> Dict[str, float]:
        if self._embeddings is None:
            return {}

        query = np.asarray(query_embedding, dtype=float)
        if query.shape[0] != self._embeddings.shape[1]:
            raise StoreQueryError(
                "vector_search",
                f"query dimension {query.shape[0]} does not match "
                f"store dimension {self._embeddings.shape[1]}",
            )

        similarities = distance_to_similarity(query, self._embeddings, metric)
        return {
            chunk_id: float(score)
            for chunk_id, score in zip(self._embedded_ids, similarities)
        }

    def _lexical_scores(self, text: str) -> Dict[str, float]:
        """Normalized lexical rank for every chunk sharing at least one query token"""
        query_tokens = tokenize(text)
        if not query_tokens or self._bm25 is None:
            return {}

        query_set = set(query_tokens)
        matched = [
            idx for idx, tokens in enumerate(self._tokenized)
            if query_set.intersection(tokens)
        ]
        if not matched:
            return {}

        raw = self._bm25.get_scores(query_tokens)
        ranks = normalize_by_max([raw[idx] for idx in matched])

        # BM25 idf can collapse to zero on tiny corpora; fall back to token coverage
        if not any(ranks):
            ranks = [
                len(query_set.intersection(self._tokenized[idx])) / len(query_set)
                for idx in matched
            ]

        return {self.chunks[idx].chunk_id: rank for idx, rank in zip(matched, ranks)}

    def vector_search(
        self,
        query_embedding: Sequence[float],
        top_k: int = 10,
        metric: str = "cosine",
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        scores = self._vector_scores(query_embedding, metric)

        results = [
            self._by_id[chunk_id].with_scores(
                similarity_score=score, vector_similarity=score
            )
            for chunk_id, score in scores.items()
            if self._passes_filters(self._by_id[chunk_id], source_ids, min_quality_score)
        ]
        results.sort(key=lambda c: c.similarity_score, reverse=True)

        logger.debug(f"Vector search returned {min(len(results), top_k)} results")
        return results[:top_k]

    def lexical_search(
        self,
        text: str,
        top_k: int = 10,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        ranks = self._lexical_scores(text)

        results = [
            self._by_id[chunk_id].with_scores(similarity_score=rank, text_similarity=rank)
            for chunk_id, rank in ranks.items()
            if self._passes_filters(self._by_id[chunk_id], source_ids, min_quality_score)
        ]
        results.sort(key=lambda c: c.similarity_score, reverse=True)

        logger.debug(f"Lexical search returned {min(len(results), top_k)} results")
        return results[:top_k]

    def hybrid_search(
        self,
        text: str,
        query_embedding: Sequence[float],
        top_k: int = 10,
        metric: str = "cosine",
        vector_threshold: float = 0.5,
        source_ids: Optional[List[str]] = None,
        min_quality_score: Optional[float] = None,
    ) -> List[Chunk]:
        vector_scores = self._vector_scores(query_embedding, metric)
        text_scores = self._lexical_scores(text)

        candidate_ids = {
            chunk_id for chunk_id, score in vector_scores.items() if score > vector_threshold
        } | set(text_scores)

        results = []
        for chunk_id in candidate_ids:
            chunk = self._by_id[chunk_id]
            if not self._passes_filters(chunk, source_ids, min_quality_score):
                continue
            vector_similarity = vector_scores.get(chunk_id, 0.0)
            text_similarity = text_scores.get(chunk_id, 0.0)
            results.append(
                chunk.with_scores(
                    similarity_score=HYBRID_VECTOR_WEIGHT * vector_similarity
                    + HYBRID_TEXT_WEIGHT * text_similarity,
                    vector_similarity=vector_similarity,
                    text_similarity=text_similarity,
                )
            )

        results.sort(key=lambda c: (c.similarity_score, c.chunk_id), reverse=True)

        logger.debug(
            f"Hybrid search: {len(vector_scores)} vector, {len(text_scores)} lexical, "
            f"{len(results)} candidates"
        )
        return results[:top_k]

    def fetch_by_ids(self, chunk_ids: List[str]) -> List[Chunk]:
        return [
            self._by_id[chunk_id].with_scores()
            for chunk_id in chunk_ids
            if chunk_id in self._by_id
        ]

    def fetch_by_section(
        self,
        source_id: str,
        section_path: List[str],
        exclude_chunk_id: str,
        limit: int = 5,
    ) -> List[Chunk]:
        if not section_path:
            return []

        wanted = set(section_path)
        related = [
            chunk for chunk in self.chunks
            if chunk.source_id == source_id
            and chunk.chunk_id != exclude_chunk_id
            and wanted.intersection(chunk.hierarchy_path)
        ]
        related.sort(key=lambda c: c.chunk_index)
        return [chunk.with_scores() for chunk in related[:limit]]

    def substring_search(self, text: str, top_k: int = 5) -> List[Chunk]:
        needle = text.lower().strip()
        if not needle:
            return []

        matches = [chunk for chunk in self.chunks if needle in chunk.content.lower()]
        return [chunk.with_scores() for chunk in matches[:top_k]]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_chunks": len(self.chunks),
            "embedded_chunks": len(self._embedded_ids),
            "total_sources": len({chunk.source_id for chunk in self.chunks}),
            "dimension": int(self._embeddings.shape[1]) if self._embeddings is not None else None,
        }
