"""
Retrieval Observability
Per-request stage timings and a per-pipeline accumulator of retrieval statistics
"""

from typing import List, Dict, Any, Iterator
from dataclasses import dataclass, field, asdict
from collections import deque
from contextlib import contextmanager
import threading
import time


QUALITY_HISTORY_SIZE = 100


@dataclass
class TimingMetrics:
    """Stage timings for one retrieve() call, in milliseconds"""
    embedding_time: float = 0.0
    retrieval_time: float = 0.0
    expansion_time: float = 0.0
    optimization_time: float = 0.0
    reranking_time: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {name: round(value, 2) for name, value in asdict(self).items()}


@contextmanager
def measure_time(metrics: TimingMetrics, field_name: str) -> Iterator[None]:
    """Add the elapsed wall time of the block to ``metrics.<field_name>``"""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = (time.perf_counter() - start) * 1000
        setattr(metrics, field_name, getattr(metrics, field_name) + elapsed)


@dataclass
class StatsSnapshot:
    total_queries: int
    average_retrieval_time: float
    strategy_usage: Dict[str, int]
    recent_quality_scores: List[float]
    average_quality_score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalStats:
    """
    Thread-safe accumulator of retrieval statistics

    Owned by a pipeline instance; nothing here is process-global.
    """
    total_queries: int = 0
    average_retrieval_time: float = 0.0
    strategy_usage: Dict[str, int] = field(default_factory=dict)
    quality_scores: deque = field(default_factory=lambda: deque(maxlen=QUALITY_HISTORY_SIZE))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, strategy: str, retrieval_time: float, quality_score: float) -> None:
        """
        Record one completed retrieval

        Args:
            strategy: Strategy name reported in the result
            retrieval_time: Total retrieval time in milliseconds
            quality_score: Overall quality of the returned chunks
        """
        with self._lock:
            self.total_queries += 1
            # Running mean
            self.average_retrieval_time += (
                retrieval_time - self.average_retrieval_time
            ) / self.total_queries
            self.strategy_usage[strategy] = self.strategy_usage.get(strategy, 0) + 1
            self.quality_scores.append(quality_score)

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            scores = list(self.quality_scores)
            return StatsSnapshot(
                total_queries=self.total_queries,
                average_retrieval_time=self.average_retrieval_time,
                strategy_usage=dict(self.strategy_usage),
                recent_quality_scores=scores,
                average_quality_score=sum(scores) / len(scores) if scores else 0.0,
            )

    def reset(self) -> None:
        with self._lock:
            self.total_queries = 0
            self.average_retrieval_time = 0.0
            self.strategy_usage.clear()
            self.quality_scores.clear()
