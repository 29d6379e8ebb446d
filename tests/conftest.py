"""
Shared fixtures: a deterministic embedding provider and a small fund management corpus
"""

import hashlib
from typing import List

import numpy as np
import pytest

from contextrag.chunk import Chunk
from contextrag.embeddings import EmbeddingProvider
from contextrag.errors import EmbeddingUnavailable
from contextrag.store import InMemoryChunkStore, tokenize


class HashingEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words vectors hashed into a fixed dimension; same text, same vector"""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls: List[str] = []

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        vector = np.zeros(self.dimension)
        for token in tokenize(text):
            digest = hashlib.md5(token.encode("utf-8")).hexdigest()
            vector[int(digest, 16) % self.dimension] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


class FailingEmbeddingProvider(EmbeddingProvider):
    """Embedding provider that is always down"""

    def embed(self, text: str) -> np.ndarray:
        raise EmbeddingUnavailable("embedding service unreachable")


CREATE_FUND_CONTENT = (
    "To start the fund creation wizard, click the Create Fund button in the toolbar. "
    "Follow these steps to create a new fund.\n"
    "Step 1: Fund Details. Enter the fund name and choose the fund type. "
    "Name: This will be shown in all reports. Type: Choose open-ended or closed-ended.\n"
    "Step 2: Hierarchy. Select the parent entity and save the fund. "
    "The new fund appears in the fund hierarchy once the wizard is complete."
)

TOC_CONTENT = (
    "Table of Contents\n"
    "1 Introduction 3\n"
    "2 Creating a Fund 7\n"
    "3 Fund Hierarchy 12\n"
    "4 Reporting Currency 15\n"
    "5 Net Asset Value 20"
)


def build_corpus() -> List[Chunk]:
    return [
        Chunk(
            chunk_id="fund-toc",
            content=TOC_CONTENT,
            source_id="user-guide",
            source_title="User Guide",
            chunk_index=0,
            page_number=2,
            heading="Table of Contents",
            hierarchy_path=["Contents"],
            content_type="table_of_contents",
            scale="document",
            quality_score=0.4,
        ),
        Chunk(
            chunk_id="fund-create",
            content=CREATE_FUND_CONTENT,
            source_id="user-guide",
            source_title="User Guide",
            chunk_index=1,
            page_number=7,
            heading="Creating a Fund",
            hierarchy_path=["Creating a Fund"],
            content_type="instruction",
            scale="section",
            quality_score=0.9,
        ),
        Chunk(
            chunk_id="fund-hierarchy",
            content=(
                "The fund hierarchy groups funds under parent entities. Each fund belongs to "
                "exactly one parent and inherits its reporting currency unless overridden. "
                "Hierarchy levels are used for consolidated reporting and compliance checks."
            ),
            source_id="user-guide",
            source_title="User Guide",
            chunk_index=2,
            page_number=12,
            heading="Fund Hierarchy",
            hierarchy_path=["Fund Hierarchy"],
            child_chunk_ids=["fund-hierarchy-levels"],
            scale="section",
            quality_score=0.8,
        ),
        Chunk(
            chunk_id="fund-hierarchy-levels",
            content=(
                "Hierarchy levels range from the management company at the top to individual "
                "share classes at the bottom. Moving a fund between levels requires an audit "
                "trail entry and recalculation of consolidated valuation figures."
            ),
            source_id="user-guide",
            source_title="User Guide",
            chunk_index=3,
            page_number=13,
            heading="Hierarchy Levels",
            hierarchy_path=["Fund Hierarchy"],
            parent_chunk_id="fund-hierarchy",
            scale="paragraph",
            quality_score=0.7,
        ),
        Chunk(
            chunk_id="reporting-currency",
            content=(
                "Reporting currency refers to the currency in which fund reports are produced. "
                "Base unit: the smallest unit used for valuation. The reporting currency can be "
                "changed from the fund settings page by an administrator."
            ),
            source_id="user-guide",
            source_title="User Guide",
            chunk_index=4,
            page_number=15,
            heading="Reporting Currency",
            hierarchy_path=["Reporting Currency"],
            content_type="definition",
            scale="section",
            quality_score=0.7,
        ),
        Chunk(
            chunk_id="nav-definition",
            content=(
                "Net asset value (NAV) is defined as the total value of fund assets minus "
                "liabilities, divided by the number of outstanding units. NAV is calculated "
                "daily for open-ended funds and used for subscriptions and redemptions."
            ),
            source_id="glossary",
            source_title="Fund_Manager_Glossary_v2.pdf",
            chunk_index=0,
            page_number=20,
            heading="Net Asset Value",
            hierarchy_path=["Glossary"],
            content_type="definition",
            scale="paragraph",
            quality_score=0.85,
        ),
        Chunk(
            chunk_id="rollforward",
            content=(
                "The rollforward process carries closing balances of every fund into the next "
                "reporting period. Run the rollforward after all valuations are approved and "
                "review the audit report for exceptions."
            ),
            source_id="operations",
            source_title="Operations Guide",
            chunk_index=0,
            page_number=22,
            heading="Period Rollforward",
            hierarchy_path=["Period End"],
            content_type="procedure",
            scale="section",
            quality_score=0.75,
        ),
        Chunk(
            chunk_id="low-quality-note",
            content="Note: see page 3.",
            source_id="operations",
            source_title="Operations Guide",
            chunk_index=1,
            page_number=23,
            hierarchy_path=["Period End"],
            quality_score=0.1,
        ),
    ]


@pytest.fixture
def embedder():
    return HashingEmbeddingProvider()


@pytest.fixture
def corpus(embedder):
    chunks = build_corpus()
    for chunk in chunks:
        chunk.embedding = embedder.embed(chunk.content).tolist()
    embedder.calls.clear()
    return chunks


@pytest.fixture
def store(corpus):
    return InMemoryChunkStore(corpus)


@pytest.fixture
def chunk_by_id(corpus):
    return {chunk.chunk_id: chunk for chunk in corpus}


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch):
    """Keep tiktoken from downloading encodings; assemblers fall back to the character estimate"""

    def unavailable(name):
        raise ValueError(f"encoding {name} not available offline")

    monkeypatch.setattr("contextrag.prompting.tiktoken.get_encoding", unavailable)
