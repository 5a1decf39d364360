"""Brand-partitioned vector store."""

from __future__ import annotations

from dataclasses import dataclass, field
from math import sqrt
from typing import Protocol

from brand_chat.retrieval.embedder import tokenize


@dataclass(slots=True)
class StoredChunk:
    chunk_id: str
    brand_key: str
    text: str
    source_ref: str
    embedding: list[float] = field(default_factory=list)


@dataclass(slots=True)
class ScoredChunk:
    chunk: StoredChunk
    score: float


class VectorStore(Protocol):
    """Minimal vector store contract for knowledge retrieval."""

    def upsert(self, chunks: list[StoredChunk]) -> None:
        """Insert or update chunk vectors."""

    def search(
        self, brand_key: str, query_text: str, query_embedding: list[float], k: int
    ) -> list[ScoredChunk]:
        """Return the k best chunks of one brand."""


class InMemoryVectorStore:
    """Deterministic vector store used for tests and single-process deployments.

    Score blends cosine similarity (0.7) with lexical overlap of query tokens
    (0.3) so short keyword queries still surface exact matches.
    """

    def __init__(self) -> None:
        self._store: dict[str, StoredChunk] = {}

    def __len__(self) -> int:
        return len(self._store)

    def upsert(self, chunks: list[StoredChunk]) -> None:
        for chunk in chunks:
            self._store[chunk.chunk_id] = chunk

    def search(
        self, brand_key: str, query_text: str, query_embedding: list[float], k: int
    ) -> list[ScoredChunk]:
        query_tokens = set(tokenize(query_text))
        scored: list[ScoredChunk] = []
        for chunk in self._store.values():
            if chunk.brand_key != brand_key:
                continue
            overlap = len(query_tokens & set(tokenize(chunk.text))) / max(1, len(query_tokens))
            cosine = max(0.0, _cosine_similarity(query_embedding, chunk.embedding))
            scored.append(ScoredChunk(chunk=chunk, score=(cosine * 0.7) + (overlap * 0.3)))
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[:k]


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
