"""Default knowledge-search collaborator backed by the in-process store."""

from __future__ import annotations

import asyncio

import structlog

from brand_chat.config import BrandConfig, RetrievalConfig
from brand_chat.retrieval.embedder import Embedder, HashingEmbedder
from brand_chat.retrieval.vector_store import InMemoryVectorStore, StoredChunk, VectorStore
from brand_chat.types import KnowledgeChunk

logger = structlog.get_logger(__name__)


class KnowledgeRetriever:
    """Implements `search(brand_key, query)` over a brand-partitioned store."""

    def __init__(
        self,
        vector_store: VectorStore | None = None,
        embedder: Embedder | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_store = vector_store or InMemoryVectorStore()
        self.embedder = embedder or HashingEmbedder()
        self.config = config or RetrievalConfig()

    def add_documents(self, brand_key: str, texts: list[str], *, source: str) -> list[str]:
        """Index texts for one brand and return the created chunk ids."""
        embeddings = self.embedder.embed_documents(texts)
        chunks = [
            StoredChunk(
                chunk_id=f"{brand_key}:{source}:{i:04d}",
                brand_key=brand_key,
                text=text,
                source_ref=source,
                embedding=embedding,
            )
            for i, (text, embedding) in enumerate(zip(texts, embeddings, strict=True))
        ]
        self.vector_store.upsert(chunks)
        return [chunk.chunk_id for chunk in chunks]

    def seed_brands(self, brands: dict[str, BrandConfig]) -> int:
        """Index each brand's configured knowledge texts; returns the chunk count."""
        total = 0
        for brand_key, brand in brands.items():
            texts = [text for text in brand.knowledge if text.strip()]
            if texts:
                total += len(self.add_documents(brand_key, texts, source="brand_config"))
        logger.info("knowledge_seeded", brands=len(brands), chunks=total)
        return total

    async def search(self, brand_key: str, query: str) -> list[KnowledgeChunk]:
        return await asyncio.to_thread(self._search, brand_key, query)

    def _search(self, brand_key: str, query: str) -> list[KnowledgeChunk]:
        hits = self.vector_store.search(
            brand_key, query, self.embedder.embed_query(query), self.config.top_k
        )
        return [
            KnowledgeChunk(content=hit.chunk.text, score=hit.score, source_ref=hit.chunk.source_ref)
            for hit in hits
            if hit.score > self.config.min_score
        ]
