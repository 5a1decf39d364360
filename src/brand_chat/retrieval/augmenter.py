"""Folds retrieved knowledge chunks into run instructions."""

from __future__ import annotations

import structlog

from brand_chat.collaborators import KnowledgeSearch
from brand_chat.config import RetrievalConfig
from brand_chat.obs.tracing import TurnRecord
from brand_chat.types import KnowledgeChunk

logger = structlog.get_logger(__name__)

CONTEXT_HEADER = "# KNOWLEDGE BASE CONTEXT (Use this to answer if relevant):"
CONTEXT_DIRECTIVE = (
    "IMPORTANT: If the answer is found in the KNOWLEDGE BASE CONTEXT, use it. "
    "If not, fallback to your general knowledge but prioritize provided context."
)


class ContextAugmenter:
    """Appends a delimited knowledge block when retrieval returns chunks.

    Retrieval failures and empty results leave the instructions untouched;
    failures are recorded on the turn trace only.
    """

    def __init__(self, search: KnowledgeSearch | None, config: RetrievalConfig | None = None) -> None:
        self.search = search
        self.config = config or RetrievalConfig()

    async def augment(
        self, instructions: str, *, brand_key: str, query: str, record: TurnRecord
    ) -> str:
        if self.search is None:
            return instructions
        try:
            chunks = await self.search.search(brand_key, query)
        except Exception as exc:
            record.note_failure("retrieval", str(exc))
            return instructions

        chunks = list(chunks or [])[: self.config.top_k]
        if not chunks:
            logger.debug("knowledge_context_empty", brand_key=brand_key)
            return instructions
        logger.info("knowledge_context_found", brand_key=brand_key, chunks=len(chunks))
        return f"{instructions}\n\n{format_context(chunks)}"


def format_context(chunks: list[KnowledgeChunk]) -> str:
    blocks = "\n\n".join(
        f"--- SOURCE START (Score: {chunk.score:.2f}) ---\n{chunk.content}\n--- SOURCE END ---"
        for chunk in chunks
    )
    return f"{CONTEXT_HEADER}\n{blocks}\n\n{CONTEXT_DIRECTIVE}"
