"""Chunk & index stage plus the index contract shared by every backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Protocol, Sequence

from .chunker import Chunk, chunk_text
from .errors import IndexingError

if TYPE_CHECKING:  # pragma: no cover
    from .config import Settings
    from .embeddings import EmbeddingService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetrievedChunk:
    item_id: str
    chunk_id: str
    text: str
    score: float
    source: str
    summary: str | None = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "chunk_id": self.chunk_id,
            "text": self.text,
            "score": self.score,
            "source": self.source,
            "summary": self.summary,
        }


class KnowledgeIndex(Protocol):
    """Retrieval store holding the chunks of every synced item.

    ``replace_item`` must leave either all of the new chunks or none of them
    visible for the item, so that re-indexing never duplicates content.
    """

    async def replace_item(
        self,
        owner_id: str,
        item_id: str,
        chunks: Sequence[Chunk],
        *,
        source: str,
    ) -> int:  # pragma: no cover - protocol
        ...

    async def delete_item(self, owner_id: str, item_id: str) -> None:  # pragma: no cover - protocol
        ...

    async def delete_owner(self, owner_id: str) -> None:  # pragma: no cover - protocol
        ...

    async def count_item(self, owner_id: str, item_id: str) -> int:  # pragma: no cover - protocol
        ...

    async def search(
        self, owner_id: str, query: str, *, limit: int = 5
    ) -> List[RetrievedChunk]:  # pragma: no cover - protocol
        ...


def fuse_results(
    ranked_lists: Sequence[Sequence[RetrievedChunk]],
    *,
    limit: int,
) -> List[RetrievedChunk]:
    """Merge several ranked result lists with reciprocal-rank fusion."""

    if limit <= 0:
        return []
    fused: dict[str, RetrievedChunk] = {}
    scores: dict[str, float] = {}
    for results in ranked_lists:
        for rank, entry in enumerate(results):
            existing = fused.get(entry.chunk_id)
            if existing is None:
                fused[entry.chunk_id] = entry
            elif not existing.summary and entry.summary:
                existing.summary = entry.summary
            scores[entry.chunk_id] = scores.get(entry.chunk_id, 0.0) + 1.0 / (rank + 1)

    merged = []
    for chunk_id, entry in fused.items():
        merged.append(
            RetrievedChunk(
                item_id=entry.item_id,
                chunk_id=chunk_id,
                text=entry.text,
                score=scores[chunk_id],
                source=entry.source,
                summary=entry.summary,
            )
        )
    merged.sort(key=lambda item: item.score, reverse=True)
    return merged[:limit]


class HybridKnowledgeIndex:
    """Write to keyword and vector indexes and fuse their search results."""

    def __init__(self, keyword: KnowledgeIndex, vector: KnowledgeIndex) -> None:
        self._keyword = keyword
        self._vector = vector

    async def replace_item(
        self,
        owner_id: str,
        item_id: str,
        chunks: Sequence[Chunk],
        *,
        source: str,
    ) -> int:
        await self._vector.replace_item(owner_id, item_id, chunks, source=source)
        try:
            return await self._keyword.replace_item(owner_id, item_id, chunks, source=source)
        except IndexingError:
            await self._vector.delete_item(owner_id, item_id)
            raise

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        await self._vector.delete_item(owner_id, item_id)
        await self._keyword.delete_item(owner_id, item_id)

    async def delete_owner(self, owner_id: str) -> None:
        await self._vector.delete_owner(owner_id)
        await self._keyword.delete_owner(owner_id)

    async def count_item(self, owner_id: str, item_id: str) -> int:
        return await self._keyword.count_item(owner_id, item_id)

    async def search(self, owner_id: str, query: str, *, limit: int = 5) -> List[RetrievedChunk]:
        vector_hits = await self._vector.search(owner_id, query, limit=limit)
        keyword_hits = await self._keyword.search(owner_id, query, limit=limit)
        return fuse_results([vector_hits, keyword_hits], limit=limit)


class ChunkIndexer:
    """Split extracted text into chunks and commit them to the index."""

    def __init__(
        self,
        index: KnowledgeIndex,
        *,
        max_tokens: int = 200,
        overlap_tokens: int = 20,
    ) -> None:
        self._index = index
        self._max_tokens = max_tokens
        self._overlap_tokens = overlap_tokens

    @property
    def index(self) -> KnowledgeIndex:
        return self._index

    async def index_content(self, owner_id: str, item_id: str, text: str, *, source: str) -> int:
        chunks = chunk_text(text, max_tokens=self._max_tokens, overlap_tokens=self._overlap_tokens)
        if not chunks:
            raise IndexingError("No indexable content was extracted", transient=False)
        try:
            count = await self._index.replace_item(owner_id, item_id, chunks, source=source)
        except IndexingError:
            raise
        except Exception as exc:
            raise IndexingError(f"Index store rejected the write: {exc}") from exc
        logger.info("index.item.committed owner=%s item=%s chunks=%s", owner_id, item_id, count)
        return count


def build_index(
    settings: "Settings",
    *,
    embedding_service: "EmbeddingService | None" = None,
) -> KnowledgeIndex:
    """Construct the index backend selected by ``INDEX_BACKEND``."""

    from .fts import FTSKnowledgeIndex

    if not settings.uses_vector_index:
        return FTSKnowledgeIndex(settings.fts_db_path)

    from qdrant_client import AsyncQdrantClient

    from .embeddings import EmbeddingService
    from .vector_store import QdrantKnowledgeIndex

    embeddings = embedding_service or EmbeddingService(settings)
    vector = QdrantKnowledgeIndex(
        AsyncQdrantClient(**settings.qdrant_client_kwargs()),
        settings.qdrant_collection,
        embeddings=embeddings,
    )
    if not settings.uses_keyword_index:
        return vector
    return HybridKnowledgeIndex(FTSKnowledgeIndex(settings.fts_db_path), vector)


__all__ = [
    "ChunkIndexer",
    "HybridKnowledgeIndex",
    "KnowledgeIndex",
    "RetrievedChunk",
    "build_index",
    "fuse_results",
]
