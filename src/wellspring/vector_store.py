"""Qdrant-backed vector index for knowledge chunks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, List, Sequence

from qdrant_client import AsyncQdrantClient, models

from .chunker import Chunk
from .errors import IndexingError
from .index import RetrievedChunk

if TYPE_CHECKING:  # pragma: no cover
    from .embeddings import EmbeddingService

logger = logging.getLogger(__name__)

_PAYLOAD_FIELDS: dict[str, models.PayloadSchemaType] = {
    "owner_id": models.PayloadSchemaType.KEYWORD,
    "item_id": models.PayloadSchemaType.KEYWORD,
    "chunk_id": models.PayloadSchemaType.KEYWORD,
}


def point_id(chunk_id: str) -> str:
    """Qdrant only accepts integers or UUIDs as point ids."""

    return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


class QdrantKnowledgeIndex:
    """Store chunk embeddings in one collection, filtered by owner and item payloads."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_name: str,
        *,
        embeddings: "EmbeddingService",
        distance: models.Distance = models.Distance.COSINE,
    ) -> None:
        self._client = client
        self._collection_name = collection_name
        self._embeddings = embeddings
        self._distance = distance
        self._ready = False
        self._ready_lock = asyncio.Lock()

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def ensure_collection(self) -> None:
        if self._ready:
            return
        async with self._ready_lock:
            if self._ready:
                return
            vector_size = self._embeddings.dimension
            if not await self._client.collection_exists(self._collection_name):
                await self._client.create_collection(
                    collection_name=self._collection_name,
                    vectors_config=models.VectorParams(size=vector_size, distance=self._distance),
                )
            else:
                info = await self._client.get_collection(self._collection_name)
                existing_size = info.config.params.vectors.size
                if existing_size != vector_size:
                    logger.warning(
                        "qdrant.collection.recreate name=%s existing=%s expected=%s",
                        self._collection_name,
                        existing_size,
                        vector_size,
                    )
                    await self._client.delete_collection(self._collection_name)
                    await self._client.create_collection(
                        collection_name=self._collection_name,
                        vectors_config=models.VectorParams(size=vector_size, distance=self._distance),
                    )
            await self._ensure_payload_indexes()
            self._ready = True

    async def _ensure_payload_indexes(self) -> None:
        for field_name, schema in _PAYLOAD_FIELDS.items():
            try:
                await self._client.create_payload_index(
                    collection_name=self._collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )
            except Exception as exc:  # pragma: no cover - already exists
                if "exists" in str(exc).lower():
                    continue
                logger.warning(
                    "qdrant.payload_index.failed field=%s collection=%s error=%s",
                    field_name,
                    self._collection_name,
                    exc,
                )

    @staticmethod
    def _filter(**fields: str) -> models.Filter:
        return models.Filter(
            must=[
                models.FieldCondition(key=key, match=models.MatchValue(value=value))
                for key, value in fields.items()
            ]
        )

    async def replace_item(
        self,
        owner_id: str,
        item_id: str,
        chunks: Sequence[Chunk],
        *,
        source: str,
    ) -> int:
        vectors = await self._embeddings.embed_documents([chunk.text for chunk in chunks])

        points = []
        for chunk, vector in zip(chunks, vectors):
            chunk_id = f"{item_id}:{chunk.index}"
            payload: dict[str, Any] = {
                "owner_id": owner_id,
                "item_id": item_id,
                "chunk_id": chunk_id,
                "chunk_index": chunk.index,
                "source": source,
                "text": chunk.text,
                "summary": chunk.summary,
                "language": chunk.language,
                "token_count": chunk.token_count,
            }
            points.append(models.PointStruct(id=point_id(chunk_id), vector=list(vector), payload=payload))

        try:
            await self.ensure_collection()
            await self._client.delete(
                collection_name=self._collection_name,
                points_selector=models.FilterSelector(filter=self._filter(owner_id=owner_id, item_id=item_id)),
                wait=True,
            )
            if points:
                await self._client.upsert(collection_name=self._collection_name, points=points, wait=True)
        except Exception as exc:
            raise IndexingError(f"Vector index write failed: {exc}") from exc
        logger.debug("qdrant.item.replaced owner=%s item=%s points=%s", owner_id, item_id, len(points))
        return len(points)

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        await self._delete(self._filter(owner_id=owner_id, item_id=item_id))

    async def delete_owner(self, owner_id: str) -> None:
        await self._delete(self._filter(owner_id=owner_id))

    async def _delete(self, selector: models.Filter) -> None:
        try:
            await self.ensure_collection()
            await self._client.delete(
                collection_name=self._collection_name,
                points_selector=models.FilterSelector(filter=selector),
                wait=True,
            )
        except Exception as exc:
            raise IndexingError(f"Vector index delete failed: {exc}") from exc

    async def count_item(self, owner_id: str, item_id: str) -> int:
        await self.ensure_collection()
        result = await self._client.count(
            collection_name=self._collection_name,
            count_filter=self._filter(owner_id=owner_id, item_id=item_id),
            exact=True,
        )
        return result.count

    async def search(self, owner_id: str, query: str, *, limit: int = 5) -> List[RetrievedChunk]:
        if not (query or "").strip():
            return []
        await self.ensure_collection()
        vector = await self._embeddings.embed_query(query)
        response = await self._client.query_points(
            collection_name=self._collection_name,
            query=list(vector),
            query_filter=self._filter(owner_id=owner_id),
            limit=limit,
            with_payload=True,
        )
        results: List[RetrievedChunk] = []
        for point in response.points:
            payload = point.payload or {}
            results.append(
                RetrievedChunk(
                    item_id=str(payload.get("item_id", "")),
                    chunk_id=str(payload.get("chunk_id", point.id)),
                    text=str(payload.get("text", "")),
                    score=float(point.score),
                    source=str(payload.get("source", "")),
                    summary=payload.get("summary"),
                )
            )
        return results

    async def aclose(self) -> None:
        await self._client.close()


__all__ = ["QdrantKnowledgeIndex", "point_id"]
