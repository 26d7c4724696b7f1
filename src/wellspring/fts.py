"""Keyword knowledge index backed by SQLite FTS5."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import List, Sequence

from .chunker import Chunk
from .errors import IndexingError
from .index import RetrievedChunk

logger = logging.getLogger(__name__)

_SAFE_FTS_QUERY_RE = re.compile(r"[0-9A-Za-z가-힣_]+", re.UNICODE)


class FTSKnowledgeIndex:
    """Store chunks in an FTS5 table keyed by ``(owner_id, item_id)``."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_chunks USING fts5(
                    chunk_id UNINDEXED,
                    owner_id UNINDEXED,
                    item_id UNINDEXED,
                    source,
                    body,
                    metadata UNINDEXED,
                    tokenize = 'unicode61'
                )
                """
            )

    async def replace_item(
        self,
        owner_id: str,
        item_id: str,
        chunks: Sequence[Chunk],
        *,
        source: str,
    ) -> int:
        return await asyncio.to_thread(self._replace_item_sync, owner_id, item_id, chunks, source)

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, "owner_id = ? AND item_id = ?", (owner_id, item_id))

    async def delete_owner(self, owner_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, "owner_id = ?", (owner_id,))

    async def count_item(self, owner_id: str, item_id: str) -> int:
        return await asyncio.to_thread(self._count_sync, owner_id, item_id)

    async def search(self, owner_id: str, query: str, *, limit: int = 5) -> List[RetrievedChunk]:
        return await asyncio.to_thread(self._search_sync, owner_id, query, limit)

    def _replace_item_sync(self, owner_id: str, item_id: str, chunks: Sequence[Chunk], source: str) -> int:
        rows = [
            (
                f"{item_id}:{chunk.index}",
                owner_id,
                item_id,
                source,
                chunk.text,
                json.dumps(
                    {
                        "chunk_index": chunk.index,
                        "summary": chunk.summary,
                        "language": chunk.language,
                        "token_count": chunk.token_count,
                    }
                ),
            )
            for chunk in chunks
        ]
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    "DELETE FROM knowledge_chunks WHERE owner_id = ? AND item_id = ?",
                    (owner_id, item_id),
                )
                conn.executemany(
                    """
                    INSERT INTO knowledge_chunks (chunk_id, owner_id, item_id, source, body, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.Error as exc:
            raise IndexingError(f"Keyword index write failed: {exc}") from exc
        logger.debug("fts.item.replaced owner=%s item=%s chunks=%s", owner_id, item_id, len(rows))
        return len(rows)

    def _delete_sync(self, where: str, params: tuple[str, ...]) -> None:
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(f"DELETE FROM knowledge_chunks WHERE {where}", params)
        except sqlite3.Error as exc:
            raise IndexingError(f"Keyword index delete failed: {exc}") from exc

    def _count_sync(self, owner_id: str, item_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM knowledge_chunks WHERE owner_id = ? AND item_id = ?",
                (owner_id, item_id),
            ).fetchone()
        return int(row[0]) if row else 0

    def _search_sync(self, owner_id: str, query: str, limit: int) -> List[RetrievedChunk]:
        terms: list[str] = []
        for match in _SAFE_FTS_QUERY_RE.findall(query or ""):
            if match not in terms:
                terms.append(match)
        if not terms:
            return []
        match_expr = " OR ".join(f'"{term}"' for term in terms)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT chunk_id, item_id, source, body, metadata, bm25(knowledge_chunks) AS score
                    FROM knowledge_chunks
                    WHERE owner_id = ? AND knowledge_chunks MATCH ?
                    ORDER BY score
                    LIMIT ?
                    """,
                    (owner_id, match_expr, limit),
                ).fetchall()
        except sqlite3.OperationalError as exc:
            logger.debug("fts.query.skip owner=%s query=%s", owner_id, query, exc_info=exc)
            return []

        results: List[RetrievedChunk] = []
        for chunk_id, item_id, source, body, metadata, score in rows:
            try:
                meta = json.loads(metadata) if metadata else {}
            except json.JSONDecodeError:
                meta = {}
            results.append(
                RetrievedChunk(
                    item_id=item_id,
                    chunk_id=chunk_id,
                    text=body,
                    # bm25() is lower-is-better; flip it so every index ranks higher-is-better
                    score=-float(score),
                    source=source,
                    summary=meta.get("summary"),
                )
            )
        return results


__all__ = ["FTSKnowledgeIndex"]
