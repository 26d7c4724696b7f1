from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Iterable, Sequence

import httpx
import pytest

from wellspring.chunker import Chunk
from wellspring.config import Settings
from wellspring.errors import IndexingError, TranscriptionError
from wellspring.events import StatusEvent, StatusNotifier
from wellspring.index import ChunkIndexer, RetrievedChunk
from wellspring.jobs import IngestionJobManager
from wellspring.models import AudioPayload
from wellspring.observability import MetricsRecorder
from wellspring.sources import SourceAdapter
from wellspring.store import KnowledgeItemStore


class FakeTranscriber:
    def __init__(self, text: str = "Notes about watering the tomato plants every morning.") -> None:
        self.text = text
        self.failures = 0
        self.permanent = False
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def transcribe(self, audio: AudioPayload) -> str:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.permanent:
            raise TranscriptionError("Unsupported audio encoding", transient=False)
        if self.failures:
            self.failures -= 1
            raise TranscriptionError("Transcription service unavailable")
        return self.text


class MemoryIndex:
    """In-process index that can pause or fail writes on demand."""

    def __init__(self) -> None:
        self.chunks: dict[tuple[str, str], list[Chunk]] = {}
        self.sources: dict[tuple[str, str], str] = {}
        self.writes = 0
        self.deletes: list[tuple[str, str]] = []
        self.failures = 0
        self.write_started = asyncio.Event()
        self.gate: asyncio.Event | None = None

    async def replace_item(self, owner_id: str, item_id: str, chunks: Sequence[Chunk], *, source: str) -> int:
        self.writes += 1
        if self.failures:
            self.failures -= 1
            raise IndexingError("Index store unavailable")
        self.write_started.set()
        if self.gate is not None:
            await self.gate.wait()
        self.chunks[(owner_id, item_id)] = list(chunks)
        self.sources[(owner_id, item_id)] = source
        return len(chunks)

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        self.deletes.append((owner_id, item_id))
        self.chunks.pop((owner_id, item_id), None)

    async def delete_owner(self, owner_id: str) -> None:
        for key in [key for key in self.chunks if key[0] == owner_id]:
            del self.chunks[key]

    async def count_item(self, owner_id: str, item_id: str) -> int:
        return len(self.chunks.get((owner_id, item_id), []))

    async def search(self, owner_id: str, query: str, *, limit: int = 5) -> list[RetrievedChunk]:
        terms = [term.lower() for term in query.split() if term.strip()]
        results = []
        for (owner, item_id), chunks in self.chunks.items():
            if owner != owner_id:
                continue
            for chunk in chunks:
                score = sum(chunk.text.lower().count(term) for term in terms)
                if score:
                    results.append(
                        RetrievedChunk(
                            item_id=item_id,
                            chunk_id=f"{item_id}:{chunk.index}",
                            text=chunk.text,
                            score=float(score),
                            source=self.sources[(owner, item_id)],
                        )
                    )
        results.sort(key=lambda chunk: chunk.score, reverse=True)
        return results[:limit]


class EventLog:
    def __init__(self) -> None:
        self.events: list[StatusEvent] = []

    def __call__(self, event: StatusEvent) -> None:
        self.events.append(event)

    def statuses(self, item_id: str) -> list[str]:
        return [event.new_status.value for event in self.events if event.item_id == item_id]


def _html_page(title: str, body: str, links: Iterable[str] = ()) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body><p>{body}</p>{anchors}</body></html>"


@pytest.fixture()
def html_page() -> Callable[..., str]:
    return _html_page


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        fts_db_path=str(tmp_path / "data" / "knowledge.sqlite"),
        ingestion_retry_backoff_base=0.0,
        url_timeout_seconds=1.0,
        persist_items=False,
        observability_metrics_enabled=True,
    )


@pytest.fixture()
def memory_index() -> MemoryIndex:
    return MemoryIndex()


@pytest.fixture()
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture()
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture()
def build_manager(
    settings: Settings,
    memory_index: MemoryIndex,
    transcriber: FakeTranscriber,
    event_log: EventLog,
):
    """Factory wiring a manager around in-process fakes."""

    def factory(
        *,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        max_active: int = 3,
        max_retries: int = 3,
        store: KnowledgeItemStore | None = None,
        metrics: MetricsRecorder | None = None,
        adapter: SourceAdapter | None = None,
    ) -> IngestionJobManager:
        transport = httpx.MockTransport(handler) if handler is not None else None
        notifier = StatusNotifier()
        notifier.subscribe(event_log)
        return IngestionJobManager(
            store=store or KnowledgeItemStore(),
            adapter=adapter or SourceAdapter.from_settings(settings, transport=transport),
            transcriber=transcriber,
            indexer=ChunkIndexer(memory_index, max_tokens=50, overlap_tokens=5),
            notifier=notifier,
            metrics=metrics,
            max_active_per_owner=max_active,
            max_retries=max_retries,
            retry_delay=lambda attempt: 0.0,
        )

    return factory
