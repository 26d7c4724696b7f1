"""Ingestion jobs and the manager that sequences them."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, TypeVar
from uuid import uuid4

from .config import Settings
from .errors import IngestionError, ItemNotFound, RetryRejected
from .events import StatusEvent, StatusNotifier
from .index import ChunkIndexer, RetrievedChunk
from .models import (
    AcquisitionResult,
    AudioPayload,
    KnowledgeItem,
    KnowledgeKind,
    KnowledgeStatus,
    default_source,
    utcnow_iso,
)
from .observability import MetricsRecorder
from .sources import SourceAdapter
from .store import KnowledgeItemStore
from .transcription import Transcriber

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_DETAIL = "cancelled"
REMOVED_DETAIL = "removed"


def backoff_delay(attempt: int, *, base: float = 2.0, factor: float = 2.0, maximum: float = 60.0) -> float:
    """Delay before automatic retry number ``attempt`` (1-based)."""

    delay = base * (factor ** max(attempt - 1, 0))
    return max(0.0, min(delay, maximum))


@dataclass(slots=True)
class IngestionJob:
    """One run of the pipeline for a single knowledge item."""

    item: KnowledgeItem
    raw_input: Any = None
    acquired: AcquisitionResult | None = None
    audio: AudioPayload | None = None
    name_given: bool = True
    task: asyncio.Task | None = None
    write: asyncio.Future | None = None
    cancelled: bool = False

    @property
    def item_id(self) -> str:
        return self.item.id

    @property
    def owner_id(self) -> str:
        return self.item.owner_id

    @property
    def status(self) -> KnowledgeStatus:
        return self.item.status

    @property
    def retry_count(self) -> int:
        return self.item.retry_count


class IngestionJobManager:
    """Admit, run, retry and cancel ingestion jobs.

    At most ``max_active_per_owner`` jobs run concurrently for one owner;
    the rest wait in a FIFO queue. Stage failures are classified by their
    ``transient`` flag: transient ones re-run the stage after a backoff
    delay until ``max_retries`` is reached, permanent ones move the item to
    ``error`` at once. The bookkeeping lock is never held across an await.
    """

    def __init__(
        self,
        *,
        store: KnowledgeItemStore,
        adapter: SourceAdapter,
        transcriber: Transcriber,
        indexer: ChunkIndexer,
        notifier: StatusNotifier | None = None,
        metrics: MetricsRecorder | None = None,
        max_active_per_owner: int = 3,
        max_retries: int = 3,
        retry_delay: Callable[[int], float] = backoff_delay,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._transcriber = transcriber
        self._indexer = indexer
        self._notifier = notifier or StatusNotifier()
        self._metrics = metrics
        self._max_active_per_owner = max(1, max_active_per_owner)
        self._max_retries = max(0, max_retries)
        self._retry_delay = retry_delay
        self._lock = threading.Lock()
        self._jobs: dict[str, IngestionJob] = {}
        self._active: dict[str, set[str]] = defaultdict(set)
        self._pending: dict[str, deque[str]] = defaultdict(deque)
        self._item_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: KnowledgeItemStore,
        adapter: SourceAdapter,
        transcriber: Transcriber,
        indexer: ChunkIndexer,
        notifier: StatusNotifier | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> "IngestionJobManager":
        return cls(
            store=store,
            adapter=adapter,
            transcriber=transcriber,
            indexer=indexer,
            notifier=notifier,
            metrics=metrics,
            max_active_per_owner=settings.ingestion_owner_concurrency_limit,
            max_retries=settings.ingestion_max_retries,
            retry_delay=settings.retry_delay,
        )

    @property
    def notifier(self) -> StatusNotifier:
        return self._notifier

    @property
    def max_active_per_owner(self) -> int:
        return self._max_active_per_owner

    @property
    def max_retries(self) -> int:
        return self._max_retries

    # ------------------------------------------------------------------
    # Action entry points
    # ------------------------------------------------------------------
    async def submit(
        self,
        owner_id: str,
        kind: KnowledgeKind | str,
        raw_input: Any,
        name: str | None = None,
    ) -> KnowledgeItem:
        """Create a knowledge item and enqueue its ingestion job.

        Validation failures do not raise: the returned item is already in
        ``error`` with a non-retryable detail.
        """

        kind = KnowledgeKind(kind)
        name = (name or "").strip() or None
        item = KnowledgeItem(
            id=uuid4().hex,
            owner_id=owner_id,
            name=name or _placeholder_name(kind, raw_input),
            kind=kind,
            source=default_source(kind, raw_input),
        )
        if kind in {KnowledgeKind.FILE, KnowledgeKind.VOICE}:
            item.size_bytes = _payload_size(raw_input)
        self._store.put(item)
        self._publish(item, None, KnowledgeStatus.QUEUED, None)
        self._increment("ingestion.submitted", kind=kind.value)
        logger.info("ingestion.submit owner=%s item=%s kind=%s name=%s", owner_id, item.id, kind.value, item.name)

        job = IngestionJob(item=item, raw_input=raw_input, name_given=name is not None)
        # Registered before acquisition so a cancel or remove during the await marks it.
        with self._lock:
            self._jobs[item.id] = job
        try:
            self._adapter.validate(kind, raw_input, name=name)
            if kind is not KnowledgeKind.URL:
                job.acquired = await self._adapter.acquire(kind, raw_input, name=name)
        except IngestionError as exc:
            if not self._abandon_if_discarded(job):
                with self._lock:
                    self._jobs.pop(item.id, None)
                self._fail(item, exc)
            return item

        if self._abandon_if_discarded(job):
            return item
        if job.acquired is not None:
            self._apply_acquisition(job)

        if kind is KnowledgeKind.VOICE:
            job.audio = raw_input if isinstance(raw_input, AudioPayload) else AudioPayload(
                data=job.acquired.audio or b"",
                content_type=job.acquired.content_type,
            )
            self._store.save_audio(owner_id, item.id, job.audio)
        self._admit(job)
        return item

    async def retry(self, owner_id: str, item_id: str) -> KnowledgeItem:
        item = self.get(owner_id, item_id)
        if item.status is not KnowledgeStatus.ERROR:
            raise RetryRejected(f"Item {item_id} is {item.status.value}; only failed items can be retried")
        if not item.retryable or item.retry_count >= self._max_retries:
            if item.retryable:
                item.retryable = False
                self._store.put(item)
            raise RetryRejected(f"Item {item_id} has reached its retry limit")

        job = IngestionJob(item=item)
        if item.kind is KnowledgeKind.URL:
            job.raw_input = item.source
            job.name_given = True
        elif item.kind is KnowledgeKind.VOICE:
            job.audio = self._store.load_audio(owner_id, item_id)
            if job.audio is None:
                raise RetryRejected(f"Original recording for item {item_id} is no longer available")
        if item.kind is not KnowledgeKind.URL or item.extracted_content:
            job.acquired = AcquisitionResult(kind=item.kind, text=item.extracted_content)

        item.retry_count += 1
        self._transition(item, KnowledgeStatus.QUEUED)
        logger.info("ingestion.retry.manual owner=%s item=%s attempt=%s", owner_id, item_id, item.retry_count)
        self._increment("ingestion.retries", kind=item.kind.value, stage="manual")
        self._admit(job)
        return item

    async def cancel(self, owner_id: str, item_id: str) -> None:
        """Abort an in-progress item, roll back its chunks and delete it."""

        item = self.get(owner_id, item_id)
        if not item.is_active:
            raise RetryRejected(f"Item {item_id} is {item.status.value} and cannot be cancelled")
        await self._discard(item, detail=CANCELLED_DETAIL)
        self._increment("ingestion.cancelled", kind=item.kind.value)

    async def remove(self, owner_id: str, item_id: str) -> None:
        item = self.get(owner_id, item_id)
        await self._discard(item, detail=CANCELLED_DETAIL if item.is_active else REMOVED_DETAIL)

    async def purge_owner(self, owner_id: str) -> int:
        """Delete every item and indexed chunk belonging to ``owner_id``."""

        with self._lock:
            self._pending.pop(owner_id, None)
        items = self._store.list(owner_id)
        for item in items:
            await self._discard(item, detail=REMOVED_DETAIL, rollback=False)
        await self._indexer.index.delete_owner(owner_id)
        self._store.delete_owner(owner_id)
        with self._lock:
            self._active.pop(owner_id, None)
            self._pending.pop(owner_id, None)
        logger.info("ingestion.owner.purged owner=%s items=%s", owner_id, len(items))
        return len(items)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, owner_id: str, item_id: str) -> KnowledgeItem:
        item = self._store.get(owner_id, item_id)
        if item is None:
            raise ItemNotFound(owner_id, item_id)
        return item

    def list_items(
        self,
        owner_id: str,
        kind: KnowledgeKind | str | None = None,
        query: str | None = None,
    ) -> List[KnowledgeItem]:
        items = self._store.list(owner_id)
        if kind:
            kind = KnowledgeKind(kind)
            items = [item for item in items if item.kind is kind]
        needle = (query or "").strip().lower()
        if needle:
            items = [item for item in items if needle in item.name.lower() or needle in item.source.lower()]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def active_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._active.get(owner_id, ()))

    def pending_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._pending.get(owner_id, ()))

    async def search(self, owner_id: str, query: str, limit: int = 5) -> List[RetrievedChunk]:
        """Return chunks of synced items ranked best-first."""

        results = await self._indexer.index.search(owner_id, query, limit=limit)
        synced = []
        for chunk in results:
            item = self._store.get(owner_id, chunk.item_id)
            if item is not None and item.status is KnowledgeStatus.SYNCED:
                synced.append(chunk)
        return synced

    async def wait_idle(self) -> None:
        """Block until no job is running or pending."""

        while True:
            with self._lock:
                tasks = [job.task for job in self._jobs.values() if job.task is not None and not job.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running jobs without touching their records."""

        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            self._active.clear()
            self._pending.clear()
        tasks = []
        for job in jobs:
            job.cancelled = True
            if job.task is not None and not job.task.done():
                job.task.cancel()
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("ingestion.shutdown cancelled=%s", len(tasks))

    # ------------------------------------------------------------------
    # Admission and slots
    # ------------------------------------------------------------------
    def _admit(self, job: IngestionJob) -> None:
        owner_id = job.owner_id
        with self._lock:
            self._jobs[job.item_id] = job
            active = self._active[owner_id]
            start = len(active) < self._max_active_per_owner
            if start:
                active.add(job.item_id)
            else:
                self._pending[owner_id].append(job.item_id)
        if start:
            self._start(job)
        else:
            logger.info(
                "ingestion.throttled owner=%s item=%s pending=%s",
                owner_id,
                job.item_id,
                self.pending_count(owner_id),
            )
        self._record_gauges(owner_id)

    def _start(self, job: IngestionJob) -> None:
        job.task = asyncio.get_running_loop().create_task(self._run(job), name=f"ingest-{job.item_id}")

    def _release(self, owner_id: str, item_id: str) -> None:
        """Free ``item_id``'s slot and start the next pending job for the owner."""

        next_job: IngestionJob | None = None
        with self._lock:
            self._jobs.pop(item_id, None)
            active = self._active[owner_id]
            active.discard(item_id)
            pending = self._pending[owner_id]
            while pending and len(active) < self._max_active_per_owner:
                candidate = self._jobs.get(pending.popleft())
                if candidate is None or candidate.cancelled:
                    continue
                active.add(candidate.item_id)
                next_job = candidate
                break
        if next_job is not None:
            self._start(next_job)
        self._record_gauges(owner_id)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------
    async def _run(self, job: IngestionJob) -> None:
        item = job.item
        started = time.perf_counter()
        try:
            if job.acquired is None:
                job.acquired = await self._with_retries(
                    job,
                    "acquire",
                    lambda: self._adapter.acquire(item.kind, job.raw_input),
                )
                self._apply_acquisition(job)

            if item.kind is KnowledgeKind.VOICE:
                self._transition(item, KnowledgeStatus.TRANSCRIBING)
                audio = job.audio
                assert audio is not None
                transcript = await self._with_retries(job, "transcribe", lambda: self._transcriber.transcribe(audio))
                item.extracted_content = transcript
                self._store.put(item)

            self._transition(item, KnowledgeStatus.INDEXING)
            item.chunk_count = await self._with_retries(job, "index", lambda: self._write_index(job))
            self._transition(item, KnowledgeStatus.SYNCED)
            if item.kind is KnowledgeKind.VOICE:
                self._store.delete_audio(item.owner_id, item.id)
            self._increment("ingestion.synced", kind=item.kind.value)
            logger.info(
                "ingestion.synced owner=%s item=%s chunks=%s retries=%s duration=%.3fs",
                item.owner_id,
                item.id,
                item.chunk_count,
                item.retry_count,
                time.perf_counter() - started,
            )
        except asyncio.CancelledError:
            logger.info("ingestion.cancelled owner=%s item=%s status=%s", item.owner_id, item.id, item.status.value)
            raise
        except IngestionError as exc:
            self._fail(item, exc)
        except Exception as exc:
            logger.exception("ingestion.unexpected owner=%s item=%s", item.owner_id, item.id)
            self._fail(item, IngestionError(str(exc) or exc.__class__.__name__, transient=False))
        finally:
            if not job.cancelled:
                self._release(item.owner_id, item.id)

    async def _with_retries(self, job: IngestionJob, stage: str, operation: Callable[[], Awaitable[T]]) -> T:
        item = job.item
        while True:
            started = time.perf_counter()
            try:
                result = await operation()
            except IngestionError as exc:
                error = exc
            except Exception as exc:
                logger.warning(
                    "ingestion.stage.unexpected owner=%s item=%s stage=%s error=%r",
                    item.owner_id,
                    item.id,
                    stage,
                    exc,
                )
                error = IngestionError(str(exc) or exc.__class__.__name__, transient=True)
            else:
                self._record_stage(stage, item, started)
                return result

            self._record_stage(stage, item, started)
            if not error.transient or item.retry_count >= self._max_retries:
                raise error
            item.retry_count += 1
            self._store.put(item)
            delay = self._retry_delay(item.retry_count)
            self._increment("ingestion.retries", kind=item.kind.value, stage=stage)
            logger.warning(
                "ingestion.retry owner=%s item=%s stage=%s attempt=%s/%s delay=%.2fs error=%s",
                item.owner_id,
                item.id,
                stage,
                item.retry_count,
                self._max_retries,
                delay,
                error,
            )
            await asyncio.sleep(delay)

    async def _write_index(self, job: IngestionJob) -> int:
        item = job.item
        lock = self._item_lock(item.id)

        async def write() -> int:
            async with lock:
                return await self._indexer.index_content(
                    item.owner_id,
                    item.id,
                    item.extracted_content or "",
                    source=item.source,
                )

        # A cancelled job lets the write settle so rollback sees its final state.
        job.write = asyncio.ensure_future(write())
        return await asyncio.shield(job.write)

    async def _discard(self, item: KnowledgeItem, *, detail: str, rollback: bool = True) -> None:
        with self._lock:
            job = self._jobs.pop(item.id, None)
            was_active = item.id in self._active.get(item.owner_id, ())
            self._active.get(item.owner_id, set()).discard(item.id)
            pending = self._pending.get(item.owner_id)
            if pending is not None and item.id in pending:
                pending.remove(item.id)
        old_status = item.status
        self._store.delete(item.owner_id, item.id)
        self._store.delete_audio(item.owner_id, item.id)

        if job is not None:
            job.cancelled = True
            if job.task is not None and not job.task.done():
                job.task.cancel()
        if was_active:
            self._release(item.owner_id, item.id)

        if job is not None and job.task is not None:
            await asyncio.gather(job.task, return_exceptions=True)
        if job is not None and job.write is not None:
            await asyncio.gather(job.write, return_exceptions=True)
        if rollback:
            async with self._item_lock(item.id):
                try:
                    await self._indexer.index.delete_item(item.owner_id, item.id)
                except IngestionError:
                    logger.exception("ingestion.rollback.failed owner=%s item=%s", item.owner_id, item.id)
        self._item_locks.pop(item.id, None)

        logger.info(
            "ingestion.removed owner=%s item=%s from=%s detail=%s",
            item.owner_id,
            item.id,
            old_status.value,
            detail,
        )
        item.last_updated = utcnow_iso()
        self._publish(item, old_status, KnowledgeStatus.REMOVED, detail)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _abandon_if_discarded(self, job: IngestionJob) -> bool:
        """Return True when ``job``'s item was cancelled or removed while it was being acquired."""

        if not job.cancelled and self._store.get(job.owner_id, job.item_id) is job.item:
            return False
        with self._lock:
            if self._jobs.get(job.item_id) is job:
                del self._jobs[job.item_id]
        logger.info("ingestion.submit.abandoned owner=%s item=%s", job.owner_id, job.item_id)
        return True

    def _apply_acquisition(self, job: IngestionJob) -> None:
        item = job.item
        result = job.acquired
        assert result is not None
        if result.text is not None:
            item.extracted_content = result.text
        item.content_type = result.content_type or item.content_type
        if result.size_bytes is not None:
            item.size_bytes = result.size_bytes
        if not job.name_given and result.title:
            item.name = result.title
        self._store.put(item)

    def _transition(self, item: KnowledgeItem, new_status: KnowledgeStatus, *, detail: str | None = None) -> None:
        item.check_transition(new_status)
        old_status = item.status
        item.status = new_status
        item.error_detail = detail if new_status is KnowledgeStatus.ERROR else None
        item.last_updated = utcnow_iso()
        self._store.put(item)
        logger.info(
            "ingestion.status owner=%s item=%s %s->%s",
            item.owner_id,
            item.id,
            old_status.value,
            new_status.value,
        )
        self._publish(item, old_status, new_status, detail)

    def _fail(self, item: KnowledgeItem, exc: IngestionError) -> None:
        item.retryable = False
        self._transition(item, KnowledgeStatus.ERROR, detail=exc.message)
        self._store.delete_audio(item.owner_id, item.id)
        self._increment("ingestion.failed", kind=item.kind.value)
        logger.warning(
            "ingestion.failed owner=%s item=%s kind=%s transient=%s retries=%s error=%s",
            item.owner_id,
            item.id,
            item.kind.value,
            exc.transient,
            item.retry_count,
            exc.message,
        )

    def _publish(
        self,
        item: KnowledgeItem,
        old_status: KnowledgeStatus | None,
        new_status: KnowledgeStatus,
        detail: str | None,
    ) -> None:
        self._notifier.publish(
            StatusEvent(
                item_id=item.id,
                owner_id=item.owner_id,
                old_status=old_status,
                new_status=new_status,
                detail=detail,
                last_updated=item.last_updated,
            )
        )

    def _item_lock(self, item_id: str) -> asyncio.Lock:
        lock = self._item_locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._item_locks[item_id] = lock
        return lock

    def _increment(self, metric: str, **tags: Any) -> None:
        if self._metrics:
            self._metrics.increment(metric, **tags)

    def _record_stage(self, stage: str, item: KnowledgeItem, started: float) -> None:
        if self._metrics:
            self._metrics.record_timing(
                "ingestion.stage_duration",
                time.perf_counter() - started,
                stage=stage,
                kind=item.kind.value,
            )

    def _record_gauges(self, owner_id: str) -> None:
        if self._metrics:
            self._metrics.set_gauge("ingestion.active", self.active_count(owner_id), owner_id=owner_id)
            self._metrics.set_gauge("ingestion.pending", self.pending_count(owner_id), owner_id=owner_id)


def _payload_size(raw_input: Any) -> int | None:
    if isinstance(raw_input, AudioPayload):
        return len(raw_input.data)
    if isinstance(raw_input, (bytes, bytearray, memoryview)):
        return len(raw_input)
    return None


def _placeholder_name(kind: KnowledgeKind, raw_input: Any) -> str:
    if kind is KnowledgeKind.URL:
        return str(raw_input or "").strip() or "Web page"
    if kind is KnowledgeKind.VOICE:
        return f"Voice note {utcnow_iso()[:16].replace('T', ' ')}"
    if kind is KnowledgeKind.TEXT:
        first_line = str(raw_input or "").strip().splitlines()[:1]
        if first_line and first_line[0].strip():
            return first_line[0].strip()[:80]
        return "Text snippet"
    return "Untitled document"


__all__ = ["IngestionJob", "IngestionJobManager", "backoff_delay", "CANCELLED_DETAIL", "REMOVED_DETAIL"]
