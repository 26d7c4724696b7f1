from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from wellspring.errors import ItemNotFound, RetryRejected
from wellspring.models import AudioPayload, KnowledgeItem, KnowledgeKind, KnowledgeStatus
from wellspring.observability import MetricsRecorder
from wellspring.sources import SourceAdapter
from wellspring.store import INTERRUPTED_DETAIL, KnowledgeItemStore

OWNER = "owner-1"


@pytest.mark.asyncio
async def test_text_item_reaches_synced_with_single_chunk(build_manager, memory_index, event_log) -> None:
    manager = build_manager()

    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "hello", "Greeting")
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert stored.status is KnowledgeStatus.SYNCED
    assert stored.chunk_count == 1
    assert stored.source == "Internal Storage"
    assert await memory_index.count_item(OWNER, item.id) == 1
    assert event_log.statuses(item.id) == ["queued", "indexing", "synced"]


@pytest.mark.asyncio
async def test_voice_item_is_transcribed_before_indexing(build_manager, event_log, transcriber) -> None:
    manager = build_manager()
    content_at_indexing: list[str | None] = []

    def capture(event) -> None:
        if event.new_status is KnowledgeStatus.INDEXING:
            content_at_indexing.append(manager.get(event.owner_id, event.item_id).extracted_content)

    manager.notifier.subscribe(capture)
    audio = AudioPayload(data=b"\x1a\x45\xdf\xa3 fake webm", filename="memo.webm", content_type="audio/webm")

    item = await manager.submit(OWNER, KnowledgeKind.VOICE, audio, None)
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert event_log.statuses(item.id) == ["queued", "transcribing", "indexing", "synced"]
    assert content_at_indexing == [transcriber.text]
    assert stored.source == "Recorded Audio"
    assert stored.size_bytes == len(audio.data)
    assert stored.extracted_content == transcriber.text


@pytest.mark.asyncio
async def test_url_timeouts_are_retried_until_success(build_manager, event_log, html_page) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] <= 3:
            raise httpx.ReadTimeout("upstream too slow", request=request)
        return httpx.Response(
            200,
            headers={"content-type": "text/html; charset=utf-8"},
            text=html_page("Setup Guide", "Install the widget before pairing it."),
        )

    manager = build_manager(handler=handler)

    item = await manager.submit(OWNER, KnowledgeKind.URL, "https://docs.example.com/guide", None)
    assert item.status is KnowledgeStatus.QUEUED
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert stored.status is KnowledgeStatus.SYNCED
    assert stored.retry_count == 3
    assert stored.name == "Setup Guide"
    assert stored.source == "https://docs.example.com/guide"
    assert calls["count"] == 4
    assert event_log.statuses(item.id) == ["queued", "indexing", "synced"]


@pytest.mark.asyncio
async def test_oversized_file_fails_immediately(settings, build_manager, memory_index, event_log) -> None:
    settings.max_file_bytes = 16
    manager = build_manager()

    item = await manager.submit(OWNER, KnowledgeKind.FILE, b"x" * 64, "notes.txt")

    assert item.status is KnowledgeStatus.ERROR
    assert "exceeds" in (item.error_detail or "")
    assert item.retry_count == 0
    assert item.retryable is False
    assert manager.active_count(OWNER) == 0
    assert memory_index.writes == 0
    assert event_log.statuses(item.id) == ["queued", "error"]


@pytest.mark.asyncio
async def test_unsupported_file_type_is_permanent(build_manager) -> None:
    manager = build_manager()

    item = await manager.submit(OWNER, KnowledgeKind.FILE, b"MZ\x90\x00", "setup.exe")

    assert item.status is KnowledgeStatus.ERROR
    assert "Unsupported file type" in (item.error_detail or "")
    with pytest.raises(RetryRejected):
        await manager.retry(OWNER, item.id)


@pytest.mark.asyncio
async def test_removing_item_mid_indexing_rolls_back_chunks(build_manager, memory_index, event_log) -> None:
    manager = build_manager()
    memory_index.gate = asyncio.Event()

    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "Quarterly roadmap and hiring plan.", "Roadmap")
    await memory_index.write_started.wait()
    assert manager.get(OWNER, item.id).status is KnowledgeStatus.INDEXING
    assert manager.active_count(OWNER) == 1

    removal = asyncio.create_task(manager.remove(OWNER, item.id))
    await asyncio.sleep(0)
    assert manager.active_count(OWNER) == 0

    memory_index.gate.set()
    await removal

    assert await memory_index.count_item(OWNER, item.id) == 0
    assert (OWNER, item.id) in memory_index.deletes
    assert event_log.statuses(item.id)[-1] == "removed"
    assert event_log.events[-1].detail == "cancelled"
    assert event_log.events[-1].old_status is KnowledgeStatus.INDEXING
    with pytest.raises(ItemNotFound):
        manager.get(OWNER, item.id)


@pytest.mark.asyncio
async def test_cancel_frees_slot_for_pending_job(build_manager, memory_index) -> None:
    manager = build_manager(max_active=1)
    memory_index.gate = asyncio.Event()

    first = await manager.submit(OWNER, KnowledgeKind.TEXT, "First document body.", "First")
    second = await manager.submit(OWNER, KnowledgeKind.TEXT, "Second document body.", "Second")
    assert manager.active_count(OWNER) == 1
    assert manager.pending_count(OWNER) == 1

    cancellation = asyncio.create_task(manager.cancel(OWNER, first.id))
    await asyncio.sleep(0)
    assert manager.pending_count(OWNER) == 0
    assert manager.active_count(OWNER) == 1

    memory_index.gate.set()
    await cancellation
    await manager.wait_idle()

    assert manager.get(OWNER, second.id).status is KnowledgeStatus.SYNCED
    assert await memory_index.count_item(OWNER, first.id) == 0


@pytest.mark.asyncio
async def test_cancel_rejects_items_that_are_not_in_progress(build_manager) -> None:
    manager = build_manager()
    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "Done soon.", "Short")
    await manager.wait_idle()

    with pytest.raises(RetryRejected):
        await manager.cancel(OWNER, item.id)
    with pytest.raises(ItemNotFound):
        await manager.cancel(OWNER, "missing")


class GatedSourceAdapter(SourceAdapter):
    """Source adapter that holds every acquisition until ``gate`` is set."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def acquire(self, kind, raw_input, *, name=None):
        self.started.set()
        await self.gate.wait()
        return await super().acquire(kind, raw_input, name=name)


@pytest.mark.asyncio
async def test_cancel_during_file_acquisition_discards_the_item(
    settings, build_manager, memory_index, event_log
) -> None:
    adapter = GatedSourceAdapter.from_settings(settings)
    manager = build_manager(adapter=adapter)

    submission = asyncio.create_task(
        manager.submit(OWNER, KnowledgeKind.FILE, b"# Seeds\n\nOrder the seed catalogue.", "notes.md")
    )
    await adapter.started.wait()
    [queued] = manager.list_items(OWNER)
    await manager.cancel(OWNER, queued.id)

    adapter.gate.set()
    item = await submission
    await manager.wait_idle()

    assert item.id == queued.id
    assert manager.list_items(OWNER) == []
    assert manager.active_count(OWNER) == 0
    assert memory_index.writes == 0
    assert (OWNER, item.id) not in memory_index.chunks
    assert event_log.statuses(item.id) == ["queued", "removed"]


@pytest.mark.asyncio
async def test_failed_acquisition_after_removal_does_not_report_error(
    settings, build_manager, memory_index, event_log
) -> None:
    adapter = GatedSourceAdapter.from_settings(settings)
    manager = build_manager(adapter=adapter)

    submission = asyncio.create_task(manager.submit(OWNER, KnowledgeKind.FILE, b"   ", "blank.txt"))
    await adapter.started.wait()
    [queued] = manager.list_items(OWNER)
    await manager.remove(OWNER, queued.id)

    adapter.gate.set()
    await submission

    assert manager.list_items(OWNER) == []
    assert event_log.statuses(queued.id) == ["queued", "removed"]


@pytest.mark.asyncio
async def test_cancel_during_transcription_aborts_and_frees_slot(
    build_manager, memory_index, transcriber, event_log
) -> None:
    manager = build_manager()
    transcriber.gate = asyncio.Event()
    audio = AudioPayload(data=b"RIFF fake wav", filename="memo.wav", content_type="audio/wav")

    item = await manager.submit(OWNER, KnowledgeKind.VOICE, audio, "Memo")
    for _ in range(100):
        if manager.get(OWNER, item.id).status is KnowledgeStatus.TRANSCRIBING and transcriber.calls:
            break
        await asyncio.sleep(0)
    assert manager.get(OWNER, item.id).status is KnowledgeStatus.TRANSCRIBING
    assert manager.active_count(OWNER) == 1

    await manager.cancel(OWNER, item.id)

    assert manager.active_count(OWNER) == 0
    with pytest.raises(ItemNotFound):
        manager.get(OWNER, item.id)
    assert event_log.events[-1].new_status is KnowledgeStatus.REMOVED
    assert event_log.events[-1].detail == "cancelled"
    assert event_log.events[-1].old_status is KnowledgeStatus.TRANSCRIBING
    assert transcriber.calls == 1
    assert memory_index.writes == 0


@pytest.mark.asyncio
async def test_owner_concurrency_limit_queues_extra_jobs(build_manager, memory_index) -> None:
    manager = build_manager(max_active=2)
    memory_index.gate = asyncio.Event()

    items = [
        await manager.submit(OWNER, KnowledgeKind.TEXT, f"Document number {index}.", f"Doc {index}")
        for index in range(4)
    ]
    other = await manager.submit("owner-2", KnowledgeKind.TEXT, "Someone else's note.", "Other")

    assert manager.active_count(OWNER) == 2
    assert manager.pending_count(OWNER) == 2
    assert manager.active_count("owner-2") == 1
    for _ in range(5):
        await asyncio.sleep(0)
    assert manager.active_count(OWNER) <= 2

    memory_index.gate.set()
    await manager.wait_idle()

    assert manager.active_count(OWNER) == 0
    assert manager.pending_count(OWNER) == 0
    assert all(manager.get(OWNER, item.id).status is KnowledgeStatus.SYNCED for item in items)
    assert manager.get("owner-2", other.id).status is KnowledgeStatus.SYNCED


@pytest.mark.asyncio
async def test_pending_jobs_start_in_submission_order(build_manager, event_log) -> None:
    manager = build_manager(max_active=1)

    items = [
        await manager.submit(OWNER, KnowledgeKind.TEXT, f"Entry {index} body text.", f"Entry {index}")
        for index in range(3)
    ]
    await manager.wait_idle()

    started = [event.item_id for event in event_log.events if event.new_status is KnowledgeStatus.INDEXING]
    assert started == [item.id for item in items]


@pytest.mark.asyncio
async def test_transient_index_failures_are_retried(build_manager, memory_index) -> None:
    manager = build_manager()
    memory_index.failures = 2

    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "Retry me please.", "Flaky")
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert stored.status is KnowledgeStatus.SYNCED
    assert stored.retry_count == 2
    assert memory_index.writes == 3


@pytest.mark.asyncio
async def test_retry_cap_marks_item_non_retryable(build_manager, memory_index) -> None:
    manager = build_manager(max_retries=3)
    memory_index.failures = 10

    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "Never lands.", "Doomed")
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert stored.status is KnowledgeStatus.ERROR
    assert stored.retry_count == 3
    assert stored.retryable is False
    assert "unavailable" in (stored.error_detail or "")
    assert memory_index.writes == 4
    with pytest.raises(RetryRejected):
        await manager.retry(OWNER, item.id)


@pytest.mark.asyncio
async def test_permanent_transcription_failure_skips_retries(build_manager, transcriber, event_log) -> None:
    manager = build_manager()
    transcriber.permanent = True

    item = await manager.submit(OWNER, KnowledgeKind.VOICE, b"not really audio", "Memo")
    await manager.wait_idle()

    stored = manager.get(OWNER, item.id)
    assert stored.status is KnowledgeStatus.ERROR
    assert stored.retry_count == 0
    assert stored.retryable is False
    assert transcriber.calls == 1
    assert event_log.statuses(item.id) == ["queued", "transcribing", "error"]


@pytest.mark.asyncio
async def test_interrupted_item_can_be_retried_after_restart(tmp_path: Path, build_manager) -> None:
    root = tmp_path / "items"
    first_store = KnowledgeItemStore(root)
    first_store.put(
        KnowledgeItem(
            id="abc123",
            owner_id=OWNER,
            name="Policy",
            kind=KnowledgeKind.TEXT,
            source="Internal Storage",
            status=KnowledgeStatus.INDEXING,
            extracted_content="Refunds are processed within five days.",
        )
    )

    manager = build_manager(store=KnowledgeItemStore(root))
    restored = manager.get(OWNER, "abc123")
    assert restored.status is KnowledgeStatus.ERROR
    assert restored.error_detail == INTERRUPTED_DETAIL
    assert restored.retryable is True

    await manager.retry(OWNER, "abc123")
    await manager.wait_idle()

    stored = manager.get(OWNER, "abc123")
    assert stored.status is KnowledgeStatus.SYNCED
    assert stored.retry_count == 1
    assert stored.error_detail is None


@pytest.mark.asyncio
async def test_retry_rejects_items_that_are_not_failed(build_manager) -> None:
    manager = build_manager()
    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "Fine content.", "Fine")
    await manager.wait_idle()

    with pytest.raises(RetryRejected):
        await manager.retry(OWNER, item.id)


@pytest.mark.asyncio
async def test_list_items_filters_by_kind_and_query(build_manager) -> None:
    manager = build_manager()
    text = await manager.submit(OWNER, KnowledgeKind.TEXT, "Opening hours are nine to five.", "Opening hours")
    await asyncio.sleep(0.01)
    file_item = await manager.submit(OWNER, KnowledgeKind.FILE, b"Menu: soup, bread.", "menu.txt")
    await manager.wait_idle()

    assert [item.id for item in manager.list_items(OWNER)] == [file_item.id, text.id]
    assert [item.id for item in manager.list_items(OWNER, kind="text")] == [text.id]
    assert [item.id for item in manager.list_items(OWNER, query="MENU")] == [file_item.id]
    assert [item.id for item in manager.list_items(OWNER, query="internal storage")] == [file_item.id, text.id]
    assert manager.list_items("nobody") == []


@pytest.mark.asyncio
async def test_search_only_returns_synced_items(build_manager, memory_index) -> None:
    manager = build_manager()
    item = await manager.submit(OWNER, KnowledgeKind.TEXT, "The espresso machine needs descaling monthly.", "Coffee")
    await manager.wait_idle()

    results = await manager.search(OWNER, "espresso descaling", limit=3)
    assert [chunk.item_id for chunk in results] == [item.id]
    assert results[0].source == "Internal Storage"
    assert await manager.search("owner-2", "espresso") == []


@pytest.mark.asyncio
async def test_purge_owner_removes_items_and_chunks(build_manager, memory_index) -> None:
    manager = build_manager()
    await manager.submit(OWNER, KnowledgeKind.TEXT, "Alpha notes.", "Alpha")
    await manager.submit(OWNER, KnowledgeKind.TEXT, "Beta notes.", "Beta")
    kept = await manager.submit("owner-2", KnowledgeKind.TEXT, "Gamma notes.", "Gamma")
    await manager.wait_idle()

    removed = await manager.purge_owner(OWNER)

    assert removed == 2
    assert manager.list_items(OWNER) == []
    assert all(key[0] != OWNER for key in memory_index.chunks)
    assert manager.get("owner-2", kept.id).status is KnowledgeStatus.SYNCED


@pytest.mark.asyncio
async def test_manager_records_metrics(build_manager) -> None:
    metrics = MetricsRecorder(enabled=True, namespace="wellspring.test")
    manager = build_manager(metrics=metrics)

    await manager.submit(OWNER, KnowledgeKind.TEXT, "Counted content.", "Counted")
    await manager.submit(OWNER, KnowledgeKind.TEXT, "   ", "Blank")
    await manager.wait_idle()

    assert metrics.counter_value("ingestion.submitted") == 2
    assert metrics.counter_value("ingestion.synced") == 1
    assert metrics.counter_value("ingestion.failed") == 1
    assert metrics.snapshot()["gauges"]["ingestion.active"] == 0
