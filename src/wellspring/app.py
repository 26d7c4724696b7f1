"""FastAPI application exposing the knowledge ingestion pipeline."""

from __future__ import annotations

import json
import logging
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import Settings
from .errors import ItemNotFound, RetryRejected
from .events import ActivityFeed, EventStream, StatusNotifier
from .index import ChunkIndexer, KnowledgeIndex, build_index
from .jobs import IngestionJobManager
from .models import AudioPayload, KnowledgeItem, KnowledgeKind
from .observability import MetricsRecorder
from .sources import SourceAdapter
from .store import KnowledgeItemStore
from .transcription import Transcriber, build_transcriber

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("wellspring")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: KnowledgeItemStore,
        index: KnowledgeIndex,
        transcriber: Transcriber,
        notifier: StatusNotifier,
        activity: ActivityFeed,
        event_stream: EventStream,
        metrics: MetricsRecorder | None,
        manager: IngestionJobManager,
    ) -> None:
        self.settings = settings
        self.store = store
        self.index = index
        self.transcriber = transcriber
        self.notifier = notifier
        self.activity = activity
        self.event_stream = event_stream
        self.metrics = metrics
        self.manager = manager


def create_app(
    *,
    settings: Settings | None = None,
    store: KnowledgeItemStore | None = None,
    index: KnowledgeIndex | None = None,
    adapter: SourceAdapter | None = None,
    transcriber: Transcriber | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    if store is None:
        store = KnowledgeItemStore(settings.items_dir() if settings.persist_items else None)
    index = index or build_index(settings)
    adapter = adapter or SourceAdapter.from_settings(settings)
    transcriber = transcriber or build_transcriber(settings)
    logger.info(
        "app.start data_dir=%s index_backend=%s owners=%s",
        settings.data_dir,
        settings.index_backend,
        len(store.owners()),
    )

    notifier = StatusNotifier()
    activity = ActivityFeed(max_entries=settings.activity_feed_size)
    event_stream = EventStream()
    notifier.subscribe(activity)
    notifier.subscribe(event_stream)

    manager = IngestionJobManager.from_settings(
        settings,
        store=store,
        adapter=adapter,
        transcriber=transcriber,
        indexer=ChunkIndexer(
            index,
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
        ),
        notifier=notifier,
        metrics=metrics,
    )

    app = FastAPI(title="Wellspring")
    app.state.services = ApplicationState(
        settings=settings,
        store=store,
        index=index,
        transcriber=transcriber,
        notifier=notifier,
        activity=activity,
        event_stream=event_stream,
        metrics=metrics,
        manager=manager,
    )

    @app.on_event("shutdown")
    async def _shutdown_ingestion() -> None:
        await manager.shutdown()
        close = getattr(transcriber, "aclose", None)
        if close is not None:
            await close()

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_manager(request: Request) -> IngestionJobManager:
        return get_state(request).manager

    def get_activity(request: Request) -> ActivityFeed:
        return get_state(request).activity

    def get_event_stream(request: Request) -> EventStream:
        return get_state(request).event_stream

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    def _item_or_404(manager: IngestionJobManager, owner_id: str, item_id: str) -> KnowledgeItem:
        try:
            return manager.get(owner_id, item_id)
        except ItemNotFound as exc:
            raise HTTPException(status_code=404, detail="Knowledge item not found") from exc

    def _accepted(item: KnowledgeItem) -> JSONResponse:
        return JSONResponse({"item": item.to_dict()}, status_code=202)

    @app.get("/healthz", response_class=JSONResponse)
    async def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.enabled:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        if not metrics.prometheus_enabled:
            return JSONResponse(metrics.snapshot())
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    @app.post("/owners/{owner_id}/knowledge/text", response_class=JSONResponse)
    async def submit_text(
        owner_id: str,
        name: str = Form(""),
        content: str = Form(""),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        item = await manager.submit(owner_id, KnowledgeKind.TEXT, content, name or None)
        return _accepted(item)

    @app.post("/owners/{owner_id}/knowledge/url", response_class=JSONResponse)
    async def submit_url(
        owner_id: str,
        url: str = Form(""),
        name: str | None = Form(None),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        item = await manager.submit(owner_id, KnowledgeKind.URL, url.strip(), name)
        return _accepted(item)

    @app.post("/owners/{owner_id}/knowledge/file", response_class=JSONResponse)
    async def submit_file(
        owner_id: str,
        file: UploadFile = File(...),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        filename = file.filename or "document"
        raw_bytes = await file.read()
        logger.info("knowledge.upload.received owner=%s file=%s bytes=%s", owner_id, filename, len(raw_bytes))
        item = await manager.submit(owner_id, KnowledgeKind.FILE, raw_bytes, filename)
        return _accepted(item)

    @app.post("/owners/{owner_id}/knowledge/voice", response_class=JSONResponse)
    async def submit_voice(
        owner_id: str,
        audio: UploadFile = File(...),
        name: str | None = Form(None),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        payload = AudioPayload(
            data=await audio.read(),
            filename=audio.filename or "recording.webm",
            content_type=audio.content_type,
        )
        item = await manager.submit(owner_id, KnowledgeKind.VOICE, payload, name)
        return _accepted(item)

    @app.get("/owners/{owner_id}/knowledge", response_class=JSONResponse)
    async def list_knowledge(
        owner_id: str,
        kind: KnowledgeKind | None = Query(None),
        q: str | None = Query(None),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        items = manager.list_items(owner_id, kind=kind, query=q)
        return JSONResponse(
            {
                "items": [item.to_dict() for item in items],
                "active": manager.active_count(owner_id),
                "pending": manager.pending_count(owner_id),
            }
        )

    @app.get("/owners/{owner_id}/knowledge/search", response_class=JSONResponse)
    async def search_knowledge(
        owner_id: str,
        q: str = Query(..., min_length=1),
        limit: int = Query(5, ge=1, le=50),
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        results = await manager.search(owner_id, q, limit=limit)
        return JSONResponse({"query": q, "results": [chunk.to_dict() for chunk in results]})

    @app.get("/owners/{owner_id}/knowledge/{item_id}", response_class=JSONResponse)
    async def get_knowledge_item(
        owner_id: str,
        item_id: str,
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        item = _item_or_404(manager, owner_id, item_id)
        return JSONResponse({"item": item.to_dict(preview=False)})

    @app.post("/owners/{owner_id}/knowledge/{item_id}/retry", response_class=JSONResponse)
    async def retry_knowledge_item(
        owner_id: str,
        item_id: str,
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        _item_or_404(manager, owner_id, item_id)
        try:
            item = await manager.retry(owner_id, item_id)
        except RetryRejected as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _accepted(item)

    @app.post("/owners/{owner_id}/knowledge/{item_id}/cancel", response_class=JSONResponse)
    async def cancel_knowledge_item(
        owner_id: str,
        item_id: str,
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        _item_or_404(manager, owner_id, item_id)
        try:
            await manager.cancel(owner_id, item_id)
        except RetryRejected as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse({"id": item_id, "status": "removed", "detail": "cancelled"})

    @app.delete("/owners/{owner_id}/knowledge/{item_id}", response_class=JSONResponse)
    async def delete_knowledge_item(
        owner_id: str,
        item_id: str,
        manager: IngestionJobManager = Depends(get_manager),
    ) -> JSONResponse:
        _item_or_404(manager, owner_id, item_id)
        await manager.remove(owner_id, item_id)
        return JSONResponse({"id": item_id, "status": "removed"})

    @app.get("/owners/{owner_id}/activity", response_class=JSONResponse)
    async def owner_activity(
        owner_id: str,
        limit: int | None = Query(None, ge=1),
        activity: ActivityFeed = Depends(get_activity),
    ) -> JSONResponse:
        events = activity.recent(owner_id, limit=limit)
        return JSONResponse({"events": [event.to_dict() for event in events]})

    @app.get("/owners/{owner_id}/events", response_class=StreamingResponse)
    async def owner_events(
        owner_id: str,
        stream: EventStream = Depends(get_event_stream),
    ) -> StreamingResponse:
        async def event_iterator() -> AsyncGenerator[str, None]:
            async for event in stream.listen(owner_id):
                yield f"event: status\ndata: {json.dumps(event.to_dict())}\n\n"

        return StreamingResponse(event_iterator(), media_type="text/event-stream")

    @app.delete("/owners/{owner_id}", response_class=JSONResponse)
    async def delete_owner(
        owner_id: str,
        manager: IngestionJobManager = Depends(get_manager),
        activity: ActivityFeed = Depends(get_activity),
    ) -> JSONResponse:
        removed = await manager.purge_owner(owner_id)
        activity.clear(owner_id)
        return JSONResponse({"owner_id": owner_id, "removed": removed})

    return app


__all__ = ["ApplicationState", "create_app"]
