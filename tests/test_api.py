from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from wellspring.app import create_app
from wellspring.config import Settings
from wellspring.observability import MetricsRecorder
from wellspring.store import KnowledgeItemStore


@pytest.fixture()
def api_client(settings: Settings, memory_index, transcriber):
    app = create_app(
        settings=settings,
        store=KnowledgeItemStore(),
        index=memory_index,
        transcriber=transcriber,
        metrics=MetricsRecorder(enabled=True),
    )
    with TestClient(app) as client:
        yield client


def _wait_for_status(client: TestClient, owner_id: str, item_id: str, status: str) -> dict:
    item = {}
    for _ in range(200):
        response = client.get(f"/owners/{owner_id}/knowledge/{item_id}")
        assert response.status_code == 200
        item = response.json()["item"]
        if item["status"] == status:
            return item
        time.sleep(0.01)
    raise AssertionError(f"item {item_id} stuck in {item.get('status')}")


def _submit_text(client: TestClient, owner_id: str, name: str, content: str) -> dict:
    response = client.post(f"/owners/{owner_id}/knowledge/text", data={"name": name, "content": content})
    assert response.status_code == 202
    return response.json()["item"]


def test_healthz(api_client: TestClient) -> None:
    assert api_client.get("/healthz").json() == {"status": "ok"}


def test_text_submission_syncs_and_is_searchable(api_client: TestClient) -> None:
    item = _submit_text(api_client, "owner-1", "Garden notes", "Water the tomatoes every morning before work.")

    assert item["status"] == "queued"
    assert item["kind"] == "text"
    synced = _wait_for_status(api_client, "owner-1", item["id"], "synced")
    assert synced["chunk_count"] == 1
    assert synced["content"] == "Water the tomatoes every morning before work."

    search = api_client.get("/owners/owner-1/knowledge/search", params={"q": "tomatoes"}).json()
    assert [result["item_id"] for result in search["results"]] == [item["id"]]

    other_owner = api_client.get("/owners/owner-2/knowledge/search", params={"q": "tomatoes"}).json()
    assert other_owner["results"] == []


def test_empty_text_is_accepted_as_failed_item(api_client: TestClient) -> None:
    item = _submit_text(api_client, "owner-1", "Empty", "   ")

    assert item["status"] == "error"
    assert item["retryable"] is False
    assert item["error_detail"] == "Text snippet is empty"

    response = api_client.post(f"/owners/owner-1/knowledge/{item['id']}/retry")
    assert response.status_code == 409


def test_file_upload_with_unsupported_extension_fails(api_client: TestClient) -> None:
    response = api_client.post(
        "/owners/owner-1/knowledge/file",
        files={"file": ("archive.zip", b"PK\x03\x04", "application/zip")},
    )

    assert response.status_code == 202
    item = response.json()["item"]
    assert item["status"] == "error"
    assert "Unsupported file type" in item["error_detail"]


def test_file_upload_syncs(api_client: TestClient) -> None:
    response = api_client.post(
        "/owners/owner-1/knowledge/file",
        files={"file": ("roses.md", b"# Roses\n\nPrune roses in early spring.", "text/markdown")},
    )

    item = response.json()["item"]
    synced = _wait_for_status(api_client, "owner-1", item["id"], "synced")
    assert synced["name"] == "roses.md"
    assert synced["size_bytes"] == len(b"# Roses\n\nPrune roses in early spring.")


def test_voice_upload_is_transcribed(api_client: TestClient, transcriber) -> None:
    response = api_client.post(
        "/owners/owner-1/knowledge/voice",
        files={"audio": ("memo.wav", b"RIFFfake-audio", "audio/wav")},
        data={"name": "Morning memo"},
    )

    item = response.json()["item"]
    synced = _wait_for_status(api_client, "owner-1", item["id"], "synced")
    assert synced["content"] == transcriber.text
    assert transcriber.calls == 1


def test_unknown_item_returns_404(api_client: TestClient) -> None:
    assert api_client.get("/owners/owner-1/knowledge/missing").status_code == 404
    assert api_client.post("/owners/owner-1/knowledge/missing/retry").status_code == 404
    assert api_client.post("/owners/owner-1/knowledge/missing/cancel").status_code == 404
    assert api_client.delete("/owners/owner-1/knowledge/missing").status_code == 404


def test_cancel_of_synced_item_conflicts_and_delete_removes_it(api_client: TestClient, memory_index) -> None:
    item = _submit_text(api_client, "owner-1", "Soil", "Mulch keeps the soil moist in summer.")
    _wait_for_status(api_client, "owner-1", item["id"], "synced")

    assert api_client.post(f"/owners/owner-1/knowledge/{item['id']}/cancel").status_code == 409

    response = api_client.delete(f"/owners/owner-1/knowledge/{item['id']}")
    assert response.json() == {"id": item["id"], "status": "removed"}
    assert api_client.get(f"/owners/owner-1/knowledge/{item['id']}").status_code == 404
    assert ("owner-1", item["id"]) not in memory_index.chunks


def test_list_filters_and_activity(api_client: TestClient) -> None:
    text_item = _submit_text(api_client, "owner-1", "Compost guide", "Turn the compost weekly.")
    _wait_for_status(api_client, "owner-1", text_item["id"], "synced")
    api_client.post(
        "/owners/owner-1/knowledge/url",
        data={"url": "ftp://example.com/guide"},
    )

    listing = api_client.get("/owners/owner-1/knowledge").json()
    assert len(listing["items"]) == 2
    assert listing["active"] == 0
    assert listing["pending"] == 0

    texts = api_client.get("/owners/owner-1/knowledge", params={"kind": "text"}).json()["items"]
    assert [entry["id"] for entry in texts] == [text_item["id"]]
    named = api_client.get("/owners/owner-1/knowledge", params={"q": "compost"}).json()["items"]
    assert [entry["id"] for entry in named] == [text_item["id"]]

    events = api_client.get("/owners/owner-1/activity").json()["events"]
    text_statuses = [event["new_status"] for event in events if event["item_id"] == text_item["id"]]
    assert text_statuses == ["synced", "indexing", "queued"]


def test_delete_owner_purges_everything(api_client: TestClient, memory_index) -> None:
    item = _submit_text(api_client, "owner-1", "Basil", "Basil prefers warm weather.")
    _wait_for_status(api_client, "owner-1", item["id"], "synced")

    response = api_client.delete("/owners/owner-1")

    assert response.json() == {"owner_id": "owner-1", "removed": 1}
    assert api_client.get("/owners/owner-1/knowledge").json()["items"] == []
    assert api_client.get("/owners/owner-1/activity").json()["events"] == []
    assert not [key for key in memory_index.chunks if key[0] == "owner-1"]


def test_metrics_snapshot(api_client: TestClient) -> None:
    item = _submit_text(api_client, "owner-1", "Roses", "Prune roses in spring.")
    _wait_for_status(api_client, "owner-1", item["id"], "synced")

    snapshot = api_client.get("/metrics").json()

    assert snapshot["counters"]["ingestion.submitted"] == 1
    assert snapshot["counters"]["ingestion.synced"] == 1


def test_metrics_disabled_returns_404(settings: Settings, memory_index, transcriber) -> None:
    app = create_app(
        settings=settings,
        index=memory_index,
        transcriber=transcriber,
        metrics=MetricsRecorder(enabled=False),
    )
    with TestClient(app) as client:
        assert client.get("/metrics").status_code == 404
