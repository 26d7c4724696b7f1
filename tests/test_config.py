from __future__ import annotations

import pytest

from wellspring.config import Settings


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INDEX_BACKEND", "Hybrid")
    monkeypatch.setenv("INGESTION_OWNER_CONCURRENCY_LIMIT", "0")
    monkeypatch.setenv("INGESTION_RETRY_BACKOFF_BASE", "0")
    monkeypatch.setenv("ALLOWED_EXTENSIONS", "pdf, .TXT,pdf")
    monkeypatch.setenv("PERSIST_ITEMS", "off")
    monkeypatch.setenv("QDRANT_API_KEY", "secret")

    settings = Settings.from_env()

    assert settings.index_backend == "hybrid"
    assert settings.uses_vector_index and settings.uses_keyword_index
    assert settings.ingestion_owner_concurrency_limit == 1
    assert settings.ingestion_retry_backoff_base == 0.0
    assert settings.allowed_extensions == (".pdf", ".txt")
    assert settings.persist_items is False
    assert settings.qdrant_client_kwargs()["api_key"] == "secret"


def test_from_env_rejects_unknown_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INDEX_BACKEND", "elastic")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_from_env_rejects_malformed_numbers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("INDEX_BACKEND", raising=False)
    monkeypatch.setenv("INGESTION_MAX_RETRIES", "three")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_retry_delay_grows_and_is_capped() -> None:
    settings = Settings(
        ingestion_retry_backoff_base=1.0,
        ingestion_retry_backoff_factor=3.0,
        ingestion_retry_backoff_max=5.0,
    )

    assert [settings.retry_delay(attempt) for attempt in (1, 2, 3)] == [1.0, 3.0, 5.0]


def test_embedding_backend_detection() -> None:
    assert Settings(embedding_model="text-embedding-3-small").is_openai_embedding_backend
    assert not Settings().is_openai_embedding_backend
    assert Settings().uses_keyword_index and not Settings().uses_vector_index
