"""Configuration helpers for the Wellspring ingestion service."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Final

try:  # pragma: no cover - optional dependency loaded at runtime
    from dotenv import load_dotenv
except Exception:  # pragma: no cover
    load_dotenv = None

if load_dotenv is not None:
    load_dotenv()

_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_FTS_DB: Final[str] = "data/knowledge.sqlite"
_DEFAULT_INDEX_BACKEND: Final[str] = "fts"
_DEFAULT_QDRANT_URL: Final[str] = "http://localhost:6333"
_DEFAULT_QDRANT_COLLECTION: Final[str] = "knowledge"
_DEFAULT_EMBEDDING_MODEL: Final[str] = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_TRANSCRIPTION_MODEL: Final[str] = "whisper-1"
_DEFAULT_TRANSCRIPTION_TIMEOUT: Final[float] = 120.0
_DEFAULT_OWNER_CONCURRENCY: Final[int] = 3
_DEFAULT_MAX_RETRIES: Final[int] = 3
_DEFAULT_BACKOFF_BASE: Final[float] = 2.0
_DEFAULT_BACKOFF_FACTOR: Final[float] = 2.0
_DEFAULT_BACKOFF_MAX: Final[float] = 60.0
_DEFAULT_MAX_FILE_BYTES: Final[int] = 50 * 1024 * 1024
_DEFAULT_MAX_VOICE_BYTES: Final[int] = 25 * 1024 * 1024
_DEFAULT_ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = (
    ".pdf",
    ".txt",
    ".md",
    ".markdown",
    ".docx",
    ".html",
    ".htm",
    ".csv",
    ".json",
)
_DEFAULT_URL_TIMEOUT: Final[float] = 10.0
_DEFAULT_URL_CRAWL_DEPTH: Final[int] = 0
_DEFAULT_URL_MAX_PAGES: Final[int] = 10
_DEFAULT_CHUNK_MAX_TOKENS: Final[int] = 200
_DEFAULT_CHUNK_OVERLAP_TOKENS: Final[int] = 20
_DEFAULT_ACTIVITY_FEED_SIZE: Final[int] = 50
_INDEX_BACKENDS: Final[frozenset[str]] = frozenset({"fts", "qdrant", "hybrid"})


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _env_extensions(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Parse a comma separated list of file extensions, normalising the dot prefix."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    extensions: list[str] = []
    for part in raw.split(","):
        cleaned = part.strip().lower()
        if not cleaned:
            continue
        if not cleaned.startswith("."):
            cleaned = f".{cleaned}"
        if cleaned not in extensions:
            extensions.append(cleaned)
    return tuple(extensions) or default


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    data_dir: str = _DEFAULT_DATA_DIR
    fts_db_path: str = _DEFAULT_FTS_DB
    index_backend: str = _DEFAULT_INDEX_BACKEND
    qdrant_url: str = _DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    qdrant_collection: str = _DEFAULT_QDRANT_COLLECTION
    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    openai_api_key: str | None = None
    transcription_model: str = _DEFAULT_TRANSCRIPTION_MODEL
    transcription_base_url: str | None = None
    transcription_timeout: float = _DEFAULT_TRANSCRIPTION_TIMEOUT
    ingestion_owner_concurrency_limit: int = _DEFAULT_OWNER_CONCURRENCY
    ingestion_max_retries: int = _DEFAULT_MAX_RETRIES
    ingestion_retry_backoff_base: float = _DEFAULT_BACKOFF_BASE
    ingestion_retry_backoff_factor: float = _DEFAULT_BACKOFF_FACTOR
    ingestion_retry_backoff_max: float = _DEFAULT_BACKOFF_MAX
    max_file_bytes: int = _DEFAULT_MAX_FILE_BYTES
    max_voice_bytes: int = _DEFAULT_MAX_VOICE_BYTES
    allowed_extensions: tuple[str, ...] = field(default=_DEFAULT_ALLOWED_EXTENSIONS)
    url_timeout_seconds: float = _DEFAULT_URL_TIMEOUT
    url_crawl_depth: int = _DEFAULT_URL_CRAWL_DEPTH
    url_max_pages: int = _DEFAULT_URL_MAX_PAGES
    chunk_max_tokens: int = _DEFAULT_CHUNK_MAX_TOKENS
    chunk_overlap_tokens: int = _DEFAULT_CHUNK_OVERLAP_TOKENS
    activity_feed_size: int = _DEFAULT_ACTIVITY_FEED_SIZE
    persist_items: bool = True
    observability_metrics_enabled: bool = True
    observability_namespace: str = "wellspring"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        index_backend = os.getenv("INDEX_BACKEND", _DEFAULT_INDEX_BACKEND).strip().lower()
        if index_backend not in _INDEX_BACKENDS:
            msg = f"INDEX_BACKEND must be one of {sorted(_INDEX_BACKENDS)}, got '{index_backend}'."
            raise ValueError(msg)

        return cls(
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            fts_db_path=os.getenv("FTS_DB_PATH", _DEFAULT_FTS_DB),
            index_backend=index_backend,
            qdrant_url=os.getenv("QDRANT_URL", _DEFAULT_QDRANT_URL),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION", _DEFAULT_QDRANT_COLLECTION),
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            transcription_model=os.getenv("TRANSCRIPTION_MODEL", _DEFAULT_TRANSCRIPTION_MODEL),
            transcription_base_url=os.getenv("TRANSCRIPTION_BASE_URL"),
            transcription_timeout=_env_float("TRANSCRIPTION_TIMEOUT", _DEFAULT_TRANSCRIPTION_TIMEOUT),
            ingestion_owner_concurrency_limit=max(
                1,
                _env_int("INGESTION_OWNER_CONCURRENCY_LIMIT", _DEFAULT_OWNER_CONCURRENCY),
            ),
            ingestion_max_retries=max(0, _env_int("INGESTION_MAX_RETRIES", _DEFAULT_MAX_RETRIES)),
            ingestion_retry_backoff_base=_env_float("INGESTION_RETRY_BACKOFF_BASE", _DEFAULT_BACKOFF_BASE),
            ingestion_retry_backoff_factor=_env_float(
                "INGESTION_RETRY_BACKOFF_FACTOR", _DEFAULT_BACKOFF_FACTOR
            ),
            ingestion_retry_backoff_max=_env_float("INGESTION_RETRY_BACKOFF_MAX", _DEFAULT_BACKOFF_MAX),
            max_file_bytes=_env_int("MAX_FILE_BYTES", _DEFAULT_MAX_FILE_BYTES),
            max_voice_bytes=_env_int("MAX_VOICE_BYTES", _DEFAULT_MAX_VOICE_BYTES),
            allowed_extensions=_env_extensions("ALLOWED_EXTENSIONS", _DEFAULT_ALLOWED_EXTENSIONS),
            url_timeout_seconds=_env_float("URL_TIMEOUT_SECONDS", _DEFAULT_URL_TIMEOUT),
            url_crawl_depth=max(0, _env_int("URL_CRAWL_DEPTH", _DEFAULT_URL_CRAWL_DEPTH)),
            url_max_pages=max(1, _env_int("URL_MAX_PAGES", _DEFAULT_URL_MAX_PAGES)),
            chunk_max_tokens=max(1, _env_int("CHUNK_MAX_TOKENS", _DEFAULT_CHUNK_MAX_TOKENS)),
            chunk_overlap_tokens=max(0, _env_int("CHUNK_OVERLAP_TOKENS", _DEFAULT_CHUNK_OVERLAP_TOKENS)),
            activity_feed_size=max(1, _env_int("ACTIVITY_FEED_SIZE", _DEFAULT_ACTIVITY_FEED_SIZE)),
            persist_items=_env_bool("PERSIST_ITEMS", True),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "wellspring"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_embedding_backend(self) -> bool:
        """Return True when the configured embedding backend is OpenAI."""

        return self.embedding_model.strip().lower().startswith("text-embedding-")

    @property
    def uses_vector_index(self) -> bool:
        return self.index_backend in {"qdrant", "hybrid"}

    @property
    def uses_keyword_index(self) -> bool:
        return self.index_backend in {"fts", "hybrid"}

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client."""

        kwargs: dict[str, Any] = {"url": self.qdrant_url}
        if self.qdrant_api_key:
            kwargs["api_key"] = self.qdrant_api_key
        return kwargs

    def items_dir(self) -> Path:
        """Return the directory where knowledge item records are persisted."""

        return Path(self.data_dir).resolve() / "knowledge"

    def retry_delay(self, attempt: int) -> float:
        """Backoff delay before automatic retry number ``attempt`` (1-based)."""

        exponent = max(attempt - 1, 0)
        delay = self.ingestion_retry_backoff_base * (self.ingestion_retry_backoff_factor ** exponent)
        return max(0.0, min(delay, self.ingestion_retry_backoff_max))

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
