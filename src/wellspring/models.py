"""Knowledge item records and the ingestion state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import InvalidTransition

CONTENT_PREVIEW_CHARS = 280


class KnowledgeKind(str, Enum):
    FILE = "file"
    URL = "url"
    TEXT = "text"
    VOICE = "voice"


class KnowledgeStatus(str, Enum):
    QUEUED = "queued"
    TRANSCRIBING = "transcribing"
    INDEXING = "indexing"
    SYNCED = "synced"
    ERROR = "error"
    # Only ever carried by status events; records are deleted instead.
    REMOVED = "removed"


ACTIVE_STATUSES = frozenset(
    {KnowledgeStatus.QUEUED, KnowledgeStatus.TRANSCRIBING, KnowledgeStatus.INDEXING}
)

ALLOWED_TRANSITIONS: dict[KnowledgeStatus, frozenset[KnowledgeStatus]] = {
    KnowledgeStatus.QUEUED: frozenset(
        {
            KnowledgeStatus.TRANSCRIBING,
            KnowledgeStatus.INDEXING,
            KnowledgeStatus.ERROR,
            KnowledgeStatus.REMOVED,
        }
    ),
    KnowledgeStatus.TRANSCRIBING: frozenset(
        {KnowledgeStatus.INDEXING, KnowledgeStatus.ERROR, KnowledgeStatus.REMOVED}
    ),
    KnowledgeStatus.INDEXING: frozenset(
        {KnowledgeStatus.SYNCED, KnowledgeStatus.ERROR, KnowledgeStatus.REMOVED}
    ),
    KnowledgeStatus.SYNCED: frozenset(),
    KnowledgeStatus.ERROR: frozenset({KnowledgeStatus.QUEUED}),
    KnowledgeStatus.REMOVED: frozenset(),
}

_SOURCE_LABELS = {
    KnowledgeKind.FILE: "Internal Storage",
    KnowledgeKind.TEXT: "Internal Storage",
    KnowledgeKind.VOICE: "Recorded Audio",
}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_source(kind: KnowledgeKind, raw_input: Any) -> str:
    if kind is KnowledgeKind.URL:
        return str(raw_input).strip()
    return _SOURCE_LABELS[kind]


@dataclass(slots=True)
class KnowledgeItem:
    """A single user-submitted knowledge source and its processing state."""

    id: str
    owner_id: str
    name: str
    kind: KnowledgeKind
    source: str
    status: KnowledgeStatus = KnowledgeStatus.QUEUED
    size_bytes: int | None = None
    content_type: str | None = None
    extracted_content: str | None = None
    retry_count: int = 0
    retryable: bool = True
    chunk_count: int = 0
    error_detail: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    last_updated: str = field(default_factory=utcnow_iso)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def next_stage(self) -> KnowledgeStatus:
        """Return the first processing status for this item's kind."""

        if self.kind is KnowledgeKind.VOICE:
            return KnowledgeStatus.TRANSCRIBING
        return KnowledgeStatus.INDEXING

    def check_transition(self, new_status: KnowledgeStatus) -> None:
        """Raise ``InvalidTransition`` unless ``new_status`` is a legal next state."""

        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        legal = new_status in allowed
        if legal and new_status is KnowledgeStatus.TRANSCRIBING:
            legal = self.kind is KnowledgeKind.VOICE
        if legal and new_status is KnowledgeStatus.INDEXING:
            if self.status is KnowledgeStatus.QUEUED and self.kind is KnowledgeKind.VOICE:
                legal = False
            elif not (self.extracted_content or "").strip():
                legal = False
        if not legal:
            raise InvalidTransition(self.id, self.status.value, new_status.value)

    def to_dict(self, *, preview: bool = True) -> dict[str, Any]:
        content = self.extracted_content
        if preview and content and len(content) > CONTENT_PREVIEW_CHARS:
            content = content[: CONTENT_PREVIEW_CHARS - 1].rstrip() + "…"
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "kind": self.kind.value,
            "source": self.source,
            "status": self.status.value,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
            "content": content,
            "retry_count": self.retry_count,
            "retryable": self.retryable,
            "chunk_count": self.chunk_count,
            "error_detail": self.error_detail,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KnowledgeItem":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            name=data["name"],
            kind=KnowledgeKind(data["kind"]),
            source=data.get("source") or "",
            status=KnowledgeStatus(data.get("status", KnowledgeStatus.QUEUED.value)),
            size_bytes=data.get("size_bytes"),
            content_type=data.get("content_type"),
            extracted_content=data.get("content"),
            retry_count=int(data.get("retry_count") or 0),
            retryable=bool(data.get("retryable", True)),
            chunk_count=int(data.get("chunk_count") or 0),
            error_detail=data.get("error_detail"),
            created_at=data.get("created_at") or utcnow_iso(),
            last_updated=data.get("last_updated") or utcnow_iso(),
        )


@dataclass(slots=True)
class AcquisitionResult:
    """Output of a source adapter: extracted text, or raw audio for voice sources."""

    kind: KnowledgeKind
    text: str | None = None
    audio: bytes | None = None
    title: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None
    pages: int = 1


@dataclass(slots=True)
class AudioPayload:
    data: bytes
    filename: str = "recording.webm"
    content_type: str | None = None


__all__ = [
    "KnowledgeKind",
    "KnowledgeStatus",
    "KnowledgeItem",
    "AcquisitionResult",
    "AudioPayload",
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "utcnow_iso",
    "default_source",
]
