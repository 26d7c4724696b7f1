"""Wellspring knowledge ingestion package."""

from __future__ import annotations

from .config import Settings
from .models import KnowledgeItem, KnowledgeKind, KnowledgeStatus

__all__ = [
    "Settings",
    "KnowledgeItem",
    "KnowledgeKind",
    "KnowledgeStatus",
    "IngestionJobManager",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "IngestionJobManager":
        from .jobs import IngestionJobManager

        return IngestionJobManager
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'wellspring' has no attribute {name}")
