"""Keyed record store for knowledge items with optional JSON persistence."""

from __future__ import annotations

import json
import logging
import mimetypes
import re
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Tuple

from .models import AudioPayload, KnowledgeItem, KnowledgeStatus, utcnow_iso

logger = logging.getLogger(__name__)

INTERRUPTED_DETAIL = "Interrupted before completion"

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


class KnowledgeItemStore:
    """Hold items per owner and mirror each owner's items to ``<root>/<owner>.json``.

    Items are updated in place by id. When ``root`` is ``None`` the store is
    memory-only.
    """

    def __init__(self, root: Path | None = None) -> None:
        self._root = Path(root) if root is not None else None
        self._items: Dict[str, Dict[str, KnowledgeItem]] = {}
        self._audio: Dict[Tuple[str, str], AudioPayload] = {}
        self._lock = threading.RLock()
        if self._root is not None:
            self._root.mkdir(parents=True, exist_ok=True)
            self._load()

    @property
    def root(self) -> Path | None:
        return self._root

    def get(self, owner_id: str, item_id: str) -> KnowledgeItem | None:
        with self._lock:
            return self._items.get(owner_id, {}).get(item_id)

    def list(self, owner_id: str) -> List[KnowledgeItem]:
        with self._lock:
            return list(self._items.get(owner_id, {}).values())

    def owners(self) -> List[str]:
        with self._lock:
            return [owner for owner, items in self._items.items() if items]

    def put(self, item: KnowledgeItem) -> None:
        with self._lock:
            self._items.setdefault(item.owner_id, {})[item.id] = item
            self._persist(item.owner_id)

    def delete(self, owner_id: str, item_id: str) -> KnowledgeItem | None:
        with self._lock:
            item = self._items.get(owner_id, {}).pop(item_id, None)
            if item is not None:
                self._persist(owner_id)
            return item

    def delete_owner(self, owner_id: str) -> List[KnowledgeItem]:
        with self._lock:
            removed = list(self._items.pop(owner_id, {}).values())
            for key in [key for key in self._audio if key[0] == owner_id]:
                del self._audio[key]
            if self._root is not None:
                self._owner_path(owner_id).unlink(missing_ok=True)
                shutil.rmtree(self._audio_dir(owner_id), ignore_errors=True)
        logger.info("store.owner.deleted owner=%s items=%s", owner_id, len(removed))
        return removed

    def save_audio(self, owner_id: str, item_id: str, audio: AudioPayload) -> None:
        """Keep a voice recording so the item can be transcribed again on retry."""

        with self._lock:
            if self._root is None:
                self._audio[(owner_id, item_id)] = audio
                return
            directory = self._audio_dir(owner_id)
            directory.mkdir(parents=True, exist_ok=True)
            filename = _SAFE_NAME_RE.sub("_", audio.filename or "recording")
            (directory / f"{item_id}--{filename}").write_bytes(audio.data)

    def load_audio(self, owner_id: str, item_id: str) -> AudioPayload | None:
        with self._lock:
            if self._root is None:
                return self._audio.get((owner_id, item_id))
            for path in self._audio_dir(owner_id).glob(f"{item_id}--*"):
                filename = path.name.split("--", 1)[1]
                return AudioPayload(
                    data=path.read_bytes(),
                    filename=filename,
                    content_type=mimetypes.guess_type(filename)[0],
                )
            return None

    def delete_audio(self, owner_id: str, item_id: str) -> None:
        with self._lock:
            self._audio.pop((owner_id, item_id), None)
            if self._root is None:
                return
            for path in self._audio_dir(owner_id).glob(f"{item_id}--*"):
                path.unlink(missing_ok=True)

    def _owner_path(self, owner_id: str) -> Path:
        assert self._root is not None
        return self._root / f"{_SAFE_NAME_RE.sub('_', owner_id)}.json"

    def _audio_dir(self, owner_id: str) -> Path:
        assert self._root is not None
        return self._root / "audio" / _SAFE_NAME_RE.sub("_", owner_id)

    def _persist(self, owner_id: str) -> None:
        if self._root is None:
            return
        path = self._owner_path(owner_id)
        records = [item.to_dict(preview=False) for item in self._items.get(owner_id, {}).values()]
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump({"owner_id": owner_id, "items": records}, handle, ensure_ascii=False, indent=2)
        tmp_path.replace(path)

    def _load(self) -> None:
        assert self._root is not None
        for path in sorted(self._root.glob("*.json")):
            try:
                with path.open("r", encoding="utf-8") as handle:
                    payload = json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("store.load.failed path=%s error=%s", path, exc)
                continue
            owner_id = payload.get("owner_id") or path.stem
            interrupted = 0
            items: Dict[str, KnowledgeItem] = {}
            for record in payload.get("items", []):
                item = KnowledgeItem.from_dict(record)
                if item.is_active:
                    item.status = KnowledgeStatus.ERROR
                    item.error_detail = INTERRUPTED_DETAIL
                    item.retryable = True
                    item.last_updated = utcnow_iso()
                    interrupted += 1
                items[item.id] = item
            self._items[owner_id] = items
            if interrupted:
                self._persist(owner_id)
            logger.info("store.owner.loaded owner=%s items=%s interrupted=%s", owner_id, len(items), interrupted)


__all__ = ["KnowledgeItemStore", "INTERRUPTED_DETAIL"]
