"""
Off-chain record store.

JSON document store with atomic writes. Documents live in named
collections (sale requests, mint requests, delist requests, pools,
metadata, escrows) and are addressed by string id. Records are never
deleted by the orchestrator; superseded versions stay in storage.
"""

import json
import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

COLLECTIONS = (
    "sale_requests",
    "mint_requests",
    "delist_requests",
    "pools",
    "metadata",
    "escrows",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordStore:
    """
    Repository over the record store file.

    Every mutation is written through immediately (temp file + os.replace),
    so a crash never leaves a half-written store behind.
    """

    def __init__(self, path: Optional[str] = None):
        if path:
            self.path = Path(path)
        else:
            self.path = Path(os.getenv("RECORD_STORE_FILE", "data/records.json"))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        logger.info(f"Initialized RecordStore at {self.path}")

    @staticmethod
    def _empty() -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {name: {} for name in COLLECTIONS}

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection {collection!r}; expected one of {COLLECTIONS}")

    def load(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            logger.debug("No record store file found, starting empty")
            self._data = self._empty()
            return self._data
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load record store {self.path}: {e}")
            raise
        if not isinstance(raw, dict):
            raise ValueError(f"Record store {self.path} is not a JSON object")
        data = self._empty()
        for name in COLLECTIONS:
            data[name].update(raw.get(name) or {})
        self._data = data
        return data

    def save(self) -> None:
        data = self.load()
        temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".records_", suffix=".json.tmp")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(temp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save record store: {e}")
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved record store")

    def insert(self, collection: str, document: Dict[str, Any], record_id: Optional[str] = None) -> str:
        """Insert a new document; returns its id."""
        self._check_collection(collection)
        data = self.load()
        record_id = record_id or document.get("_id") or uuid.uuid4().hex
        if record_id in data[collection]:
            raise ValueError(f"{collection}/{record_id} already exists")
        stamp = _now()
        doc = dict(document)
        doc["_id"] = record_id
        doc.setdefault("created_at", stamp)
        doc["updated_at"] = stamp
        data[collection][record_id] = doc
        self.save()
        logger.info(f"Inserted {collection}/{record_id}")
        return record_id

    def upsert(self, collection: str, record_id: str, document: Dict[str, Any]) -> Dict[str, Any]:
        self._check_collection(collection)
        data = self.load()
        existing = data[collection].get(record_id)
        stamp = _now()
        doc = dict(existing or {})
        doc.update(document)
        doc["_id"] = record_id
        doc.setdefault("created_at", stamp)
        doc["updated_at"] = stamp
        data[collection][record_id] = doc
        self.save()
        return doc

    def update(self, collection: str, record_id: str, **fields) -> Dict[str, Any]:
        """Patch an existing document."""
        self._check_collection(collection)
        data = self.load()
        if record_id not in data[collection]:
            raise KeyError(f"{collection}/{record_id} not found")
        return self.upsert(collection, record_id, fields)

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._check_collection(collection)
        doc = self.load()[collection].get(record_id)
        return dict(doc) if doc is not None else None

    def all(self, collection: str) -> List[Dict[str, Any]]:
        self._check_collection(collection)
        return [dict(doc) for doc in self.load()[collection].values()]

    def find(self, collection: str, predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
             **equals) -> List[Dict[str, Any]]:
        """Documents matching every ``field=value`` pair (and ``predicate`` if given)."""
        results = []
        for doc in self.all(collection):
            if any(doc.get(k) != v for k, v in equals.items()):
                continue
            if predicate is not None and not predicate(doc):
                continue
            results.append(doc)
        return results

    def find_one(self, collection: str, **equals) -> Optional[Dict[str, Any]]:
        matches = self.find(collection, **equals)
        if not matches:
            return None
        # Newest wins when several versions exist
        return max(matches, key=lambda d: d.get("updated_at") or "")

    def append_to(self, collection: str, record_id: str, field: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append ``entry`` to a list field (e.g. transfer history)."""
        current = self.get(collection, record_id) or {}
        items = list(current.get(field) or [])
        items.append(entry)
        return self.upsert(collection, record_id, {field: items})
