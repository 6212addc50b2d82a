"""Memory Store collaborator: per-user typed entries with consented writes."""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from memgate.core.types import MemoryEntry, utcnow
from memgate.exceptions import ConsentRequired

logger = logging.getLogger(__name__)


class BaseMemoryStore(ABC):
    """Contract the resolver relies on. Implementations may raise
    ``ExternalUnavailable`` when the backing store cannot be reached."""

    @abstractmethod
    def list_entries(self, user_id: str, now: Optional[datetime] = None) -> List[MemoryEntry]:
        pass

    @abstractmethod
    def put(self, entry: MemoryEntry, *, consent: bool) -> MemoryEntry:
        pass

    def get(self, user_id: str, canonical_type_id: str) -> Optional[MemoryEntry]:
        for entry in self.list_entries(user_id):
            if entry.canonical_type_id == canonical_type_id:
                return entry
        return None


class InMemoryMemoryStore(BaseMemoryStore):
    """Thread-safe dict-backed store keyed by (user, canonical type)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, MemoryEntry]] = {}
        self._seq = itertools.count(1)

    def put(self, entry: MemoryEntry, *, consent: bool) -> MemoryEntry:
        if not consent:
            raise ConsentRequired(
                f"Write of {entry.canonical_type_id} for user={entry.owner_user_id} lacks consent"
            )
        with self._lock:
            entry.written_at = utcnow()
            entry.written_seq = next(self._seq)
            entry.expires_at = (
                entry.written_at + timedelta(seconds=int(entry.ttl)) if entry.ttl is not None else None
            )
            self._entries.setdefault(entry.owner_user_id, {})[entry.canonical_type_id] = entry
        return entry

    def list_entries(self, user_id: str, now: Optional[datetime] = None) -> List[MemoryEntry]:
        now = now or utcnow()
        with self._lock:
            entries = list(self._entries.get(user_id, {}).values())
        return [entry for entry in entries if not entry.is_expired(now)]

    def get(self, user_id: str, canonical_type_id: str) -> Optional[MemoryEntry]:
        with self._lock:
            entry = self._entries.get(user_id, {}).get(canonical_type_id)
        if entry is None or entry.is_expired():
            return None
        return entry

    def delete(self, user_id: str, canonical_type_id: str) -> bool:
        with self._lock:
            return self._entries.get(user_id, {}).pop(canonical_type_id, None) is not None

    def load_entries(self, records: Iterable[Dict[str, Any]]) -> int:
        """Bulk-import consented records (fixtures, CLI)."""
        count = 0
        for record in records:
            self.put(MemoryEntry.from_dict(record), consent=True)
            count += 1
        logger.debug("Loaded %d memory entries", count)
        return count
