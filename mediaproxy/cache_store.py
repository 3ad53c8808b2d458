"""
Owned store for cache entries.

The store is the only writer of entry state. Every mutation goes through it
and is mirrored to the record file before the call returns (write-through).
A failed write is logged and the in-memory state is kept, so the service
stays up at the cost of losing that mutation on restart.

Callers get copies, never references into the internal map.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

from mediaproxy.errors import NotFound, PersistenceFailure
from mediaproxy.models import CacheEntry, STATUS_DOWNLOADING

LOG = logging.getLogger(__name__)

ID_LENGTH = 12


def now_ms() -> int:
    return int(time.time() * 1000)


def gen_id(seed: Optional[str], now: Optional[int] = None) -> str:
    """Short token from seed + current time.

    Time is mixed in, so adding the same URL twice yields two ids.
    """
    ts = now_ms() if now is None else int(now)
    src = (seed or "") + str(ts)
    return hashlib.sha1(src.encode("utf-8", "ignore")).hexdigest()[:ID_LENGTH]


class CacheStore:
    def __init__(self, record_path: str):
        self.record_path = record_path
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._entry_locks: Dict[str, threading.RLock] = {}

    # -- persistence -----------------------------------------------------

    def load(self) -> int:
        """Read the record file. Returns the number of entries loaded."""
        if not os.path.exists(self.record_path):
            return 0
        try:
            with open(self.record_path, "r", encoding="utf-8") as f:
                raw = f.read()
            data = json.loads(raw or "{}")
        except (OSError, ValueError) as e:
            LOG.warning("Failed to load cache records from %s: %s", self.record_path, e)
            return 0
        if not isinstance(data, dict):
            LOG.warning("Cache record file %s is not an object; ignoring", self.record_path)
            return 0

        loaded: Dict[str, CacheEntry] = {}
        for key, rec in data.items():
            try:
                ent = CacheEntry.from_record(rec)
            except ValueError as e:
                LOG.warning("Skipping bad cache record %r: %s", key, e)
                continue
            loaded[ent.id] = ent
        with self._lock:
            self._entries = loaded
        return len(loaded)

    def _persist_locked(self) -> None:
        payload = {eid: ent.to_record() for eid, ent in self._entries.items()}
        tmp = self.record_path + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, self.record_path)
        except OSError as e:
            LOG.warning("%s", PersistenceFailure(f"failed to write {self.record_path}: {e}"))
            try:
                os.remove(tmp)
            except OSError:
                pass

    def persist(self) -> None:
        with self._lock:
            self._persist_locked()

    # -- accessors -------------------------------------------------------

    def entry_lock(self, eid: str) -> threading.RLock:
        """Lock serializing file-level work (open, unlink) on one entry.

        Unknown ids get a private lock that is never registered, so
        lookups of arbitrary ids do not grow the lock table.
        """
        with self._lock:
            lock = self._entry_locks.get(eid)
            if lock is None:
                lock = threading.RLock()
                if eid in self._entries:
                    self._entry_locks[eid] = lock
            return lock

    def get(self, eid: str) -> Optional[CacheEntry]:
        with self._lock:
            ent = self._entries.get(eid)
            return ent.copy() if ent is not None else None

    def list(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return {eid: ent.copy() for eid, ent in self._entries.items()}

    def __contains__(self, eid: str) -> bool:
        with self._lock:
            return eid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, entry: CacheEntry) -> CacheEntry:
        with self._lock:
            self._entries[entry.id] = entry.copy()
            self._persist_locked()
        return entry.copy()

    def create(self, source: Optional[str], status: str = STATUS_DOWNLOADING, **fields) -> CacheEntry:
        """Mint a fresh id for source and store a new entry under it."""
        with self._lock:
            ts = now_ms()
            eid = gen_id(source, ts)
            bump = 0
            while eid in self._entries:
                bump += 1
                eid = gen_id(source, ts + bump)
            entry = CacheEntry(id=eid, source=source, status=status, added_at=ts, **fields)
            return self.put(entry)

    def update(self, eid: str, mutator: Callable[[CacheEntry], None]) -> CacheEntry:
        """Apply mutator to the stored entry in place and persist.

        Raises NotFound if the id is unknown.
        """
        with self._lock:
            ent = self._entries.get(eid)
            if ent is None:
                raise NotFound(eid)
            work = ent.copy()
            mutator(work)
            work.id = eid
            # last_access never moves backwards
            if ent.last_access is not None:
                if work.last_access is None or work.last_access < ent.last_access:
                    work.last_access = ent.last_access
            self._entries[eid] = work
            self._persist_locked()
            return work.copy()

    def touch(self, eid: str, now: Optional[int] = None) -> CacheEntry:
        ts = now_ms() if now is None else int(now)

        def _touch(ent: CacheEntry) -> None:
            ent.last_access = max(ts, ent.last_access or 0)

        return self.update(eid, _touch)

    def remove(self, eid: str) -> Optional[CacheEntry]:
        with self._lock:
            ent = self._entries.pop(eid, None)
            self._entry_locks.pop(eid, None)
            if ent is None:
                return None
            self._persist_locked()
            return ent
