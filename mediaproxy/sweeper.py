from __future__ import annotations

import logging
import os
import threading
import traceback
from typing import Callable, List, Optional

from mediaproxy.cache_store import CacheStore, now_ms
from mediaproxy.models import CacheEntry

LOG = logging.getLogger(__name__)


def evict_entry(
    store: CacheStore,
    eid: str,
    should_evict: Optional[Callable[[CacheEntry], bool]] = None,
) -> Optional[CacheEntry]:
    """Delete the backing file and drop the entry.

    should_evict is re-checked under the entry lock. A failed unlink is
    ignored: a record without its file is never useful.
    Returns the removed entry, or None if nothing was removed.
    """
    with store.entry_lock(eid):
        cur = store.get(eid)
        if cur is None:
            return None
        if should_evict is not None and not should_evict(cur):
            return None
        if cur.path:
            try:
                os.remove(cur.path)
            except OSError as e:
                LOG.debug("Could not delete %s for %s: %s", cur.path, eid, e)
        return store.remove(eid)


class EvictionSweeper:
    """Deletes cached files that nobody streamed for a while.

    Purely time based: there is no cap on total storage used.
    """

    def __init__(self, store: CacheStore, inactivity_seconds: float = 3600, interval_seconds: float = 300):
        self.store = store
        self.inactivity_ms = int(float(inactivity_seconds) * 1000)
        self.interval_seconds = max(0.05, float(interval_seconds))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_idle(self, ent: CacheEntry, now: int) -> bool:
        return bool(ent.path) and now - ent.last_used() > self.inactivity_ms

    def sweep(self, now: Optional[int] = None) -> List[str]:
        """Evict idle entries that have a backing file. Returns evicted ids."""
        ts = now_ms() if now is None else int(now)
        evicted: List[str] = []
        for eid, ent in self.store.list().items():
            if not self.is_idle(ent, ts):
                continue
            # A stream may touch the entry between the snapshot and the lock.
            removed = evict_entry(self.store, eid, lambda cur: self.is_idle(cur, ts))
            if removed is None:
                continue
            evicted.append(eid)
            LOG.info("Evicted %s (idle %ds)", eid, (ts - removed.last_used()) // 1000)
        return evicted

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                LOG.warning("Eviction sweep failed: %s\n%s", e, traceback.format_exc())

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="EvictionSweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
