"""
Background download of a remote resource into the cache directory.

Bytes land in '<data_dir>/<id>.part' and are renamed to '<data_dir>/<id>'
only after the whole body is written, flushed and matched against the
origin's Content-Length, so the canonical path either does not exist or
holds a complete file.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import BinaryIO, Optional, Tuple

import requests

from mediaproxy.cache_store import CacheStore, gen_id, now_ms
from mediaproxy.errors import NotFound, UpstreamFailure
from mediaproxy.fileio import ShortBody, iter_stream, remove_quietly, write_atomically
from mediaproxy.models import CacheEntry, STATUS_ERROR, STATUS_READY

LOG = logging.getLogger(__name__)

_DEFAULT_UA = "mediaproxy/1.0 (+range-cache)"


class Fetcher:
    def __init__(
        self,
        store: CacheStore,
        data_dir: str,
        timeout: Tuple[float, float] = (10, 60),
        chunk_bytes: int = 512 * 1024,
        session: Optional[requests.Session] = None,
    ):
        self.store = store
        self.data_dir = data_dir
        self.timeout = timeout
        self.chunk_bytes = max(1024, int(chunk_bytes))
        self.session = session or requests.Session()
        try:
            adapter = requests.adapters.HTTPAdapter(pool_connections=8, pool_maxsize=16)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)
        except Exception:
            pass

    def final_path(self, eid: str) -> str:
        return os.path.join(self.data_dir, eid)

    def start_download(self, eid: str, url: str) -> threading.Thread:
        """Kick off download() on a daemon thread and return at once."""
        t = threading.Thread(target=self.download, args=(eid, url), name=f"Fetch-{eid}", daemon=True)
        t.start()
        return t

    def download(self, eid: str, url: str) -> Optional[CacheEntry]:
        LOG.info("Downloading %s -> %s", url, eid)
        final_path = self.final_path(eid)
        try:
            size = self._fetch_to(url, final_path)
        except UpstreamFailure as e:
            LOG.warning("Download %s failed: %s", eid, e)
            return self._mark_error(eid, str(e))
        except requests.RequestException as e:
            LOG.warning("Download %s failed: %s", eid, e)
            return self._mark_error(eid, str(e) or e.__class__.__name__)
        except OSError as e:
            LOG.warning("Download %s write failed: %s", eid, e)
            return self._mark_error(eid, f"write_failed: {e}")
        except Exception as e:
            LOG.exception("Download %s crashed", eid)
            return self._mark_error(eid, f"internal_error: {e.__class__.__name__}")

        def _ready(ent: CacheEntry) -> None:
            ent.status = STATUS_READY
            ent.path = os.path.abspath(final_path)
            ent.size = size
            ent.error = None
            ent.last_access = now_ms()

        with self.store.entry_lock(eid):
            try:
                ent = self.store.update(eid, _ready)
            except NotFound:
                # Deleted or evicted while downloading; nothing should own the file.
                LOG.info("Entry %s vanished during download; discarding file", eid)
                remove_quietly(final_path)
                return None
        LOG.info("Downloaded %s (%d bytes)", eid, size)
        return ent

    def _fetch_to(self, url: str, final_path: str) -> int:
        hdrs = {"User-Agent": _DEFAULT_UA, "Accept": "*/*", "Accept-Encoding": "identity"}
        r = self.session.get(url, headers=hdrs, stream=True, timeout=self.timeout, allow_redirects=True)
        try:
            if not 200 <= r.status_code < 300:
                raise UpstreamFailure(f"fetch_failed_{r.status_code}")
            expected = None
            try:
                cl = r.headers.get("Content-Length")
                if cl is not None:
                    expected = int(cl)
            except ValueError:
                expected = None

            try:
                write_atomically(final_path, r.iter_content(chunk_size=self.chunk_bytes), expected=expected)
            except ShortBody as e:
                raise UpstreamFailure(f"short_body: {e}") from e
            return os.stat(final_path).st_size
        finally:
            r.close()

    def _mark_error(self, eid: str, reason: str) -> Optional[CacheEntry]:
        def _error(ent: CacheEntry) -> None:
            ent.status = STATUS_ERROR
            ent.error = reason
            ent.path = None
            ent.size = None

        try:
            return self.store.update(eid, _error)
        except NotFound:
            return None

    def ingest(self, stream: BinaryIO, length: int, title: Optional[str] = None,
               description: Optional[str] = None, name: Optional[str] = None) -> CacheEntry:
        """Store an uploaded body as a ready entry.

        The entry is registered only after the file is complete.
        """
        ext = os.path.splitext(name or "")[1]
        if not ext[1:].isalnum():
            ext = ""
        ts = now_ms()
        eid = gen_id(name or "upload", ts)
        while eid in self.store:
            ts += 1
            eid = gen_id(name or "upload", ts)
        final_path = self.final_path(eid) + ext

        try:
            written = write_atomically(final_path, iter_stream(stream, self.chunk_bytes, limit=length), expected=length)
        except ShortBody as e:
            raise OSError(f"upload truncated: {e}") from e

        entry = CacheEntry(
            id=eid,
            status=STATUS_READY,
            path=os.path.abspath(final_path),
            size=os.stat(final_path).st_size,
            added_at=ts,
            last_access=ts,
            title=title or "Untitled",
            description=description or "",
        )
        LOG.info("Stored upload %s (%d bytes)", eid, written)
        return self.store.put(entry)
