"""
Streamed responses for cached files and for live origin passthrough.

Both paths return a StreamResponse whose body is a lazy chunk iterator.
The HTTP front end pulls one chunk at a time and writes it to the client
socket, so at most one chunk is held in memory per connection. close()
releases the file handle or the upstream connection and must be called
once the response is finished or the client went away.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple
from urllib.parse import urlparse

import requests

from mediaproxy.cache_store import CacheStore
from mediaproxy.errors import InvalidInput, MediaProxyError, NotFound, UpstreamFailure
from mediaproxy.fileio import iter_stream
from mediaproxy.range_resolver import resolve_range

LOG = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"

# Headers relayed from the origin on /stream-proxy
_RELAYED_HEADERS = ("Content-Range", "Accept-Ranges", "Content-Length", "Content-Type")


class StreamResponse:
    def __init__(
        self,
        status: int,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Iterable[bytes]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.status = status
        self.headers: Dict[str, str] = dict(headers or {})
        self._body = body if body is not None else ()
        self._on_close = on_close
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._body)

    def read_all(self) -> bytes:
        """Drain the body. Only meant for small responses and tests."""
        try:
            return b"".join(self)
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            try:
                self._on_close()
            except Exception as e:
                LOG.debug("Error releasing stream source: %s", e)


def json_response(status: int, payload: object) -> StreamResponse:
    body = json.dumps(payload).encode("utf-8")
    return StreamResponse(
        status,
        {"Content-Type": "application/json; charset=utf-8", "Content-Length": str(len(body))},
        [body],
    )


def error_response(exc: MediaProxyError) -> StreamResponse:
    return json_response(exc.status, {"error": str(exc)})


def validate_url(url: Optional[str]) -> str:
    """Return url if it is an absolute http(s) URL, else raise InvalidInput."""
    if not url:
        raise InvalidInput("missing url")
    try:
        parsed = urlparse(url)
    except ValueError:
        raise InvalidInput("invalid url")
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        raise InvalidInput("invalid url")
    return url


class StreamServer:
    def __init__(
        self,
        store: CacheStore,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (10, 60),
        chunk_bytes: int = 64 * 1024,
    ):
        self.store = store
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_bytes = max(1024, int(chunk_bytes))

    def _open_cached(self, eid: str):
        # Under the entry lock the sweeper cannot unlink between the
        # readiness check and the open. Once open, the handle stays valid.
        with self.store.entry_lock(eid):
            ent = self.store.get(eid)
            if ent is None or not ent.is_ready:
                raise NotFound("not cached")
            try:
                f = open(ent.path, "rb")
            except OSError:
                raise NotFound("not cached")
        return ent, f

    def serve(self, eid: str, range_header: Optional[str] = None, head: bool = False) -> StreamResponse:
        try:
            ent, f = self._open_cached(eid)
        except NotFound as e:
            return error_response(e)

        try:
            total = os.fstat(f.fileno()).st_size
            try:
                self.store.touch(eid)
            except NotFound:
                pass
            window = resolve_range(range_header, total)
        except Exception:
            f.close()
            raise

        headers = {
            "Content-Type": VIDEO_CONTENT_TYPE,
            "Cache-Control": "no-store",
        }
        headers.update(window.headers())

        if not window.satisfiable or head or window.length == 0:
            f.close()
            return StreamResponse(window.status, headers)

        LOG.debug("Serving %s %s (%s)", eid, window.content_range, window.status)
        f.seek(window.start)
        body = iter_stream(f, self.chunk_bytes, limit=window.length)
        return StreamResponse(window.status, headers, body, on_close=f.close)

    def serve_proxy(self, url: Optional[str], range_header: Optional[str] = None, head: bool = False) -> StreamResponse:
        try:
            url = validate_url(url)
        except InvalidInput as e:
            return error_response(e)

        hdrs = {"Accept": "*/*", "Accept-Encoding": "identity"}
        if range_header:
            hdrs["Range"] = range_header

        try:
            r = self.session.get(url, headers=hdrs, stream=True, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            LOG.warning("stream-proxy connect failed for %s: %s", url, e)
            return error_response(UpstreamFailure("stream failed"))

        if r.status_code >= 400:
            r.close()
            return error_response(UpstreamFailure(f"upstream {r.status_code}"))

        status = 206 if r.status_code == 206 else 200
        headers: Dict[str, str] = {}
        for name in _RELAYED_HEADERS:
            val = r.headers.get(name)
            if val:
                headers[name] = val
        if status == 206:
            headers.setdefault("Accept-Ranges", "bytes")
        else:
            # Content-Range only makes sense on a partial reply
            headers.pop("Content-Range", None)
        headers.setdefault("Content-Type", "application/octet-stream")
        headers["Cache-Control"] = "no-store"

        if head:
            r.close()
            return StreamResponse(status, headers)

        return StreamResponse(status, headers, r.iter_content(chunk_size=self.chunk_bytes), on_close=r.close)
