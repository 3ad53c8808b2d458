"""
HTTP front end for the media cache.

Routes:
  GET  /health                 liveness probe
  GET  /add?url=               register a URL and download it in the background
  GET  /status/<id>            one entry
  GET  /list                   every entry (debug surface)
  GET  /stream/<id>            cached file, Range aware
  GET  /stream-proxy?url=      live passthrough from the origin, Range forwarded
  GET  /watch/<id>             HTML player page (/watch/temp?url= for uncached)
  POST /admin/upload           raw body stored as a ready entry
  POST /admin/delete?id=       drop an entry and its file

One thread per connection (ThreadingMixIn). Downloads and the eviction sweep
run on their own daemon threads, so nothing here blocks the accept loop.
"""

from __future__ import annotations

import html
import logging
import threading
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Dict, Optional
from urllib.parse import parse_qs, quote, unquote, urlparse

from mediaproxy.cache_store import CacheStore
from mediaproxy.errors import InvalidInput, MediaProxyError, NotFound
from mediaproxy.fetcher import Fetcher
from mediaproxy.rate_limit import ClientRateLimiter
from mediaproxy.stream_server import StreamResponse, StreamServer, error_response, json_response, validate_url
from mediaproxy.sweeper import evict_entry

LOG = logging.getLogger(__name__)

_CLIENT_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)

_WATCH_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1">
<title>Watch - {title}</title>
<style>body{{margin:0;background:#111;color:#eee;font-family:sans-serif}}.player-wrap{{max-width:960px;margin:2em auto}}video{{width:100%}}</style>
</head><body>
<div class="player-wrap">
  <h2>Playing {title}</h2>
  <video id="v" controls crossorigin playsinline>
    <source src="{src}" type="video/mp4">
    Your browser does not support HTML5 video.
  </video>
</div>
</body></html>
"""


def render_watch_page(title: str, src: str) -> bytes:
    page = _WATCH_PAGE.format(title=html.escape(title), src=html.escape(src, quote=True))
    return page.encode("utf-8")


def proxy_src(url: str) -> str:
    return "/stream-proxy?url=" + quote(url, safe="")


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 256


class MediaProxyServer:
    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        streamer: StreamServer,
        limiter: Optional[ClientRateLimiter] = None,
        host: str = "127.0.0.1",
        port: int = 0,
    ):
        self.store = store
        self.fetcher = fetcher
        self.streamer = streamer
        self.limiter = limiter or ClientRateLimiter(max_requests=0)
        self.host = host
        self.port = int(port)
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._serving = False
        self._lock = threading.Lock()

    # -- operations behind the routes --------------------------------------

    def add(self, url: Optional[str]) -> Dict[str, str]:
        url = validate_url(url)
        ent = self.store.create(url)
        self.fetcher.start_download(ent.id, url)
        return {"id": ent.id, "status": ent.status}

    def status(self, eid: str) -> Dict[str, object]:
        ent = self.store.get(eid)
        if ent is None:
            raise NotFound("unknown id")
        return ent.to_record()

    def listing(self) -> Dict[str, Dict[str, object]]:
        return {eid: ent.to_record() for eid, ent in self.store.list().items()}

    def delete(self, eid: Optional[str]) -> None:
        if not eid:
            raise InvalidInput("missing id")
        if evict_entry(self.store, eid) is None:
            raise NotFound("not found")
        LOG.info("Deleted %s", eid)

    def watch_source(self, eid: str, url: Optional[str] = None) -> str:
        if eid == "temp":
            if not url:
                raise InvalidInput("Missing url for temp watch")
            return proxy_src(url)
        ent = self.store.get(eid)
        if ent is None:
            raise NotFound("Unknown id")
        if ent.path:
            return "/stream/" + quote(eid, safe="")
        return proxy_src(ent.source or "")

    # -- lifecycle ---------------------------------------------------------

    def _make_handler(self):
        proxy = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt: str, *args) -> None:
                LOG.debug("%s " + fmt, self.address_string(), *args)

            def do_GET(self) -> None:
                self._dispatch()

            def do_HEAD(self) -> None:
                self._dispatch()

            def do_POST(self) -> None:
                # The request body may be left unread on errors.
                self.close_connection = True
                self._dispatch()

            # -- plumbing --------------------------------------------------

            def _send(self, resp: StreamResponse) -> None:
                try:
                    self.send_response(resp.status)
                    for k, v in resp.headers.items():
                        self.send_header(k, v)
                    if "Content-Length" not in resp.headers or self.close_connection:
                        # Body length is unknown: end of body is end of connection.
                        self.send_header("Connection", "close")
                        self.close_connection = True
                    self.end_headers()
                    self._headers_sent = True
                    if self.command == "HEAD":
                        return
                    for chunk in resp:
                        if chunk:
                            self.wfile.write(chunk)
                except _CLIENT_GONE as e:
                    LOG.debug("Client went away: %s", e)
                    self.close_connection = True
                except Exception as e:
                    # Mid-body failure (disk or origin); the only signal left is to drop the socket.
                    LOG.warning("Error while streaming %s: %s", self.path, e)
                    self.close_connection = True
                    if not getattr(self, "_headers_sent", False):
                        raise
                finally:
                    resp.close()

            def _send_json(self, status: int, payload: object) -> None:
                self._send(json_response(status, payload))

            def _send_html(self, status: int, body: bytes) -> None:
                self._send(StreamResponse(
                    status,
                    {"Content-Type": "text/html; charset=utf-8", "Content-Length": str(len(body))},
                    [body],
                ))

            def _read_body(self) -> bytes:
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    raise InvalidInput("bad Content-Length")
                if length <= 0:
                    return b""
                return self.rfile.read(length)

            def _dispatch(self) -> None:
                self._headers_sent = False
                if not proxy.limiter.allow(self.client_address[0]):
                    resp = json_response(429, {"error": "rate limited"})
                    resp.headers["Retry-After"] = str(proxy.limiter.retry_after())
                    self._send(resp)
                    return
                try:
                    self._route()
                except MediaProxyError as e:
                    if not self._headers_sent:
                        self._send(error_response(e))
                except Exception as e:
                    LOG.warning("Request %s %s failed: %s\n%s", self.command, self.path, e, traceback.format_exc())
                    if not self._headers_sent:
                        try:
                            self._send_json(500, {"error": "internal error"})
                        except Exception:
                            pass
                    self.close_connection = True

            def _route(self) -> None:
                parsed = urlparse(self.path)
                path = parsed.path
                q = parse_qs(parsed.query)
                method = self.command
                head = method == "HEAD"

                def arg(name: str) -> Optional[str]:
                    return q.get(name, [None])[0]

                parts = [unquote(p) for p in path.strip("/").split("/")]

                if method == "POST":
                    if path == "/admin/upload":
                        self._upload(arg)
                        return
                    if path == "/admin/delete":
                        eid = arg("id")
                        if not eid:
                            form = parse_qs(self._read_body().decode("utf-8", "replace"))
                            eid = form.get("id", [None])[0]
                        proxy.delete(eid)
                        self._send_json(200, {"ok": True})
                        return
                    raise NotFound("Not Found")

                if path == "/health":
                    self._send_json(200, {"ok": True})
                    return
                if path == "/list":
                    self._send_json(200, proxy.listing())
                    return
                if path == "/add":
                    self._send_json(200, proxy.add(arg("url")))
                    return
                if path == "/stream-proxy":
                    self._send(proxy.streamer.serve_proxy(arg("url"), self.headers.get("Range"), head=head))
                    return
                if len(parts) == 2 and parts[0] == "stream" and parts[1]:
                    self._send(proxy.streamer.serve(parts[1], self.headers.get("Range"), head=head))
                    return
                if len(parts) == 2 and parts[0] == "status" and parts[1]:
                    self._send_json(200, proxy.status(parts[1]))
                    return
                if len(parts) == 2 and parts[0] == "watch" and parts[1]:
                    eid = parts[1]
                    try:
                        src = proxy.watch_source(eid, arg("url"))
                    except MediaProxyError as e:
                        body = str(e).encode("utf-8")
                        self._send(StreamResponse(
                            e.status,
                            {"Content-Type": "text/plain; charset=utf-8", "Content-Length": str(len(body))},
                            [body],
                        ))
                        return
                    self._send_html(200, render_watch_page(eid, src))
                    return
                raise NotFound("Not Found")

            def _upload(self, arg) -> None:
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    raise InvalidInput("bad Content-Length")
                if length <= 0:
                    raise InvalidInput("No file uploaded")
                try:
                    ent = proxy.fetcher.ingest(
                        self.rfile,
                        length,
                        title=arg("title"),
                        description=arg("description"),
                        name=arg("filename"),
                    )
                except OSError as e:
                    LOG.warning("Upload failed: %s", e)
                    self._send_json(500, {"error": "save_failed"})
                    return
                self._send_json(200, {"id": ent.id})

        return Handler

    def bind(self) -> None:
        with self._lock:
            if self._server is not None:
                return
            self._server = _ThreadingHTTPServer((self.host, self.port), self._make_handler())
            self.port = self._server.server_address[1]

    def start(self) -> None:
        """Serve on a background thread."""
        self.bind()
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            server = self._server

            def run() -> None:
                try:
                    server.serve_forever(poll_interval=0.25)
                except Exception as e:
                    LOG.warning("Media proxy server error: %s\n%s", e, traceback.format_exc())

            self._thread = threading.Thread(target=run, name="MediaProxyServer", daemon=True)
            self._serving = True
            self._thread.start()
        LOG.info("Media proxy listening on %s", self.base_url)

    def serve_forever(self) -> None:
        """Serve on the calling thread until stop() or KeyboardInterrupt."""
        self.bind()
        LOG.info("Media proxy listening on %s", self.base_url)
        self._serving = True
        try:
            self._server.serve_forever(poll_interval=0.25)
        finally:
            self._serving = False

    def stop(self) -> None:
        with self._lock:
            if self._server is None:
                return
            # shutdown() waits for serve_forever to exit; it would hang if that never ran.
            if self._serving:
                try:
                    self._server.shutdown()
                except Exception:
                    pass
            self._serving = False
            try:
                self._server.server_close()
            except Exception:
                pass
            self._server = None
            self._thread = None

    @property
    def base_url(self) -> str:
        host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
        return f"http://{host}:{self.port}"
