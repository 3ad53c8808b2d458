import os
import sys
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from mediaproxy.cache_store import CacheStore
from mediaproxy.models import CacheEntry, STATUS_DOWNLOADING, STATUS_READY
from mediaproxy.stream_server import StreamServer, validate_url
from mediaproxy.errors import InvalidInput
from origin_server import OriginHandler, PAYLOAD, start_origin, stop_origin

CONTENT = bytes(range(256)) * 40  # 10240 bytes


@pytest.fixture
def store(tmp_path):
    return CacheStore(str(tmp_path / "videos.json"))


@pytest.fixture
def ready_id(store, tmp_path):
    path = tmp_path / "abc123"
    path.write_bytes(CONTENT)
    store.put(CacheEntry(id="abc123", status=STATUS_READY, path=str(path), size=len(CONTENT), added_at=1))
    return "abc123"


@pytest.fixture
def streamer(store):
    s = StreamServer(store, chunk_bytes=1024)
    yield s
    s.session.close()


@pytest.fixture
def origin():
    httpd, base = start_origin()
    yield base
    stop_origin(httpd)


def test_unknown_id_is_404(streamer):
    resp = streamer.serve("never-added")
    assert resp.status == 404
    assert b"not cached" in resp.read_all()


def test_unknown_ids_do_not_accumulate_locks(store, streamer):
    for i in range(200):
        assert streamer.serve(f"nope{i}").status == 404
    assert store._entry_locks == {}


def test_downloading_entry_is_404(store, streamer):
    store.put(CacheEntry(id="dl", status=STATUS_DOWNLOADING, source="http://x/a.mp4", added_at=1))
    assert streamer.serve("dl").status == 404


def test_missing_backing_file_is_404(store, streamer, tmp_path):
    store.put(CacheEntry(id="gone", status=STATUS_READY, path=str(tmp_path / "nope"), size=3, added_at=1))
    assert streamer.serve("gone").status == 404


def test_full_file_without_range(streamer, ready_id):
    resp = streamer.serve(ready_id)
    assert resp.status == 200
    assert resp.headers["Content-Length"] == str(len(CONTENT))
    assert resp.headers["Content-Type"] == "video/mp4"
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.headers["Accept-Ranges"] == "bytes"
    assert resp.read_all() == CONTENT
    assert resp.closed


def test_range_window_is_exact(streamer, ready_id):
    resp = streamer.serve(ready_id, "bytes=1000-2999")
    assert resp.status == 206
    assert resp.headers["Content-Range"] == f"bytes 1000-2999/{len(CONTENT)}"
    assert resp.headers["Content-Length"] == "2000"
    assert resp.read_all() == CONTENT[1000:3000]


def test_unsatisfiable_range_has_no_body(streamer, ready_id):
    resp = streamer.serve(ready_id, f"bytes={len(CONTENT)}-")
    assert resp.status == 416
    assert resp.headers["Content-Range"] == f"bytes */{len(CONTENT)}"
    assert resp.read_all() == b""


def test_serve_touches_last_access(store, streamer, ready_id):
    assert store.get(ready_id).last_access is None
    streamer.serve(ready_id).close()
    assert store.get(ready_id).last_access is not None


def test_range_uses_current_file_size(store, streamer, ready_id):
    # The window is resolved against the file on disk, not the recorded size.
    with open(store.get(ready_id).path, "ab") as f:
        f.write(b"tail")
    resp = streamer.serve(ready_id, "bytes=10240-")
    assert resp.status == 206
    assert resp.read_all() == b"tail"


def test_close_releases_file_before_body_is_drained(streamer, ready_id):
    resp = streamer.serve(ready_id)
    it = iter(resp)
    assert len(next(it)) == 1024
    resp.close()
    assert resp.closed
    with pytest.raises(ValueError):
        # reading from the closed file handle
        next(it)


def test_head_sends_headers_only(streamer, ready_id):
    resp = streamer.serve(ready_id, "bytes=0-9", head=True)
    assert resp.status == 206
    assert resp.headers["Content-Length"] == "10"
    assert resp.read_all() == b""


def test_validate_url():
    assert validate_url("https://example.com/a.mp4") == "https://example.com/a.mp4"
    for bad in (None, "", "not a url", "ftp://example.com/a", "http://"):
        with pytest.raises(InvalidInput):
            validate_url(bad)


def test_proxy_rejects_bad_urls(streamer):
    assert streamer.serve_proxy(None).status == 400
    resp = streamer.serve_proxy("javascript:alert(1)")
    assert resp.status == 400
    assert b"invalid url" in resp.read_all()


def test_proxy_full_body(streamer, origin):
    resp = streamer.serve_proxy(origin + "/video.mp4")
    assert resp.status == 200
    assert resp.headers["Content-Length"] == str(len(PAYLOAD))
    assert resp.headers["Content-Type"] == "video/mp4"
    assert resp.headers["Cache-Control"] == "no-store"
    assert "Content-Range" not in resp.headers
    assert resp.read_all() == PAYLOAD


def test_proxy_forwards_range_and_relays_content_range(streamer, origin):
    resp = streamer.serve_proxy(origin + "/video.mp4", "bytes=100-199")
    assert OriginHandler.seen_ranges[-1] == "bytes=100-199"
    assert resp.status == 206
    assert resp.headers["Content-Range"] == f"bytes 100-199/{len(PAYLOAD)}"
    assert resp.headers["Accept-Ranges"] == "bytes"
    assert resp.read_all() == PAYLOAD[100:200]


def test_proxy_streams_chunked_origin(streamer, origin):
    resp = streamer.serve_proxy(origin + "/chunked.mp4")
    assert resp.status == 200
    assert "Content-Length" not in resp.headers
    assert resp.read_all() == PAYLOAD


def test_proxy_upstream_error_is_502(streamer, origin):
    resp = streamer.serve_proxy(origin + "/missing.mp4")
    assert resp.status == 502
    assert b"upstream 404" in resp.read_all()


def test_proxy_connect_failure_is_502(streamer, monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(streamer.session, "get", boom)
    resp = streamer.serve_proxy("http://example.invalid/a.mp4")
    assert resp.status == 502
    assert b"stream failed" in resp.read_all()


def test_proxy_persists_nothing(store, streamer, origin, tmp_path):
    streamer.serve_proxy(origin + "/video.mp4").read_all()
    assert len(store) == 0
    assert not os.path.exists(tmp_path / "videos.json")
