"""Local origin used by the tests: serves a fixed payload with Range support."""

import os
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

PAYLOAD = os.urandom(256 * 1024 + 123)


class OriginHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    payload = PAYLOAD
    gate = threading.Event()
    seen_ranges = []

    def do_GET(self):
        rng = self.headers.get("Range")
        type(self).seen_ranges.append(rng)
        if self.path == "/video.mp4":
            self._send_payload(rng)
        elif self.path == "/chunked.mp4":
            self._send_chunked()
        elif self.path == "/gated.mp4":
            type(self).gate.wait(10)
            self._send_payload(None)
        elif self.path == "/short.mp4":
            # Claims more bytes than it sends, then hangs up.
            self.send_response(200)
            self.send_header("Content-Type", "video/mp4")
            self.send_header("Content-Length", str(len(self.payload)))
            self.send_header("Connection", "close")
            self.end_headers()
            self.wfile.write(self.payload[:1000])
            self.close_connection = True
        elif self.path == "/boom":
            self._send_empty(500)
        else:
            self._send_empty(404)

    def log_message(self, *args, **kwargs):
        # Silence default logging
        return

    def _send_empty(self, status):
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_payload(self, rng):
        data = self.payload
        total = len(data)
        m = re.match(r"^bytes=(\d+)-(\d*)$", rng or "")
        if m:
            start = int(m.group(1))
            end = int(m.group(2)) if m.group(2) else total - 1
            end = min(end, total - 1)
            body = data[start:end + 1]
            self.send_response(206)
            self.send_header("Content-Range", f"bytes {start}-{end}/{total}")
            self.send_header("Accept-Ranges", "bytes")
        else:
            body = data
            self.send_response(200)
        self.send_header("Content-Type", "video/mp4")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_chunked(self):
        self.send_response(200)
        self.send_header("Content-Type", "video/mp4")
        self.send_header("Transfer-Encoding", "chunked")
        self.end_headers()
        step = 10000
        for i in range(0, len(self.payload), step):
            piece = self.payload[i:i + step]
            self.wfile.write(f"{len(piece):x}\r\n".encode("ascii") + piece + b"\r\n")
        self.wfile.write(b"0\r\n\r\n")


def start_origin():
    OriginHandler.gate = threading.Event()
    OriginHandler.seen_ranges = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), OriginHandler)
    httpd.daemon_threads = True
    port = httpd.server_address[1]
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    return httpd, f"http://127.0.0.1:{port}"


def stop_origin(httpd):
    OriginHandler.gate.set()
    httpd.shutdown()
    httpd.server_close()
