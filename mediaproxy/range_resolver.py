"""
Byte-range resolution for the cached-file stream endpoint.

Only the single-range form of the Range header is understood:

    bytes=<start>-<end>     end optional, inclusive

Multi-range requests (comma separated) are not supported. Only the first
clause is honored and the reply is a plain 206 for that window, never a
multipart/byteranges body. Players seek with single ranges, so this is an
accepted simplification rather than a bug.

Suffix ranges (bytes=-500) have no start and resolve to 416.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*([^-,\s]*)\s*-\s*([^,\s]*)\s*$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class RangeWindow:
    status: int
    start: int
    end: int
    total: int

    @property
    def satisfiable(self) -> bool:
        return self.status != 416

    @property
    def length(self) -> int:
        if not self.satisfiable:
            return 0
        return max(0, self.end - self.start + 1)

    @property
    def content_range(self) -> str:
        if not self.satisfiable:
            return f"bytes */{self.total}"
        return f"bytes {self.start}-{self.end}/{self.total}"

    def headers(self) -> Dict[str, str]:
        """Range-related response headers for this window."""
        hdrs = {"Accept-Ranges": "bytes"}
        if self.status == 416:
            hdrs["Content-Range"] = self.content_range
            hdrs["Content-Length"] = "0"
            return hdrs
        hdrs["Content-Length"] = str(self.length)
        if self.status == 206:
            hdrs["Content-Range"] = self.content_range
        return hdrs


def _first_clause(range_value: str) -> str:
    # "bytes=0-99, 200-299" -> "bytes=0-99"
    return range_value.split(",", 1)[0]


def _unsatisfiable(total: int) -> RangeWindow:
    return RangeWindow(status=416, start=0, end=-1, total=total)


def resolve_range(range_value: Optional[str], total: int) -> RangeWindow:
    total = max(0, int(total))
    if range_value is None or not range_value.strip():
        return RangeWindow(status=200, start=0, end=total - 1, total=total)

    m = _RANGE_RE.match(_first_clause(range_value))
    if not m:
        return _unsatisfiable(total)

    start_s, end_s = m.group(1), m.group(2)
    if not _DIGITS_RE.match(start_s):
        return _unsatisfiable(total)
    start = int(start_s)

    if end_s == "":
        end = total - 1
    elif _DIGITS_RE.match(end_s):
        end = int(end_s)
    else:
        return _unsatisfiable(total)

    if start > end or start >= total:
        return _unsatisfiable(total)

    # An end past EOF is clamped, as RFC 7233 asks.
    end = min(end, total - 1)
    return RangeWindow(status=206, start=start, end=end, total=total)
