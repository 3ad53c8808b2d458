import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from mediaproxy.range_resolver import resolve_range


def test_no_range_serves_whole_file():
    w = resolve_range(None, 1000)
    assert w.status == 200
    assert (w.start, w.end) == (0, 999)
    assert w.length == 1000
    assert "Content-Range" not in w.headers()
    assert w.headers()["Content-Length"] == "1000"


def test_blank_range_is_treated_as_absent():
    assert resolve_range("   ", 10).status == 200


@pytest.mark.parametrize(
    "start,end,total",
    [(0, 0, 1), (0, 99, 1000), (500, 999, 1000), (999, 999, 1000), (123, 456, 457)],
)
def test_valid_window_is_partial_content(start, end, total):
    w = resolve_range(f"bytes={start}-{end}", total)
    assert w.status == 206
    assert w.content_range == f"bytes {start}-{end}/{total}"
    assert w.length == end - start + 1
    hdrs = w.headers()
    assert hdrs["Content-Length"] == str(end - start + 1)
    assert hdrs["Accept-Ranges"] == "bytes"
    assert hdrs["Content-Range"] == f"bytes {start}-{end}/{total}"


def test_open_ended_range_runs_to_eof():
    w = resolve_range("bytes=200-", 500)
    assert (w.status, w.start, w.end) == (206, 200, 499)


def test_end_past_eof_is_clamped():
    w = resolve_range("bytes=100-5000", 150)
    assert (w.status, w.start, w.end) == (206, 100, 149)


@pytest.mark.parametrize(
    "header,total",
    [
        ("bytes=10-5", 100),      # start > end
        ("bytes=100-", 100),      # start >= T
        ("bytes=100-200", 100),
        ("bytes=abc-10", 100),
        ("bytes=0-xyz", 100),
        ("bytes=-500", 1000),     # suffix form is not supported
        ("bytes=-1-5", 100),
        ("items=0-10", 100),
        ("garbage", 100),
        ("bytes=0-0", 0),
    ],
)
def test_unsatisfiable_ranges(header, total):
    w = resolve_range(header, total)
    assert w.status == 416
    assert w.length == 0
    hdrs = w.headers()
    assert hdrs["Content-Length"] == "0"
    assert hdrs["Content-Range"] == f"bytes */{total}"


def test_only_first_clause_of_multi_range_is_used():
    w = resolve_range("bytes=0-9, 20-29", 100)
    assert (w.status, w.start, w.end) == (206, 0, 9)


def test_whitespace_and_case_are_tolerated():
    w = resolve_range(" Bytes = 5 - 9 ", 100)
    assert (w.status, w.start, w.end) == (206, 5, 9)


def test_empty_file_without_range():
    w = resolve_range(None, 0)
    assert w.status == 200
    assert w.length == 0
