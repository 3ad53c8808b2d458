"""
File helpers shared by the download and streaming paths.
"""

from __future__ import annotations

import os
from typing import BinaryIO, Iterable, Optional

PART_SUFFIX = ".part"


class ShortBody(OSError):
    """Fewer bytes arrived than the sender announced."""

    def __init__(self, written: int, expected: int):
        super().__init__(f"got {written} of {expected} bytes")
        self.written = written
        self.expected = expected


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def write_atomically(final_path: str, chunks: Iterable[bytes], expected: Optional[int] = None) -> int:
    """Write chunks to final_path + '.part', fsync, then rename into place.

    Returns the number of bytes written. When expected is given and the
    byte count differs, ShortBody is raised before the rename, so
    final_path is never created for an incomplete body. The partial file
    is removed on any failure and the exception propagates.
    """
    tmp_path = final_path + PART_SUFFIX
    written = 0
    try:
        with open(tmp_path, "wb") as f:
            for chunk in chunks:
                if not chunk:
                    continue
                f.write(chunk)
                written += len(chunk)
            f.flush()
            os.fsync(f.fileno())
        if expected is not None and written != expected:
            raise ShortBody(written, expected)
        os.replace(tmp_path, final_path)
    except BaseException:
        remove_quietly(tmp_path)
        raise
    return written


def iter_stream(stream: BinaryIO, chunk_bytes: int, limit: Optional[int] = None) -> Iterable[bytes]:
    """Read a file-like object in bounded chunks, stopping after limit bytes."""
    remaining = limit
    while remaining is None or remaining > 0:
        want = chunk_bytes if remaining is None else min(chunk_bytes, remaining)
        chunk = stream.read(want)
        if not chunk:
            break
        if remaining is not None:
            remaining -= len(chunk)
        yield chunk
