"""Decoding of the container runtime's multiplexed log stream.

Each frame is an 8-byte header followed by a payload::

    [stream:1][reserved:3][length:4, big-endian][payload:length]

Stream 1 is stdout and stream 2 is stderr. Frames for any other stream are
skipped. A truncated trailing frame ends decoding without error.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator

STDOUT = 1
STDERR = 2

HEADER = struct.Struct(">BxxxL")


def iter_frames(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    total = len(data)
    while offset + HEADER.size <= total:
        stream, length = HEADER.unpack_from(data, offset)
        start = offset + HEADER.size
        end = start + length
        if end > total:
            return
        yield stream, data[start:end]
        offset = end


def demux(data: bytes) -> tuple[str, str]:
    stdout = bytearray()
    stderr = bytearray()
    for stream, payload in iter_frames(data):
        if stream == STDOUT:
            stdout += payload
        elif stream == STDERR:
            stderr += payload
    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def encode_frame(stream: int, payload: bytes) -> bytes:
    return HEADER.pack(stream, len(payload)) + payload
