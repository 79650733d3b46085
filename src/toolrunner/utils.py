from __future__ import annotations

import socket
import uuid
from datetime import UTC, datetime


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def new_job_id() -> str:
    return uuid.uuid4().hex


def node_name() -> str:
    return socket.gethostname()


def truncate_utf8(text: str, limit_bytes: int) -> str:
    """Cut ``text`` to at most ``limit_bytes`` of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit_bytes:
        return text
    return encoded[:limit_bytes].decode("utf-8", errors="ignore")


def parse_param_pairs(pairs: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid param `{pair}`, expected key=value")
        params[key.strip()] = value
    return params
