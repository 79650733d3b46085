from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import Job
from .store import Store
from .tools import parse_tool_name

MAX_TARGET_LENGTH = 500
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


def enqueue_job(
    store: Store,
    tool_name: str,
    target_input: str,
    *,
    priority: int = DEFAULT_PRIORITY,
    params: Mapping[str, Any] | None = None,
    user_id: str | None = None,
    target_id: str | None = None,
) -> Job:
    """Validate a job request and insert it as QUEUED."""
    tool = parse_tool_name(tool_name)
    target = target_input.strip()
    if not target:
        raise ValueError("target_input must not be empty")
    if len(target) > MAX_TARGET_LENGTH:
        raise ValueError(f"target_input must be at most {MAX_TARGET_LENGTH} characters")
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError("priority must be an integer")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
    if params is not None and not isinstance(params, Mapping):
        raise ValueError("params must be a mapping")
    return store.insert_job(
        tool,
        target,
        user_id=user_id,
        target_id=target_id,
        params=dict(params) if params else None,
        priority=priority,
    )
