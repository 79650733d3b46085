from __future__ import annotations

from typing import Any, Protocol

from .store import Store


class NotificationSink(Protocol):
    def emit(
        self,
        user_id: str | None,
        title: str,
        message: str,
        link: str | None,
        metadata: dict[str, Any],
    ) -> None: ...


class StoreNotificationSink:
    """Writes SYSTEM notifications into the store's notifications table."""

    def __init__(self, store: Store, icon: str = "🔍") -> None:
        self.store = store
        self.icon = icon

    def emit(
        self,
        user_id: str | None,
        title: str,
        message: str,
        link: str | None,
        metadata: dict[str, Any],
    ) -> None:
        self.store.insert_notification(
            user_id,
            type="SYSTEM",
            title=title,
            message=message,
            link_url=link,
            icon=self.icon,
            metadata=metadata,
        )


def job_link(job_id: str) -> str:
    return f"/dashboard/tools/jobs/{job_id}"
