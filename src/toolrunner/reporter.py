from __future__ import annotations

import logging
from typing import Any

from .app_logging import log_with_fields
from .models import ContainerOutcome, Job, JobStatus, ToolResult
from .notifications import NotificationSink, job_link
from .store import Store
from .utils import truncate_utf8, utc_now_iso


class StatusReporter:
    """Persists terminal job state and sends one notification per transition.

    Terminal writes only apply while the job is still RUNNING, so a job that
    was cancelled externally mid-run keeps its CANCELLED record.
    """

    def __init__(
        self,
        store: Store,
        sink: NotificationSink | None,
        logger: logging.Logger,
        raw_output_limit_bytes: int = 50_000,
        runner_node: str | None = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.logger = logger
        self.raw_output_limit_bytes = raw_output_limit_bytes
        self.runner_node = runner_node

    def report_success(
        self,
        job: Job,
        outcome: ContainerOutcome,
        result: ToolResult,
        duration_ms: int,
    ) -> bool:
        applied = self.store.update_job(
            job.id,
            expected_status=JobStatus.RUNNING,
            status=JobStatus.COMPLETED,
            completed_at=utc_now_iso(),
            duration_ms=duration_ms,
            exit_code=outcome.exit_code,
            result=result,
            raw_output=truncate_utf8(outcome.stdout, self.raw_output_limit_bytes),
            container_id=outcome.container_id,
        )
        if not applied:
            self._log_skipped(job, JobStatus.COMPLETED)
            return False
        self.store.add_event(
            job.id,
            "completed",
            {"exit_code": outcome.exit_code, "result_count": result.count, "duration_ms": duration_ms},
            runner_node=self.runner_node,
        )
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_completed",
            job_id=job.id,
            tool=job.tool_name.value,
            exit_code=outcome.exit_code,
            result_count=result.count,
            duration_ms=duration_ms,
        )
        self._notify(
            job,
            title=f"{job.tool_name.value} scan completed",
            message=f"Found {result.count} results for {job.target_input}",
            metadata={"job_id": job.id, "tool_name": job.tool_name.value, "result_count": result.count},
        )
        return True

    def report_failure(self, job: Job, error: BaseException, duration_ms: int) -> bool:
        message = str(error) or type(error).__name__
        applied = self.store.update_job(
            job.id,
            expected_status=JobStatus.RUNNING,
            status=JobStatus.FAILED,
            completed_at=utc_now_iso(),
            duration_ms=duration_ms,
            error_output=message,
        )
        if not applied:
            self._log_skipped(job, JobStatus.FAILED)
            return False
        self.store.add_event(
            job.id,
            "failed",
            {"error": message, "error_type": type(error).__name__, "duration_ms": duration_ms},
            runner_node=self.runner_node,
        )
        log_with_fields(
            self.logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            tool=job.tool_name.value,
            error=message,
            error_type=type(error).__name__,
            duration_ms=duration_ms,
        )
        self._notify(
            job,
            title=f"{job.tool_name.value} scan failed",
            message=f"{job.target_input}: {message}",
            metadata={"job_id": job.id, "tool_name": job.tool_name.value, "error": message},
        )
        return True

    def _log_skipped(self, job: Job, status: JobStatus) -> None:
        current = self.store.get_job(job.id)
        log_with_fields(
            self.logger,
            logging.WARNING,
            "terminal_update_skipped",
            job_id=job.id,
            wanted=status.value,
            current=current.status.value if current else None,
        )

    def _notify(self, job: Job, *, title: str, message: str, metadata: dict[str, Any]) -> None:
        if self.sink is None:
            return
        try:
            self.sink.emit(job.user_id, title, message, job_link(job.id), metadata)
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "notification_failed",
                job_id=job.id,
                error=str(exc),
            )
