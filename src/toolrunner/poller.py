from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .app_logging import log_with_fields
from .config import AppConfig
from .executor import ContainerExecutor
from .models import Job, JobStatus
from .reporter import StatusReporter
from .store import MalformedJobError, Store, StoreError
from .tools import get_tool_spec
from .utils import node_name, utc_now_iso


class Poller:
    def __init__(
        self,
        config: AppConfig,
        store: Store,
        executor: ContainerExecutor,
        reporter: StatusReporter,
        logger: logging.Logger,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.executor = executor
        self.reporter = reporter
        self.logger = logger
        self.clock = clock
        self.sleep = sleep
        self.runner_node = config.runner.node_name or node_name()

    def run_forever(self) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "runner_started",
            runner_node=self.runner_node,
            poll_interval_seconds=self.config.poll.interval_seconds,
            exec_timeout_seconds=self.config.executor.exec_timeout_seconds,
            image_pull_timeout_seconds=self.config.executor.image_pull_timeout_seconds,
        )
        while True:
            self.single_cycle()

    def run_once(self) -> bool:
        return self.single_cycle()

    def single_cycle(self) -> bool:
        """Claim and run at most one job. Returns True when a job was executed."""
        try:
            job = self.claim_next()
            if job is None:
                log_with_fields(self.logger, logging.DEBUG, "no_queued_jobs")
                self.sleep(self.config.poll.interval_seconds)
                return False
            self.execute_job(job)
            return True
        except StoreError as exc:
            log_with_fields(self.logger, logging.ERROR, "poll_error", error=str(exc))
            self.sleep(self.config.poll.interval_seconds)
            return False

    def claim_next(self) -> Job | None:
        while True:
            try:
                job = self.store.claim_next_queued()
            except MalformedJobError as exc:
                self._reject_malformed(exc)
                continue
            break
        if job is None:
            return None
        started_at = utc_now_iso()
        self.store.update_job(
            job.id,
            status=JobStatus.RUNNING,
            started_at=started_at,
            runner_node=self.runner_node,
        )
        self.store.add_event(job.id, "claimed", {"priority": job.priority}, runner_node=self.runner_node)
        job.status = JobStatus.RUNNING
        job.started_at = started_at
        job.runner_node = self.runner_node
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_claimed",
            job_id=job.id,
            tool=job.tool_name.value,
            target=job.target_input,
            priority=job.priority,
        )
        return job

    def _reject_malformed(self, exc: MalformedJobError) -> None:
        failed = self.store.update_job(
            exc.job_id,
            expected_status=JobStatus.QUEUED,
            status=JobStatus.FAILED,
            completed_at=utc_now_iso(),
            duration_ms=0,
            error_output=str(exc),
            runner_node=self.runner_node,
        )
        if not failed:
            raise exc
        self.store.add_event(exc.job_id, "rejected_malformed", {"error": str(exc)}, runner_node=self.runner_node)
        log_with_fields(self.logger, logging.ERROR, "job_rejected_malformed", job_id=exc.job_id, error=str(exc))

    def execute_job(self, job: Job) -> None:
        start = self.clock()
        try:
            spec = get_tool_spec(job.tool_name)
            args = spec.build_args(job.target_input, job.params)
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_executing",
                job_id=job.id,
                image=spec.image,
                args=args,
            )
            outcome = self.executor.execute(spec.image, args, self.config.executor.exec_timeout_seconds)
            result = spec.parse_output(outcome.stdout)
        except Exception as exc:
            self.reporter.report_failure(job, exc, self._elapsed_ms(start))
            return
        self.reporter.report_success(job, outcome, result, self._elapsed_ms(start))

    def _elapsed_ms(self, start: float) -> int:
        return int((self.clock() - start) * 1000)
