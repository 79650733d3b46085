from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import json
import unittest

from toolrunner.config import AppConfig, ExecutorConfig, PathsConfig, PollConfig, RunnerConfig
from toolrunner.executor import ContainerExecutor, ImagePullError
from toolrunner.models import ContainerOutcome, JobStatus, ToolName
from toolrunner.notifications import StoreNotificationSink
from toolrunner.poller import Poller
from toolrunner.reporter import StatusReporter
from toolrunner.store import MalformedJobError, Store, StoreError

from fakes import FakeClock, FakeDockerClient, framed, quiet_logger


class FakeExecutor:
    def __init__(self, outcome: ContainerOutcome | None = None, error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.calls: list[tuple[str, list[str], float | None]] = []

    def execute(self, image: str, args: list[str], exec_timeout: float | None = None) -> ContainerOutcome:
        self.calls.append((image, args, exec_timeout))
        if self.error is not None:
            raise self.error
        assert self.outcome is not None
        return self.outcome


class BrokenSink:
    def emit(self, user_id, title, message, link, metadata) -> None:  # noqa: ANN001
        raise ConnectionError("notification service down")


class FlakyStore(Store):
    def claim_next_queued(self):  # noqa: ANN201
        raise StoreError("claim next queued job failed: database is locked")


class PollerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config = AppConfig(
            paths=PathsConfig(db=root / "toolrunner.db", log=None),
            poll=PollConfig(interval_seconds=3),
            executor=ExecutorConfig(exec_timeout_seconds=30, image_pull_timeout_seconds=600, raw_output_limit_bytes=16),
            runner=RunnerConfig(node_name="node-a"),
        )
        self.store = Store(self.config.paths.db)
        self.store.init_schema()
        self.sleeps: list[float] = []
        self.clock = FakeClock(start=100.0, step=1.5)
        self.logger = quiet_logger()

    def tearDown(self) -> None:
        self.store.close()
        self.temp_dir.cleanup()

    def make_poller(self, executor, sink=None, store: Store | None = None) -> Poller:  # noqa: ANN001
        store = store or self.store
        reporter = StatusReporter(
            store,
            sink if sink is not None else StoreNotificationSink(store),
            self.logger,
            raw_output_limit_bytes=self.config.executor.raw_output_limit_bytes,
            runner_node="node-a",
        )
        return Poller(
            self.config,
            store,
            executor,
            reporter,
            self.logger,
            clock=self.clock,
            sleep=self.sleeps.append,
        )


class PollerLifecycleTest(PollerTestCase):
    def test_end_to_end_subfinder(self) -> None:
        image = "projectdiscovery/subfinder:latest"
        client = FakeDockerClient(local_images={image}, log_bytes=framed(stdout="a.example.com\nb.example.com\n"))
        executor = ContainerExecutor(self.config.executor, client=client, logger=self.logger)
        job = self.store.insert_job(ToolName.SUBFINDER, "example.com", user_id="u1")

        poller = self.make_poller(executor)
        self.assertTrue(poller.single_cycle())

        done = self.store.get_job(job.id)
        assert done is not None
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(done.result_count, 2)
        assert done.result is not None
        self.assertEqual(done.result.to_dict()["subdomains"], ["a.example.com", "b.example.com"])
        self.assertEqual(done.runner_node, "node-a")
        self.assertEqual(done.container_id, "container-1")
        self.assertEqual(done.duration_ms, 1500)
        self.assertIsNotNone(done.started_at)
        self.assertIsNotNone(done.completed_at)
        self.assertEqual(client.created[0].command, ["-d", "example.com", "-silent", "-all"])
        self.assertEqual(client.removed, ["container-1"])
        self.assertEqual(self.sleeps, [])

        notes = self.store.list_notifications("u1")
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0]["title"], "SUBFINDER scan completed")
        self.assertEqual(notes[0]["message"], "Found 2 results for example.com")
        self.assertEqual(notes[0]["link_url"], f"/dashboard/tools/jobs/{job.id}")
        self.assertEqual(notes[0]["metadata"]["result_count"], 2)

        events = [event["event_type"] for event in self.store.list_events(job.id)]
        self.assertEqual(events, ["claimed", "completed"])

    def test_timeout_marks_failed_and_removes_container(self) -> None:
        image = "projectdiscovery/httpx:latest"
        client = FakeDockerClient(local_images={image})
        client.hang = True
        executor = ContainerExecutor(self.config.executor, client=client, logger=self.logger)
        job = self.store.insert_job(ToolName.HTTPX, "example.com", user_id="u1")

        self.make_poller(executor).single_cycle()

        failed = self.store.get_job(job.id)
        assert failed is not None
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertIn("timeout", failed.error_output or "")
        self.assertIsNone(failed.result)
        self.assertIsNone(failed.result_count)
        self.assertEqual(client.removed, ["container-1"])
        self.assertEqual(client.wait_timeouts, [30])
        notes = self.store.list_notifications("u1")
        self.assertEqual([note["title"] for note in notes], ["HTTPX scan failed"])

    def test_claims_by_priority_then_creation(self) -> None:
        self.store.insert_job(ToolName.SUBFINDER, "five.example", priority=5, created_at="2025-01-01T00:00:00.000000+00:00")
        self.store.insert_job(ToolName.SUBFINDER, "one-late.example", priority=1, created_at="2025-01-03T00:00:00.000000+00:00")
        self.store.insert_job(ToolName.SUBFINDER, "one-early.example", priority=1, created_at="2025-01-02T00:00:00.000000+00:00")
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout="", stderr="", container_id="c"))
        poller = self.make_poller(executor)

        for _ in range(3):
            poller.single_cycle()

        targets = [args[1] for _, args, _ in executor.calls]
        self.assertEqual(targets, ["one-early.example", "one-late.example", "five.example"])

    def test_idle_cycle_sleeps_poll_interval(self) -> None:
        poller = self.make_poller(FakeExecutor())
        self.assertFalse(poller.single_cycle())
        self.assertEqual(self.sleeps, [3])

    def test_store_error_is_logged_and_loop_continues(self) -> None:
        flaky = FlakyStore(self.config.paths.db)
        try:
            poller = self.make_poller(FakeExecutor(), store=flaky)
            self.assertFalse(poller.single_cycle())
            self.assertFalse(poller.single_cycle())
            self.assertEqual(self.sleeps, [3, 3])
        finally:
            flaky.close()

    def test_malformed_row_is_failed_and_next_job_runs(self) -> None:
        bad = self.store.insert_job(ToolName.SUBFINDER, "bad.example", created_at="2025-01-01T00:00:00.000000+00:00")
        good = self.store.insert_job(ToolName.SUBFINDER, "good.example", created_at="2025-01-02T00:00:00.000000+00:00")
        self.store.conn.execute("UPDATE tool_jobs SET params_json = '{bad' WHERE id = ?", (bad.id,))
        self.store.conn.commit()
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout="a.good.example\n", stderr="", container_id="c"))
        poller = self.make_poller(executor)

        self.assertTrue(poller.single_cycle())

        row = self.store.conn.execute(
            "SELECT status, error_output, runner_node FROM tool_jobs WHERE id = ?", (bad.id,)
        ).fetchone()
        self.assertEqual(row["status"], JobStatus.FAILED.value)
        self.assertIn("Malformed job record", row["error_output"])
        self.assertEqual(row["runner_node"], "node-a")
        with self.assertRaises(MalformedJobError):
            self.store.get_job(bad.id)
        self.assertEqual([args[1] for _, args, _ in executor.calls], ["good.example"])
        done = self.store.get_job(good.id)
        assert done is not None
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(self.sleeps, [])
        self.assertEqual([event["event_type"] for event in self.store.list_events(bad.id)], ["rejected_malformed"])

        self.assertFalse(poller.single_cycle())
        self.assertEqual(self.sleeps, [3])

    def test_nonzero_exit_still_completes(self) -> None:
        job = self.store.insert_job(ToolName.NUCLEI, "https://example.com")
        stdout = json.dumps({"template-id": "x", "info": {"severity": "low"}}) + "\n"
        executor = FakeExecutor(ContainerOutcome(exit_code=1, stdout=stdout, stderr="", container_id="c"))
        self.make_poller(executor).single_cycle()

        done = self.store.get_job(job.id)
        assert done is not None
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(done.exit_code, 1)
        self.assertEqual(done.result_count, 1)

    def test_nuclei_severity_param_reaches_args(self) -> None:
        self.store.insert_job(ToolName.NUCLEI, "https://example.com", params={"severity": "critical"})
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout="", stderr="", container_id="c"))
        self.make_poller(executor).single_cycle()
        image, args, timeout = executor.calls[0]
        self.assertEqual(image, "projectdiscovery/nuclei:latest")
        self.assertEqual(args[-2:], ["-severity", "critical"])
        self.assertEqual(timeout, 30)

    def test_raw_output_is_byte_capped(self) -> None:
        job = self.store.insert_job(ToolName.SUBFINDER, "example.com")
        stdout = "a.example.com\nb.example.com\nc.example.com\n"
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout=stdout, stderr="", container_id="c"))
        self.make_poller(executor).single_cycle()

        done = self.store.get_job(job.id)
        assert done is not None
        self.assertEqual(done.raw_output, stdout[:16])
        self.assertEqual(done.result_count, 3)

    def test_pipeline_error_marks_failed(self) -> None:
        job = self.store.insert_job(ToolName.HTTPX, "example.com")
        executor = FakeExecutor(error=ImagePullError("Failed to pull image projectdiscovery/httpx:latest: denied"))
        self.make_poller(executor).single_cycle()

        failed = self.store.get_job(job.id)
        assert failed is not None
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.error_output, "Failed to pull image projectdiscovery/httpx:latest: denied")
        self.assertEqual(failed.duration_ms, 1500)

    def test_notification_failure_does_not_change_status(self) -> None:
        job = self.store.insert_job(ToolName.SUBFINDER, "example.com")
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout="a.example.com\n", stderr="", container_id="c"))
        self.make_poller(executor, sink=BrokenSink()).single_cycle()

        done = self.store.get_job(job.id)
        assert done is not None
        self.assertEqual(done.status, JobStatus.COMPLETED)

    def test_cancelled_mid_run_is_not_overwritten(self) -> None:
        image = "projectdiscovery/subfinder:latest"
        job = self.store.insert_job(ToolName.SUBFINDER, "example.com", user_id="u1")
        client = FakeDockerClient(local_images={image}, log_bytes=framed(stdout="a.example.com\n"))
        client.on_wait = lambda container: self.store.cancel_job(job.id)
        executor = ContainerExecutor(self.config.executor, client=client, logger=self.logger)

        self.make_poller(executor).single_cycle()

        stored = self.store.get_job(job.id)
        assert stored is not None
        self.assertEqual(stored.status, JobStatus.CANCELLED)
        self.assertIsNone(stored.result)
        self.assertEqual(self.store.list_notifications("u1"), [])
        self.assertEqual(client.removed, ["container-1"])

    def test_terminal_record_is_stable(self) -> None:
        job = self.store.insert_job(ToolName.SUBFINDER, "example.com")
        executor = FakeExecutor(ContainerOutcome(exit_code=0, stdout="a.example.com\n", stderr="", container_id="c"))
        poller = self.make_poller(executor)
        poller.single_cycle()
        first = self.store.get_job(job.id)
        poller.single_cycle()
        self.assertEqual(self.store.get_job(job.id), first)
        self.assertEqual(len(executor.calls), 1)


if __name__ == "__main__":
    unittest.main()
