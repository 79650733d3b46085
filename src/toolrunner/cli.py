from __future__ import annotations

import argparse
import json
import logging
import sys

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .executor import ContainerExecutor
from .jobs import DEFAULT_PRIORITY, enqueue_job
from .models import Job, JobStatus, ToolName
from .notifications import StoreNotificationSink
from .poller import Poller
from .reporter import StatusReporter
from .store import MalformedJobError, Store
from .utils import node_name, parse_param_pairs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolrunner", description="Containerized security tool job runner")
    parser.add_argument("--config", help="Path to toolrunner YAML config (defaults plus env overrides if omitted)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the job polling loop")
    run_parser.add_argument("--once", action="store_true", help="Run one polling cycle, then exit")

    enqueue = subparsers.add_parser("enqueue", help="Queue a new tool job")
    enqueue.add_argument("--tool", required=True, choices=[tool.value for tool in ToolName], type=str.upper)
    enqueue.add_argument("--target", required=True, help="Target input passed to the tool")
    enqueue.add_argument("--priority", type=int, default=DEFAULT_PRIORITY, help="1 (most urgent) to 10")
    enqueue.add_argument("--param", action="append", default=[], metavar="KEY=VALUE", help="Tool parameter")
    enqueue.add_argument("--user", dest="user_id", help="Owner user id for notifications")
    enqueue.add_argument("--target-id", help="Optional linked target record id")

    status = subparsers.add_parser("status", help="Show job counts and recent jobs")
    status.add_argument("--user", dest="user_id", help="Only list jobs for this user")
    status.add_argument("--limit", type=int, default=20)

    show = subparsers.add_parser("show", help="Show one job as JSON")
    show.add_argument("--job-id", required=True)

    cancel = subparsers.add_parser("cancel", help="Cancel a queued or running job")
    cancel.add_argument("--job-id", required=True)
    return parser


def _open_store(config: AppConfig) -> Store:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    store.init_schema()
    return store


def _open_runtime(config: AppConfig) -> tuple[Store, Poller]:
    store = _open_store(config)
    logger = setup_logger(config.paths.log)
    executor = ContainerExecutor(config.executor, logger=logger)
    reporter = StatusReporter(
        store,
        StoreNotificationSink(store),
        logger,
        raw_output_limit_bytes=config.executor.raw_output_limit_bytes,
        runner_node=config.runner.node_name or node_name(),
    )
    poller = Poller(config=config, store=store, executor=executor, reporter=reporter, logger=logger)
    return store, poller


def _job_to_dict(job: Job) -> dict[str, object]:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "tool_name": job.tool_name.value,
        "target_input": job.target_input,
        "target_id": job.target_id,
        "status": job.status.value,
        "priority": job.priority,
        "params": job.params,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "duration_ms": job.duration_ms,
        "exit_code": job.exit_code,
        "result": job.result.to_dict() if job.result is not None else None,
        "result_count": job.result_count,
        "error_output": job.error_output,
        "runner_node": job.runner_node,
        "container_id": job.container_id,
    }


def cmd_run(config: AppConfig, *, once: bool = False) -> int:
    store, poller = _open_runtime(config)
    try:
        if once:
            poller.run_once()
            return 0
        poller.run_forever()
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger("toolrunner"), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        store.close()
    return 0


def cmd_enqueue(config: AppConfig, args: argparse.Namespace) -> int:
    try:
        params = parse_param_pairs(args.param)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    store = _open_store(config)
    try:
        try:
            job = enqueue_job(
                store,
                args.tool,
                args.target,
                priority=args.priority,
                params=params,
                user_id=args.user_id,
                target_id=args.target_id,
            )
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        print(job.id)
        return 0
    finally:
        store.close()


def cmd_status(config: AppConfig, user_id: str | None = None, limit: int = 20) -> int:
    store = _open_store(config)
    try:
        counts = store.summary_counts()
        print("Jobs:")
        for status in JobStatus:
            print(f"  {status.value:10} {counts.get(status.value, 0)}")

        print("\nRecent:")
        jobs = store.list_jobs(user_id=user_id, limit=limit)
        if not jobs:
            print("  (no jobs yet)")
        for job in jobs:
            count = f" results={job.result_count}" if job.result_count is not None else ""
            print(
                "  "
                f"{job.id} {job.tool_name.value:9} {job.status.value:9} "
                f"target={job.target_input} created={job.created_at}{count}"
            )
        return 0
    finally:
        store.close()


def cmd_show(config: AppConfig, job_id: str) -> int:
    store = _open_store(config)
    try:
        try:
            job = store.get_job(job_id)
        except MalformedJobError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        if job is None:
            print(f"job not found: {job_id}", file=sys.stderr)
            return 2
        payload = _job_to_dict(job)
        payload["events"] = store.list_events(job_id)
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    finally:
        store.close()


def cmd_cancel(config: AppConfig, job_id: str) -> int:
    store = _open_store(config)
    try:
        job = store.get_job(job_id)
        if job is None:
            print(f"job not found: {job_id}", file=sys.stderr)
            return 2
        if not store.cancel_job(job_id):
            print(f"Cannot cancel job with status: {job.status.value}", file=sys.stderr)
            return 2
        store.add_event(job_id, "cancelled", {"previous_status": job.status.value})
        print(f"cancelled {job_id}")
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, once=bool(args.once))
    if args.command == "enqueue":
        return cmd_enqueue(config, args)
    if args.command == "status":
        return cmd_status(config, user_id=args.user_id, limit=args.limit)
    if args.command == "show":
        return cmd_show(config, args.job_id)
    if args.command == "cancel":
        return cmd_cancel(config, args.job_id)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
