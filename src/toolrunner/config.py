from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

ENV_PREFIX = "TOOLRUNNER_"


@dataclass(slots=True)
class PathsConfig:
    db: Path = Path("toolrunner.db")
    log: Path | None = Path("toolrunner.log")


@dataclass(slots=True)
class PollConfig:
    interval_seconds: float = 5.0


@dataclass(slots=True)
class ExecutorConfig:
    exec_timeout_seconds: float = 300.0
    image_pull_timeout_seconds: float = 600.0
    raw_output_limit_bytes: int = 50_000


@dataclass(slots=True)
class RunnerConfig:
    node_name: str | None = None


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _positive_float(value: object, name: str) -> float:
    try:
        output = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"`{name}` must be a number") from exc
    if output <= 0:
        raise ValueError(f"`{name}` must be > 0")
    return output


def validate_config(config: AppConfig) -> AppConfig:
    if config.poll.interval_seconds <= 0:
        raise ValueError("`poll.interval_seconds` must be > 0")
    if config.executor.exec_timeout_seconds <= 0:
        raise ValueError("`executor.exec_timeout_seconds` must be > 0")
    if config.executor.image_pull_timeout_seconds <= config.executor.exec_timeout_seconds:
        raise ValueError(
            "`executor.image_pull_timeout_seconds` must be greater than `executor.exec_timeout_seconds`"
        )
    if config.executor.raw_output_limit_bytes < 0:
        raise ValueError("`executor.raw_output_limit_bytes` must be >= 0")
    return config


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load YAML config (or defaults when ``path`` is None), then apply environment overrides."""
    config = AppConfig()
    if path is not None:
        config_path = Path(path).expanduser().resolve()
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config root must be a mapping")

        paths_raw = _section(raw, "paths")
        poll_raw = _section(raw, "poll")
        executor_raw = _section(raw, "executor")
        runner_raw = _section(raw, "runner")

        def to_path(value: object) -> Path:
            output = Path(str(value)).expanduser()
            if not output.is_absolute():
                output = config_path.parent / output
            return output

        config.paths = PathsConfig(
            db=to_path(paths_raw.get("db", "toolrunner.db")),
            log=to_path(paths_raw["log"]) if paths_raw.get("log") else None,
        )
        config.poll = PollConfig(
            interval_seconds=_positive_float(poll_raw.get("interval_seconds", 5.0), "poll.interval_seconds"),
        )
        config.executor = ExecutorConfig(
            exec_timeout_seconds=_positive_float(
                executor_raw.get("exec_timeout_seconds", 300.0), "executor.exec_timeout_seconds"
            ),
            image_pull_timeout_seconds=_positive_float(
                executor_raw.get("image_pull_timeout_seconds", 600.0), "executor.image_pull_timeout_seconds"
            ),
            raw_output_limit_bytes=int(executor_raw.get("raw_output_limit_bytes", 50_000)),
        )
        node = runner_raw.get("node_name")
        config.runner = RunnerConfig(node_name=str(node) if node else None)

    apply_env_overrides(config, os.environ if environ is None else environ)
    return validate_config(config)


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> None:
    def env(name: str) -> str | None:
        value = environ.get(f"{ENV_PREFIX}{name}")
        return value if value else None

    if (value := env("DB_PATH")) is not None:
        config.paths.db = Path(value).expanduser()
    if (value := env("LOG_PATH")) is not None:
        config.paths.log = Path(value).expanduser()
    if (value := env("POLL_INTERVAL_SECONDS")) is not None:
        config.poll.interval_seconds = _positive_float(value, f"{ENV_PREFIX}POLL_INTERVAL_SECONDS")
    if (value := env("EXEC_TIMEOUT_SECONDS")) is not None:
        config.executor.exec_timeout_seconds = _positive_float(value, f"{ENV_PREFIX}EXEC_TIMEOUT_SECONDS")
    if (value := env("IMAGE_PULL_TIMEOUT_SECONDS")) is not None:
        config.executor.image_pull_timeout_seconds = _positive_float(
            value, f"{ENV_PREFIX}IMAGE_PULL_TIMEOUT_SECONDS"
        )
    if (value := env("RAW_OUTPUT_LIMIT_BYTES")) is not None:
        try:
            config.executor.raw_output_limit_bytes = int(value)
        except ValueError as exc:
            raise ValueError(f"`{ENV_PREFIX}RAW_OUTPUT_LIMIT_BYTES` must be an integer") from exc
    if (value := env("RUNNER_NODE")) is not None:
        config.runner.node_name = value


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    if config.paths.log is not None:
        config.paths.log.parent.mkdir(parents=True, exist_ok=True)
