from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound

from .app_logging import get_logger, log_with_fields
from .config import ExecutorConfig
from .demux import demux
from .models import ContainerOutcome


class ExecutorError(RuntimeError):
    pass


class ImagePullError(ExecutorError):
    pass


class ImagePullTimeout(ImagePullError):
    pass


class ContainerStartError(ExecutorError):
    pass


class ExecutionTimeout(ExecutorError):
    pass


class ContainerLogsError(ExecutorError):
    pass


class ContainerExecutor:
    """Runs one tool invocation in a fresh container and owns its teardown."""

    def __init__(
        self,
        config: ExecutorConfig,
        client: Any = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._client = client
        self.logger = logger or get_logger("executor")
        self.clock = clock

    @property
    def client(self) -> Any:
        if self._client is None:
            # The client's HTTP timeout bounds a stalled pull read; waits pass their own timeout.
            self._client = docker.from_env(timeout=int(self.config.image_pull_timeout_seconds))
        return self._client

    def ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
            log_with_fields(self.logger, logging.DEBUG, "image_present", image=image)
            return
        except ImageNotFound:
            pass
        except (DockerException, requests.RequestException) as exc:
            raise ImagePullError(f"Failed to inspect image {image}: {exc}") from exc

        pull_timeout = self.config.image_pull_timeout_seconds
        log_with_fields(
            self.logger,
            logging.INFO,
            "image_pull_started",
            image=image,
            timeout_seconds=pull_timeout,
        )
        deadline = self.clock() + pull_timeout
        try:
            for event in self.client.api.pull(image, stream=True, decode=True):
                if isinstance(event, dict) and event.get("error"):
                    raise ImagePullError(f"Failed to pull image {image}: {event['error']}")
                if self.clock() > deadline:
                    raise ImagePullTimeout(f"Image pull timeout after {pull_timeout:g}s")
        except requests.exceptions.Timeout as exc:
            raise ImagePullTimeout(f"Image pull timeout after {pull_timeout:g}s") from exc
        except (DockerException, requests.RequestException) as exc:
            raise ImagePullError(f"Failed to pull image {image}: {exc}") from exc
        log_with_fields(self.logger, logging.INFO, "image_pulled", image=image)

    def execute(self, image: str, args: list[str], exec_timeout: float | None = None) -> ContainerOutcome:
        timeout = exec_timeout if exec_timeout is not None else self.config.exec_timeout_seconds
        self.ensure_image(image)

        container = None
        try:
            try:
                container = self.client.containers.create(
                    image,
                    command=list(args),
                    tty=False,
                    auto_remove=False,
                )
                container.start()
            except (DockerException, requests.RequestException) as exc:
                raise ContainerStartError(f"Failed to start container from {image}: {exc}") from exc
            log_with_fields(
                self.logger,
                logging.INFO,
                "container_started",
                image=image,
                container_id=container.id,
                args=list(args),
            )

            started = self.clock()
            try:
                status = container.wait(timeout=timeout)
            except requests.exceptions.Timeout as exc:
                self._kill(container)
                raise ExecutionTimeout(f"Job execution timeout after {timeout:g}s") from exc
            except requests.exceptions.ConnectionError as exc:
                # Over the unix socket a read timeout can surface as a ConnectionError.
                self._kill(container)
                if self.clock() - started >= timeout:
                    raise ExecutionTimeout(f"Job execution timeout after {timeout:g}s") from exc
                raise ExecutorError(f"Lost connection while waiting for container {container.id}: {exc}") from exc

            stdout, stderr = demux(self._fetch_logs(container.id, timeout))
            exit_code = int(status.get("StatusCode", -1))
            log_with_fields(
                self.logger,
                logging.INFO,
                "container_exited",
                container_id=container.id,
                exit_code=exit_code,
                stdout_bytes=len(stdout.encode("utf-8")),
                stdout_lines=len([line for line in stdout.splitlines() if line]),
            )
            return ContainerOutcome(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                container_id=container.id,
            )
        finally:
            if container is not None:
                self._remove(container)

    def _fetch_logs(self, container_id: str, timeout: float) -> bytes:
        # The high-level logs() call merges both streams, so read the raw framed body.
        api = self.client.api
        url = f"{api.base_url}/v{api.api_version}/containers/{container_id}/logs"
        try:
            response = api.get(
                url,
                params={"stdout": 1, "stderr": 1, "follow": 0, "timestamps": 0},
                timeout=timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ContainerLogsError(f"Failed to read logs for container {container_id}: {exc}") from exc
        return response.content

    def _kill(self, container: Any) -> None:
        try:
            container.kill()
        except NotFound:
            pass
        except (DockerException, requests.RequestException) as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "container_kill_failed",
                container_id=container.id,
                error=str(exc),
            )

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except (DockerException, requests.RequestException) as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "container_remove_failed",
                container_id=container.id,
                error=str(exc),
            )
            return
        log_with_fields(self.logger, logging.DEBUG, "container_removed", container_id=container.id)
