"""
Container runtime capability interface and its Docker implementation.

The supervisor never implements a container runtime itself: everything it
does to a container goes through the narrow ContainerRuntime protocol, so the
lifecycle, health and backup logic can be exercised against a fake runtime.
"""

import logging
import os
import subprocess
import tempfile
import threading
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Iterator, Mapping, Optional, Protocol, Sequence

import docker
import docker.errors
import requests.exceptions
from docker.models.containers import Container
from docker.types import Mount

from .errors import (
    ExternalToolError,
    OperationCancelledError,
    OperationTimeoutError,
    TransientRuntimeError,
)

if TYPE_CHECKING:
    from .compose_inspector import ServiceSpec

logger = logging.getLogger(__name__)

_NANOSECONDS = 1_000_000_000
_TRANSIENT_STATUS_CODES = {502, 503, 504}


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a command run inside a container."""

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


@dataclass(frozen=True)
class ContainerStatus:
    """Observed state of a container as reported by the runtime."""

    exists: bool
    running: bool = False
    health: str | None = None
    exit_code: int | None = None


class ContainerRuntime(Protocol):
    """Control operations the supervisor needs from a container runtime."""

    def create(self, spec: "ServiceSpec") -> str: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str, signal: str = "SIGTERM", grace_timeout: float = 10.0) -> None: ...

    def remove(self, name: str, volumes: bool = False) -> None: ...

    def remove_volume(self, name: str) -> None: ...

    def status(self, name: str) -> ContainerStatus: ...

    def exec(self, name: str, command: Sequence[str]) -> ExecResult: ...

    def logs(self, name: str, follow: bool = False) -> Iterator[bytes]: ...

    def stream(
        self,
        name: str,
        command: Sequence[str],
        *,
        stdin: Optional[IO[bytes]] = None,
        stdout: Optional[IO[bytes]] = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecResult: ...


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """
    Map Docker SDK failures onto the supervisor error taxonomy.

    Connection problems and gateway errors are transient and may be retried;
    every other API error is reported as an ExternalToolError.
    """
    try:
        yield
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransientRuntimeError(f"{action}: Docker daemon unavailable ({e})") from e
    except docker.errors.APIError as e:
        explanation = str(e.explanation or e)
        if e.status_code in _TRANSIENT_STATUS_CODES:
            raise TransientRuntimeError(f"{action}: {explanation}") from e
        raise ExternalToolError(f"{action} failed: {explanation}", stderr=explanation) from e
    except docker.errors.DockerException as e:
        raise TransientRuntimeError(f"{action}: {e}") from e


class DockerRuntime:
    """
    Context manager wrapping a Docker client for container control.

    Args:
        project_name: Compose project name used to prefix volumes and networks
            and to label created containers
        client: Existing Docker client to reuse (it is not closed on exit)
        poll_interval: Seconds between checks of a streamed process
        kill_grace: Seconds to wait after SIGTERM before killing a streamed process
        docker_binary: Docker CLI used for streamed execs

    Example:
        with DockerRuntime("myproject") as runtime:
            runtime.status("postgres")
    """

    def __init__(
        self,
        project_name: str | None = None,
        client: docker.DockerClient | None = None,
        poll_interval: float = 0.2,
        kill_grace: float = 5.0,
        docker_binary: str = "docker",
    ):
        self.project_name = project_name
        self.client = client
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.docker_binary = docker_binary
        self._owns_client = client is None

    def __enter__(self) -> "DockerRuntime":
        if self.client is None:
            with _translate_errors("connect to Docker"):
                self.client = docker.from_env()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.client and self._owns_client:
            self.client.close()
            self.client = None

    def _require_client(self) -> docker.DockerClient:
        if self.client is None:
            raise ExternalToolError("DockerRuntime not properly initialized. Use as context manager.")
        return self.client

    def _resolve(self, name: str) -> str:
        """Apply the compose project prefix to a volume or network name."""
        return f"{self.project_name}_{name}" if self.project_name else name

    def _find(self, name: str) -> Container | None:
        client = self._require_client()
        with _translate_errors(f"inspect {name}"):
            try:
                return client.containers.get(name)
            except docker.errors.NotFound:
                return None

    def _get(self, name: str) -> Container:
        container = self._find(name)
        if container is None:
            raise ExternalToolError(f"No container found for {name}")
        return container

    def _create_kwargs(self, spec: "ServiceSpec") -> dict:
        ports = {}
        for port in spec.ports:
            key = f"{port.container_port}/{port.protocol}"
            ports[key] = (port.host_ip, port.host_port) if port.host_ip else port.host_port

        mounts = [
            Mount(
                target=volume.target,
                source=(
                    self._resolve(volume.source)
                    if volume.is_named_volume and volume.source
                    else volume.source
                ),
                type=volume.kind,
                read_only=volume.read_only,
            )
            for volume in spec.volumes
        ]

        labels = {"com.docker.compose.service": spec.name}
        if self.project_name:
            labels["com.docker.compose.project"] = self.project_name

        kwargs = {
            "name": spec.container_name,
            "environment": dict(spec.environment),
            "ports": ports,
            "mounts": mounts,
            "labels": labels,
            "detach": True,
        }
        if spec.networks:
            kwargs["network"] = self._resolve(spec.networks[0])
        if spec.limits and spec.limits.memory_bytes is not None:
            kwargs["mem_limit"] = spec.limits.memory_bytes
        if spec.limits and spec.limits.cpus is not None:
            kwargs["nano_cpus"] = int(spec.limits.cpus * _NANOSECONDS)
        if spec.healthcheck:
            check = spec.healthcheck
            kwargs["healthcheck"] = {
                "test": ["CMD", *check.command],
                "interval": int(check.interval * _NANOSECONDS),
                "timeout": int(check.timeout * _NANOSECONDS),
                "retries": check.retries,
                "start_period": int(check.start_period * _NANOSECONDS),
            }
        return kwargs

    def create(self, spec: "ServiceSpec") -> str:
        """
        Create the container for a service, pulling its image when missing.

        An existing container with the same name is reused, as docker compose
        does for an unchanged service.

        Returns:
            str: Container id
        """
        existing = self._find(spec.container_name)
        if existing is not None:
            logger.info("Reusing existing container %s", spec.container_name)
            return existing.id

        client = self._require_client()
        kwargs = self._create_kwargs(spec)
        with _translate_errors(f"create {spec.container_name}"):
            try:
                container = client.containers.create(spec.image, **kwargs)
            except docker.errors.ImageNotFound:
                logger.info("Pulling image %s", spec.image)
                client.images.pull(spec.image)
                container = client.containers.create(spec.image, **kwargs)

            for network in spec.networks[1:]:
                client.networks.get(self._resolve(network)).connect(container)

        return container.id

    def start(self, name: str) -> None:
        container = self._get(name)
        with _translate_errors(f"start {name}"):
            container.start()

    def stop(self, name: str, signal: str = "SIGTERM", grace_timeout: float = 10.0) -> None:
        """
        Stop a container, killing it if it outlives the grace timeout.

        A missing container is already stopped.
        """
        container = self._find(name)
        if container is None:
            return

        with _translate_errors(f"stop {name}"):
            if signal == "SIGTERM":
                container.stop(timeout=int(grace_timeout))
                return

            container.kill(signal=signal)
            try:
                container.wait(timeout=grace_timeout)
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError):
                logger.warning("%s ignored %s, killing it", name, signal)
                container.kill()

    def remove(self, name: str, volumes: bool = False) -> None:
        container = self._find(name)
        if container is None:
            return
        with _translate_errors(f"remove {name}"):
            container.remove(force=True, v=volumes)

    def remove_volume(self, name: str) -> None:
        client = self._require_client()
        resolved = self._resolve(name)
        with _translate_errors(f"remove volume {resolved}"):
            try:
                client.volumes.get(resolved).remove()
            except docker.errors.NotFound:
                logger.debug("Volume %s does not exist", resolved)

    def status(self, name: str) -> ContainerStatus:
        container = self._find(name)
        if container is None:
            return ContainerStatus(exists=False)

        state = container.attrs.get("State", {})
        health = state.get("Health") or {}
        return ContainerStatus(
            exists=True,
            running=bool(state.get("Running")),
            health=health.get("Status"),
            exit_code=state.get("ExitCode"),
        )

    def exec(self, name: str, command: Sequence[str]) -> ExecResult:
        container = self._get(name)
        with _translate_errors(f"exec in {name}"):
            exit_code, output = container.exec_run(list(command), demux=True)

        stdout, stderr = output if output else (None, None)
        return ExecResult(exit_code=exit_code, stdout=stdout or b"", stderr=stderr or b"")

    def logs(self, name: str, follow: bool = False) -> Iterator[bytes]:
        container = self._get(name)
        with _translate_errors(f"logs of {name}"):
            yield from container.logs(stream=True, follow=follow)

    def stream(
        self,
        name: str,
        command: Sequence[str],
        *,
        stdin: Optional[IO[bytes]] = None,
        stdout: Optional[IO[bytes]] = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecResult:
        """
        Run a long command inside the container through the docker CLI.

        Standard input and output are connected to the given binary files so
        dumps and restores never pass through memory. Environment values are
        handed over through the process environment rather than argv.

        Raises:
            OperationTimeoutError: If the command outlives timeout
            OperationCancelledError: If cancel is set while it runs
            ExternalToolError: If the docker CLI cannot be executed
        """
        env = dict(env or {})
        args = [self.docker_binary, "exec", "-i"]
        for key in env:
            args += ["-e", key]
        args += [name, *command]
        operation = " ".join(command[:1]) or "exec"

        with ExitStack() as stack:
            err_file = stack.enter_context(tempfile.TemporaryFile())
            out_file = stdout if stdout is not None else stack.enter_context(tempfile.TemporaryFile())
            try:
                process = subprocess.Popen(
                    args,
                    stdin=stdin if stdin is not None else subprocess.DEVNULL,
                    stdout=out_file,
                    stderr=err_file,
                    env={**os.environ, **env},
                )
            except FileNotFoundError as e:
                raise ExternalToolError(
                    "Docker CLI not found. Please ensure docker is installed.",
                    command=args,
                ) from e

            exit_code = self._wait(process, operation, timeout, cancel)

            err_file.seek(0)
            captured_err = err_file.read()
            captured_out = b""
            if stdout is None:
                out_file.seek(0)
                captured_out = out_file.read()

        return ExecResult(exit_code=exit_code, stdout=captured_out, stderr=captured_err)

    def _wait(
        self,
        process: subprocess.Popen,
        operation: str,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> int:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                self._terminate(process)
                raise OperationCancelledError(operation)
            if deadline is not None and time.monotonic() >= deadline:
                self._terminate(process)
                raise OperationTimeoutError(operation, timeout or 0.0)

            wait_for = self.poll_interval
            if deadline is not None:
                wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
            try:
                return process.wait(timeout=wait_for)
            except subprocess.TimeoutExpired:
                continue

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s ignored SIGTERM, killing it", process.pid)
            process.kill()
            process.wait()
