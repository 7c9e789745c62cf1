"""
Pytest configuration and shared fixtures.

Ensures the src directory is importable and provides an in-memory container
runtime so lifecycle, health and backup logic run without a Docker daemon.
"""
import sys
import threading
from pathlib import Path

import pytest

# Add the src directory to Python path so the package imports without installation
src_root = Path(__file__).parent.parent / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

from postgres_supervisor import validate  # noqa: E402
from postgres_supervisor.health import HealthMonitor  # noqa: E402
from postgres_supervisor.runtime import ContainerStatus, ExecResult  # noqa: E402

DUMP = (
    b"--\n-- PostgreSQL database dump\n--\n\n"
    b"CREATE TABLE public.users (id integer);\n"
    b"CREATE TABLE public.orders (id integer);\n"
)


def postgres_raw(**overrides) -> dict:
    """A valid compose service definition for the postgres image."""
    raw = {
        "image": "postgres:16",
        "container_name": "postgres",
        "environment": {
            "POSTGRES_DB": "app",
            "POSTGRES_USER": "app",
            "POSTGRES_PASSWORD": "secret",
        },
        "ports": ["5432:5432"],
        "volumes": ["database:/var/lib/postgresql/data"],
        "healthcheck": {
            "test": ["CMD-SHELL", "pg_isready -U app"],
            "interval": "30s",
            "timeout": "10s",
            "retries": 3,
        },
    }
    raw.update(overrides)
    return raw


class FakeRuntime:
    """
    In-memory ContainerRuntime.

    Attributes:
        failures: Exceptions to raise, in order, per operation name
        exec_handler: Optional callable producing exec results
        stream_handler: Optional callable producing stream results
        exits_on_start: Containers stop running right after start when True
        closed: Set once the runtime context has been exited
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.containers: dict[str, ContainerStatus] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.exec_handler = None
        self.stream_handler = None
        self.exits_on_start = False
        self.log_chunks = [b"database system is ready to accept connections\n"]
        self.removed_volumes: list[str] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True
        return None

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]

    def create(self, spec):
        self._record("create", spec.container_name)
        self.containers.setdefault(spec.container_name, ContainerStatus(exists=True))
        return f"id-{spec.container_name}"

    def start(self, name):
        self._record("start", name)
        if self.exits_on_start:
            self.containers[name] = ContainerStatus(exists=True, running=False, exit_code=1)
        else:
            self.containers[name] = ContainerStatus(exists=True, running=True)

    def stop(self, name, signal="SIGTERM", grace_timeout=10.0):
        self._record("stop", name, signal, grace_timeout)
        if name in self.containers:
            self.containers[name] = ContainerStatus(exists=True, running=False, exit_code=0)

    def remove(self, name, volumes=False):
        self._record("remove", name, volumes)
        self.containers.pop(name, None)

    def remove_volume(self, name):
        self._record("remove_volume", name)
        self.removed_volumes.append(name)

    def status(self, name):
        self._record("status", name)
        return self.containers.get(name, ContainerStatus(exists=False))

    def exec(self, name, command):
        self._record("exec", name, tuple(command))
        if self.exec_handler is not None:
            return self.exec_handler(name, command)
        return ExecResult(exit_code=0)

    def logs(self, name, follow=False):
        self._record("logs", name, follow)
        yield from self.log_chunks

    def stream(self, name, command, *, stdin=None, stdout=None, env=None, timeout=None, cancel=None):
        self._record("stream", name, tuple(command))
        if self.stream_handler is not None:
            return self.stream_handler(
                name, command, stdin=stdin, stdout=stdout, env=env, timeout=timeout, cancel=cancel
            )
        if stdout is not None:
            stdout.write(DUMP)
        return ExecResult(exit_code=0)


class ManualHealthMonitor(HealthMonitor):
    """HealthMonitor whose ticks are driven by the test instead of a thread."""

    started = False

    def start(self) -> None:
        self.started = True


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def spec():
    return validate(postgres_raw(), name="postgres")


@pytest.fixture
def no_healthcheck_spec():
    raw = postgres_raw()
    del raw["healthcheck"]
    return validate(raw, name="postgres")


@pytest.fixture
def release():
    """An event tests set to unblock slow fake operations; always set on teardown."""
    event = threading.Event()
    yield event
    event.set()
