"""
Lifecycle state machine for a single managed PostgreSQL service.

The LifecycleController is the only writer of a service's state. Every
change goes through the explicit transition table below, under a single
state lock, so operator commands and health reports cannot race.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Collection, Iterator, TypeVar

from .errors import (
    AlreadyRunningError,
    ExternalToolError,
    InvalidTransitionError,
    NotHealthyError,
    SupervisorError,
    TransientRuntimeError,
    UnknownServiceError,
)

if TYPE_CHECKING:
    from .compose_inspector import HealthCheckSpec, ServiceSpec
    from .health import HealthMonitor
    from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceState(str, Enum):
    """Lifecycle states of a managed service."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.STOPPED: frozenset({ServiceState.STARTING}),
    ServiceState.STARTING: frozenset(
        {ServiceState.RUNNING, ServiceState.STOPPING, ServiceState.FAILED}
    ),
    ServiceState.RUNNING: frozenset(
        {
            ServiceState.HEALTHY,
            ServiceState.UNHEALTHY,
            ServiceState.STOPPING,
            ServiceState.FAILED,
        }
    ),
    ServiceState.HEALTHY: frozenset(
        {ServiceState.UNHEALTHY, ServiceState.STOPPING, ServiceState.FAILED}
    ),
    ServiceState.UNHEALTHY: frozenset(
        {
            ServiceState.HEALTHY,
            ServiceState.RUNNING,
            ServiceState.STOPPING,
            ServiceState.FAILED,
        }
    ),
    ServiceState.STOPPING: frozenset({ServiceState.STOPPED, ServiceState.FAILED}),
    ServiceState.FAILED: frozenset({ServiceState.STOPPED}),
}

# States in which the container process is expected to be alive
ACTIVE_STATES = frozenset(
    {
        ServiceState.STARTING,
        ServiceState.RUNNING,
        ServiceState.HEALTHY,
        ServiceState.UNHEALTHY,
    }
)


def check_transition(previous: ServiceState, requested: ServiceState) -> None:
    """
    Validate a transition against the table.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    allowed = TRANSITIONS[previous]
    if requested not in allowed:
        raise InvalidTransitionError(previous, requested, allowed)


@dataclass(frozen=True)
class StateTransition:
    """Immutable record of one state change."""

    previous: ServiceState
    current: ServiceState
    reason: str
    at: datetime = field(default_factory=datetime.now)


TransitionListener = Callable[[StateTransition], None]
MonitorFactory = Callable[["LifecycleController", "HealthCheckSpec"], "HealthMonitor"]


def _default_monitor_factory(
    controller: "LifecycleController", spec: "HealthCheckSpec"
) -> "HealthMonitor":
    from .health import HealthMonitor

    return HealthMonitor(controller, spec)


class LifecycleController:
    """
    Drives one managed service through its start/stop/restart state machine.

    Args:
        runtime: Container runtime used for every control operation
        spec: Validated service definition
        monitor_factory: Builds the HealthMonitor for services with a health check
        max_attempts: Attempts per runtime call when it fails transiently
        backoff_base: Delay before the first retry, doubled on each retry
        backoff_max: Upper bound for a single retry delay
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        runtime: "ContainerRuntime",
        spec: "ServiceSpec",
        monitor_factory: MonitorFactory = _default_monitor_factory,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.spec = spec
        self.monitor_factory = monitor_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

        self._state = ServiceState.STOPPED
        self._state_changed = threading.Condition(threading.RLock())
        self._operation_lock = threading.RLock()
        self._listeners: list[TransitionListener] = []
        self._history: list[StateTransition] = []
        self._maintenance = False
        self.monitor: "HealthMonitor | None" = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def container_name(self) -> str:
        return self.spec.container_name

    @property
    def history(self) -> list[StateTransition]:
        with self._state_changed:
            return list(self._history)

    @property
    def in_maintenance(self) -> bool:
        with self._state_changed:
            return self._maintenance

    def current_state(self) -> ServiceState:
        with self._state_changed:
            return self._state

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked, in order, for every transition."""
        with self._state_changed:
            self._listeners.append(listener)

    def wait_for_state(
        self, states: Collection[ServiceState], timeout: float | None = None
    ) -> ServiceState:
        """
        Block until the service reaches one of the given states.

        Returns:
            ServiceState: The state reached, or the current state on timeout
        """
        with self._state_changed:
            self._state_changed.wait_for(lambda: self._state in states, timeout=timeout)
            return self._state

    def _transition(self, requested: ServiceState, reason: str) -> StateTransition:
        with self._state_changed:
            previous = self._state
            check_transition(previous, requested)
            self._state = requested
            if requested not in ACTIVE_STATES:
                self._maintenance = False
            record = StateTransition(previous, requested, reason)
            self._history.append(record)
            logger.info("%s: %s -> %s (%s)", self.name, previous, requested, reason)
            for listener in self._listeners:
                listener(record)
            self._state_changed.notify_all()
            return record

    def _fail(self, reason: str) -> None:
        self._halt_monitor()
        with self._state_changed:
            if self._state is not ServiceState.FAILED:
                self._transition(ServiceState.FAILED, reason)
        logger.error("%s failed: %s", self.name, reason)

    def _call_runtime(self, operation: str, func: Callable[..., T], *args, **kwargs) -> T:
        """
        Invoke a runtime operation, retrying transient failures with backoff.

        Raises:
            TransientRuntimeError: When every attempt failed transiently
            SupervisorError: Any non-transient failure, unchanged
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except TransientRuntimeError as e:
                if attempt == self.max_attempts:
                    raise
                delay = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)
                logger.warning(
                    "%s: %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.name,
                    operation,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def start(self, spec: "ServiceSpec | None" = None, maintenance: bool = False) -> ServiceState:
        """
        Create and start the container.

        Args:
            spec: Replacement definition for the same service
            maintenance: Start in maintenance mode (not serving traffic)

        Returns:
            ServiceState: RUNNING or HEALTHY

        Raises:
            AlreadyRunningError: If the service is not STOPPED or FAILED
            SupervisorError: If the runtime fails; the service is then FAILED
        """
        with self._operation_lock:
            state = self.current_state()
            if state not in (ServiceState.STOPPED, ServiceState.FAILED):
                raise AlreadyRunningError(self.name, state)
            if spec is not None:
                if spec.name != self.spec.name:
                    raise ValueError(f"Controller for {self.name} cannot start {spec.name}")
                self.spec = spec
            if state is ServiceState.FAILED:
                self.reset()

            self._transition(ServiceState.STARTING, "start requested")
            with self._state_changed:
                self._maintenance = maintenance

            name = self.container_name
            try:
                self._call_runtime("create", self.runtime.create, self.spec)
                self._call_runtime("start", self.runtime.start, name)
                status = self._call_runtime("status", self.runtime.status, name)
            except SupervisorError as e:
                self._fail(f"start failed: {e}")
                raise

            if not status.running:
                error = ExternalToolError(
                    f"Container {name} exited during startup (exit code {status.exit_code})",
                    exit_status=status.exit_code,
                    stderr=self._tail_logs(),
                )
                self._fail(str(error))
                raise error

            self._transition(ServiceState.RUNNING, "container running")
            if self.spec.healthcheck is None:
                return self._transition(ServiceState.HEALTHY, "no health check configured").current

            self.monitor = self.monitor_factory(self, self.spec.healthcheck)
            self.monitor.start()
            return self.current_state()

    def stop(self, grace_timeout: float = 10.0, signal: str = "SIGTERM") -> ServiceState:
        """
        Stop the container. Idempotent: stopping a stopped service is a no-op.

        A FAILED service is left as is; use reset() to clear it.

        Raises:
            SupervisorError: If the runtime fails; the service is then FAILED
        """
        with self._operation_lock:
            state = self.current_state()
            if state is ServiceState.STOPPED:
                logger.debug("%s is already stopped", self.name)
                return state
            if state is ServiceState.FAILED:
                logger.warning("%s is failed; reset it to clear the failure", self.name)
                return state

            self._transition(ServiceState.STOPPING, "stop requested")
            self._halt_monitor()

            name = self.container_name
            try:
                self._call_runtime("stop", self.runtime.stop, name, signal, grace_timeout)
                status = self._call_runtime("status", self.runtime.status, name)
            except SupervisorError as e:
                self._fail(f"stop failed: {e}")
                raise

            if status.running:
                error = ExternalToolError(f"Container {name} is still running after stop")
                self._fail(str(error))
                raise error

            return self._transition(ServiceState.STOPPED, "container terminated").current

    def restart(self, grace_timeout: float = 10.0) -> ServiceState:
        """Stop the service if needed, then start it again with the same spec."""
        with self._operation_lock:
            self.stop(grace_timeout)
            return self.start()

    def reset(self) -> ServiceState:
        """
        Clear a FAILED service back to STOPPED, removing any leftover container.

        Raises:
            InvalidTransitionError: If the service is not FAILED
        """
        with self._operation_lock:
            check_transition(self.current_state(), ServiceState.STOPPED)
            self._call_runtime("remove", self.runtime.remove, self.container_name)
            return self._transition(ServiceState.STOPPED, "reset after failure").current

    def adopt(self, monitor: bool = False) -> ServiceState:
        """
        Take over a container that is already running.

        Derives the state from the runtime's view of the container, moving
        through the transition table so the history stays consistent.

        Args:
            monitor: Start a HealthMonitor for the adopted container

        Returns:
            ServiceState: The adopted state
        """
        with self._operation_lock:
            if self.current_state() is not ServiceState.STOPPED:
                return self.current_state()

            status = self._call_runtime("status", self.runtime.status, self.container_name)
            if not status.running:
                return ServiceState.STOPPED

            self._transition(ServiceState.STARTING, "adopting running container")
            self._transition(ServiceState.RUNNING, "container running")
            if status.health in (None, "healthy"):
                self._transition(ServiceState.HEALTHY, f"runtime health: {status.health or 'none'}")
            elif status.health == "unhealthy":
                self._transition(ServiceState.UNHEALTHY, "runtime health: unhealthy")

            if monitor and self.spec.healthcheck is not None:
                self.monitor = self.monitor_factory(self, self.spec.healthcheck)
                self.monitor.start()
            return self.current_state()

    def report_health(self, healthy: bool) -> None:
        """
        Apply a health report from the HealthMonitor.

        Reports that do not match the current state are ignored.
        """
        with self._state_changed:
            state = self._state
            if healthy and state in (ServiceState.RUNNING, ServiceState.UNHEALTHY):
                self._transition(ServiceState.HEALTHY, "health check passed")
            elif not healthy and state in (ServiceState.RUNNING, ServiceState.HEALTHY):
                self._transition(ServiceState.UNHEALTHY, "health check failed")
            else:
                logger.debug("%s: ignoring health report %s in state %s", self.name, healthy, state)

    def require_healthy(self) -> None:
        state = self.current_state()
        if state is not ServiceState.HEALTHY:
            raise NotHealthyError(self.name, state)

    @contextmanager
    def maintenance(self) -> Iterator["LifecycleController"]:
        """
        Mark a running service as not serving traffic for the duration.

        Raises:
            NotHealthyError: If the container is not running
        """
        with self._state_changed:
            if self._state not in ACTIVE_STATES - {ServiceState.STARTING}:
                raise NotHealthyError(self.name, self._state)
            self._maintenance = True
        logger.info("%s entered maintenance mode", self.name)
        try:
            yield self
        finally:
            with self._state_changed:
                self._maintenance = False
            logger.info("%s left maintenance mode", self.name)

    def stop_monitoring(self) -> None:
        """Stop health polling while leaving the container as it is."""
        self._halt_monitor()

    def _halt_monitor(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
            self.monitor = None

    def _tail_logs(self, limit: int = 4096) -> str:
        try:
            output = b"".join(self.runtime.logs(self.container_name, follow=False))
        except SupervisorError as e:
            logger.debug("Could not read logs of %s: %s", self.container_name, e)
            return ""
        return output[-limit:].decode("utf-8", errors="replace")


class ControllerRegistry:
    """Holds at most one LifecycleController per managed service name."""

    def __init__(self, runtime: "ContainerRuntime", **controller_options):
        self.runtime = runtime
        self.controller_options = controller_options
        self._controllers: dict[str, LifecycleController] = {}
        self._lock = threading.Lock()

    def get_or_create(self, spec: "ServiceSpec") -> LifecycleController:
        with self._lock:
            controller = self._controllers.get(spec.name)
            if controller is None:
                controller = LifecycleController(self.runtime, spec, **self.controller_options)
                self._controllers[spec.name] = controller
            return controller

    def get(self, name: str) -> LifecycleController:
        with self._lock:
            controller = self._controllers.get(name)
            if controller is None:
                raise UnknownServiceError(name, self._controllers)
            return controller

    def names(self) -> list[str]:
        with self._lock:
            return list(self._controllers)

    def __iter__(self) -> Iterator[LifecycleController]:
        with self._lock:
            return iter(list(self._controllers.values()))
