"""
Background health-check polling for a managed service.
"""

import concurrent.futures
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING

from .errors import SupervisorError
from .lifecycle import ACTIVE_STATES

if TYPE_CHECKING:
    from .compose_inspector import HealthCheckSpec
    from .lifecycle import LifecycleController
    from .runtime import ExecResult

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthMonitor:
    """
    Runs a service's health-check command on an interval and reports
    health changes to its LifecycleController.

    At most one check is in flight at a time. A tick that fires while the
    previous check is still running is skipped, not queued. The monitor stops
    itself once the service leaves the active states.

    Args:
        controller: Controller to read state from and report into
        spec: Command and timing policy
    """

    def __init__(self, controller: "LifecycleController", spec: "HealthCheckSpec"):
        self.controller = controller
        self.spec = spec
        self.status = HealthStatus.UNKNOWN
        self.consecutive_failures = 0
        self.skipped_ticks = 0
        self._in_flight = False
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"health-check-{controller.name}"
        )
        self._thread: threading.Thread | None = None

    @property
    def failure_threshold(self) -> int:
        return max(self.spec.retries, 1)

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"health-{self.controller.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling. Never waits for a check that is still running."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("%s: health monitor stopped", self.controller.name)

    def _run(self) -> None:
        if self._stopped.wait(self.spec.start_period):
            return
        while not self._stopped.is_set():
            self.tick()
            if self._stopped.wait(self.spec.interval):
                return

    def tick(self) -> bool:
        """
        Run one health check unless one is already in flight.

        Returns:
            bool: True if a check was run, False if the tick was skipped
        """
        if self._stopped.is_set():
            return False
        if self.controller.current_state() not in ACTIVE_STATES:
            self.stop()
            return False

        with self._lock:
            if self._in_flight:
                self.skipped_ticks += 1
                logger.debug("%s: previous health check still running, skipping tick", self.controller.name)
                return False
            self._in_flight = True

        try:
            future = self._executor.submit(self._run_check)
        except RuntimeError:
            # executor shut down by a concurrent stop()
            self._check_finished()
            return False

        try:
            result = future.result(timeout=self.spec.timeout)
        except concurrent.futures.TimeoutError:
            logger.info("%s: health check timed out after %gs", self.controller.name, self.spec.timeout)
            passed = False
        except concurrent.futures.CancelledError:
            self._check_finished()
            return False
        except SupervisorError as e:
            logger.info("%s: health check could not run: %s", self.controller.name, e)
            passed = False
        else:
            passed = result.ok
            if not passed:
                logger.info(
                    "%s: health check exited with %d: %s",
                    self.controller.name,
                    result.exit_code,
                    result.stderr_text,
                )

        self._record(passed)
        return True

    def _run_check(self) -> "ExecResult":
        # cleared in the worker so the flag is down before the result is visible
        try:
            return self.controller.runtime.exec(self.controller.container_name, self.spec.command)
        finally:
            self._check_finished()

    def _check_finished(self) -> None:
        with self._lock:
            self._in_flight = False

    def _record(self, passed: bool) -> None:
        if self._stopped.is_set():
            return

        if passed:
            self.consecutive_failures = 0
            if self.status is not HealthStatus.HEALTHY:
                self.status = HealthStatus.HEALTHY
                self.controller.report_health(True)
            return

        self.consecutive_failures += 1
        if (
            self.consecutive_failures >= self.failure_threshold
            and self.status is not HealthStatus.UNHEALTHY
        ):
            self.status = HealthStatus.UNHEALTHY
            self.controller.report_health(False)
