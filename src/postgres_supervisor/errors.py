"""
Error taxonomy for the PostgreSQL service supervisor.

Every error raised by the supervisor derives from SupervisorError and carries
a stable ``kind`` and ``exit_code`` so the CLI can report failures consistently.
"""

from typing import Iterable, Sequence


class SupervisorError(Exception):
    """Base class for all supervisor errors."""

    kind = "error"
    exit_code = 1


class ValidationError(SupervisorError):
    """
    Invalid declarative configuration. Never retried.

    Args:
        problems: Every problem found, so the user can fix them in one pass
    """

    kind = "validation"
    exit_code = 2

    def __init__(self, problems: Iterable[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems: list[str] = list(problems)
        super().__init__("; ".join(self.problems))


class AlreadyRunningError(SupervisorError):
    """Raised when start is requested for a service that is not stopped."""

    kind = "already-running"
    exit_code = 3

    def __init__(self, service: str, state: object):
        self.service = service
        self.state = state
        super().__init__(f"Service {service} is already {state}")


class NotHealthyError(SupervisorError):
    """Raised when an operation requires a healthy service."""

    kind = "not-healthy"
    exit_code = 4

    def __init__(self, service: str, state: object):
        self.service = service
        self.state = state
        super().__init__(f"Service {service} is not healthy (state: {state})")


class UnsafeRestoreError(SupervisorError):
    """Raised when a restore targets a service that may be serving traffic."""

    kind = "unsafe-restore"
    exit_code = 5

    def __init__(self, service: str, state: object):
        self.service = service
        self.state = state
        super().__init__(
            f"Refusing to restore into {service} while it is {state}. "
            "Stop the service or put it into maintenance mode first."
        )


class BackupInProgressError(SupervisorError):
    """Raised when a backup or restore is already running for a service."""

    kind = "backup-in-progress"
    exit_code = 6

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"A backup or restore is already running for {service}")


class ExternalToolError(SupervisorError):
    """
    A delegated process or runtime call failed.

    Attributes:
        command: Command that was run, if any
        exit_status: Exit status of the process (None for API failures)
        stderr: Captured diagnostic output
    """

    kind = "external-tool"
    exit_code = 7

    def __init__(
        self,
        message: str,
        command: Sequence[str] | None = None,
        exit_status: int | None = None,
        stderr: str = "",
    ):
        self.command = list(command) if command else []
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(message)


class OperationTimeoutError(SupervisorError, TimeoutError):
    """An operation exceeded its caller-specified bound and was cancelled."""

    kind = "timeout"
    exit_code = 8

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class OperationCancelledError(SupervisorError):
    """An operation observed its cancellation flag and stopped."""

    kind = "cancelled"
    exit_code = 9

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} was cancelled")


class TransientRuntimeError(SupervisorError):
    """The container runtime is momentarily unavailable; the call may be retried."""

    kind = "runtime-unavailable"
    exit_code = 10


class InvalidTransitionError(SupervisorError):
    """A lifecycle transition outside the transition table was attempted."""

    kind = "invalid-transition"
    exit_code = 11

    def __init__(self, previous: object, requested: object, allowed: Iterable[object]):
        self.previous = previous
        self.requested = requested
        allowed_names = ", ".join(sorted(str(state) for state in allowed)) or "none"
        super().__init__(
            f"Invalid transition {previous} -> {requested} (allowed: {allowed_names})"
        )


class UnknownServiceError(SupervisorError):
    """Raised when a service name does not match any managed service."""

    kind = "unknown-service"
    exit_code = 12

    def __init__(self, service: str, available: Iterable[str] = ()):
        self.service = service
        names = ", ".join(sorted(available))
        super().__init__(f"Unknown service {service}. Available services: {names}")


class BackupIntegrityError(SupervisorError):
    """A finished dump does not look like a usable PostgreSQL backup."""

    kind = "backup-integrity"
    exit_code = 13
