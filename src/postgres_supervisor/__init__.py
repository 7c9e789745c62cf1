"""
PostgreSQL service supervisor for Docker Compose deployments.

Manages one PostgreSQL container per compose service through the Docker
engine's existing control interface:

- compose_inspector: Declarative configuration loading and validation
- lifecycle: Start/stop/restart state machine with an explicit transition table
- health: Background health-check polling reporting into the lifecycle
- backup: pg_dump / psql coordination with one operation per service at a time
- runtime: Container runtime capability interface and its Docker implementation
"""

from .backup import BackupCoordinator, BackupJob, BackupStatus
from .compose_inspector import (
    HealthCheckSpec,
    PortMapping,
    ResourceLimits,
    ServiceSpec,
    VolumeMount,
    load_compose_file,
    parse_docker_compose,
    validate,
    validate_compose,
)
from .errors import (
    AlreadyRunningError,
    BackupInProgressError,
    BackupIntegrityError,
    ExternalToolError,
    InvalidTransitionError,
    NotHealthyError,
    OperationCancelledError,
    OperationTimeoutError,
    SupervisorError,
    TransientRuntimeError,
    UnknownServiceError,
    UnsafeRestoreError,
    ValidationError,
)
from .health import HealthMonitor
from .lifecycle import ControllerRegistry, LifecycleController, ServiceState
from .runtime import ContainerRuntime, ContainerStatus, DockerRuntime, ExecResult

__all__ = [
    # Configuration
    "HealthCheckSpec",
    "PortMapping",
    "ResourceLimits",
    "ServiceSpec",
    "VolumeMount",
    "load_compose_file",
    "parse_docker_compose",
    "validate",
    "validate_compose",
    # Lifecycle and health
    "ControllerRegistry",
    "LifecycleController",
    "ServiceState",
    "HealthMonitor",
    # Backup and restore
    "BackupCoordinator",
    "BackupJob",
    "BackupStatus",
    # Runtime
    "ContainerRuntime",
    "ContainerStatus",
    "DockerRuntime",
    "ExecResult",
    # Errors
    "AlreadyRunningError",
    "BackupInProgressError",
    "BackupIntegrityError",
    "ExternalToolError",
    "InvalidTransitionError",
    "NotHealthyError",
    "OperationCancelledError",
    "OperationTimeoutError",
    "SupervisorError",
    "TransientRuntimeError",
    "UnknownServiceError",
    "UnsafeRestoreError",
    "ValidationError",
]
