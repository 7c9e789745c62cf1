"""
Backup and restore coordination.

Dumps are taken with pg_dump and restored with psql, both run inside the
service container. At most one backup or restore runs per service; a second
request fails immediately instead of queueing behind the first.
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import (
    BackupInProgressError,
    BackupIntegrityError,
    ExternalToolError,
    NotHealthyError,
    OperationCancelledError,
    OperationTimeoutError,
    SupervisorError,
    UnsafeRestoreError,
    ValidationError,
)
from .lifecycle import ServiceState

if TYPE_CHECKING:
    from .lifecycle import ControllerRegistry, LifecycleController
    from .runtime import ExecResult

logger = logging.getLogger(__name__)

DUMP_HEADER = "PostgreSQL database dump"

# longest single wait between cancellation checks
WAIT_SLICE = 0.1


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class BackupJob:
    """
    One backup of a managed service.

    Only the status fields change once the job is created.
    """

    service: str
    output_location: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.now)
    status: BackupStatus = BackupStatus.PENDING
    history: list[BackupStatus] = field(default_factory=lambda: [BackupStatus.PENDING])
    finished_at: datetime | None = None
    size_bytes: int | None = None
    estimated_table_count: int | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status in (BackupStatus.SUCCEEDED, BackupStatus.FAILED)

    def mark(self, status: BackupStatus, error: str | None = None) -> None:
        if self.done:
            raise ValueError(f"Backup {self.id} already finished as {self.status}")
        self.status = status
        self.history.append(status)
        if status in (BackupStatus.SUCCEEDED, BackupStatus.FAILED):
            self.finished_at = datetime.now()
        if error:
            self.error = error


def verify_backup_integrity(path: Path) -> dict:
    """
    Check that a dump file looks like a usable plain-format pg_dump output.

    Returns:
        dict: file_size_bytes and estimated_table_count

    Raises:
        BackupIntegrityError: If the file is empty or has no dump header
    """
    size = path.stat().st_size
    if size == 0:
        raise BackupIntegrityError(f"Backup file {path} is empty")

    table_count = 0
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        header = "".join(f.readline() for _ in range(10))
        if DUMP_HEADER not in header:
            raise BackupIntegrityError(
                f"Backup file {path} does not appear to be a valid PostgreSQL dump"
            )
        f.seek(0)
        for line in f:
            if line.startswith("CREATE TABLE"):
                table_count += 1

    return {"file_size_bytes": size, "estimated_table_count": table_count}


class BackupCoordinator:
    """
    Sequences pg_dump / psql runs against managed services.

    Args:
        registry: Controllers of the managed services
        backup_dir: Directory for backups without an explicit output path
    """

    def __init__(self, registry: "ControllerRegistry", backup_dir: str | Path = "backups"):
        self.registry = registry
        self.backup_dir = Path(backup_dir)
        self.jobs: list[BackupJob] = []
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, service: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(service, threading.Lock())

    def _acquire(self, service: str) -> threading.Lock:
        lock = self._lock_for(service)
        if not lock.acquire(blocking=False):
            raise BackupInProgressError(service)
        return lock

    def default_output(self, service: str) -> Path:
        date = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.backup_dir / f"{service}-backup-{date}.sql"

    def backup(
        self,
        service: str,
        output: str | Path | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> BackupJob:
        """
        Dump a healthy service's database to a file on the host.

        Returns:
            BackupJob: The SUCCEEDED job

        Raises:
            NotHealthyError: If the service is not HEALTHY
            BackupInProgressError: If a backup or restore is already running
            ExternalToolError: If pg_dump exits non-zero
            BackupIntegrityError: If the dump does not look valid
            OperationTimeoutError / OperationCancelledError: If interrupted
        """
        controller = self.registry.get(service)
        controller.require_healthy()

        lock = self._acquire(service)
        try:
            destination = Path(output) if output else self.default_output(service)
            job = BackupJob(service=service, output_location=str(destination))
            self.jobs.append(job)
            self._run_backup(controller, job, destination, timeout, cancel)
            return job
        finally:
            lock.release()

    def _run_backup(
        self,
        controller: "LifecycleController",
        job: BackupJob,
        destination: Path,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        spec = controller.spec
        app_name = f"pgsup-backup-{job.id[:12]}"
        command = ["pg_dump", "-U", spec.user, "-d", spec.database]
        partial = destination.with_name(destination.name + ".partial")
        destination.parent.mkdir(parents=True, exist_ok=True)

        job.mark(BackupStatus.RUNNING)
        logger.info("%s: backup %s started -> %s", controller.name, job.id, destination)
        try:
            with open(partial, "wb") as out:
                result = self._stream(
                    controller, command, app_name, stdout=out, timeout=timeout, cancel=cancel
                )
            self._raise_for_exit(result, command, "pg_dump")
            os.replace(partial, destination)
            stats = verify_backup_integrity(destination)
        except SupervisorError as e:
            job.mark(BackupStatus.FAILED, str(e))
            partial.unlink(missing_ok=True)
            if isinstance(e, BackupIntegrityError):
                destination.unlink(missing_ok=True)
            logger.error("%s: backup %s failed: %s", controller.name, job.id, e)
            raise

        job.size_bytes = stats["file_size_bytes"]
        job.estimated_table_count = stats["estimated_table_count"]
        job.mark(BackupStatus.SUCCEEDED)
        logger.info(
            "%s: backup %s finished (%d bytes)", controller.name, job.id, job.size_bytes
        )

    def restore(
        self,
        service: str,
        source: str | Path,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """
        Load a plain SQL dump into a service that is not serving traffic.

        A STOPPED service is started in maintenance mode for the restore and
        stopped again afterwards. A running service must already be in
        maintenance mode.

        Raises:
            UnsafeRestoreError: If the service may be serving traffic
            BackupInProgressError: If a backup or restore is already running
            ValidationError: If the source file does not exist
            ExternalToolError: If psql exits non-zero
            NotHealthyError: If a stopped service does not become healthy in time
            OperationCancelledError: If cancel is set while waiting or restoring
        """
        controller = self.registry.get(service)
        state = controller.current_state()
        if not (state is ServiceState.STOPPED or controller.in_maintenance):
            raise UnsafeRestoreError(service, state)

        source = Path(source)
        if not source.is_file():
            raise ValidationError(f"Restore source {source} not found")

        lock = self._acquire(service)
        try:
            if state is ServiceState.STOPPED:
                self._restore_from_stopped(controller, source, timeout, cancel)
            else:
                self._run_restore(controller, source, timeout, cancel)
        finally:
            lock.release()

    def _restore_from_stopped(
        self,
        controller: "LifecycleController",
        source: Path,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        deadline = time.monotonic() + timeout if timeout is not None else None
        controller.start(maintenance=True)
        try:
            self._wait_until_healthy(controller, deadline, cancel)
            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.0)
            self._run_restore(controller, source, remaining, cancel)
        finally:
            controller.stop()

    def _wait_until_healthy(
        self,
        controller: "LifecycleController",
        deadline: float | None,
        cancel: threading.Event | None,
    ) -> None:
        """Wait in short slices so the cancellation flag is seen promptly."""
        settled = {
            ServiceState.HEALTHY,
            ServiceState.UNHEALTHY,
            ServiceState.FAILED,
            ServiceState.STOPPED,
        }
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"restore of {controller.name}")
            wait = WAIT_SLICE
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    raise NotHealthyError(controller.name, controller.current_state())
            state = controller.wait_for_state(settled, wait)
            if state is ServiceState.HEALTHY:
                return
            if state in settled:
                raise NotHealthyError(controller.name, state)

    def _run_restore(
        self,
        controller: "LifecycleController",
        source: Path,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        spec = controller.spec
        app_name = f"pgsup-restore-{uuid.uuid4().hex[:12]}"
        command = [
            "psql",
            "-v",
            "ON_ERROR_STOP=1",
            "--single-transaction",
            "-U",
            spec.user,
            "-d",
            spec.database,
        ]
        logger.info("%s: restoring from %s", controller.name, source)
        with open(source, "rb") as data:
            result = self._stream(
                controller, command, app_name, stdin=data, timeout=timeout, cancel=cancel
            )
        self._raise_for_exit(result, command, "psql")
        logger.info("%s: restore from %s finished", controller.name, source)

    def _stream(
        self,
        controller: "LifecycleController",
        command: list[str],
        app_name: str,
        **kwargs,
    ) -> "ExecResult":
        env = {"PGAPPNAME": app_name}
        if controller.spec.password:
            env["PGPASSWORD"] = controller.spec.password
        try:
            return controller.runtime.stream(controller.container_name, command, env=env, **kwargs)
        except (OperationTimeoutError, OperationCancelledError):
            self._terminate_session(controller, app_name)
            raise

    def _terminate_session(self, controller: "LifecycleController", app_name: str) -> None:
        """Terminate the server side of an interrupted dump or restore."""
        spec = controller.spec
        sql = (
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE application_name = '{app_name}';"
        )
        command = ["psql", "-U", spec.user, "-d", spec.database, "-Atc", sql]
        try:
            result = controller.runtime.exec(controller.container_name, command)
        except SupervisorError as e:
            logger.warning("%s: could not terminate session %s: %s", controller.name, app_name, e)
            return
        if not result.ok:
            logger.warning(
                "%s: could not terminate session %s: %s",
                controller.name,
                app_name,
                result.stderr_text,
            )

    @staticmethod
    def _raise_for_exit(result: "ExecResult", command: list[str], tool: str) -> None:
        if result.exit_code != 0:
            raise ExternalToolError(
                f"{tool} failed with exit code {result.exit_code}",
                command=command,
                exit_status=result.exit_code,
                stderr=result.stderr_text,
            )
