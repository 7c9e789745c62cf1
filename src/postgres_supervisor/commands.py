"""
Command handlers for the PostgreSQL service supervisor CLI.

Each handler loads and validates the compose file, attaches controllers to
the containers that already exist, and then drives the lifecycle, health and
backup components. CLI concerns stay here; the components never print.
"""

import argparse
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from rich.console import Console
from rich.table import Table

from .backup import BackupCoordinator
from .cli import CommandDefinition
from .compose_inspector import load_compose_file, validate_compose
from .env import Settings, load_environment
from .errors import OperationCancelledError
from .lifecycle import (
    ACTIVE_STATES,
    ControllerRegistry,
    LifecycleController,
    ServiceState,
    StateTransition,
)
from .prompt import confirm_action, select_service
from .runtime import ContainerRuntime, DockerRuntime

_STATE_STYLES = {
    ServiceState.HEALTHY: "green",
    ServiceState.RUNNING: "cyan",
    ServiceState.STARTING: "cyan",
    ServiceState.UNHEALTHY: "yellow",
    ServiceState.STOPPING: "yellow",
    ServiceState.STOPPED: "dim",
    ServiceState.FAILED: "bold red",
}


def _project_name(args: argparse.Namespace, data: dict) -> str:
    raw = args.project_name or data.get("name") or Path(args.file).resolve().parent.name
    return re.sub(r"[^a-z0-9_-]", "", str(raw).lower())


class Supervisor:
    """
    CLI orchestration for managed PostgreSQL services.

    Args:
        console: Rich Console instance for formatted output
        settings: Defaults resolved from the environment
        runtime_factory: Builds the runtime context manager for a project name
    """

    def __init__(
        self,
        console: Console,
        settings: Settings,
        runtime_factory: Callable[[str], ContainerRuntime] = DockerRuntime,
    ) -> None:
        self.console = console
        self.settings = settings
        self.runtime_factory = runtime_factory

    @contextmanager
    def _session(self, args: argparse.Namespace, monitor: bool = False) -> Iterator[ControllerRegistry]:
        """
        Validate the compose file and attach controllers to existing containers.

        Yields:
            ControllerRegistry: One adopted controller per compose service
        """
        data = load_compose_file(args.file, load_environment(args.env_file))
        specs = validate_compose(data)

        with self.runtime_factory(_project_name(args, data)) as runtime:
            registry = ControllerRegistry(runtime, max_attempts=self.settings.runtime_retries)
            try:
                for spec in specs.values():
                    controller = registry.get_or_create(spec)
                    controller.adopt(monitor=monitor)
                    controller.add_listener(self._print_transition(controller))
                yield registry
            finally:
                # monitors must not outlive the runtime they poll through
                for controller in registry:
                    controller.stop_monitoring()

    def _print_transition(self, controller: LifecycleController) -> Callable[[StateTransition], None]:
        def listener(transition: StateTransition) -> None:
            self.console.print(
                f"  {controller.name}: {transition.previous} -> {transition.current}",
                style=_STATE_STYLES.get(transition.current),
                highlight=False,
            )

        return listener

    def _selected(self, registry: ControllerRegistry, names: list[str]) -> list[LifecycleController]:
        if not names:
            return list(registry)
        return [registry.get(name) for name in names]

    def _one(self, registry: ControllerRegistry, name: str | None) -> LifecycleController:
        if name is None:
            name = select_service(registry.names(), "Select a service:")
            if not name:
                raise OperationCancelledError("service selection")
        return registry.get(name)

    def handle_up_command(self, args: argparse.Namespace) -> None:
        """
        Create and start services. Services already running are left alone.

        Without -d the command keeps supervising in the foreground until
        interrupted, then stops the services it supervises.
        """
        with self._session(args, monitor=not args.detach) as registry:
            controllers = self._selected(registry, args.services)
            for controller in controllers:
                if controller.current_state() in ACTIVE_STATES:
                    self.console.print(f"  {controller.name} is already running")
                    continue
                self.console.print(f"  Starting {controller.name}...")
                controller.start()

            if args.detach:
                self.console.print("  Services started.", style="bold green")
                return

            self.console.print("  Supervising services, press Ctrl+C to stop.")
            try:
                for controller in controllers:
                    controller.wait_for_state({ServiceState.STOPPED, ServiceState.FAILED})
            except KeyboardInterrupt:
                self.console.print("  Stopping services...")
                for controller in controllers:
                    controller.stop(self.settings.stop_timeout)

    def handle_down_command(self, args: argparse.Namespace) -> None:
        """Stop and remove service containers, and optionally their named volumes."""
        with self._session(args) as registry:
            controllers = self._selected(registry, args.services)
            if args.volumes and not args.yes:
                names = ", ".join(v for c in controllers for v in c.spec.named_volumes) or "none"
                if not confirm_action(f"Remove named volumes ({names})? All their data will be lost."):
                    raise OperationCancelledError("down")

            for controller in controllers:
                state = controller.stop(args.timeout)
                if state is ServiceState.FAILED:
                    controller.reset()
                registry.runtime.remove(controller.container_name, volumes=args.volumes)
                if args.volumes:
                    for volume in controller.spec.named_volumes:
                        registry.runtime.remove_volume(volume)
                self.console.print(f"  Removed {controller.name}")

    def handle_ps_command(self, args: argparse.Namespace) -> None:
        """List services with their lifecycle state."""
        with self._session(args) as registry:
            table = Table(title="Services")
            table.add_column("Service")
            table.add_column("Container")
            table.add_column("State")
            table.add_column("Ports")
            for controller in registry:
                state = controller.current_state()
                ports = ", ".join(
                    f"{p.host_port}->{p.container_port}/{p.protocol}"
                    if p.host_port
                    else f"{p.container_port}/{p.protocol}"
                    for p in controller.spec.ports
                )
                table.add_row(
                    controller.name,
                    controller.container_name,
                    f"[{_STATE_STYLES[state]}]{state}[/]",
                    ports,
                )
            self.console.print(table)

    def handle_logs_command(self, args: argparse.Namespace) -> None:
        """Print (and optionally follow) a service's container logs."""
        with self._session(args) as registry:
            controller = self._one(registry, args.service)
            try:
                for chunk in registry.runtime.logs(controller.container_name, follow=args.follow):
                    self.console.out(chunk.decode("utf-8", errors="replace"), end="", highlight=False)
            except KeyboardInterrupt:
                return

    def handle_start_command(self, args: argparse.Namespace) -> None:
        """Start stopped services. Fails if a service is already running."""
        with self._session(args) as registry:
            for controller in self._selected(registry, args.services):
                controller.start()

    def handle_stop_command(self, args: argparse.Namespace) -> None:
        """Stop running services without removing them."""
        with self._session(args) as registry:
            for controller in self._selected(registry, args.services):
                controller.stop(args.timeout)

    def handle_restart_command(self, args: argparse.Namespace) -> None:
        """Restart services."""
        with self._session(args) as registry:
            for controller in self._selected(registry, args.services):
                controller.restart(args.timeout)

    def handle_backup_command(self, args: argparse.Namespace) -> None:
        """Dump a healthy service's database to a file."""
        with self._session(args) as registry:
            controller = self._one(registry, args.service)
            coordinator = BackupCoordinator(registry, self.settings.backup_dir)
            self.console.print(f"  Backing up {controller.name}...")
            job = coordinator.backup(
                controller.name,
                args.outfile,
                timeout=args.operation_timeout or self.settings.operation_timeout,
            )
            self.console.print(
                f"  Backup {job.id[:12]} {job.status}: {job.output_location} "
                f"({job.size_bytes} bytes, ~{job.estimated_table_count} tables)",
                style="bold green",
            )

    def handle_restore_command(self, args: argparse.Namespace) -> None:
        """
        Restore a plain SQL dump.

        A stopped service is started in maintenance mode for the restore. A
        running service needs --maintenance to be restored in place.
        """
        with self._session(args) as registry:
            controller = self._one(registry, args.service)
            coordinator = BackupCoordinator(registry, self.settings.backup_dir)
            timeout = args.operation_timeout or self.settings.operation_timeout

            if not args.yes and not confirm_action(
                f"Restore {args.infile} into database '{controller.spec.database}' "
                f"of {controller.name}?"
            ):
                raise OperationCancelledError("restore")

            self.console.print(f"  Restoring {args.infile} into {controller.name}...")
            if args.maintenance and controller.current_state() is not ServiceState.STOPPED:
                with controller.maintenance():
                    coordinator.restore(controller.name, args.infile, timeout=timeout)
            else:
                coordinator.restore(controller.name, args.infile, timeout=timeout)
            self.console.print("  Restore completed successfully!", style="bold green")

    def command_definitions(self) -> list[CommandDefinition]:
        """Definitions of every CLI command, in help order."""

        def services(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("services", nargs="*", help="Services (default: all)")

        def grace(parser: argparse.ArgumentParser) -> None:
            parser.add_argument(
                "-t",
                "--timeout",
                type=float,
                default=self.settings.stop_timeout,
                help="Shutdown grace period in seconds (default: %(default)s)",
            )

        def operation_timeout(parser: argparse.ArgumentParser) -> None:
            parser.add_argument(
                "--timeout",
                dest="operation_timeout",
                type=float,
                default=None,
                help="Cancel the operation after this many seconds",
            )

        def configure_up(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("-d", "--detach", action="store_true", help="Run in the background")
            services(parser)

        def configure_down(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("-v", "--volumes", action="store_true", help="Remove named volumes")
            parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
            grace(parser)
            services(parser)

        def configure_logs(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("-f", "--follow", action="store_true", help="Follow log output")
            parser.add_argument("service", nargs="?", help="Service name")

        def configure_stop(parser: argparse.ArgumentParser) -> None:
            grace(parser)
            services(parser)

        def configure_backup(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("service", help="Service name")
            parser.add_argument("outfile", nargs="?", help="Dump file (default: timestamped file in the backup directory)")
            operation_timeout(parser)

        def configure_restore(parser: argparse.ArgumentParser) -> None:
            parser.add_argument("service", help="Service name")
            parser.add_argument("infile", help="Plain SQL dump to restore")
            parser.add_argument(
                "--maintenance",
                action="store_true",
                help="Put a running service into maintenance mode for the restore",
            )
            parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
            operation_timeout(parser)

        return [
            CommandDefinition("up", "Create and start services", self.handle_up_command, configure_up),
            CommandDefinition("down", "Stop and remove services", self.handle_down_command, configure_down),
            CommandDefinition("ps", "List services", self.handle_ps_command),
            CommandDefinition("logs", "Show service logs", self.handle_logs_command, configure_logs),
            CommandDefinition("restart", "Restart services", self.handle_restart_command, configure_stop),
            CommandDefinition("stop", "Stop services", self.handle_stop_command, configure_stop),
            CommandDefinition("start", "Start services", self.handle_start_command, services),
            CommandDefinition("backup", "Back up a service's database", self.handle_backup_command, configure_backup),
            CommandDefinition("restore", "Restore a service's database", self.handle_restore_command, configure_restore),
        ]
