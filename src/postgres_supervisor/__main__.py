#!/usr/bin/env python3
"""
PostgreSQL service supervisor CLI entry point.
"""

import sys

from rich.console import Console

from .cli import CommandRegistry, build_parser
from .commands import Supervisor
from .env import Settings
from .errors import ExternalToolError, SupervisorError
from .logging_setup import setup_logging


def report_error(console: Console, error: SupervisorError) -> None:
    """Print the error kind, message and any captured diagnostics."""
    console.print(f"Error ({error.kind}): {error}", style="bold red", markup=False, highlight=False)
    if isinstance(error, ExternalToolError) and error.stderr:
        console.print(error.stderr, style="red", markup=False, highlight=False)


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, run the command, and exit with its error kind's code."""
    console = Console()
    err_console = Console(stderr=True)

    try:
        settings = Settings.from_env()
    except SupervisorError as e:
        report_error(err_console, e)
        sys.exit(e.exit_code)

    supervisor = Supervisor(console, settings)
    registry = CommandRegistry()
    parser = build_parser(
        supervisor.command_definitions(),
        registry,
        compose_file=settings.compose_file,
        env_file=settings.env_file,
        log_level=settings.log_level,
    )
    args = parser.parse_args(argv)
    setup_logging(args.log_level, err_console)

    try:
        registry.get_handler(args.command)(args)
    except SupervisorError as e:
        report_error(err_console, e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        err_console.print("Interrupted", style="red")
        sys.exit(130)


if __name__ == "__main__":
    main()
