"""
CLI infrastructure for the PostgreSQL service supervisor.

Contains command definitions, the handler registry, and parser construction.
"""

import argparse
from typing import Callable, Iterable, NamedTuple, Optional, Protocol

from .env import LOG_LEVELS


class CommandHandler(Protocol):
    """Protocol for command handler functions."""

    def __call__(self, _args: argparse.Namespace) -> None: ...


class CommandDefinition(NamedTuple):
    """Definition of a CLI command."""

    name: str
    help_text: str
    handler: CommandHandler
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None


class CommandRegistry:
    """Registry for CLI command handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, command: str, handler: CommandHandler) -> None:
        """Register a command handler."""
        if command in self._handlers:
            raise ValueError(f"Command '{command}' is already registered")
        self._handlers[command] = handler

    def get_handler(self, command: str) -> CommandHandler:
        """Get a handler for the given command."""
        if command not in self._handlers:
            available = ", ".join(self.get_available_commands())
            raise ValueError(
                f"Unknown command '{command}'. Available commands: {available}"
            )
        return self._handlers[command]

    def get_available_commands(self) -> list[str]:
        """Get list of available commands."""
        return sorted(self._handlers.keys())

    def is_registered(self, command: str) -> bool:
        """Check if a command is registered."""
        return command in self._handlers


def build_parser(
    definitions: Iterable[CommandDefinition],
    registry: CommandRegistry,
    compose_file: str = "docker-compose.yml",
    env_file: str = ".env",
    log_level: str = "WARNING",
) -> argparse.ArgumentParser:
    """
    Build the argument parser and register every command's handler.

    Args:
        definitions: Commands to expose
        registry: Registry receiving the handlers
        compose_file: Default compose file
        env_file: Default .env file used for variable interpolation
        log_level: Default log level
    """
    parser = argparse.ArgumentParser(
        prog="postgres-supervisor",
        description="Supervise PostgreSQL containers declared in a Docker Compose file.",
    )
    parser.add_argument(
        "-f", "--file", default=compose_file, help="Compose file (default: %(default)s)"
    )
    parser.add_argument(
        "--env-file", default=env_file, help="Variables for interpolation (default: %(default)s)"
    )
    parser.add_argument(
        "-p", "--project-name", default=None, help="Project name (default: compose name or directory)"
    )
    parser.add_argument(
        "--log-level",
        default=log_level,
        choices=LOG_LEVELS,
        type=str.upper,
        help="Log level (default: %(default)s)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="command")
    for definition in definitions:
        subparser = subparsers.add_parser(definition.name, help=definition.help_text)
        if definition.configure is not None:
            definition.configure(subparser)
        registry.register(definition.name, definition.handler)

    return parser
