import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

from .errors import ValidationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_environment(env_file: str | Path | None = ".env") -> dict[str, str]:
    """
    Build the variable mapping used for compose interpolation.

    Values from the .env file are used unless the process environment already
    defines the variable, matching docker compose precedence.
    """
    values: dict[str, str] = {}
    if env_file and Path(env_file).is_file():
        values.update(
            {key: value for key, value in dotenv_values(env_file).items() if value is not None}
        )
    values.update(os.environ)
    return values


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    """Helper to read a numeric setting with consistent error handling."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a number (got {raw!r})") from None
    if value < 0:
        raise ValidationError(f"{key} must not be negative")
    return value


@dataclass(frozen=True)
class Settings:
    """Supervisor settings read from PGSUP_* environment variables."""

    compose_file: str = "docker-compose.yml"
    env_file: str = ".env"
    backup_dir: str = "backups"
    stop_timeout: float = 10.0
    operation_timeout: float | None = None
    log_level: str = "WARNING"
    runtime_retries: int = 3

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        operation_timeout = _get_float(env, "PGSUP_OPERATION_TIMEOUT", 0.0)
        log_level = (env.get("PGSUP_LOG_LEVEL") or cls.log_level).upper()
        if log_level not in LOG_LEVELS:
            raise ValidationError(f"PGSUP_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return cls(
            compose_file=env.get("PGSUP_COMPOSE_FILE") or cls.compose_file,
            env_file=env.get("PGSUP_ENV_FILE") or cls.env_file,
            backup_dir=env.get("PGSUP_BACKUP_DIR") or cls.backup_dir,
            stop_timeout=_get_float(env, "PGSUP_STOP_TIMEOUT", cls.stop_timeout),
            operation_timeout=operation_timeout or None,
            log_level=log_level,
            runtime_retries=max(1, int(_get_float(env, "PGSUP_RUNTIME_RETRIES", cls.runtime_retries))),
        )
