"""
Docker Compose configuration loading and validation.

Turns the declarative service definitions of a compose file into immutable
ServiceSpec objects. Validation is pure: it never talks to Docker, and it
reports every problem it finds at once through a single ValidationError.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Collection, Mapping

import yaml

from .errors import ValidationError

DEFAULT_USER = "postgres"
DEFAULT_INTERVAL = 30.0
DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRIES = 3

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(us|ms|s|m|h)")
_PLAIN_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_MEMORY = re.compile(r"^(\d+(?:\.\d+)?)\s*([bkmgt]?)b?$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_DURATION_UNITS = {"us": 0.000001, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_CONTAINER_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")
_INTERPOLATION = re.compile(
    r"\$(?:(?P<escaped>\$)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-?])(?P<arg>[^}]*))?\}"
    r"|(?P<named>[A-Za-z_][A-Za-z0-9_]*))"
)


@dataclass(frozen=True)
class PortMapping:
    """A container port and, when published, the host port it is mapped to."""

    container_port: int
    host_port: int | None = None
    host_ip: str | None = None
    protocol: str = "tcp"

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {"target": self.container_port, "protocol": self.protocol}
        if self.host_port is not None:
            raw["published"] = self.host_port
        if self.host_ip:
            raw["host_ip"] = self.host_ip
        return raw


@dataclass(frozen=True)
class VolumeMount:
    """
    A volume or bind mount.

    Attributes:
        source: Volume name, host path, or None for an anonymous volume
        target: Container mount path (e.g., "/var/lib/postgresql/data")
        kind: "volume" or "bind"
        read_only: Whether the mount is read only
    """

    source: str | None
    target: str
    kind: str = "volume"
    read_only: bool = False

    @property
    def is_named_volume(self) -> bool:
        return self.kind == "volume" and bool(self.source)

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {"type": self.kind, "target": self.target}
        if self.source:
            raw["source"] = self.source
        if self.read_only:
            raw["read_only"] = True
        return raw


@dataclass(frozen=True)
class ResourceLimits:
    """Resource limits from deploy.resources.limits."""

    memory_bytes: int | None = None
    cpus: float | None = None

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {}
        if self.memory_bytes is not None:
            raw["memory"] = self.memory_bytes
        if self.cpus is not None:
            raw["cpus"] = self.cpus
        return raw


@dataclass(frozen=True)
class HealthCheckSpec:
    """Health check command and timing policy. Durations are in seconds."""

    command: tuple[str, ...]
    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    start_period: float = 0.0

    def to_raw(self) -> dict[str, Any]:
        return {
            "test": ["CMD", *self.command],
            "interval": format_duration(self.interval),
            "timeout": format_duration(self.timeout),
            "retries": self.retries,
            "start_period": format_duration(self.start_period),
        }


@dataclass(frozen=True)
class ServiceSpec:
    """
    Validated, immutable definition of one managed PostgreSQL service.

    The database credentials are derived from the environment with the
    defaults the official image applies.
    """

    name: str
    image: str
    container_name: str
    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    ports: tuple[PortMapping, ...] = ()
    volumes: tuple[VolumeMount, ...] = ()
    networks: tuple[str, ...] = ()
    limits: ResourceLimits | None = None
    healthcheck: HealthCheckSpec | None = None
    database: str = DEFAULT_USER
    user: str = DEFAULT_USER
    password: str | None = None
    multiple_databases: str | None = None

    @property
    def host_ports(self) -> frozenset[int]:
        return frozenset(p.host_port for p in self.ports if p.host_port is not None)

    @property
    def named_volumes(self) -> list[str]:
        return [v.source for v in self.volumes if v.is_named_volume and v.source]

    def to_raw(self) -> dict[str, Any]:
        """Return the canonical compose mapping for this service."""
        raw: dict[str, Any] = {
            "image": self.image,
            "container_name": self.container_name,
            "environment": dict(self.environment),
            "ports": [port.to_raw() for port in self.ports],
            "volumes": [volume.to_raw() for volume in self.volumes],
            "networks": list(self.networks),
        }
        if self.limits is not None:
            raw["deploy"] = {"resources": {"limits": self.limits.to_raw()}}
        if self.healthcheck is not None:
            raw["healthcheck"] = self.healthcheck.to_raw()
        return raw


def parse_duration(value: Any) -> float:
    """
    Parse a compose duration ("1m30s", "10s", "500ms") or a number of seconds.

    Raises:
        ValueError: If the value is malformed or negative
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.startswith("-"):
            raise ValueError(f"duration {value!r} must not be negative")
        try:
            return float(text)
        except ValueError:
            pass
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ValueError(f"invalid duration {value!r}")
        seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    else:
        raise ValueError(f"invalid duration {value!r}")

    if seconds < 0:
        raise ValueError(f"duration {value!r} must not be negative")
    return seconds


def format_duration(seconds: float) -> str | float:
    """Format seconds so that parse_duration reads back exactly the same value."""
    text = repr(float(seconds))
    if text.endswith(".0"):
        text = text[:-2]
    if not _PLAIN_NUMBER.match(text):
        # exponent notation has no compose spelling
        return float(seconds)
    return f"{text}s"


def parse_memory(value: Any) -> int:
    """
    Parse a memory size ("512M", "1g", "1048576") into bytes.

    Raises:
        ValueError: If the value is malformed or negative
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid memory size {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"memory limit {value!r} must not be negative")
        return int(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid memory size {value!r}")
    if value.strip().startswith("-"):
        raise ValueError(f"memory limit {value!r} must not be negative")
    match = _MEMORY.match(value.strip())
    if not match:
        raise ValueError(f"invalid memory size {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


def interpolate(value: Any, env: Mapping[str, str]) -> Any:
    """
    Substitute ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:?err} and $VAR
    references recursively. "$$" yields a literal "$".

    Raises:
        ValidationError: If a required variable is missing
    """
    if isinstance(value, dict):
        return {key: interpolate(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, env) for item in value]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match) -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("braced") or match.group("named")
        op = match.group("op")
        arg = match.group("arg") or ""
        current = env.get(name)
        if op is None:
            return current or ""
        unset_or_empty = not current if op.startswith(":") else current is None
        if op.endswith("-"):
            return arg if unset_or_empty else current
        if unset_or_empty:
            raise ValidationError(arg or f"required variable {name} is missing")
        return current

    return _INTERPOLATION.sub(replace, value)


def _parse_environment(raw: Any, problems: list[str]) -> dict[str, str]:
    environment: dict[str, str] = {}
    if raw is None:
        return environment
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            key, sep, value = str(entry).partition("=")
            items.append((key, value if sep else None))
    else:
        problems.append("environment must be a mapping or a list")
        return environment

    for key, value in items:
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        environment[str(key)] = str(value)
    return environment


def _parse_port_number(text: Any, what: str) -> int:
    if isinstance(text, str) and "-" in text:
        raise ValueError(f"port ranges are not supported ({text})")
    try:
        port = int(text)
    except (TypeError, ValueError):
        raise ValueError(f"invalid {what} {text!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"{what} {port} is outside 1-65535")
    return port


def _parse_port(entry: Any) -> PortMapping:
    if isinstance(entry, dict):
        published = entry.get("published")
        return PortMapping(
            container_port=_parse_port_number(entry.get("target"), "container port"),
            host_port=(
                _parse_port_number(published, "host port")
                if published not in (None, "")
                else None
            ),
            host_ip=entry.get("host_ip") or None,
            protocol=str(entry.get("protocol", "tcp")),
        )

    text = str(entry)
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)
    parts = text.split(":")
    if len(parts) == 1:
        return PortMapping(_parse_port_number(parts[0], "container port"), protocol=protocol)
    if len(parts) == 2:
        host_ip, host, container = None, parts[0], parts[1]
    elif len(parts) == 3:
        host_ip, host, container = parts
    else:
        raise ValueError(f"invalid port mapping {entry!r}")
    return PortMapping(
        container_port=_parse_port_number(container, "container port"),
        host_port=_parse_port_number(host, "host port") if host else None,
        host_ip=host_ip or None,
        protocol=protocol,
    )


def _is_host_path(source: str) -> bool:
    return source.startswith(("/", ".", "~"))


def _parse_volume(entry: Any) -> VolumeMount:
    if isinstance(entry, dict):
        target = entry.get("target")
        source = entry.get("source") or None
        kind = entry.get("type", "volume")
        if kind not in ("volume", "bind"):
            raise ValueError(f"unsupported mount type {kind!r}")
        read_only = bool(entry.get("read_only", False))
    else:
        parts = str(entry).split(":")
        if len(parts) == 1:
            source, target, mode = None, parts[0], ""
        elif len(parts) == 2:
            source, target, mode = parts[0], parts[1], ""
        elif len(parts) == 3:
            source, target, mode = parts
        else:
            raise ValueError(f"invalid volume {entry!r}")
        kind = "bind" if source and _is_host_path(source) else "volume"
        read_only = "ro" in mode.split(",")

    if not target or not str(target).startswith("/"):
        raise ValueError(f"volume target must be an absolute path ({entry!r})")
    if kind == "bind" and not source:
        raise ValueError(f"bind mount needs a source ({entry!r})")
    return VolumeMount(source=source, target=str(target), kind=kind, read_only=read_only)


def _parse_limits(raw: Any, problems: list[str]) -> ResourceLimits | None:
    if not isinstance(raw, dict):
        return None
    resources = raw.get("resources")
    limits = resources.get("limits") if isinstance(resources, dict) else None
    if not limits:
        return None

    memory_bytes = None
    cpus = None
    if limits.get("memory") is not None:
        try:
            memory_bytes = parse_memory(limits["memory"])
        except ValueError as e:
            problems.append(str(e))
    if limits.get("cpus") is not None:
        try:
            cpus = float(limits["cpus"])
        except (TypeError, ValueError):
            problems.append(f"invalid cpus limit {limits['cpus']!r}")
        else:
            if cpus < 0:
                problems.append(f"cpus limit {cpus:g} must not be negative")
    return ResourceLimits(memory_bytes=memory_bytes, cpus=cpus)


def _parse_healthcheck(raw: Any, problems: list[str]) -> HealthCheckSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        problems.append("healthcheck must be a mapping")
        return None
    if raw.get("disable"):
        return None

    test = raw.get("test")
    command: tuple[str, ...]
    if isinstance(test, str):
        command = ("/bin/sh", "-c", test) if test.strip() else ()
    elif isinstance(test, list) and test:
        head, rest = str(test[0]), [str(part) for part in test[1:]]
        if head == "NONE":
            return None
        if head == "CMD":
            command = tuple(rest)
        elif head == "CMD-SHELL":
            command = ("/bin/sh", "-c", " ".join(rest)) if rest else ()
        else:
            problems.append(f"healthcheck test must start with CMD, CMD-SHELL or NONE (got {head!r})")
            return None
    else:
        command = ()
    if not command:
        problems.append("healthcheck test command is empty")

    timings = {}
    for key, default in (
        ("interval", DEFAULT_INTERVAL),
        ("timeout", DEFAULT_TIMEOUT),
        ("start_period", 0.0),
    ):
        try:
            timings[key] = parse_duration(raw[key]) if raw.get(key) is not None else default
        except ValueError as e:
            problems.append(f"healthcheck {key}: {e}")
            timings[key] = default

    retries = raw.get("retries", DEFAULT_RETRIES)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        problems.append(f"healthcheck retries must be a non-negative integer (got {retries!r})")
        retries = DEFAULT_RETRIES

    if timings["interval"] <= 0:
        problems.append("healthcheck interval must be positive")
    if timings["timeout"] >= timings["interval"]:
        problems.append(
            f"healthcheck timeout ({format_duration(timings['timeout'])}) must be "
            f"shorter than interval ({format_duration(timings['interval'])})"
        )

    return HealthCheckSpec(
        command=command,
        interval=timings["interval"],
        timeout=timings["timeout"],
        retries=retries,
        start_period=timings["start_period"],
    )


def validate(
    raw: Mapping[str, Any],
    name: str | None = None,
    reserved_ports: Collection[int] = (),
) -> ServiceSpec:
    """
    Validate one compose service definition.

    Args:
        raw: Service mapping as found under "services" in a compose file
        name: Compose service name; defaults to container_name
        reserved_ports: Host ports already mapped by other services

    Returns:
        ServiceSpec: Immutable validated definition

    Raises:
        ValidationError: With every problem found in the definition
    """
    problems: list[str] = []
    if not isinstance(raw, Mapping):
        raise ValidationError("service definition must be a mapping")

    image = raw.get("image")
    if not isinstance(image, str) or not image.strip():
        problems.append("image reference must not be empty")
        image = ""
    elif any(ch.isspace() for ch in image):
        problems.append(f"image reference {image!r} must not contain whitespace")

    name = name or raw.get("container_name")
    if not name:
        problems.append("service name is required")
        name = ""
    container_name = str(raw.get("container_name") or name)
    if container_name and not _CONTAINER_NAME.match(container_name):
        problems.append(f"invalid container name {container_name!r}")

    environment = _parse_environment(raw.get("environment"), problems)
    user = environment.get("POSTGRES_USER") or DEFAULT_USER
    database = environment.get("POSTGRES_DB") or user
    password = environment.get("POSTGRES_PASSWORD") or None
    if password is None:
        problems.append("POSTGRES_PASSWORD must be set; no default password is applied")

    ports: list[PortMapping] = []
    seen_host_ports: set[int] = set()
    reserved = set(reserved_ports)
    for entry in raw.get("ports") or []:
        try:
            port = _parse_port(entry)
        except ValueError as e:
            problems.append(str(e))
            continue
        if port.host_port is not None:
            if port.host_port in seen_host_ports:
                problems.append(f"host port {port.host_port} is mapped more than once")
            elif port.host_port in reserved:
                problems.append(f"host port {port.host_port} is already mapped by another service")
            seen_host_ports.add(port.host_port)
        ports.append(port)

    volumes: list[VolumeMount] = []
    for entry in raw.get("volumes") or []:
        try:
            volumes.append(_parse_volume(entry))
        except ValueError as e:
            problems.append(str(e))

    # list form and mapping form both iterate over network names
    networks = tuple(str(n) for n in raw.get("networks") or [])

    limits = _parse_limits(raw.get("deploy"), problems)
    healthcheck = _parse_healthcheck(raw.get("healthcheck"), problems)

    if problems:
        raise ValidationError([f"{name}: {p}" if name else p for p in problems])

    return ServiceSpec(
        name=name,
        image=image,
        container_name=container_name,
        environment=MappingProxyType(environment),
        ports=tuple(ports),
        volumes=tuple(volumes),
        networks=networks,
        limits=limits,
        healthcheck=healthcheck,
        database=database,
        user=user,
        password=password,
        multiple_databases=environment.get("POSTGRES_MULTIPLE_DATABASES"),
    )


def validate_compose(data: Mapping[str, Any]) -> dict[str, ServiceSpec]:
    """
    Validate every service in a loaded compose mapping.

    Host ports are reserved across services in declaration order so a port
    mapped by two services is reported on the second one.

    Raises:
        ValidationError: With the problems of every invalid service
    """
    services = data.get("services") or {}
    if not isinstance(services, dict):
        raise ValidationError("services must be a mapping")

    specs: dict[str, ServiceSpec] = {}
    problems: list[str] = []
    reserved: set[int] = set()
    for service_name, raw in services.items():
        try:
            spec = validate(raw or {}, name=service_name, reserved_ports=reserved)
        except ValidationError as e:
            problems.extend(e.problems)
            continue
        reserved |= spec.host_ports
        specs[service_name] = spec

    if problems:
        raise ValidationError(problems)
    return specs


def load_compose_file(path: str | Path, env: Mapping[str, str] | None = None) -> dict:
    """
    Read a compose file and interpolate variable references.

    Raises:
        ValidationError: If the file is missing, not valid YAML, not a mapping,
            or references a required variable that is not set
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ValidationError(f"compose file {path} not found") from None
    except yaml.YAMLError as e:
        raise ValidationError(f"compose file {path} is not valid YAML: {e}") from e

    if data is None:
        return {"services": {}}
    if not isinstance(data, dict):
        raise ValidationError(f"compose file {path} must contain a mapping")
    return interpolate(data, env or {})


def parse_docker_compose(
    path: str | Path, env: Mapping[str, str] | None = None
) -> dict[str, ServiceSpec]:
    """Load, interpolate and validate a compose file in one step."""
    return validate_compose(load_compose_file(path, env))
