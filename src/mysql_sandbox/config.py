"""Configuration loader for mysql-sandbox.

Values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``~/.config/mysql-sandbox/config.yml`` (or an override path).
3. Environment variables prefixed with ``MYSQL_SANDBOX_``.
4. Explicit overrides supplied programmatically (CLI flags, test fixtures).

Environment keys use double underscores to express nesting, e.g.::

    export MYSQL_SANDBOX_PORT=3307
    export MYSQL_SANDBOX_READINESS__TIMEOUT=30

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The result is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load mysql-sandbox configuration. Install with "
        "`pip install mysql-sandbox` or ensure PyYAML>=6.0 is available."
    ) from exc

from .readiness import CONNECTORS

ENV_PREFIX = "MYSQL_SANDBOX_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ReadinessConfig:
    """Readiness probe policy."""

    timeout: float = 10.0
    poll_interval: float = 0.1
    connector: str = "mysql"
    connect_timeout: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "poll_interval": self.poll_interval,
            "connector": self.connector,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class CleanupConfig:
    """Directory removal retry policy."""

    timeout: float = 0.5
    retry_interval: float = 0.05

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "retry_interval": self.retry_interval}


@dataclass(frozen=True)
class ProcessConfig:
    """Server process handling."""

    exit_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"exit_timeout": self.exit_timeout}


@dataclass(frozen=True)
class SandboxConfig:
    """Resolved configuration values for mysql-sandbox."""

    config_file: Path
    base_dir: Path
    port: int
    server_binary: Path | None
    share_files: tuple[Path, ...]
    executable_name: str
    registry_file: Path
    logs_dir: Path
    extra_args: tuple[str, ...]
    readiness: ReadinessConfig
    cleanup: CleanupConfig
    process: ProcessConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_dir": str(self.base_dir),
            "port": self.port,
            "server_binary": str(self.server_binary) if self.server_binary else None,
            "share_files": [str(path) for path in self.share_files],
            "executable_name": self.executable_name,
            "registry_file": str(self.registry_file),
            "logs_dir": str(self.logs_dir),
            "extra_args": list(self.extra_args),
            "readiness": self.readiness.to_dict(),
            "cleanup": self.cleanup.to_dict(),
            "process": self.process.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/mysql-sandbox/config.yml",
    "base_dir": None,  # derived from the system temp directory when absent
    "port": 3306,
    "server_binary": None,
    "share_files": [],
    "executable_name": "mysqld_test",
    "registry_file": None,  # derived from base_dir when absent
    "logs_dir": None,  # derived from base_dir when absent
    "extra_args": [],
    "readiness": {
        "timeout": 10.0,
        "poll_interval": 0.1,
        "connector": "mysql",
        "connect_timeout": 1.0,
    },
    "cleanup": {
        "timeout": 0.5,
        "retry_interval": 0.05,
    },
    "process": {
        "exit_timeout": 10.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    "readiness": {"timeout", "poll_interval", "connector", "connect_timeout"},
    "cleanup": {"timeout", "retry_interval"},
    "process": {"exit_timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> SandboxConfig:
    """Load and merge configuration sources into a :class:`SandboxConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    readiness = _as_dict(raw.get("readiness"), "readiness")
    connector = readiness.get("connector")
    if connector is not None and str(connector) not in CONNECTORS:
        allowed_connectors = ", ".join(sorted(CONNECTORS))
        raise ConfigError(
            f"Unsupported readiness connector '{connector}'. Allowed: {allowed_connectors}."
        )


def _build_config(raw: Mapping[str, object]) -> SandboxConfig:
    config_file = _to_path(raw.get("config_file"))

    base_dir_value = raw.get("base_dir")
    base_dir = (
        _to_path(base_dir_value)
        if base_dir_value
        else Path(tempfile.gettempdir()) / "mysql-sandbox"
    )

    port = _expect_int(raw.get("port"), "port", default=3306)
    if not 1 <= port <= 65535:
        raise ConfigError(f"port must be between 1 and 65535. Got {port}.")

    binary_value = raw.get("server_binary")
    server_binary = _to_path(binary_value) if binary_value else None

    share_files = tuple(
        _to_path(item)
        for item in _as_sequence(raw.get("share_files") or [], "share_files")
    )

    executable_name = str(raw.get("executable_name") or "").strip()
    if not executable_name:
        raise ConfigError("executable_name must be a non-empty string.")
    if "/" in executable_name or "\\" in executable_name:
        raise ConfigError("executable_name must be a file name, not a path.")

    registry_value = raw.get("registry_file")
    registry_file = _to_path(registry_value) if registry_value else base_dir / "running_instances"

    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else base_dir / "logs"

    extra_args = tuple(
        str(item) for item in _as_sequence(raw.get("extra_args") or [], "extra_args")
    )

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    readiness = ReadinessConfig(
        timeout=_expect_positive_float(
            readiness_mapping.get("timeout"), "readiness.timeout", default=10.0
        ),
        poll_interval=_expect_positive_float(
            readiness_mapping.get("poll_interval"), "readiness.poll_interval", default=0.1
        ),
        connector=str(readiness_mapping.get("connector", "mysql")),
        connect_timeout=_expect_positive_float(
            readiness_mapping.get("connect_timeout"), "readiness.connect_timeout", default=1.0
        ),
    )

    cleanup_mapping = _as_dict(raw.get("cleanup"), "cleanup")
    cleanup = CleanupConfig(
        timeout=_expect_positive_float(
            cleanup_mapping.get("timeout"), "cleanup.timeout", default=0.5
        ),
        retry_interval=_expect_positive_float(
            cleanup_mapping.get("retry_interval"), "cleanup.retry_interval", default=0.05
        ),
    )

    process_mapping = _as_dict(raw.get("process"), "process")
    process = ProcessConfig(
        exit_timeout=_expect_positive_float(
            process_mapping.get("exit_timeout"), "process.exit_timeout", default=10.0
        ),
    )

    return SandboxConfig(
        config_file=config_file,
        base_dir=base_dir,
        port=port,
        server_binary=server_binary,
        share_files=share_files,
        executable_name=executable_name,
        registry_file=registry_file,
        logs_dir=logs_dir,
        extra_args=extra_args,
        readiness=readiness,
        cleanup=cleanup,
        process=process,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "CleanupConfig",
    "ConfigError",
    "ProcessConfig",
    "ReadinessConfig",
    "SandboxConfig",
    "load_config",
]
