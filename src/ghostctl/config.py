"""Configuration loader for ghostctl.

This module centralises the logic for reading the tool's own configuration
values from multiple sources:

1. Built-in defaults.
2. ``/etc/ghostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``GHOSTCTL_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GHOSTCTL_SYSTEMD__SYSTEMCTL_BIN=/usr/bin/systemctl
    export GHOSTCTL_ALLOW_PROMPT=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

Per-instance settings (the ``process`` key, the blog URL, database settings)
are *not* handled here; see :mod:`ghostctl.instance`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import UsageError

ENV_PREFIX = "GHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}NODE_VERSION_CHECK",
}


class ConfigFileError(UsageError):
    """Raised when the ghostctl configuration file or overrides are invalid."""


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/lib/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class NginxConfig:
    """Locations used when linking nginx site configurations."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
        }


@dataclass(frozen=True)
class LocalProcessConfig:
    """Settings for the detached local process manager."""

    run_command: tuple[str, ...] = ("ghostctl", "run")
    pid_file: str = ".ghostpid"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"run_command": list(self.run_command), "pid_file": self.pid_file}


@dataclass(frozen=True)
class DoctorConfig:
    """Thresholds used by the built-in doctor checks."""

    min_memory_mb: int = 150
    min_free_space_mb: int = 1024
    node_versions: str = ">=18.12.1,<23"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "min_memory_mb": self.min_memory_mb,
            "min_free_space_mb": self.min_free_space_mb,
            "node_versions": self.node_versions,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ghostctl."""

    config_file: Path
    logs_dir: Path
    environment: str
    default_process: str
    allow_prompt: bool
    verbose: bool
    systemd: SystemdConfig
    nginx: NginxConfig
    local: LocalProcessConfig
    doctor: DoctorConfig

    @property
    def development(self) -> bool:
        """Return ``True`` when running against the development environment."""
        return self.environment == "development"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "environment": self.environment,
            "default_process": self.default_process,
            "allow_prompt": self.allow_prompt,
            "verbose": self.verbose,
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "local": self.local.to_dict(),
            "doctor": self.doctor.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ghostctl/config.yml",
    "logs_dir": "/var/log/ghostctl",
    "environment": "production",
    "default_process": "systemd",
    "allow_prompt": True,
    "verbose": False,
    "systemd": {
        "unit_dir": "/lib/systemd/system",
        "systemctl_bin": "systemctl",
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
    },
    "local": {
        "run_command": ["ghostctl", "run"],
        "pid_file": ".ghostpid",
    },
    "doctor": {
        "min_memory_mb": 150,
        "min_free_space_mb": 1024,
        "node_versions": ">=18.12.1,<23",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_ENVIRONMENTS = {"production", "development"}
ALLOWED_PROCESS_MANAGERS = {"systemd", "local"}
_SECTION_KEYS: dict[str, set[str]] = {
    "systemd": {"unit_dir", "systemctl_bin"},
    "nginx": {"sites_available", "sites_enabled", "nginx_bin"},
    "local": {"run_command", "pid_file"},
    "doctor": {"min_memory_mb", "min_free_space_mb", "node_versions"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
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

    return _build_app_config(merged)


def default_config() -> AppConfig:
    """Return the built-in defaults without reading files or the environment."""
    return _build_app_config(_deep_copy(DEFAULTS))


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigFileError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigFileError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigFileError(f"Unknown configuration keys: {joined}.")

    environment = raw.get("environment")
    if environment is not None and str(environment) not in ALLOWED_ENVIRONMENTS:
        allowed = ", ".join(sorted(ALLOWED_ENVIRONMENTS))
        raise ConfigFileError(f"Unsupported environment '{environment}'. Allowed: {allowed}.")

    default_process = raw.get("default_process")
    if default_process is not None and str(default_process) not in ALLOWED_PROCESS_MANAGERS:
        allowed = ", ".join(sorted(ALLOWED_PROCESS_MANAGERS))
        raise ConfigFileError(
            f"Unsupported process manager '{default_process}'. Allowed: {allowed}."
        )

    for flag in ("allow_prompt", "verbose"):
        value = raw.get(flag)
        if value is not None and not isinstance(value, bool):
            raise ConfigFileError(f"{flag} must be a boolean. Got {value!r}.")

    for section, allowed_keys in _SECTION_KEYS.items():
        section_value = raw.get(section)
        if section_value is None:
            continue
        section_map = _as_dict(section_value, section)
        unknown = set(section_map.keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigFileError(f"Unknown {section} configuration keys: {joined}.")

    doctor_map = _as_dict(raw.get("doctor"), "doctor")
    for key in ("min_memory_mb", "min_free_space_mb"):
        value = doctor_map.get(key)
        if value is not None and _expect_int(value, f"doctor.{key}", default=0) < 0:
            raise ConfigFileError(f"doctor.{key} must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/lib/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
    )

    local_mapping = _as_dict(raw.get("local"), "local")
    run_command_raw = local_mapping.get("run_command", ["ghostctl", "run"])
    if isinstance(run_command_raw, str):
        run_command = tuple(run_command_raw.split())
    else:
        run_command = tuple(
            str(part) for part in _as_sequence(run_command_raw, "local.run_command")
        )
    if not run_command:
        raise ConfigFileError("local.run_command must not be empty.")
    local = LocalProcessConfig(
        run_command=run_command,
        pid_file=str(local_mapping.get("pid_file", ".ghostpid")),
    )

    doctor_mapping = _as_dict(raw.get("doctor"), "doctor")
    defaults = DoctorConfig()
    doctor = DoctorConfig(
        min_memory_mb=_expect_int(
            doctor_mapping.get("min_memory_mb"),
            "doctor.min_memory_mb",
            default=defaults.min_memory_mb,
        ),
        min_free_space_mb=_expect_int(
            doctor_mapping.get("min_free_space_mb"),
            "doctor.min_free_space_mb",
            default=defaults.min_free_space_mb,
        ),
        node_versions=str(doctor_mapping.get("node_versions", defaults.node_versions)),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        environment=str(raw.get("environment", "production")),
        default_process=str(raw.get("default_process", "systemd")),
        allow_prompt=bool(raw.get("allow_prompt", True)),
        verbose=bool(raw.get("verbose", False)),
        systemd=systemd,
        nginx=nginx,
        local=local,
        doctor=doctor,
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
        raise ConfigFileError(
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


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigFileError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigFileError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigFileError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigFileError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigFileError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigFileError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigFileError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigFileError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigFileError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigFileError",
    "DoctorConfig",
    "LocalProcessConfig",
    "NginxConfig",
    "SystemdConfig",
    "default_config",
    "load_config",
]
