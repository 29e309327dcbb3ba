"""Persisted key/value documents and the Ghost instance handle.

:class:`InstanceConfig` wraps a JSON document (``config.production.json``,
``.ghost-cli``) and addresses nested values with dotted keys. Writes are
atomic and synchronous so a later task in the same run sees them.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping, MutableMapping
from copy import deepcopy
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .errors import ConfigError

_MISSING = object()


class InstanceConfig:
    """Dotted-key accessor over a JSON document on disk."""

    def __init__(self, path: Path, *, environment: str | None = None) -> None:
        """Load *path* if it exists, otherwise start with an empty document."""
        self.path = path
        self.environment = environment
        self.values: dict[str, Any] = self._load(path, environment)

    @staticmethod
    def _load(path: Path, environment: str | None) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise ConfigError(
                f"Config file {path.name} is not valid JSON",
                environment=environment,
                hint=f"Fix or remove {path} and try again.",
            ) from exc
        if not isinstance(data, dict):
            raise ConfigError(
                f"Config file {path.name} must contain a JSON object",
                environment=environment,
            )
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored at dotted *key* or *default*."""
        current: Any = self.values
        for segment in key.split("."):
            if not isinstance(current, Mapping) or segment not in current:
                return default
            current = current[segment]
        return deepcopy(current)

    def has(self, key: str) -> bool:
        """Return ``True`` when a value exists at dotted *key*."""
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key: str | Mapping[str, Any], value: Any = None) -> InstanceConfig:
        """Store *value* at dotted *key*; ``None`` removes the key.

        Passing a mapping as *key* merges it into the top level.
        """
        if isinstance(key, Mapping):
            self.values.update(deepcopy(dict(key)))
            return self

        segments = key.split(".")
        parent: MutableMapping[str, Any] = self.values
        for segment in segments[:-1]:
            child = parent.get(segment)
            if not isinstance(child, MutableMapping):
                if value is None:
                    return self
                child = {}
                parent[segment] = child
            parent = child

        if value is None:
            parent.pop(segments[-1], None)
        else:
            parent[segments[-1]] = deepcopy(value)
        return self

    def save(self) -> InstanceConfig:
        """Atomically write the document back to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(self.values, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return self

    def exists(self) -> bool:
        """Return ``True`` when the backing file exists."""
        return self.path.exists()


class Instance:
    """A Ghost installation directory and its configuration documents."""

    CLI_CONFIG_FILE = ".ghost-cli"

    def __init__(self, directory: Path, environment: str = "production") -> None:
        """Bind the instance to *directory* for *environment*."""
        self.dir = directory
        self.environment = environment
        self._config: InstanceConfig | None = None
        self._cli_config: InstanceConfig | None = None

    @property
    def config_path(self) -> Path:
        """Return the path of the environment-specific config file."""
        return self.dir / f"config.{self.environment}.json"

    @property
    def config(self) -> InstanceConfig:
        """Return the environment config (``config.<env>.json``)."""
        if self._config is None:
            self._config = InstanceConfig(self.config_path, environment=self.environment)
        return self._config

    @property
    def cli_config(self) -> InstanceConfig:
        """Return the CLI state document (``.ghost-cli``)."""
        if self._cli_config is None:
            self._cli_config = InstanceConfig(self.dir / self.CLI_CONFIG_FILE)
        return self._cli_config

    @property
    def name(self) -> str | None:
        """Return the process name identifying the instance on the host."""
        return self.cli_config.get("name") or self.config.get("pname")

    @name.setter
    def name(self, value: str) -> None:
        self.cli_config.set("name", value).save()

    @property
    def cli_version(self) -> str | None:
        """Return the CLI version that last touched this instance."""
        return self.cli_config.get("cli-version")

    @property
    def url(self) -> str | None:
        """Return the configured blog URL."""
        return self.config.get("url")

    @property
    def hostname(self) -> str | None:
        """Return the hostname portion of the configured URL."""
        if not self.url:
            return None
        return urlparse(self.url).hostname

    @property
    def running_environment(self) -> str | None:
        """Return the environment recorded as running, if any."""
        return self.cli_config.get("running")

    def set_running(self, environment: str | None) -> None:
        """Record (or clear) the running environment in ``.ghost-cli``."""
        self.cli_config.set("running", environment).save()

    def is_installed(self) -> bool:
        """Return ``True`` when the directory looks like a ghostctl install."""
        return self.cli_config.exists()


__all__ = ["Instance", "InstanceConfig"]
