"""Extension discovery and hook fan-out.

Extensions are :class:`Extension` subclasses. Besides the built-ins they are
discovered through the ``ghostctl.extensions`` entry-point group, e.g.::

    [project.entry-points."ghostctl.extensions"]
    mysql = "ghostctl_mysql:MySQLExtension"

An extension implements any of the optional hook methods it cares about:
``doctor(context)`` returning extra :class:`~ghostctl.tasks.models.Task`
checks, ``migrations()`` returning :class:`~ghostctl.migrations.Migration`
entries and ``setup(context)``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from importlib import metadata
from typing import TYPE_CHECKING, Any

from ..config import AppConfig, default_config

if TYPE_CHECKING:
    from ..instance import Instance
    from ..ui import UI

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "ghostctl.extensions"


class Extension:
    """Base class for ghostctl extensions."""

    name = ""

    def __init__(
        self,
        ui: UI,
        *,
        instance: Instance | None = None,
        settings: AppConfig | None = None,
    ) -> None:
        """Store the collaborators an extension may use."""
        self.ui = ui
        self.instance = instance
        self.settings = settings or default_config()


def iter_entry_points() -> Iterable[metadata.EntryPoint]:
    return metadata.entry_points().select(group=ENTRY_POINT_GROUP)


def builtin_extensions() -> tuple[type[Extension], ...]:
    """Return the extensions shipped with ghostctl."""
    from .systemd import SystemdExtension

    return (SystemdExtension,)


class ExtensionHost:
    """Loaded extensions in discovery order."""

    def __init__(
        self,
        ui: UI,
        *,
        instance: Instance | None = None,
        settings: AppConfig | None = None,
        extensions: Sequence[type[Extension]] | None = None,
        discover: bool = True,
    ) -> None:
        """Instantiate built-ins (or *extensions*) plus discovered entry points."""
        self.ui = ui
        self.instance = instance
        self.settings = settings or default_config()
        self.extensions: list[Extension] = []

        classes = list(extensions if extensions is not None else builtin_extensions())
        for cls in classes:
            self._add(cls, cls.name or cls.__name__)
        if discover:
            self._discover()

    @property
    def names(self) -> list[str]:
        """Return the names of the loaded extensions."""
        return [extension.name for extension in self.extensions]

    def hook(self, name: str, *args: Any) -> list[Any]:
        """Call *name* on every extension implementing it and collect the results."""
        results: list[Any] = []
        for extension in self.extensions:
            method = getattr(extension, name, None)
            if not callable(method):
                continue
            log.debug("extension %s: calling %s", extension.name, name)
            results.append(method(*args))
        return results

    # ------------------------------------------------------------------
    def _discover(self) -> None:
        for entry_point in iter_entry_points():
            try:
                loaded = entry_point.load()
            except Exception as exc:  # noqa: BLE001 - third-party import failures
                self.ui.log(f"Extension '{entry_point.name}' could not be loaded: {exc}", "yellow")
                continue
            if not isinstance(loaded, type) or not issubclass(loaded, Extension):
                self.ui.log(
                    f"Extension '{entry_point.name}' is not a valid Extension subclass",
                    "yellow",
                )
                continue
            self._add(loaded, entry_point.name)

    def _add(self, cls: type[Extension], name: str) -> None:
        if name in self.names:
            log.debug("extension %s already loaded; ignoring duplicate", name)
            return
        extension = cls(self.ui, instance=self.instance, settings=self.settings)
        extension.name = name
        self.extensions.append(extension)


__all__ = [
    "ENTRY_POINT_GROUP",
    "Extension",
    "ExtensionHost",
    "builtin_extensions",
    "iter_entry_points",
]
