"""Service registry: backend catalog, capability gate and hook dispatch."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config import AppConfig, default_config
from ..errors import ConfigError, SystemCheckError, UsageError, join_missing
from .base import BaseService, ProcessManager
from .contract import PROCESS_MANAGER_CONTRACT
from .hooks import Hook, HookBus, HookHandler

if TYPE_CHECKING:
    from ..instance import Instance, InstanceConfig
    from ..ui import UI

log = logging.getLogger(__name__)

FALLBACK_PROCESS_MANAGER = "local"

ServiceFactory = Callable[["ServiceRegistry"], BaseService]


class ServiceKind(str, Enum):
    """Kinds of services known to the registry."""

    GENERIC = "generic"
    PROCESS_MANAGER = "process-manager"


@dataclass(slots=True, frozen=True)
class ServiceDescriptor:
    """Catalog entry describing how to build a service."""

    name: str
    kind: ServiceKind
    factory: ServiceFactory

    def will_run(self, settings: AppConfig | None = None) -> bool:
        """Ask the backend class whether it can run on this host."""
        check = getattr(self.factory, "will_run", None)
        if check is None:
            return True
        return bool(check(settings))


def builtin_catalog() -> tuple[ServiceDescriptor, ...]:
    """Return the process managers and services shipped with ghostctl."""
    from .local import LocalProcessManager
    from .nginx import NginxService
    from .systemd import SystemdProcessManager

    return (
        ServiceDescriptor("systemd", ServiceKind.PROCESS_MANAGER, SystemdProcessManager),
        ServiceDescriptor(FALLBACK_PROCESS_MANAGER, ServiceKind.PROCESS_MANAGER, LocalProcessManager),
        ServiceDescriptor("nginx", ServiceKind.GENERIC, NginxService),
    )


class ServiceRegistry:
    """Loaded services plus the hook table they subscribed to."""

    def __init__(
        self,
        config: InstanceConfig,
        ui: UI,
        *,
        instance: Instance | None = None,
        settings: AppConfig | None = None,
    ) -> None:
        """Create an empty registry; use :meth:`load` to populate it."""
        self.config = config
        self.ui = ui
        self.instance = instance
        self.settings = settings or default_config()
        self.services: dict[str, BaseService] = {}
        self.hooks = HookBus()
        self._process_manager: ProcessManager | None = None

    @classmethod
    def load(
        cls,
        config: InstanceConfig,
        ui: UI,
        catalog: Sequence[ServiceDescriptor] | None = None,
        *,
        instance: Instance | None = None,
        settings: AppConfig | None = None,
    ) -> ServiceRegistry:
        """Build a registry from *catalog* (the built-in one by default).

        Generic services are always loaded. Of the process managers only the
        one named by the ``process`` config key is loaded; when it reports it
        cannot run here, ``process`` is rewritten to ``local`` and the local
        backend is loaded instead.
        """
        registry = cls(config, ui, instance=instance, settings=settings)
        entries = tuple(catalog if catalog is not None else builtin_catalog())
        wanted = config.get("process") or registry.settings.default_process

        for descriptor in entries:
            if descriptor.kind is ServiceKind.GENERIC:
                registry._instantiate(descriptor)
            elif descriptor.name == wanted:
                registry._load_process_manager(descriptor, entries)

        if registry._process_manager is None:
            raise ConfigError(
                f"Unknown process manager '{wanted}'.",
                config_key="process",
                config_value=wanted,
                environment=getattr(config, "environment", None),
            )
        return registry

    # ------------------------------------------------------------------
    @property
    def process_manager(self) -> ProcessManager:
        """Return the active process manager."""
        if self._process_manager is None:
            raise UsageError("No process manager has been loaded.")
        return self._process_manager

    def get(self, name: str) -> BaseService | None:
        """Return the service registered as *name*."""
        return self.services.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.services

    def __iter__(self) -> Iterator[str]:
        return iter(self.services)

    def register_service(self, name: str, factory: ServiceFactory) -> BaseService:
        """Add an extension-provided generic service after load."""
        return self._instantiate(ServiceDescriptor(name, ServiceKind.GENERIC, factory))

    def register_hook(self, hook: Hook | str, handler: HookHandler, owner: str) -> None:
        """Subscribe *handler* owned by service *owner* to *hook*.

        The hook arguments are passed through unchanged. Only a function
        taken from the owner's class (``Service.setup``) is bound to the
        service first.
        """
        resolved = Hook.coerce(hook)
        service = self.services.get(owner)
        if service is None:
            raise UsageError(f"Cannot register hook '{resolved.value}' for unknown service '{owner}'.")
        self.hooks.subscribe(resolved, owner, service, handler)

    def call_hook(self, hook: Hook | str, *args: Any) -> None:
        """Run every handler for *hook* in registration order."""
        self.hooks.call(hook, *args)

    # ------------------------------------------------------------------
    def _instantiate(self, descriptor: ServiceDescriptor) -> BaseService:
        if descriptor.name in self.services:
            raise UsageError(f"Service '{descriptor.name}' already exists.")
        service = descriptor.factory(self)
        service.name = descriptor.name
        self.services[descriptor.name] = service
        service.init()
        log.debug("service %s loaded (%s)", descriptor.name, descriptor.kind.value)
        return service

    def _load_process_manager(
        self,
        descriptor: ServiceDescriptor,
        catalog: Iterable[ServiceDescriptor],
        *,
        fallback: bool = False,
    ) -> None:
        missing = PROCESS_MANAGER_CONTRACT.missing(descriptor.factory)
        if missing:
            raise ConfigError(
                f"Process manager '{descriptor.name}' is missing required methods: "
                f"{join_missing(missing)}",
                config_key="process",
                config_value=descriptor.name,
                environment=getattr(self.config, "environment", None),
            )

        if not descriptor.will_run(self.settings):
            if fallback:
                raise SystemCheckError(
                    f"The '{descriptor.name}' process manager cannot run on this system."
                )
            self.ui.log(
                f"The '{descriptor.name}' process manager will not run on this system, "
                f"defaulting to '{FALLBACK_PROCESS_MANAGER}'",
                "yellow",
            )
            self.config.set("process", FALLBACK_PROCESS_MANAGER).save()
            local = next(
                (
                    entry
                    for entry in catalog
                    if entry.name == FALLBACK_PROCESS_MANAGER
                    and entry.kind is ServiceKind.PROCESS_MANAGER
                ),
                None,
            )
            if local is None:
                raise SystemCheckError(
                    f"No '{FALLBACK_PROCESS_MANAGER}' process manager is available."
                )
            log.debug("falling back from %s to %s", descriptor.name, local.name)
            self._load_process_manager(local, catalog, fallback=True)
            return

        if self._process_manager is not None:
            raise UsageError("A process manager is already active.")
        service = self._instantiate(descriptor)
        if not isinstance(service, ProcessManager):
            raise UsageError(f"Service '{descriptor.name}' is not a process manager.")
        self._process_manager = service


__all__ = [
    "FALLBACK_PROCESS_MANAGER",
    "ServiceDescriptor",
    "ServiceFactory",
    "ServiceKind",
    "ServiceRegistry",
    "builtin_catalog",
]
