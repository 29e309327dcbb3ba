"""Base classes for services and process-manager backends.

Both classes are capability stand-ins: methods they define do not satisfy a
:class:`~ghostctl.services.contract.CapabilityContract`, so a backend has to
implement ``start``/``stop`` itself to be accepted.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .hooks import Hook, HookHandler

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..instance import Instance, InstanceConfig
    from ..ui import UI
    from .registry import ServiceRegistry


class BaseService:
    """A generic service wired into the registry's hook table."""

    __capability_stand_in__ = True

    def __init__(self, registry: ServiceRegistry) -> None:
        """Attach the service to *registry*; ``name`` is set by the registry."""
        self.registry = registry
        self.name = ""

    @property
    def config(self) -> InstanceConfig:
        """Return the instance configuration the registry was loaded with."""
        return self.registry.config

    @property
    def ui(self) -> UI:
        """Return the UI collaborator."""
        return self.registry.ui

    @property
    def instance(self) -> Instance | None:
        """Return the instance being managed, when the registry knows it."""
        return self.registry.instance

    @property
    def settings(self) -> AppConfig:
        """Return the tool configuration."""
        return self.registry.settings

    def init(self) -> None:
        """Subscribe to hooks. Called once, right after construction."""

    def wants_stage(self, context: Mapping[str, Any] | None) -> bool:
        """Return ``False`` when *context* limits setup to other stages."""
        stages = (context or {}).get("stages")
        return not stages or self.name in stages

    def on(self, hook: Hook | str, handler: HookHandler | str) -> None:
        """Subscribe *handler* (a callable or the name of a method) to *hook*."""
        if isinstance(handler, str):
            handler = getattr(self, handler)
        self.registry.register_hook(hook, handler, self.name)


class ProcessManager(BaseService):
    """Strategy for starting and stopping the managed application."""

    __capability_stand_in__ = True

    def start(self, *args: Any, **kwargs: Any) -> None:
        """Start the application."""

    def stop(self, *args: Any, **kwargs: Any) -> None:
        """Stop the application."""

    def restart(self, *args: Any, **kwargs: Any) -> None:
        """Stop then start the application."""
        self.stop(*args, **kwargs)
        self.start(*args, **kwargs)

    def success(self) -> None:
        """Called once the application reports a successful boot."""

    def error(self, error: BaseException) -> None:
        """Called when the application reports a boot failure."""
        raise error

    def is_running(self) -> bool:
        """Return ``True`` when the application is running."""
        return False

    @classmethod
    def will_run(cls, settings: AppConfig | None = None) -> bool:
        """Return ``True`` when this backend can run on the current host."""
        return True


def supports_enable_behavior(process_manager: object) -> bool:
    """Return ``True`` when *process_manager* can toggle start-on-boot."""
    return all(
        callable(getattr(process_manager, name, None)) for name in ("is_enabled", "enable", "disable")
    )


__all__ = ["BaseService", "ProcessManager", "supports_enable_behavior"]
