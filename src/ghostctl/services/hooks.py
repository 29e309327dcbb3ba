"""Lifecycle hooks and their ordered subscriber tables."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterator
from enum import Enum
from typing import Any

from ..errors import UsageError

log = logging.getLogger(__name__)

HookHandler = Callable[..., Any]


class Hook(str, Enum):
    """Lifecycle moments services may subscribe to."""

    SETUP = "setup"
    START = "start"
    STOP = "stop"
    RUN = "run"

    @classmethod
    def coerce(cls, value: Hook | str) -> Hook:
        """Return the :class:`Hook` for *value* or raise :class:`UsageError`."""
        if isinstance(value, Hook):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(hook.value for hook in cls)
            raise UsageError(
                f"Unknown hook '{value}'.",
                hint=f"Valid hooks are: {allowed}.",
            ) from None


class HookBus:
    """Per-hook mapping of owner name → (owner, handler)."""

    def __init__(self) -> None:
        """Create an empty table for every hook."""
        self._table: dict[Hook, dict[str, tuple[object, HookHandler]]] = {
            hook: {} for hook in Hook
        }

    def subscribe(
        self,
        hook: Hook | str,
        owner_name: str,
        owner: object,
        handler: HookHandler,
    ) -> None:
        """Register *handler* for *hook*; a later call for the same owner replaces it."""
        resolved = Hook.coerce(hook)
        if not callable(handler):
            raise UsageError(f"Handler for hook '{resolved.value}' on '{owner_name}' is not callable.")
        self._table[resolved][owner_name] = (owner, handler)
        log.debug("hook %s: subscribed %s", resolved.value, owner_name)

    def subscribers(self, hook: Hook | str) -> list[str]:
        """Return owner names subscribed to *hook* in registration order."""
        return list(self._table[Hook.coerce(hook)])

    def __iter__(self) -> Iterator[Hook]:
        return iter(self._table)

    def call(self, hook: Hook | str, *args: Any) -> None:
        """Invoke each subscriber in order; the first failure propagates."""
        resolved = Hook.coerce(hook)
        for owner_name, (owner, handler) in list(self._table[resolved].items()):
            log.debug("hook %s: calling %s", resolved.value, owner_name)
            _bind(owner, handler)(*args)


def _bind(owner: object, handler: HookHandler) -> HookHandler:
    """Bind *handler* to *owner* when it is a method taken from the owner's class.

    Any other callable (bound method, lambda, closure, free function) is
    called with the hook arguments unchanged.
    """
    if not inspect.isfunction(handler):
        return handler
    if getattr(type(owner), handler.__name__, None) is handler:
        return handler.__get__(owner)
    return handler


__all__ = ["Hook", "HookBus", "HookHandler"]
