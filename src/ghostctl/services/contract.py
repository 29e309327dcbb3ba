"""Capability contracts for pluggable backends."""

from __future__ import annotations

import inspect
from collections.abc import Sequence
from dataclasses import dataclass

STAND_IN_MARKER = "__capability_stand_in__"


def _owners(implementation: object) -> tuple[type, ...]:
    cls = implementation if inspect.isclass(implementation) else type(implementation)
    return tuple(
        klass
        for klass in cls.__mro__
        if klass is not object and not klass.__dict__.get(STAND_IN_MARKER, False)
    )


def _provides(implementation: object, name: str) -> bool:
    for klass in _owners(implementation):
        if name in klass.__dict__:
            member = klass.__dict__[name]
            if isinstance(member, (staticmethod, classmethod)):
                member = member.__func__
            return callable(member)
    if not inspect.isclass(implementation):
        instance_dict = getattr(implementation, "__dict__", {})
        if name in instance_dict:
            return callable(instance_dict[name])
    return False


def validate(implementation: object, required_methods: Sequence[str]) -> list[str]:
    """Return the names in *required_methods* that *implementation* lacks.

    *implementation* may be a class or an instance. Methods inherited from a
    base class flagged with ``__capability_stand_in__ = True`` do not count,
    nor do attributes that are not callable.
    """
    return [name for name in required_methods if not _provides(implementation, name)]


@dataclass(slots=True, frozen=True)
class CapabilityContract:
    """Ordered list of methods a backend kind must implement itself."""

    required_methods: tuple[str, ...]

    def __post_init__(self) -> None:
        """Freeze the method list."""
        object.__setattr__(self, "required_methods", tuple(self.required_methods))

    def missing(self, implementation: object) -> list[str]:
        """Return the required methods *implementation* does not provide."""
        return validate(implementation, self.required_methods)

    def is_satisfied_by(self, implementation: object) -> bool:
        """Return ``True`` when nothing is missing."""
        return not self.missing(implementation)


PROCESS_MANAGER_CONTRACT = CapabilityContract(("start", "stop"))


__all__ = [
    "CapabilityContract",
    "PROCESS_MANAGER_CONTRACT",
    "STAND_IN_MARKER",
    "validate",
]
