"""Pluggable services, process managers and lifecycle hooks."""

from .base import BaseService, ProcessManager, supports_enable_behavior
from .contract import PROCESS_MANAGER_CONTRACT, CapabilityContract, validate
from .hooks import Hook, HookBus
from .registry import ServiceDescriptor, ServiceKind, ServiceRegistry, builtin_catalog

__all__ = [
    "BaseService",
    "CapabilityContract",
    "Hook",
    "HookBus",
    "PROCESS_MANAGER_CONTRACT",
    "ProcessManager",
    "ServiceDescriptor",
    "ServiceKind",
    "ServiceRegistry",
    "builtin_catalog",
    "supports_enable_behavior",
    "validate",
]
