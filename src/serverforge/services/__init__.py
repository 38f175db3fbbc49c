"""Services layer - domain orchestration.

This module uses lazy exports so importing a single service does not pull in
the LLM runtime or the sandbox engine.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "RecordStore": ("serverforge.services.record_store", "RecordStore"),
    "StoreTransaction": ("serverforge.services.record_store", "StoreTransaction"),
    "CreditLedger": ("serverforge.services.credit_ledger", "CreditLedger"),
    "RoyaltyLedger": ("serverforge.services.royalty_service", "RoyaltyLedger"),
    "CodeGenerationService": (
        "serverforge.services.code_generation_service",
        "CodeGenerationService",
    ),
    "GeneratedServer": ("serverforge.services.code_generation_service", "GeneratedServer"),
    "RefinedServer": ("serverforge.services.code_generation_service", "RefinedServer"),
    "VersionLifecycleService": (
        "serverforge.services.version_lifecycle_service",
        "VersionLifecycleService",
    ),
    "GenerationResult": ("serverforge.services.version_lifecycle_service", "GenerationResult"),
    "RefinementResult": ("serverforge.services.version_lifecycle_service", "RefinementResult"),
    "AcceptResult": ("serverforge.services.version_lifecycle_service", "AcceptResult"),
    "Deployment": ("serverforge.services.version_lifecycle_service", "Deployment"),
    "ExportBundle": ("serverforge.services.version_lifecycle_service", "ExportBundle"),
    "HostedInvocationService": (
        "serverforge.services.hosted_invocation_service",
        "HostedInvocationService",
    ),
}

__all__ = list(_EXPORTS.keys())


def __getattr__(name: str) -> Any:
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module 'serverforge.services' has no attribute {name!r}")

    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
