"""
Reconciler plugins package.

Reconciler plugins own the reconciliation logic for one resource type.
Besides the built-in ServiceTrait reconciler, they are discovered via
Python entry points (group: 'servicetrait.reconcilers').
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileRequest,
    ReconcileResult,
    Watch,
    generation_changed,
)

__all__ = [
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileRequest",
    "ReconcileResult",
    "Watch",
    "generation_changed",
]
