"""
Plugin system for the ServiceTrait operator.

This package provides the plugin architecture for extensible inputs and
reconcilers.
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileRequest,
    ReconcileResult,
    Watch,
)
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileRequest",
    "ReconcileResult",
    "Watch",
    "PluginRegistry",
    "get_registry",
]
