"""
ServiceTrait reconciler plugin.

Attaches a Service to the workload referenced by an OAM ServiceTrait and
keeps it in sync with the workload's first StatefulSet.
"""

from plugins.reconcilers.servicetrait.reconciler import (
    TRAIT_API_VERSION,
    TRAIT_KIND,
    ServiceTraitReconciler,
)
from plugins.reconcilers.servicetrait.service import LABEL_KEY

__all__ = ["LABEL_KEY", "TRAIT_API_VERSION", "TRAIT_KIND", "ServiceTraitReconciler"]
