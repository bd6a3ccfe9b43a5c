"""
ServiceTrait reconcile errors.

Each error carries the fixed message written to the trait's Synced
condition, plus an optional detail for logs and the condition text.
"""

from typing import Optional

# Reconcile error strings.
ERR_LOCATE_WORKLOAD = "cannot find workload"
ERR_LOCATE_RESOURCES = "cannot find resources"
ERR_UNSUPPORTED_KIND = "unsupported workload kind"
ERR_LOCATE_STATEFULSET = "cannot find statefulset"
ERR_APPLY_SERVICE = "cannot apply the service"
ERR_GC_SERVICE = "cannot clean up stale services"
ERR_UPDATE_STATUS = "cannot apply status"


class TraitError(Exception):
    """Base class for failures of a ServiceTrait reconcile pass."""

    message = "reconcile error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)

    @property
    def condition_message(self) -> str:
        """Message recorded on the trait's Synced condition."""
        return str(self)


class MissingAPIVersionError(TraitError):
    """The workload reference has no apiVersion."""

    message = ERR_LOCATE_WORKLOAD

    def __init__(self):
        super().__init__("workload apiVersion is empty")


class UnsupportedAPIVersionError(TraitError):
    """The workload reference points at an API this trait cannot resolve."""

    message = ERR_LOCATE_WORKLOAD

    def __init__(self, api_version: str):
        self.api_version = api_version
        super().__init__(f"this trait does not support apiVersion {api_version}")


class WorkloadNotFoundError(TraitError):
    """The referenced workload does not exist."""

    message = ERR_LOCATE_WORKLOAD


class ChildResourcesNotFoundError(TraitError):
    """A composite workload's managed objects could not be listed."""

    message = ERR_LOCATE_RESOURCES


class UnsupportedKindError(TraitError):
    """An object is not one of the recognised workload kinds."""

    message = ERR_UNSUPPORTED_KIND

    def __init__(self, kind: str, detail: Optional[str] = None):
        self.kind = kind
        super().__init__(detail or f"kind {kind or '<empty>'} is not supported")


class NoEligibleSourceError(TraitError):
    """No StatefulSet with containers is among the workload's objects."""

    message = ERR_LOCATE_STATEFULSET


class ApplyConflictError(TraitError):
    """The Service fields are owned by another field manager."""

    message = ERR_APPLY_SERVICE


class ServiceApplyError(TraitError):
    """The store failed to apply the Service."""

    message = ERR_APPLY_SERVICE


class GarbageCollectionError(TraitError):
    """A stale Service could not be deleted."""

    message = ERR_GC_SERVICE
