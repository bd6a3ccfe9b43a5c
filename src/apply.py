"""
Field-owned apply - Server-side-apply style merge for stored objects.

Each writer (field manager) owns the leaf fields it last applied. Applying a
payload writes exactly the payload's leaves and removes the leaves the same
manager applied before but no longer does, unless another manager owns them.
Fields of other managers are left untouched, and applying a field claimed
by another manager fails unless forced.
Lists and scalars are atomic leaves; dicts are descended into.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

FieldPath = Tuple[str, ...]

# Identity and server-populated fields are never owned by a manager
IGNORED_PATHS: Tuple[FieldPath, ...] = (
    ("apiVersion",),
    ("kind",),
    ("status",),
    ("metadata", "name"),
    ("metadata", "namespace"),
    ("metadata", "uid"),
    ("metadata", "generation"),
    ("metadata", "resourceVersion"),
    ("metadata", "creationTimestamp"),
    ("metadata", "managedFields"),
)


class FieldConflictError(Exception):
    """Raised when applied fields are owned by another field manager."""

    def __init__(self, conflicts: List[Tuple[str, FieldPath]]):
        self.conflicts = conflicts
        described = ", ".join(
            f"{'.'.join(path)} (owned by {manager})" for manager, path in conflicts
        )
        super().__init__(f"Apply conflict: {described}")


@dataclass
class MergeResult:
    """Outcome of merging an applied payload into a live object."""

    obj: Dict[str, Any]
    managed_fields: Dict[str, List[FieldPath]] = field(default_factory=dict)
    changed: bool = False
    spec_changed: bool = False


def _is_ignored(path: FieldPath) -> bool:
    return any(path[: len(ignored)] == ignored for ignored in IGNORED_PATHS)


def leaf_paths(obj: Dict[str, Any], prefix: FieldPath = ()) -> Iterator[FieldPath]:
    """
    Yield the leaf field paths of an object.

    Dicts are descended into (an empty dict is itself a leaf); lists and
    scalars are leaves. Identity and status fields are skipped.
    """
    for key, value in obj.items():
        path = prefix + (key,)
        if _is_ignored(path):
            continue
        if isinstance(value, dict) and value:
            yield from leaf_paths(value, path)
        else:
            yield path


def get_path(obj: Dict[str, Any], path: FieldPath, default: Any = None) -> Any:
    """Return the value at a field path, or default if any segment is missing."""
    current: Any = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def set_path(obj: Dict[str, Any], path: FieldPath, value: Any) -> None:
    """Set the value at a field path, creating intermediate dicts."""
    current = obj
    for key in path[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[path[-1]] = copy.deepcopy(value)


def remove_path(obj: Dict[str, Any], path: FieldPath) -> None:
    """Delete the value at a field path and prune nested dicts it leaves empty."""
    parents = []
    current: Any = obj
    for key in path[:-1]:
        if not isinstance(current, dict) or key not in current:
            return
        parents.append((current, key))
        current = current[key]
    if not isinstance(current, dict):
        return
    current.pop(path[-1], None)

    # Top-level sections such as spec are kept even when empty
    for parent, key in reversed(parents[1:]):
        if parent[key]:
            break
        del parent[key]


def _overlaps(a: FieldPath, b: FieldPath) -> bool:
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


_MISSING = object()


def _content(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Object content that drives the generation (everything but metadata/status)."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


def merge_apply(
    live: Optional[Dict[str, Any]],
    payload: Dict[str, Any],
    managed_fields: Optional[Dict[str, List[FieldPath]]],
    field_manager: str,
    force: bool = False,
) -> MergeResult:
    """
    Merge an applied payload into the live object.

    Args:
        live: The current object, or None if it does not exist yet
        payload: The object as declared by the field manager
        managed_fields: Current ownership, manager name to owned leaf paths
        field_manager: Name of the applying manager
        force: Take ownership of conflicting fields instead of failing

    Returns:
        MergeResult with the merged object and updated ownership

    Raises:
        FieldConflictError: If another manager owns a field with a different
            value and force is False
    """
    owners = {
        manager: [tuple(p) for p in paths]
        for manager, paths in (managed_fields or {}).items()
    }
    merged = copy.deepcopy(live) if live is not None else {}
    applied = list(leaf_paths(payload))

    # Fields applied with the live value stay shared with their other owners
    conflicts: List[Tuple[str, FieldPath]] = []
    for manager, paths in owners.items():
        if manager == field_manager:
            continue
        for owned in paths:
            for path in applied:
                if not _overlaps(owned, path):
                    continue
                if get_path(merged, path, _MISSING) != get_path(payload, path):
                    conflicts.append((manager, owned))
                    break

    if conflicts and not force:
        raise FieldConflictError(conflicts)

    if conflicts:
        logger.info(
            f"Field manager {field_manager} taking ownership of "
            f"{len(conflicts)} conflicting field(s)"
        )
        taken = {path for _, path in conflicts}
        for manager in list(owners):
            if manager == field_manager:
                continue
            owners[manager] = [p for p in owners[manager] if p not in taken]

    for path in applied:
        set_path(merged, path, get_path(payload, path))

    # Fields the manager stopped applying go away unless another manager owns them
    others = [
        path
        for manager, paths in owners.items()
        if manager != field_manager
        for path in paths
    ]
    for path in owners.get(field_manager, []):
        if any(_overlaps(path, kept) for kept in applied + others):
            continue
        remove_path(merged, path)

    owners[field_manager] = applied
    owners = {manager: paths for manager, paths in owners.items() if paths}

    before = live if live is not None else {}
    changed = live is None or merged != live
    spec_changed = _content(merged) != _content(before)

    return MergeResult(
        obj=merged,
        managed_fields=owners,
        changed=changed,
        spec_changed=spec_changed,
    )
