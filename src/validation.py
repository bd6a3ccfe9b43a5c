"""
Schema Validation - JSON Schema checks for object specs.

Reconcilers may publish a schema for the spec of the kinds they own; manifests
of those kinds are checked against it before they are written to the store.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

logger = logging.getLogger(__name__)

REQUIRED_MANIFEST_FIELDS = ("apiVersion", "kind")


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a spec schema is itself a valid JSON Schema (Draft 7).

    Args:
        schema: The schema a reconciler publishes for one of its kinds

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate an object's spec against its kind's schema.

    All violations are reported, joined by '; ', each prefixed with the
    dotted path of the offending field.

    Args:
        spec: The spec section of a manifest
        schema: The JSON Schema for the manifest's kind

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        logger.error(f"Cannot validate against an invalid schema: {e.message}")
        return False, f"Validation failed: {e.message}"

    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(
        validator.iter_errors(spec), key=lambda e: [str(p) for p in e.absolute_path]
    )
    if not errors:
        return True, None

    messages: List[str] = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(f"{path}: {error.message}")
    return False, "; ".join(messages)


def validate_manifest(manifest: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check the identity fields every stored object needs.

    Args:
        manifest: A full object manifest

    Returns:
        Tuple of (is_valid, error_message)
    """
    missing = [f for f in REQUIRED_MANIFEST_FIELDS if not manifest.get(f)]
    if not (manifest.get("metadata") or {}).get("name"):
        missing.append("metadata.name")
    if missing:
        return False, f"Missing required field(s): {', '.join(missing)}"

    spec = manifest.get("spec")
    if spec is not None and not isinstance(spec, dict):
        return False, "spec must be an object"
    return True, None
