"""JSON Schema contracts for playbook and step inputs and outputs."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import jsonschema
from jsonschema.validators import validator_for

from .errors import ValidationError


def check_contract(schema: Optional[Dict[str, Any]], label: str) -> List[str]:
    """Return problems with ``schema`` itself; empty when it is usable."""
    if schema is None:
        return []
    if not isinstance(schema, dict):
        return [f"{label}: contract must be a JSON Schema object"]
    try:
        validator_for(schema).check_schema(schema)
    except jsonschema.SchemaError as e:
        return [f"{label}: invalid JSON Schema - {e.message}"]
    return []


def contract_errors(schema: Dict[str, Any], data: Any) -> List[Dict[str, Any]]:
    validator = validator_for(schema)(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    return [
        {
            "path": "/".join(str(p) for p in e.path) or "$",
            "message": e.message,
            "code": e.validator,
        }
        for e in errors
    ]


def validate_payload(
    schema: Optional[Dict[str, Any]], data: Any, label: str, **context: Any
) -> None:
    """Raise :class:`ValidationError` if ``data`` violates ``schema``.

    A missing schema accepts anything.
    """
    if not schema:
        return
    errors = contract_errors(schema, data)
    if errors:
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in errors[:3])
        raise ValidationError(
            f"{label} violates its contract: {summary}", errors=errors, **context
        )
