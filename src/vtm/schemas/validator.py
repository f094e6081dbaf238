"""Schema validation for manifests, task proposals and cache entries."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from jsonschema.validators import Draft202012Validator

from vtm.utils.schema_registry import get_registry


@lru_cache(maxsize=None)
def _validator_for(schema_name: str) -> Draft202012Validator:
    schema = get_registry().get_json(schema_name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _format_error(error: Any, prefix: str) -> str:
    path = ".".join(str(part) for part in error.absolute_path)
    location = ".".join(part for part in (prefix, path) if part)
    return f"{location}: {error.message}" if location else error.message


def validate_data(data: Any, schema_name: str, *, prefix: str = "") -> list[str]:
    """Validate ``data`` against a packaged schema.

    Every violation is collected; validation never stops at the first one.

    Args:
        data: Parsed JSON document
        schema_name: Schema name without the ``.schema.json`` suffix
        prefix: Location prepended to each message (e.g. ``tasks[2]``)

    Returns:
        Error messages in document order (empty when valid)
    """
    validator = _validator_for(schema_name)
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    return [_format_error(error, prefix) for error in errors]
