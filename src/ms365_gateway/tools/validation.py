"""Per-tool argument validation and coercion.

Arguments arrive as JSON (JSON-RPC, REST bodies) or as strings (REST query
strings and path segments). Both go through validate_arguments(), which:

- renames declared aliases (q -> query, limit -> top)
- coerces strings to the declared type ("5" -> 5, "true" -> True,
  "a@x.com,b@x.com" -> ["a@x.com", "b@x.com"])
- applies defaults
- checks required fields, enums, bounds and minimum lengths

Failures are collected, not raised one at a time, so the client sees every
problem in one INVALID_REQUEST response.
"""

from __future__ import annotations

__all__ = [
    "ACCESS_TOKEN_ARG",
    "validate_arguments",
]

from typing import Any, Mapping

from ms365_gateway.exceptions import InvalidRequestError
from ms365_gateway.tools.catalogue import ParamSpec, ToolDefinition

# Injected by the dispatcher; never accepted from clients.
ACCESS_TOKEN_ARG = "accessToken"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


class _Invalid(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _coerce(spec: ParamSpec, value: Any) -> Any:
    if spec.type == "string":
        if isinstance(value, bool) or isinstance(value, (dict, list)):
            raise _Invalid("must be a string")
        return value if isinstance(value, str) else str(value)

    if spec.type == "integer":
        if isinstance(value, bool):
            raise _Invalid("must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise _Invalid("must be an integer")

    if spec.type == "number":
        if isinstance(value, bool):
            raise _Invalid("must be a number")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise _Invalid("must be a number")

    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise _Invalid("must be a boolean")

    if spec.type == "array":
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        raise _Invalid("must be an array")

    if spec.type == "object":
        if isinstance(value, dict):
            return value
        raise _Invalid("must be an object")

    return value


def _check_constraints(spec: ParamSpec, value: Any) -> None:
    if spec.enum is not None and value not in spec.enum:
        raise _Invalid(f"must be one of: {', '.join(spec.enum)}")
    if spec.type in ("integer", "number"):
        if spec.minimum is not None and value < spec.minimum:
            raise _Invalid(f"must be >= {spec.minimum:g}")
        if spec.maximum is not None and value > spec.maximum:
            raise _Invalid(f"must be <= {spec.maximum:g}")
    if spec.min_length is not None and isinstance(value, str) and len(value.strip()) < spec.min_length:
        raise _Invalid("must not be empty" if spec.min_length == 1 else f"must be at least {spec.min_length} characters")
    if spec.type == "array" and spec.required and not value:
        raise _Invalid("must contain at least one item")


def validate_arguments(tool: ToolDefinition, arguments: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate and normalize arguments for a tool.

    Undeclared arguments are passed through unchanged so handlers can accept
    optional extras. A client-supplied accessToken is dropped.

    Args:
        tool: Catalogue entry.
        arguments: Raw arguments (may be None).

    Returns:
        New dict with aliases resolved, values coerced and defaults applied.

    Raises:
        InvalidRequestError: One or more arguments are invalid; `details`
            lists {field, message} per problem.
    """
    if arguments is not None and not isinstance(arguments, Mapping):
        raise InvalidRequestError(
            f"Arguments for {tool.name} must be an object",
            details=[{"field": "arguments", "message": "must be an object"}],
        )

    raw = {k: v for k, v in (arguments or {}).items() if k != ACCESS_TOKEN_ARG}
    result: dict[str, Any] = {}
    errors: list[dict[str, Any]] = []

    for spec in tool.params:
        value = raw.pop(spec.name, None)
        for alias in spec.aliases:
            alias_value = raw.pop(alias, None)
            if value is None:
                value = alias_value

        if value is None or (isinstance(value, str) and value == "" and spec.type != "string"):
            if spec.required:
                errors.append({"field": spec.name, "message": "is required"})
            elif spec.default is not None:
                result[spec.name] = spec.default
            continue

        try:
            coerced = _coerce(spec, value)
            _check_constraints(spec, coerced)
        except _Invalid as e:
            errors.append({"field": spec.name, "message": e.message})
            continue
        result[spec.name] = coerced

    if errors:
        fields = ", ".join(err["field"] for err in errors)
        raise InvalidRequestError(f"Invalid arguments for {tool.name}: {fields}", details=errors)

    result.update(raw)
    return result
