"""Shared input-parsing helpers for blueprints and services.

parse_uuid:       path / body identifiers → canonical UUID string
parse_int:        strict integer coercion with field-level error details
parse_enum:       closed-enumeration coercion (Plant, QAPStatus, Match, ...)
parse_bool:       JSON booleans only; absent → default
optional_str:     trimmed string or None
"""

import uuid

from qapflow.core.exceptions import ValidationError


def parse_uuid(value, field="id"):
    """Return ``value`` as a canonical lowercase UUID string.

    Raises ValidationError for anything that is not a UUID.
    """
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError) as exc:
        raise ValidationError(
            f"{field} must be a valid UUID",
            details={field: str(value)},
        ) from exc


def parse_int(value, field, *, minimum=None):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        number = int(value)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: value}) from exc
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field} must be an integer", details={field: value})
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", details={field: value})
    return number


def parse_enum(enum_cls, value, field):
    """Coerce ``value`` to a member of ``enum_cls`` by exact value match."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"{field} must be one of: {allowed}",
            details={field: value},
        ) from exc


def parse_bool(value, field, *, default=False):
    """Accept only JSON ``true``/``false``; strings like "false" are rejected."""
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be a boolean", details={field: repr(value)})
    return value


def optional_str(value, field=None, max_length=None):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: repr(value)})
    value = value.strip()
    if not value:
        return None
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field} must be at most {max_length} characters",
            details={field: f"{len(value)} characters"},
        )
    return value


def required_str(payload, field, max_length=None):
    value = optional_str(payload.get(field), field, max_length)
    if value is None:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value
