from __future__ import annotations
from datetime import datetime
from materials.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Float, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Percent fields are stored 0-100
MAX_PERCENT = 100.0

# Maximum price per unit: 9,999,999.99
MAX_PRICE = 9_999_999.99


class ValidationError(ValueError):
    """400-level input problem."""
    code = "validation_error"
    http_status = 400


class NotFoundError(ValueError):
    """404-level: the referenced record does not exist."""
    code = "not_found"
    http_status = 404


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate serial number)."""
    code = "conflict"
    http_status = 409


def error_response(exc: Exception) -> tuple[dict, int]:
    """Build the JSON error body and status for a service-layer exception."""
    code = getattr(exc, "code", "validation_error")
    status = getattr(exc, "http_status", 400)
    return {"error": str(exc), "code": code}, status


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    # Floats - quantities and prices
    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                raise ValidationError(f"{col.key} must be a number")
        raise ValidationError(f"{col.key} must be a number")

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except Exception:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is (JSON columns)
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_percent(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        pct = patch[key]
        if pct < 0 or pct > MAX_PERCENT:
            raise ValidationError(f"{key} must be between 0 and 100")


def _check_price(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        price = patch[key]
        if price < 0:
            raise ValidationError(f"{key} must be >= 0")
        if price > MAX_PRICE:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE:,.2f}")


def _check_choice(patch: dict, key: str, choices) -> None:
    if key in patch and patch[key] is not None and patch[key] not in choices:
        raise ValidationError(f"{key} must be one of: {', '.join(sorted(choices))}")


def enforce_rules_discount(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Selector completeness is checked when the rule is applied, not here,
    so pricebook imports can stage rules before their selectors are known.
    """
    from .models.discounts import DISCOUNT_TYPES

    _check_choice(patch, "discount_type", DISCOUNT_TYPES)
    _check_percent(patch, "discount_percent")
    if "discount_percent" in patch and patch["discount_percent"] is None:
        raise ValidationError("discount_percent is required")
    if patch.get("discount_amount") is not None and patch["discount_amount"] < 0:
        raise ValidationError("discount_amount must be >= 0")

    effective = patch.get("effective_date")
    expires = patch.get("expires_date")
    if effective is not None and expires is not None and expires < effective:
        raise ValidationError("expires_date must not be before effective_date")


def enforce_rules_product(patch: dict) -> None:
    from .models.catalog import UNITS_OF_MEASURE

    _check_choice(patch, "unit_of_measure", UNITS_OF_MEASURE)
    _check_percent(patch, "discount_percent")


def enforce_rules_pricing(patch: dict) -> None:
    """Shared checks for variant pricing blocks and supplier offers."""
    for key in ("list_price", "net_price", "standard_cost"):
        _check_price(patch, key)
    _check_percent(patch, "discount_percent")


def enforce_rules_inventory_record(patch: dict) -> None:
    from .models.inventory import INVENTORY_TYPES, COST_METHODS

    _check_choice(patch, "inventory_type", INVENTORY_TYPES)
    _check_choice(patch, "cost_method", COST_METHODS)
    for key in ("reorder_point", "reorder_quantity", "average_cost"):
        if patch.get(key) is not None and patch[key] < 0:
            raise ValidationError(f"{key} must be >= 0")


def parse_bool_arg(value: str | None) -> bool | None:
    """Query-string boolean: None when absent, ValidationError when unreadable."""
    if value is None or value == "":
        return None
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValidationError(f"invalid boolean: {value}")
