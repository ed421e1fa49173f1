from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .exceptions import ValidationError
from .time_utils import parse_iso_date, parse_iso_datetime

# Largest quantity a Numeric(14, 3) column holds
MAX_QUANTITY = Decimal("99999999999.999")

QUANTITY_STEP = Decimal("0.001")
MONEY_STEP = Decimal("0.01")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def to_decimal(value: Any, field: str, *, step: Decimal = QUANTITY_STEP) -> Decimal:
    """
    Coerce JSON/CLI input to a Decimal quantized to ``step``.

    Floats go through str() so 0.1 stays 0.1. Booleans, NaN, infinities and
    values with more decimal places than ``step`` allows are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        dec = value
    else:
        try:
            dec = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number")
    if not dec.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    try:
        quantized = dec.quantize(step)
    except InvalidOperation:
        raise ValidationError(f"{field} is out of range")
    if quantized != dec:
        places = -step.as_tuple().exponent
        raise ValidationError(
            f"{field} allows at most {places} decimal places",
            details={"field": field, "value": str(value)},
        )
    return quantized


def to_quantity(value: Any, field: str = "quantity") -> Decimal:
    """Strictly positive quantity."""
    qty = to_decimal(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be > 0", details={"field": field, "value": str(value)})
    if qty > MAX_QUANTITY:
        raise ValidationError(f"{field} exceeds {MAX_QUANTITY}")
    return qty


def to_money(value: Any, field: str, *, allow_zero: bool = True) -> Decimal:
    amount = to_decimal(value, field, step=MONEY_STEP)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    return amount


def to_date(value: Any, field: str) -> date | None:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        try:
            return parse_iso_date(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 date")
    raise ValidationError(f"{field} must be a date")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{col.key} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false")

    # Numeric(14, 3) quantities and Numeric(14, 2) money
    if isinstance(coltype, Numeric):
        step = Decimal(1).scaleb(-(coltype.scale or 0))
        return to_decimal(value, col.key, step=step)

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, Date):
        return to_date(value, col.key)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

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
    - SQLAlchemy column metadata (nullable, type, String length, Numeric scale)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    Keys in writable_fields that are not columns on ``model`` pass through
    unchanged; the service coerces them.
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

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols.get(k)
        if col is None:
            patch[k] = raw
            continue

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_order_item(patch: dict) -> None:
    """Business rules that are not captured by SQLAlchemy metadata alone."""
    if "quantity" in patch:
        if patch["quantity"] is None or patch["quantity"] <= 0:
            raise ValidationError("quantity must be > 0")
    if "unit_price" in patch and patch["unit_price"] is not None:
        if patch["unit_price"] < 0:
            raise ValidationError("unit_price must be >= 0")


def enforce_rules_waste(patch: dict) -> None:
    if "quantity_wasted" in patch and patch["quantity_wasted"] <= 0:
        raise ValidationError("quantity_wasted must be > 0")
    reason = patch.get("reason")
    if reason is None or str(reason).strip() == "":
        raise ValidationError("reason is required for waste")


def enforce_rules_transfer(patch: dict) -> None:
    if "quantity_transferred" in patch and patch["quantity_transferred"] <= 0:
        raise ValidationError("quantity_transferred must be > 0")
    if patch.get("from_lot_id") is not None and patch.get("from_lot_id") == patch.get("to_lot_id"):
        raise ValidationError("from_lot_id and to_lot_id must differ")
