# Overview: Movement store; the only writer of stock_movements rows.

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from ..exceptions import ValidationError
from ..extensions import db
from ..models import ItemType, MovementType, StockMovement, movement_allowed
from ..time_utils import TICK, as_utc_naive, today, utcnow
from ..validation import to_date, to_quantity
"""
Movement store invariants (authoritative)

- Public surface is append + read. There is no update or delete.
- Cached balances are not touched here; callers own the cache.
- An explicit created_at is stored as given; it places the movement among
  same-day events, so back-filled history may arrive in any order.
- A defaulted created_at ("now") is bumped to the item's latest + 1 tick when
  it would not sort after that movement.
"""


def parse_item_type(value) -> ItemType:
    try:
        return ItemType(value)
    except ValueError:
        raise ValidationError(f"Unknown item type: {value}", details={"item_type": str(value)})


def parse_movement_type(value) -> MovementType:
    try:
        return MovementType(value)
    except ValueError:
        raise ValidationError(f"Unknown movement type: {value}", details={"movement_type": str(value)})


def chronological(query):
    """(effective_date, created_at) order; id breaks ties left by legacy rows."""
    return query.order_by(
        StockMovement.effective_date.asc(),
        StockMovement.created_at.asc(),
        StockMovement.id.asc(),
    )


def _item_filter(query, item_type: ItemType, item_reference: int):
    return query.filter(
        StockMovement.item_type == item_type.value,
        StockMovement.item_reference == item_reference,
    )


def latest_created_at(item_type: ItemType, item_reference: int) -> datetime | None:
    q = _item_filter(db.session.query(db.func.max(StockMovement.created_at)), item_type, item_reference)
    return as_utc_naive(q.scalar())


def append_movement(
    *,
    item_type: ItemType | str,
    item_reference: int,
    movement_type: MovementType | str,
    quantity: Decimal | str | int,
    effective_date: date | str | None = None,
    created_at: datetime | None = None,
    unit: str | None = None,
    reference_id: int | None = None,
    reference_type: str | None = None,
    created_by: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Append one movement and flush it; the caller's transaction commits it.

    Raises ValidationError for a non-positive quantity, an unknown type, or a
    movement type not allowed for the item type.
    """
    item_type = parse_item_type(item_type)
    movement_type = parse_movement_type(movement_type)
    qty = to_quantity(quantity)

    if not movement_allowed(item_type, movement_type):
        raise ValidationError(
            f"{movement_type.value} movements are not allowed for {item_type.value}",
            details={"item_type": item_type.value, "movement_type": movement_type.value},
        )

    effective_date = to_date(effective_date, "effective_date") or today()
    if created_at is not None:
        created_at = as_utc_naive(created_at)
    else:
        created_at = utcnow()
        last = latest_created_at(item_type, item_reference)
        if last is not None and created_at <= last:
            created_at = last + TICK

    movement = StockMovement(
        item_type=item_type.value,
        item_reference=item_reference,
        movement_type=movement_type.value,
        quantity=qty,
        unit=unit,
        effective_date=effective_date,
        created_at=created_at,
        reference_id=reference_id,
        reference_type=reference_type,
        created_by=created_by,
        notes=notes,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def list_movements(
    item_type: ItemType | str,
    item_reference: int,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[StockMovement]:
    """Movements for one item in ledger order, optionally bounded by effective date (inclusive)."""
    item_type = parse_item_type(item_type)
    q = _item_filter(db.session.query(StockMovement), item_type, item_reference)
    if start_date is not None:
        q = q.filter(StockMovement.effective_date >= start_date)
    if end_date is not None:
        q = q.filter(StockMovement.effective_date <= end_date)
    return chronological(q).all()


def movements_for_reference(reference_type: str, reference_id: int) -> list[StockMovement]:
    q = db.session.query(StockMovement).filter(
        StockMovement.reference_type == reference_type,
        StockMovement.reference_id == reference_id,
    )
    return chronological(q).all()
