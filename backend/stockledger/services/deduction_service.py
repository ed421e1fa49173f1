# Overview: Order-driven deduction and restoration against processed-good ledgers.

from __future__ import annotations

from datetime import date
from decimal import Decimal

from ..exceptions import InsufficientInventory, NegativeInventoryInvariantViolation, NotFoundError
from ..extensions import db
from ..models import (
    InventoryChangeLog,
    InventoryOperation,
    ItemType,
    MovementType,
    ProcessedGood,
    StockMovement,
)
from ..time_utils import TICK, today, utcnow
from ..validation import to_date, to_decimal, to_quantity
from .balance_service import available_for_deduction, balance_as_of
from .concurrency import lock_for_update
from .movement_service import append_movement, latest_created_at
"""
Deduction engine invariants (authoritative)

- The processed-good row is locked before the availability check; check and
  write share one transaction.
- Nothing here commits. The order coordinator owns the transaction, so a
  failure anywhere after a write rolls the write back too.
- Every ledger write is paired with one inventory_changes_log row.
- quantity_available is refreshed from the ledger after each write, then
  re-verified non-negative. A negative result is a bug, not a user error.
"""

ORDER_ITEM_REFERENCE = "ORDER_ITEM"


def _lock_good(processed_good_id: int) -> ProcessedGood:
    query = db.session.query(ProcessedGood).filter_by(id=processed_good_id)
    good = lock_for_update(query).first()
    if good is None:
        raise NotFoundError(
            f"Processed good {processed_good_id} not found",
            details={"processed_good_id": processed_good_id},
        )
    return good


def _insertion_point(processed_good_id: int):
    created_at = utcnow()
    last = latest_created_at(ItemType.PROCESSED_GOOD, processed_good_id)
    if last is not None and created_at <= last:
        created_at = last + TICK
    return created_at


def _write(
    good: ProcessedGood,
    *,
    movement_type: MovementType,
    quantity: Decimal,
    operation_type: InventoryOperation,
    effective_date: date,
    created_at,
    order_id: int | None,
    order_item_id: int | None,
    actor_id: int | None,
    notes: str | None,
) -> StockMovement:
    movement = append_movement(
        item_type=ItemType.PROCESSED_GOOD,
        item_reference=good.id,
        movement_type=movement_type,
        quantity=quantity,
        effective_date=effective_date,
        created_at=created_at,
        unit=good.unit,
        reference_id=order_item_id,
        reference_type=ORDER_ITEM_REFERENCE if order_item_id is not None else None,
        created_by=actor_id,
        notes=notes,
    )

    balance = balance_as_of(ItemType.PROCESSED_GOOD, good.id)
    if balance < 0:
        raise NegativeInventoryInvariantViolation(
            f"Processed good {good.id} balance went negative after {movement_type.value}",
            details={"processed_good_id": good.id, "balance": str(balance)},
        )
    good.quantity_available = balance

    db.session.add(InventoryChangeLog(
        processed_good_id=good.id,
        movement_id=movement.id,
        quantity_change=movement.signed_quantity,
        operation_type=InventoryOperation(operation_type).value,
        order_id=order_id,
        order_item_id=order_item_id,
        created_by=actor_id,
        created_at=movement.created_at,
    ))
    db.session.flush()
    return movement


def deduct(
    processed_good_id: int,
    quantity,
    *,
    operation_type: InventoryOperation = InventoryOperation.ORDER_ITEM_ADDED,
    movement_type: MovementType = MovementType.ORDER_ITEM_ADDED,
    order_id: int | None = None,
    order_item_id: int | None = None,
    actor_id: int | None = None,
    effective_date: date | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Take ``quantity`` out of a processed good's stock.

    Raises InsufficientInventory(available, required) without writing anything
    if the ledger cannot cover the quantity at the insertion point or at any
    later point.
    """
    qty = to_quantity(quantity)
    good = _lock_good(processed_good_id)

    effective_date = to_date(effective_date, "effective_date") or today()
    created_at = _insertion_point(good.id)
    available = available_for_deduction(ItemType.PROCESSED_GOOD, good.id, effective_date, created_at)
    if qty > available:
        raise InsufficientInventory(
            available,
            qty,
            details={"processed_good_id": good.id, "order_id": order_id},
        )

    return _write(
        good,
        movement_type=movement_type,
        quantity=qty,
        operation_type=operation_type,
        effective_date=effective_date,
        created_at=created_at,
        order_id=order_id,
        order_item_id=order_item_id,
        actor_id=actor_id,
        notes=notes,
    )


def restore(
    processed_good_id: int,
    quantity,
    *,
    operation_type: InventoryOperation = InventoryOperation.ORDER_ITEM_DELETED,
    order_id: int | None = None,
    order_item_id: int | None = None,
    actor_id: int | None = None,
    effective_date: date | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Put ``quantity`` back into a processed good's stock."""
    qty = to_quantity(quantity)
    good = _lock_good(processed_good_id)

    return _write(
        good,
        movement_type=MovementType.ORDER_ITEM_DELETED,
        quantity=qty,
        operation_type=operation_type,
        effective_date=to_date(effective_date, "effective_date") or today(),
        created_at=_insertion_point(good.id),
        order_id=order_id,
        order_item_id=order_item_id,
        actor_id=actor_id,
        notes=notes,
    )


def adjust(
    processed_good_id: int,
    old_quantity,
    new_quantity,
    *,
    order_id: int | None = None,
    order_item_id: int | None = None,
    actor_id: int | None = None,
    effective_date: date | None = None,
) -> StockMovement | None:
    """
    Move stock by the difference between two item quantities.

    delta > 0 deducts (ORDER_ITEM_ADJUSTED), delta < 0 restores,
    delta == 0 writes nothing and returns None.
    """
    old_qty = to_decimal(old_quantity, "old_quantity")
    new_qty = to_quantity(new_quantity, "new_quantity")
    delta = new_qty - old_qty

    if delta > 0:
        return deduct(
            processed_good_id,
            delta,
            operation_type=InventoryOperation.ORDER_ITEM_QUANTITY_INCREASED,
            movement_type=MovementType.ORDER_ITEM_ADJUSTED,
            order_id=order_id,
            order_item_id=order_item_id,
            actor_id=actor_id,
            effective_date=effective_date,
        )
    if delta < 0:
        return restore(
            processed_good_id,
            -delta,
            operation_type=InventoryOperation.ORDER_ITEM_QUANTITY_DECREASED,
            order_id=order_id,
            order_item_id=order_item_id,
            actor_id=actor_id,
            effective_date=effective_date,
        )
    return None


def change_log_for_order(order_id: int) -> list[InventoryChangeLog]:
    return (
        db.session.query(InventoryChangeLog)
        .filter(InventoryChangeLog.order_id == order_id)
        .order_by(InventoryChangeLog.created_at.asc(), InventoryChangeLog.id.asc())
        .all()
    )
