# Overview: Order lifecycle coordinator; drives deductions and audit from order changes.

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from ..exceptions import InvalidStatusTransition, NotFoundError, ValidationError
from ..extensions import db
from ..models import (
    LEGACY_STATUSES,
    ActiveOrder,
    AuditEvent,
    InventoryOperation,
    Order,
    OrderItem,
    OrderPayment,
    OrderStatus,
    PaymentStatus,
    PreMigrationOrder,
    ProcessedGood,
    StockMovement,
)
from ..time_utils import as_utc_naive, utcnow
from ..validation import to_money, to_quantity
from . import deduction_service
from .audit_service import log_order_event
from .concurrency import begin_write, lock_for_update, run_in_transaction
"""
Order lifecycle invariants (authoritative)

- Each public function is one transaction: item row, ledger rows, audit rows
  and the total recalculation commit together or not at all.
- Mutability is decided by the order variant (ensure_mutable), then by status:
  CANCELLED is terminal.
- OrderItem.inventory_deducted says whether the item's quantity is currently
  out of stock. Rollback to DRAFT releases it; DRAFT -> CONFIRMED takes it again.
- ORDER_COMPLETED is never set by a caller. It is derived after payment, item,
  discount and hold changes, and only DRAFT leads back out of it.
"""

# Rounding slack when comparing payments with the net total
PAYMENT_TOLERANCE = Decimal("0.01")
MONEY_STEP = Decimal("0.01")


def _parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", details={"status": str(value)})


def _load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _load_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFoundError(
        f"Item {item_id} not found on order {order.id}",
        details={"order_id": order.id, "item_id": item_id},
    )


def _require_good(processed_good_id: int) -> ProcessedGood:
    good = db.session.get(ProcessedGood, processed_good_id)
    if good is None:
        raise NotFoundError(
            f"Processed good {processed_good_id} not found",
            details={"processed_good_id": processed_good_id},
        )
    return good


def _ensure_editable(order: Order, now: datetime | None) -> None:
    order.ensure_mutable(now)
    if order.status == OrderStatus.CANCELLED.value:
        raise InvalidStatusTransition(
            "Cancelled orders cannot be modified",
            details={"order_id": order.id, "status": order.status},
        )


def _line_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return (quantity * unit_price).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def _is_fully_paid(order: Order) -> bool:
    net = order.net_total
    return net > 0 and order.total_paid >= net - PAYMENT_TOLERANCE


def _recalculate_order_total(order: Order) -> None:
    order.total_amount = sum((item.line_total for item in order.items), Decimal("0"))
    order.payment_status = (
        PaymentStatus.FULL_PAYMENT.value if _is_fully_paid(order) else PaymentStatus.READY_FOR_PAYMENT.value
    )


def _maybe_complete(order: Order, actor_id: int | None, now: datetime) -> bool:
    """Promote a DRAFT / CONFIRMED order to ORDER_COMPLETED once its conditions hold."""
    if order.status not in (OrderStatus.DRAFT.value, OrderStatus.CONFIRMED.value):
        return False
    if order.is_on_hold:
        return False
    if not order.items or not all(item.inventory_deducted for item in order.items):
        return False
    if not _is_fully_paid(order):
        return False

    previous = order.status
    order.status = OrderStatus.ORDER_COMPLETED.value
    order.completed_at = now
    log_order_event(
        order_id=order.id,
        event_type=AuditEvent.ORDER_COMPLETED,
        performed_by=actor_id,
        performed_at=now,
        event_data={
            "from_status": previous,
            "net_total": str(order.net_total),
            "total_paid": str(order.total_paid),
        },
        description="Order completed: all items deducted and fully paid",
    )
    return True


def _log_inventory_change(order: Order, movement: StockMovement, operation: InventoryOperation,
                          actor_id: int | None, now: datetime) -> None:
    log_order_event(
        order_id=order.id,
        event_type=AuditEvent.INVENTORY_CHANGED,
        performed_by=actor_id,
        performed_at=now,
        event_data={
            "processed_good_id": movement.item_reference,
            "movement_id": movement.id,
            "movement_type": movement.movement_type,
            "quantity_change": str(movement.signed_quantity),
            "operation_type": operation.value,
            "order_item_id": movement.reference_id,
        },
    )


def _take(order, item, quantity, operation, actor_id, now):
    movement = deduction_service.deduct(
        item.processed_good_id,
        quantity,
        operation_type=operation,
        order_id=order.id,
        order_item_id=item.id,
        actor_id=actor_id,
    )
    _log_inventory_change(order, movement, operation, actor_id, now)
    return movement


def _give_back(order, item, quantity, operation, actor_id, now):
    movement = deduction_service.restore(
        item.processed_good_id,
        quantity,
        operation_type=operation,
        order_id=order.id,
        order_item_id=item.id,
        actor_id=actor_id,
    )
    _log_inventory_change(order, movement, operation, actor_id, now)
    return movement


def _release_all(order, operation, actor_id, now) -> int:
    released = 0
    for item in order.items:
        if item.inventory_deducted:
            _give_back(order, item, item.quantity, operation, actor_id, now)
            item.inventory_deducted = False
            released += 1
    return released


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(order_id: int) -> Order:
    return _load_order(order_id)


def list_orders(*, status: str | None = None, locked_only: bool = False) -> list[Order]:
    q = db.session.query(Order)
    if status:
        q = q.filter(Order.status == _parse_status(status).value)
    if locked_only:
        q = q.filter(Order.is_locked.is_(True))
    return q.order_by(Order.id.asc()).all()


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_order(
    *,
    created_by: int | None = None,
    customer_name: str | None = None,
    order_number: str | None = None,
) -> ActiveOrder:
    def _op():
        now = utcnow()
        order = ActiveOrder(
            order_number=order_number,
            customer_name=customer_name,
            status=OrderStatus.DRAFT.value,
            payment_status=PaymentStatus.READY_FOR_PAYMENT.value,
            total_amount=Decimal("0"),
            discount_amount=Decimal("0"),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ORDER_CREATED,
            performed_by=created_by,
            performed_at=now,
            event_data={"order_number": order_number, "customer_name": customer_name},
        )
        return order

    return run_in_transaction(_op)


def import_historical_order(
    *,
    status: str = OrderStatus.DELIVERY_COMPLETED.value,
    items: list[dict] | None = None,
    order_number: str | None = None,
    customer_name: str | None = None,
    created_at: datetime | None = None,
    discount_amount=0,
    created_by: int | None = None,
) -> PreMigrationOrder:
    """
    Record an order from before the deduction regime.

    No movements are written: its stock was handled by the old process. The
    order is read-only from here on. Legacy statuses are accepted.
    """
    parsed_status = _parse_status(status)
    lines = []
    for raw in items or []:
        qty = to_quantity(raw.get("quantity"))
        price = to_money(raw.get("unit_price", 0), "unit_price")
        if raw.get("processed_good_id") is None:
            raise ValidationError("processed_good_id is required for each item")
        lines.append((int(raw["processed_good_id"]), qty, price))
    discount = to_money(discount_amount, "discount_amount")

    def _op():
        stamp = as_utc_naive(created_at) or utcnow()
        for good_id, _, _ in lines:
            _require_good(good_id)
        order = PreMigrationOrder(
            order_number=order_number,
            customer_name=customer_name,
            status=parsed_status.value,
            payment_status=PaymentStatus.READY_FOR_PAYMENT.value,
            discount_amount=discount,
            created_by=created_by,
            created_at=stamp,
            updated_at=stamp,
        )
        for good_id, qty, price in lines:
            order.items.append(OrderItem(
                processed_good_id=good_id,
                quantity=qty,
                unit_price=price,
                line_total=_line_total(qty, price),
                inventory_deducted=False,
                created_at=stamp,
            ))
        order.total_amount = sum((_line_total(q, p) for _, q, p in lines), Decimal("0"))
        db.session.add(order)
        db.session.flush()
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ORDER_CREATED,
            performed_by=created_by,
            event_data={"order_number": order_number, "status": parsed_status.value, "pre_migration": True},
            description="Imported pre-migration order",
        )
        return order

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

def add_item(
    order_id: int,
    processed_good_id: int,
    quantity,
    unit_price=0,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> OrderItem:
    """Add a line and take its quantity out of stock."""
    qty = to_quantity(quantity)
    price = to_money(unit_price, "unit_price")

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)

        item = OrderItem(
            processed_good_id=processed_good_id,
            quantity=qty,
            unit_price=price,
            line_total=_line_total(qty, price),
            inventory_deducted=True,
            created_at=stamp,
        )
        order.items.append(item)
        db.session.flush()

        _take(order, item, qty, InventoryOperation.ORDER_ITEM_ADDED, actor_id, stamp)
        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ITEM_ADDED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={
                "item_id": item.id,
                "processed_good_id": processed_good_id,
                "quantity": str(qty),
                "unit_price": str(price),
            },
        )
        _maybe_complete(order, actor_id, stamp)
        return item

    return run_in_transaction(_op)


def update_item(
    order_id: int,
    item_id: int,
    *,
    quantity=None,
    processed_good_id: int | None = None,
    unit_price=None,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> OrderItem:
    """
    Change a line's quantity, good or price.

    A quantity change moves stock by the delta; a good change gives back the
    old good and takes the new one.
    """
    if quantity is None and processed_good_id is None and unit_price is None:
        raise ValidationError("Nothing to update: provide quantity, processed_good_id or unit_price")
    new_qty = to_quantity(quantity) if quantity is not None else None
    new_price = to_money(unit_price, "unit_price") if unit_price is not None else None

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)
        item = _load_item(order, item_id)

        old = {
            "quantity": str(item.quantity),
            "processed_good_id": item.processed_good_id,
            "unit_price": str(item.unit_price),
        }
        old_qty = item.quantity
        old_good = item.processed_good_id
        target_qty = new_qty if new_qty is not None else old_qty
        target_good = processed_good_id if processed_good_id is not None else old_good
        if target_good != old_good:
            _require_good(target_good)

        if item.inventory_deducted:
            if target_good != old_good:
                _give_back(order, item, old_qty, InventoryOperation.ORDER_ITEM_PRODUCT_CHANGED_RESTORE,
                           actor_id, stamp)
                item.processed_good_id = target_good
                _take(order, item, target_qty, InventoryOperation.ORDER_ITEM_PRODUCT_CHANGED_DEDUCT,
                      actor_id, stamp)
            elif target_qty != old_qty:
                movement = deduction_service.adjust(
                    old_good,
                    old_qty,
                    target_qty,
                    order_id=order.id,
                    order_item_id=item.id,
                    actor_id=actor_id,
                )
                operation = (
                    InventoryOperation.ORDER_ITEM_QUANTITY_INCREASED
                    if target_qty > old_qty
                    else InventoryOperation.ORDER_ITEM_QUANTITY_DECREASED
                )
                _log_inventory_change(order, movement, operation, actor_id, stamp)

        item.processed_good_id = target_good
        item.quantity = target_qty
        if new_price is not None:
            item.unit_price = new_price
        item.line_total = _line_total(item.quantity, item.unit_price)

        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ITEM_UPDATED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={
                "item_id": item.id,
                "old": old,
                "new": {
                    "quantity": str(item.quantity),
                    "processed_good_id": item.processed_good_id,
                    "unit_price": str(item.unit_price),
                },
            },
        )
        _maybe_complete(order, actor_id, stamp)
        return item

    return run_in_transaction(_op)


def delete_item(
    order_id: int,
    item_id: int,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    """Remove a line and give its quantity back."""
    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)
        item = _load_item(order, item_id)

        if item.inventory_deducted:
            _give_back(order, item, item.quantity, InventoryOperation.ORDER_ITEM_DELETED, actor_id, stamp)

        event_data = {
            "item_id": item.id,
            "processed_good_id": item.processed_good_id,
            "quantity": str(item.quantity),
            "restored": item.inventory_deducted,
        }
        order.items.remove(item)
        db.session.flush()

        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ITEM_DELETED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data=event_data,
        )
        _maybe_complete(order, actor_id, stamp)
        return order

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def set_status(
    order_id: int,
    status,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Move an order to a new status.

    CANCELLED gives back every deducted item (no-op when already cancelled).
    DRAFT from CONFIRMED / ORDER_COMPLETED gives back every deducted item.
    CONFIRMED from DRAFT takes back items released by an earlier rollback.
    ORDER_COMPLETED and the legacy statuses can never be requested.
    """
    target = _parse_status(status)
    if target == OrderStatus.ORDER_COMPLETED:
        raise InvalidStatusTransition(
            "ORDER_COMPLETED is derived from payments and cannot be set directly",
            details={"order_id": order_id},
        )
    if target in LEGACY_STATUSES:
        raise InvalidStatusTransition(
            f"{target.value} is a legacy status and cannot be assigned",
            details={"order_id": order_id},
        )

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        order.ensure_mutable(stamp)
        current = OrderStatus(order.status)

        if target == current:
            return order
        if current == OrderStatus.CANCELLED:
            raise InvalidStatusTransition(
                "Cancelled orders cannot change status",
                details={"order_id": order.id, "from": current.value, "to": target.value},
            )

        if target == OrderStatus.CANCELLED:
            released = _release_all(order, InventoryOperation.ORDER_CANCELLED, actor_id, stamp)
        elif target == OrderStatus.DRAFT and current in (OrderStatus.CONFIRMED, OrderStatus.ORDER_COMPLETED):
            released = _release_all(order, InventoryOperation.ORDER_REVERTED_TO_DRAFT, actor_id, stamp)
            order.completed_at = None
        elif target == OrderStatus.CONFIRMED and current == OrderStatus.DRAFT:
            released = 0
            for item in order.items:
                if not item.inventory_deducted:
                    _take(order, item, item.quantity, InventoryOperation.ORDER_CONFIRMED, actor_id, stamp)
                    item.inventory_deducted = True
        else:
            raise InvalidStatusTransition(
                f"Cannot change status from {current.value} to {target.value}",
                details={"order_id": order.id, "from": current.value, "to": target.value},
            )

        order.status = target.value
        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.STATUS_CHANGED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"from": current.value, "to": target.value, "items_released": released},
        )
        _maybe_complete(order, actor_id, stamp)
        return order

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Money and hold
# ---------------------------------------------------------------------------

def record_payment(
    order_id: int,
    amount,
    *,
    actor_id: int | None = None,
    method: str | None = None,
    reference: str | None = None,
    payment_at: datetime | None = None,
    now: datetime | None = None,
) -> OrderPayment:
    received = to_money(amount, "amount", allow_zero=False)

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)

        payment = OrderPayment(
            amount_received=received,
            method=method,
            reference=reference,
            payment_at=as_utc_naive(payment_at) or stamp,
            recorded_by=actor_id,
        )
        order.payments.append(payment)
        db.session.flush()

        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.PAYMENT_RECEIVED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={
                "payment_id": payment.id,
                "amount": str(received),
                "method": method,
                "total_paid": str(order.total_paid),
            },
        )
        _maybe_complete(order, actor_id, stamp)
        return payment

    return run_in_transaction(_op)


def apply_discount(
    order_id: int,
    amount,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    discount = to_money(amount, "discount_amount")

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)
        if discount > order.total_amount:
            raise ValidationError(
                "Discount cannot exceed the order total",
                details={"discount_amount": str(discount), "total_amount": str(order.total_amount)},
            )

        previous = order.discount_amount
        order.discount_amount = discount
        _recalculate_order_total(order)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.DISCOUNT_APPLIED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"from": str(previous), "to": str(discount)},
        )
        _maybe_complete(order, actor_id, stamp)
        return order

    return run_in_transaction(_op)


def place_hold(
    order_id: int,
    reason: str,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A hold reason is required")

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)
        if order.is_on_hold:
            raise InvalidStatusTransition("Order is already on hold", details={"order_id": order.id})

        order.is_on_hold = True
        order.hold_reason = reason
        order.held_at = stamp
        order.held_by = actor_id
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.HOLD_PLACED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"reason": reason},
        )
        return order

    return run_in_transaction(_op)


def remove_hold(
    order_id: int,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        _ensure_editable(order, stamp)
        if not order.is_on_hold:
            raise InvalidStatusTransition("Order is not on hold", details={"order_id": order.id})

        previous_reason = order.hold_reason
        order.is_on_hold = False
        order.hold_reason = None
        order.held_at = None
        order.held_by = None
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.HOLD_REMOVED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"previous_reason": previous_reason},
        )
        _maybe_complete(order, actor_id, stamp)
        return order

    return run_in_transaction(_op)
