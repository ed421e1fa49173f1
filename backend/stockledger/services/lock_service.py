# Overview: Manual order lock with a timed unlock window.

"""
Order lock state machine

    UNLOCKED --lock()--> LOCKED(deadline = locked_at + window) --time--> PERMANENTLY_LOCKED
    LOCKED --unlock(reason)--> UNLOCKED        (only while now < deadline)

- Expiry is lazy: Order.lock_state(now) derives it, no sweeper runs.
- Only ORDER_COMPLETED active orders can be locked, and only by an actor
  with write access.
- Every transition writes a lock-log row and the matching audit row in the
  same transaction. No inventory movements are written here.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..exceptions import (
    HistoricalOrderImmutable,
    InvalidStatusTransition,
    NotFoundError,
    OrderLocked,
    PermissionDenied,
    ValidationError,
)
from ..extensions import db
from ..models import AuditEvent, LockAction, LockState, Order, OrderLockLog, OrderStatus, PreMigrationOrder
from ..time_utils import as_utc_naive, to_utc_z, utcnow
from . import audit_service
from .audit_service import log_lock_action, log_order_event
from .concurrency import begin_write, lock_for_update, run_in_transaction


def unlock_window() -> timedelta:
    return timedelta(days=current_app.config.get("ORDER_UNLOCK_WINDOW_DAYS", 7))


def _load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _require_write_access(has_write_access: bool, action: str, order_id: int) -> None:
    if not has_write_access:
        raise PermissionDenied(
            f"Write access is required to {action} an order",
            details={"order_id": order_id},
        )


def lock_state(order_id: int, now: datetime | None = None) -> dict:
    """Current lock state plus the fields a client needs to render it."""
    now = now or utcnow()
    order = _load_order(order_id)
    state = order.lock_state(now)
    deadline = as_utc_naive(order.can_unlock_until)
    return {
        "order_id": order.id,
        "lock_state": state.value,
        "is_locked": order.is_locked,
        "locked_at": to_utc_z(order.locked_at),
        "locked_by": order.locked_by,
        "can_unlock_until": to_utc_z(order.can_unlock_until),
        "can_unlock": state == LockState.LOCKED,
        "seconds_until_permanent": (
            int((deadline - now).total_seconds()) if state == LockState.LOCKED else None
        ),
    }


def lock_order(
    order_id: int,
    *,
    actor_id: int | None,
    has_write_access: bool,
    now: datetime | None = None,
) -> Order:
    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        if isinstance(order, PreMigrationOrder):
            raise HistoricalOrderImmutable(
                "Pre-migration orders cannot be locked",
                details={"order_id": order.id},
            )
        _require_write_access(has_write_access, "lock", order.id)

        state = order.lock_state(stamp)
        if state != LockState.UNLOCKED:
            raise InvalidStatusTransition(
                "Order is already locked",
                details={"order_id": order.id, "lock_state": state.value},
            )
        if order.status != OrderStatus.ORDER_COMPLETED.value:
            raise InvalidStatusTransition(
                "Only completed orders can be locked",
                details={"order_id": order.id, "status": order.status},
            )

        deadline = stamp + unlock_window()
        order.is_locked = True
        order.locked_at = stamp
        order.locked_by = actor_id
        order.can_unlock_until = deadline

        log_lock_action(order_id=order.id, action=LockAction.LOCK, performed_by=actor_id, performed_at=stamp)
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ORDER_LOCKED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"can_unlock_until": to_utc_z(deadline)},
        )
        return order

    return run_in_transaction(_op)


def unlock_order(
    order_id: int,
    reason: str,
    *,
    actor_id: int | None,
    has_write_access: bool,
    now: datetime | None = None,
) -> Order:
    reason = (reason or "").strip()

    def _op():
        begin_write()
        stamp = now or utcnow()
        order = _load_order(order_id, lock=True)
        if isinstance(order, PreMigrationOrder):
            raise HistoricalOrderImmutable(
                "Pre-migration orders cannot be unlocked",
                details={"order_id": order.id},
            )
        _require_write_access(has_write_access, "unlock", order.id)

        state = order.lock_state(stamp)
        if state == LockState.UNLOCKED:
            raise InvalidStatusTransition("Order is not locked", details={"order_id": order.id})
        if state == LockState.PERMANENTLY_LOCKED:
            raise OrderLocked(
                "Unlock window has expired; the order is permanently locked",
                details={"order_id": order.id, "can_unlock_until": to_utc_z(order.can_unlock_until)},
            )
        if not reason:
            raise ValidationError("An unlock reason is required", details={"order_id": order.id})

        order.is_locked = False
        order.locked_at = None
        order.locked_by = None
        order.can_unlock_until = None

        log_lock_action(
            order_id=order.id,
            action=LockAction.UNLOCK,
            performed_by=actor_id,
            performed_at=stamp,
            unlock_reason=reason,
        )
        log_order_event(
            order_id=order.id,
            event_type=AuditEvent.ORDER_UNLOCKED,
            performed_by=actor_id,
            performed_at=stamp,
            event_data={"reason": reason},
            description=reason,
        )
        return order

    return run_in_transaction(_op)


def get_lock_history(order_id: int) -> list[OrderLockLog]:
    _load_order(order_id)
    return audit_service.get_lock_history(order_id)
