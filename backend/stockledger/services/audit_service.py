# Overview: Append-only order audit and lock history.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..exceptions import ValidationError
from ..extensions import db
from ..models import AuditEvent, LockAction, OrderAuditLog, OrderLockLog
from ..time_utils import utcnow
"""
Order audit invariants (authoritative)

- Rows are written inside the same DB transaction as the action they record.
- No domain logic here; callers decide what happened.
- No updates or deletes (enforced by the append-only guard on the models).
- The audit log is a superset of the lock log: every LOCK / UNLOCK also
  appears as ORDER_LOCKED / ORDER_UNLOCKED.
"""


def log_order_event(
    *,
    order_id: int,
    event_type: AuditEvent | str,
    performed_by: int | None = None,
    event_data: dict | None = None,
    description: Optional[str] = None,
    performed_at: Optional[datetime] = None,
) -> OrderAuditLog:
    ev = OrderAuditLog(
        order_id=order_id,
        event_type=AuditEvent(event_type).value,
        performed_by=performed_by,
        performed_at=performed_at or utcnow(),
        event_data=event_data,
        description=description,
    )
    db.session.add(ev)
    return ev


def log_lock_action(
    *,
    order_id: int,
    action: LockAction | str,
    performed_by: int | None = None,
    unlock_reason: Optional[str] = None,
    performed_at: Optional[datetime] = None,
) -> OrderLockLog:
    row = OrderLockLog(
        order_id=order_id,
        action=LockAction(action).value,
        performed_by=performed_by,
        performed_at=performed_at or utcnow(),
        unlock_reason=unlock_reason,
    )
    db.session.add(row)
    return row


def get_audit_log(order_id: int, *, event_type: str | None = None) -> list[OrderAuditLog]:
    """Audit rows for one order, oldest first."""
    q = db.session.query(OrderAuditLog).filter(OrderAuditLog.order_id == order_id)
    if event_type:
        try:
            event_type = AuditEvent(event_type)
        except ValueError:
            raise ValidationError(f"Unknown audit event type: {event_type}")
        q = q.filter(OrderAuditLog.event_type == event_type.value)
    return q.order_by(OrderAuditLog.performed_at.asc(), OrderAuditLog.id.asc()).all()


def get_lock_history(order_id: int) -> list[OrderLockLog]:
    return (
        db.session.query(OrderLockLog)
        .filter(OrderLockLog.order_id == order_id)
        .order_by(OrderLockLog.performed_at.asc(), OrderLockLog.id.asc())
        .all()
    )
