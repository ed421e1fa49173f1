from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from ..extensions import db
from ..exceptions import HistoricalOrderImmutable, OrderLocked
from ..time_utils import as_utc_naive, to_utc_z, utcnow
from .append_only import AppendOnlyMixin
from .inventory import QUANTITY

MONEY = db.Numeric(14, 2)


class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    CANCELLED = "CANCELLED"
    # Legacy, only present on pre-migration orders
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"


LEGACY_STATUSES = frozenset({OrderStatus.PARTIALLY_DELIVERED, OrderStatus.DELIVERY_COMPLETED})


class PaymentStatus(str, Enum):
    READY_FOR_PAYMENT = "READY_FOR_PAYMENT"
    FULL_PAYMENT = "FULL_PAYMENT"


class LockState(str, Enum):
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"
    PERMANENTLY_LOCKED = "PERMANENTLY_LOCKED"


class LockAction(str, Enum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


class AuditEvent(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ITEM_ADDED = "ITEM_ADDED"
    ITEM_UPDATED = "ITEM_UPDATED"
    ITEM_DELETED = "ITEM_DELETED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    STATUS_CHANGED = "STATUS_CHANGED"
    HOLD_PLACED = "HOLD_PLACED"
    HOLD_REMOVED = "HOLD_REMOVED"
    ORDER_LOCKED = "ORDER_LOCKED"
    ORDER_UNLOCKED = "ORDER_UNLOCKED"
    DISCOUNT_APPLIED = "DISCOUNT_APPLIED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    INVENTORY_CHANGED = "INVENTORY_CHANGED"


class InventoryOperation(str, Enum):
    """operation_type values on inventory_changes_log."""
    ORDER_ITEM_ADDED = "ORDER_ITEM_ADDED"
    ORDER_ITEM_DELETED = "ORDER_ITEM_DELETED"
    ORDER_ITEM_QUANTITY_INCREASED = "ORDER_ITEM_QUANTITY_INCREASED"
    ORDER_ITEM_QUANTITY_DECREASED = "ORDER_ITEM_QUANTITY_DECREASED"
    ORDER_ITEM_PRODUCT_CHANGED_RESTORE = "ORDER_ITEM_PRODUCT_CHANGED_RESTORE"
    ORDER_ITEM_PRODUCT_CHANGED_DEDUCT = "ORDER_ITEM_PRODUCT_CHANGED_DEDUCT"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_REVERTED_TO_DRAFT = "ORDER_REVERTED_TO_DRAFT"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"


class Order(db.Model):
    """
    Sales order.

    Mapped as a tagged variant on created_before_migration:
    - ActiveOrder: full inventory, status and lock lifecycle.
    - PreMigrationOrder: created under the old regime, read-only.

    Mutators call ensure_mutable() and let the variant decide.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=True, unique=True)
    customer_name = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(32), nullable=False, default=OrderStatus.DRAFT.value, index=True)
    payment_status = db.Column(db.String(32), nullable=False, default=PaymentStatus.READY_FOR_PAYMENT.value)

    total_amount = db.Column(MONEY, nullable=False, default=Decimal("0"))
    discount_amount = db.Column(MONEY, nullable=False, default=Decimal("0"))

    # Hold
    is_on_hold = db.Column(db.Boolean, nullable=False, default=False)
    hold_reason = db.Column(db.String(255), nullable=True)
    held_at = db.Column(db.DateTime(timezone=True), nullable=True)
    held_by = db.Column(db.Integer, nullable=True)

    # Manual lock
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by = db.Column(db.Integer, nullable=True)
    can_unlock_until = db.Column(db.DateTime(timezone=True), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_before_migration = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    payments = db.relationship("OrderPayment", back_populates="order", order_by="OrderPayment.id")

    __mapper_args__ = {
        "polymorphic_on": created_before_migration,
        "version_id_col": version_id,
    }

    @property
    def net_total(self) -> Decimal:
        return (self.total_amount or Decimal("0")) - (self.discount_amount or Decimal("0"))

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount_received for p in self.payments), Decimal("0"))

    def lock_state(self, now: datetime | None = None) -> LockState:
        """Lock state as a pure function of now; expiry needs no sweep."""
        if not self.is_locked:
            return LockState.UNLOCKED
        now = now or utcnow()
        deadline = as_utc_naive(self.can_unlock_until)
        if deadline is None or now >= deadline:
            return LockState.PERMANENTLY_LOCKED
        return LockState.LOCKED

    def ensure_mutable(self, now: datetime | None = None) -> None:
        raise NotImplementedError

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": str(self.total_amount),
            "discount_amount": str(self.discount_amount),
            "net_total": str(self.net_total),
            "total_paid": str(self.total_paid),
            "is_on_hold": self.is_on_hold,
            "hold_reason": self.hold_reason,
            "held_at": to_utc_z(self.held_at),
            "held_by": self.held_by,
            "is_locked": self.is_locked,
            "lock_state": self.lock_state(now).value,
            "locked_at": to_utc_z(self.locked_at),
            "locked_by": self.locked_by,
            "can_unlock_until": to_utc_z(self.can_unlock_until),
            "completed_at": to_utc_z(self.completed_at),
            "created_before_migration": self.created_before_migration,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            "items": [item.to_dict() for item in self.items],
        }


class ActiveOrder(Order):
    __mapper_args__ = {"polymorphic_identity": False}

    def ensure_mutable(self, now: datetime | None = None) -> None:
        state = self.lock_state(now)
        if state == LockState.LOCKED:
            raise OrderLocked(
                "Order is locked and cannot be modified",
                details={"order_id": self.id, "can_unlock_until": to_utc_z(self.can_unlock_until)},
            )
        if state == LockState.PERMANENTLY_LOCKED:
            raise OrderLocked(
                "Order is permanently locked and cannot be modified",
                details={"order_id": self.id},
            )


class PreMigrationOrder(Order):
    __mapper_args__ = {"polymorphic_identity": True}

    def ensure_mutable(self, now: datetime | None = None) -> None:
        raise HistoricalOrderImmutable(
            "Order was created before the inventory migration and is read-only",
            details={"order_id": self.id},
        )


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    processed_good_id = db.Column(db.Integer, db.ForeignKey("processed_goods.id"), nullable=False, index=True)

    quantity = db.Column(QUANTITY, nullable=False)
    unit_price = db.Column(MONEY, nullable=False, default=Decimal("0"))
    line_total = db.Column(MONEY, nullable=False, default=Decimal("0"))

    # False after a rollback to DRAFT released the quantity back to stock
    inventory_deducted = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    processed_good = db.relationship("ProcessedGood")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "processed_good_id": self.processed_good_id,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "line_total": str(self.line_total),
            "inventory_deducted": self.inventory_deducted,
            "created_at": to_utc_z(self.created_at),
        }


class OrderPayment(db.Model):
    __tablename__ = "order_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount_received = db.Column(MONEY, nullable=False)
    method = db.Column(db.String(32), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    payment_at = db.Column(db.DateTime(timezone=True), nullable=False)
    recorded_by = db.Column(db.Integer, nullable=True)

    order = db.relationship("Order", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount_received": str(self.amount_received),
            "method": self.method,
            "reference": self.reference,
            "payment_at": to_utc_z(self.payment_at),
            "recorded_by": self.recorded_by,
        }


class OrderLockLog(AppendOnlyMixin, db.Model):
    """LOCK / UNLOCK history. Insert-only."""
    __tablename__ = "order_lock_log"
    __table_args__ = (
        db.Index("ix_order_lock_log_order_performed", "order_id", "performed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    action = db.Column(db.String(16), nullable=False)  # LOCK, UNLOCK
    performed_by = db.Column(db.Integer, nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    unlock_reason = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "performed_at": to_utc_z(self.performed_at),
            "unlock_reason": self.unlock_reason,
        }


class OrderAuditLog(AppendOnlyMixin, db.Model):
    """Every order-affecting action. Superset of the lock log. Insert-only."""
    __tablename__ = "order_audit_log"
    __table_args__ = (
        db.Index("ix_order_audit_log_order_performed", "order_id", "performed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    performed_by = db.Column(db.Integer, nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    event_data = db.Column(db.JSON, nullable=True)
    description = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "performed_by": self.performed_by,
            "performed_at": to_utc_z(self.performed_at),
            "event_data": self.event_data,
            "description": self.description,
        }


class InventoryChangeLog(AppendOnlyMixin, db.Model):
    """Order-driven inventory changes, one row per ledger write. Insert-only."""
    __tablename__ = "inventory_changes_log"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    processed_good_id = db.Column(db.Integer, db.ForeignKey("processed_goods.id"), nullable=False, index=True)
    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=False)

    quantity_change = db.Column(QUANTITY, nullable=False)  # signed
    operation_type = db.Column(db.String(48), nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    order_item_id = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "processed_good_id": self.processed_good_id,
            "movement_id": self.movement_id,
            "quantity_change": str(self.quantity_change),
            "operation_type": self.operation_type,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
