from __future__ import annotations

from decimal import Decimal
from enum import Enum

from ..extensions import db
from ..time_utils import to_utc_z
from .append_only import AppendOnlyMixin

"""
Stock ledger invariants (authoritative)

- stock_movements is append-only. Corrections are compensating movements.
- quantity is always > 0; direction comes from movement_type via MOVEMENT_SIGNS.
- Ordering is (effective_date, created_at). created_at is strictly increasing per
  item, so same-day movements fold in insertion order.
- quantity_available on lots / processed goods is a cache of the ledger balance.
"""

# Numeric precision shared by every quantity column
QUANTITY = db.Numeric(14, 3)


class ItemType(str, Enum):
    RAW_MATERIAL = "RAW_MATERIAL"
    RECURRING_PRODUCT = "RECURRING_PRODUCT"
    PROCESSED_GOOD = "PROCESSED_GOOD"


LOT_ITEM_TYPES = frozenset({ItemType.RAW_MATERIAL, ItemType.RECURRING_PRODUCT})


class MovementType(str, Enum):
    # Raw-good ledger
    IN = "IN"
    CONSUMPTION = "CONSUMPTION"
    WASTE = "WASTE"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    # Order-driven ledger
    ORDER_ITEM_ADDED = "ORDER_ITEM_ADDED"
    ORDER_ITEM_DELETED = "ORDER_ITEM_DELETED"
    ORDER_ITEM_ADJUSTED = "ORDER_ITEM_ADJUSTED"


MOVEMENT_SIGNS: dict[MovementType, int] = {
    MovementType.IN: 1,
    MovementType.TRANSFER_IN: 1,
    MovementType.ORDER_ITEM_DELETED: 1,
    MovementType.CONSUMPTION: -1,
    MovementType.WASTE: -1,
    MovementType.TRANSFER_OUT: -1,
    MovementType.ORDER_ITEM_ADDED: -1,
    MovementType.ORDER_ITEM_ADJUSTED: -1,
}

_unmapped = set(MovementType) - set(MOVEMENT_SIGNS)
if _unmapped:
    raise RuntimeError(f"MovementType without a sign: {sorted(m.value for m in _unmapped)}")

ORDER_MOVEMENT_TYPES = frozenset({
    MovementType.ORDER_ITEM_ADDED,
    MovementType.ORDER_ITEM_DELETED,
    MovementType.ORDER_ITEM_ADJUSTED,
})
TRANSFER_MOVEMENT_TYPES = frozenset({MovementType.TRANSFER_OUT, MovementType.TRANSFER_IN})


def movement_sign(movement_type: MovementType | str) -> int:
    return MOVEMENT_SIGNS[MovementType(movement_type)]


def signed_quantity(movement_type: MovementType | str, quantity: Decimal) -> Decimal:
    return quantity * movement_sign(movement_type)


def movement_allowed(item_type: ItemType, movement_type: MovementType) -> bool:
    """Order-driven movements only touch processed goods; transfers only touch lots."""
    if movement_type in ORDER_MOVEMENT_TYPES:
        return item_type == ItemType.PROCESSED_GOOD
    if movement_type in TRANSFER_MOVEMENT_TYPES:
        return item_type in LOT_ITEM_TYPES
    return True


class Lot(db.Model):
    """
    A raw-material or recurring-product lot.

    quantity_available is a cache; reconcile it from the ledger, never trust it.
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.UniqueConstraint("item_type", "lot_code", name="uq_lots_type_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_type = db.Column(db.String(32), nullable=False, index=True)
    lot_code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=False, default="kg")

    quantity_available = db.Column(QUANTITY, nullable=False, default=Decimal("0"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Lot id={self.id} type={self.item_type} code={self.lot_code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "lot_code": self.lot_code,
            "name": self.name,
            "unit": self.unit,
            "quantity_available": str(self.quantity_available),
            "created_at": to_utc_z(self.created_at),
        }


class ProcessedGood(db.Model):
    """Sellable produced good; order items deduct from its ledger."""
    __tablename__ = "processed_goods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=False, default="kg")

    quantity_available = db.Column(QUANTITY, nullable=False, default=Decimal("0"))

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProcessedGood id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "quantity_available": str(self.quantity_available),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(AppendOnlyMixin, db.Model):
    """
    One immutable, signed inventory event.

    Never updated or deleted: the append-only guard rejects both at flush time.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_order", "item_type", "item_reference", "effective_date", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    item_type = db.Column(db.String(32), nullable=False)
    item_reference = db.Column(db.Integer, nullable=False)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(32), nullable=True)

    # Business date vs system time; created_at breaks same-day ties
    effective_date = db.Column(db.Date, nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Traceability only; not a foreign key
    reference_id = db.Column(db.Integer, nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    @property
    def signed_quantity(self) -> Decimal:
        return signed_quantity(self.movement_type, self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "item_reference": self.item_reference,
            "movement_type": self.movement_type,
            "quantity": str(self.quantity),
            "signed_quantity": str(self.signed_quantity),
            "unit": self.unit,
            "effective_date": self.effective_date.isoformat(),
            "created_at": to_utc_z(self.created_at),
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_by": self.created_by,
            "notes": self.notes,
        }


class WasteRecord(db.Model):
    """Business record of wasted stock; the WASTE movement is derived from it."""
    __tablename__ = "waste_records"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    item_type = db.Column(db.String(32), nullable=False)
    item_reference = db.Column(db.Integer, nullable=False, index=True)

    quantity_wasted = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(32), nullable=True)
    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    waste_date = db.Column(db.Date, nullable=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "item_reference": self.item_reference,
            "quantity_wasted": str(self.quantity_wasted),
            "unit": self.unit,
            "reason": self.reason,
            "notes": self.notes,
            "waste_date": self.waste_date.isoformat(),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class TransferRecord(db.Model):
    """Business record of stock moved between two lots of the same type."""
    __tablename__ = "transfer_records"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    item_type = db.Column(db.String(32), nullable=False)
    from_lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)
    to_lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)

    quantity_transferred = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(32), nullable=True)
    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    transfer_date = db.Column(db.Date, nullable=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "from_lot_id": self.from_lot_id,
            "to_lot_id": self.to_lot_id,
            "quantity_transferred": str(self.quantity_transferred),
            "unit": self.unit,
            "reason": self.reason,
            "notes": self.notes,
            "transfer_date": self.transfer_date.isoformat(),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
