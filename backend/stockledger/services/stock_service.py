# Overview: Service-layer operations for lots and processed goods: intake, consumption, waste, transfers, reconciliation.

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from flask import current_app

from ..exceptions import (
    InsufficientInventory,
    NegativeInventoryInvariantViolation,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    LOT_ITEM_TYPES,
    ItemType,
    Lot,
    MovementType,
    ProcessedGood,
    StockMovement,
    TransferRecord,
    WasteRecord,
)
from ..time_utils import TICK, next_tick, today, utcnow
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_transfer,
    enforce_rules_waste,
    to_date,
    to_quantity,
    validate_payload,
)
from .balance_service import available_for_deduction, balance_as_of
from .concurrency import begin_write, lock_for_update, run_in_transaction
from .movement_service import append_movement, latest_created_at, parse_item_type
"""
Stock operation invariants (authoritative)

- Every operation is one transaction: business record, movement(s) and cache
  refresh commit together.
- Derived movements sort after the record they come from:
    waste:    WASTE        at record.created_at + 1 tick
    transfer: TRANSFER_OUT at record.created_at + 1 tick
              TRANSFER_IN  at record.created_at + 2 ticks
- Outflows are checked against the lowest balance from their insertion point
  forward; nothing is written when the check fails.
- quantity_available is a cache. reconcile_* recompute it from the ledger.
"""

WASTE_REFERENCE = "WASTE_RECORD"
TRANSFER_REFERENCE = "TRANSFER_RECORD"
INTAKE_REFERENCE = "INITIAL_INTAKE"

LOT_POLICY = ModelValidationPolicy(
    writable_fields={"item_type", "lot_code", "name", "unit", "opening_quantity"},
    required_on_create={"item_type", "lot_code", "name"},
)

PROCESSED_GOOD_POLICY = ModelValidationPolicy(
    writable_fields={"name", "unit", "opening_quantity"},
    required_on_create={"name"},
)

WASTE_POLICY = ModelValidationPolicy(
    writable_fields={"quantity_wasted", "unit", "reason", "notes", "waste_date"},
    required_on_create={"quantity_wasted", "reason"},
)

TRANSFER_POLICY = ModelValidationPolicy(
    writable_fields={"from_lot_id", "to_lot_id", "quantity_transferred", "reason", "notes", "transfer_date"},
    required_on_create={"from_lot_id", "to_lot_id", "quantity_transferred", "reason"},
)


def get_item(item_type: ItemType | str, item_id: int, *, lock: bool = False):
    """Lot or ProcessedGood behind an (item_type, id) ledger key."""
    item_type = parse_item_type(item_type)
    model = ProcessedGood if item_type == ItemType.PROCESSED_GOOD else Lot
    query = db.session.query(model).filter_by(id=item_id)
    if lock:
        query = lock_for_update(query)
    item = query.first()
    if item is None or (model is Lot and item.item_type != item_type.value):
        raise NotFoundError(
            f"{item_type.value} {item_id} not found",
            details={"item_type": item_type.value, "item_id": item_id},
        )
    return item


def _refresh_cache(item_type: ItemType, item) -> Decimal:
    balance = balance_as_of(item_type, item.id)
    if balance < 0:
        raise NegativeInventoryInvariantViolation(
            f"{item_type.value} {item.id} balance went negative",
            details={"item_type": item_type.value, "item_id": item.id, "balance": str(balance)},
        )
    item.quantity_available = balance
    return balance


def _insertion_point(item_type: ItemType, item_id: int, candidate: datetime) -> datetime:
    last = latest_created_at(item_type, item_id)
    if last is not None and candidate <= last:
        return last + TICK
    return candidate


def _ensure_available(item_type: ItemType, item_id: int, qty: Decimal, effective_date: date,
                      created_at: datetime) -> None:
    available = available_for_deduction(item_type, item_id, effective_date, created_at)
    if qty > available:
        raise InsufficientInventory(
            available, qty, details={"item_type": item_type.value, "item_id": item_id},
        )


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

def create_lot(payload: dict, *, actor_id: int | None = None) -> Lot:
    patch = validate_payload(model=Lot, payload=payload, policy=LOT_POLICY, partial=False)
    item_type = parse_item_type(patch["item_type"])
    if item_type not in LOT_ITEM_TYPES:
        raise ValidationError(f"{item_type.value} is not a lot item type")
    opening = patch.pop("opening_quantity", None)
    opening = to_quantity(opening, "opening_quantity") if opening is not None else None

    def _op():
        exists = db.session.query(Lot).filter_by(item_type=item_type.value, lot_code=patch["lot_code"]).first()
        if exists is not None:
            raise ValidationError(
                f"Lot code {patch['lot_code']} already exists",
                details={"lot_id": exists.id},
            )
        lot = Lot(
            item_type=item_type.value,
            lot_code=patch["lot_code"],
            name=patch["name"],
            unit=patch.get("unit") or "kg",
            quantity_available=Decimal("0"),
        )
        db.session.add(lot)
        db.session.flush()
        if opening is not None:
            append_movement(
                item_type=item_type,
                item_reference=lot.id,
                movement_type=MovementType.IN,
                quantity=opening,
                unit=lot.unit,
                reference_type=INTAKE_REFERENCE,
                created_by=actor_id,
            )
            _refresh_cache(item_type, lot)
        return lot

    return run_in_transaction(_op)


def create_processed_good(payload: dict, *, actor_id: int | None = None) -> ProcessedGood:
    patch = validate_payload(model=ProcessedGood, payload=payload, policy=PROCESSED_GOOD_POLICY, partial=False)
    opening = patch.pop("opening_quantity", None)
    opening = to_quantity(opening, "opening_quantity") if opening is not None else None

    def _op():
        good = ProcessedGood(name=patch["name"], unit=patch.get("unit") or "kg", quantity_available=Decimal("0"))
        db.session.add(good)
        db.session.flush()
        if opening is not None:
            append_movement(
                item_type=ItemType.PROCESSED_GOOD,
                item_reference=good.id,
                movement_type=MovementType.IN,
                quantity=opening,
                unit=good.unit,
                reference_type=INTAKE_REFERENCE,
                created_by=actor_id,
            )
            _refresh_cache(ItemType.PROCESSED_GOOD, good)
        return good

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Movements
# ---------------------------------------------------------------------------

def record_intake(
    item_type: ItemType | str,
    item_id: int,
    quantity,
    *,
    effective_date: date | str | None = None,
    reference_id: int | None = None,
    reference_type: str | None = None,
    actor_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Stock coming in: opening balance, production output, purchase."""
    item_type = parse_item_type(item_type)
    qty = to_quantity(quantity)
    effective = to_date(effective_date, "effective_date") or today()

    def _op():
        begin_write()
        item = get_item(item_type, item_id, lock=True)
        movement = append_movement(
            item_type=item_type,
            item_reference=item.id,
            movement_type=MovementType.IN,
            quantity=qty,
            effective_date=effective,
            unit=item.unit,
            reference_id=reference_id,
            reference_type=reference_type,
            created_by=actor_id,
            notes=notes,
        )
        _refresh_cache(item_type, item)
        return movement

    return run_in_transaction(_op)


def record_consumption(
    item_type: ItemType | str,
    item_id: int,
    quantity,
    *,
    effective_date: date | str | None = None,
    reference_id: int | None = None,
    reference_type: str | None = None,
    actor_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Stock used up by production; refused if it would leave any point negative."""
    item_type = parse_item_type(item_type)
    qty = to_quantity(quantity)
    effective = to_date(effective_date, "effective_date") or today()

    def _op():
        begin_write()
        item = get_item(item_type, item_id, lock=True)
        created_at = _insertion_point(item_type, item.id, utcnow())
        _ensure_available(item_type, item.id, qty, effective, created_at)
        movement = append_movement(
            item_type=item_type,
            item_reference=item.id,
            movement_type=MovementType.CONSUMPTION,
            quantity=qty,
            effective_date=effective,
            created_at=created_at,
            unit=item.unit,
            reference_id=reference_id,
            reference_type=reference_type,
            created_by=actor_id,
            notes=notes,
        )
        _refresh_cache(item_type, item)
        return movement

    return run_in_transaction(_op)


def record_waste(
    item_type: ItemType | str,
    item_id: int,
    payload: dict,
    *,
    actor_id: int | None = None,
) -> WasteRecord:
    """
    Record waste and derive its WASTE movement.

    payload keys: quantity_wasted, reason, optional waste_date, notes, unit.
    """
    item_type = parse_item_type(item_type)
    patch = validate_payload(model=WasteRecord, payload=payload, policy=WASTE_POLICY, partial=False)
    enforce_rules_waste(patch)
    qty = to_quantity(patch["quantity_wasted"], "quantity_wasted")
    waste_date = patch.get("waste_date") or today()

    def _op():
        begin_write()
        item = get_item(item_type, item_id, lock=True)
        if patch.get("unit") and patch["unit"] != item.unit:
            raise ValidationError(
                f"Unit {patch['unit']} does not match item unit {item.unit}",
                details={"item_unit": item.unit},
            )

        record_created = utcnow()
        movement_created = _insertion_point(item_type, item.id, next_tick(record_created))
        _ensure_available(item_type, item.id, qty, waste_date, movement_created)

        record = WasteRecord(
            item_type=item_type.value,
            item_reference=item.id,
            quantity_wasted=qty,
            unit=item.unit,
            reason=patch["reason"],
            notes=patch.get("notes"),
            waste_date=waste_date,
            created_by=actor_id,
            created_at=record_created,
        )
        db.session.add(record)
        db.session.flush()

        append_movement(
            item_type=item_type,
            item_reference=item.id,
            movement_type=MovementType.WASTE,
            quantity=qty,
            effective_date=waste_date,
            created_at=movement_created,
            unit=item.unit,
            reference_id=record.id,
            reference_type=WASTE_REFERENCE,
            created_by=actor_id,
            notes=patch["reason"],
        )
        _refresh_cache(item_type, item)
        return record

    return run_in_transaction(_op)


def transfer_between_lots(payload: dict, *, actor_id: int | None = None) -> TransferRecord:
    """
    Move stock from one lot to another of the same item type and unit.

    Writes a TransferRecord, then TRANSFER_OUT on the source and TRANSFER_IN on
    the destination.
    """
    patch = validate_payload(model=TransferRecord, payload=payload, policy=TRANSFER_POLICY, partial=False)
    enforce_rules_transfer(patch)
    qty = to_quantity(patch["quantity_transferred"], "quantity_transferred")
    transfer_date = patch.get("transfer_date") or today()
    from_id = patch["from_lot_id"]
    to_id = patch["to_lot_id"]

    def _op():
        begin_write()
        # Lock in id order so two opposite transfers cannot deadlock
        locked = {
            lot.id: lot
            for lot in lock_for_update(
                db.session.query(Lot).filter(Lot.id.in_([from_id, to_id])).order_by(Lot.id.asc())
            ).all()
        }
        for lot_id in (from_id, to_id):
            if lot_id not in locked:
                raise NotFoundError(f"Lot {lot_id} not found", details={"lot_id": lot_id})
        source, dest = locked[from_id], locked[to_id]

        if source.item_type != dest.item_type:
            raise ValidationError(
                "Transfers must stay within one item type",
                details={"from_item_type": source.item_type, "to_item_type": dest.item_type},
            )
        if source.unit != dest.unit:
            raise ValidationError(
                "Transfers must stay within one unit",
                details={"from_unit": source.unit, "to_unit": dest.unit},
            )
        item_type = ItemType(source.item_type)

        record_created = utcnow()
        out_created = _insertion_point(item_type, source.id, next_tick(record_created))
        in_created = _insertion_point(item_type, dest.id, next_tick(record_created, 2))
        _ensure_available(item_type, source.id, qty, transfer_date, out_created)

        record = TransferRecord(
            item_type=item_type.value,
            from_lot_id=source.id,
            to_lot_id=dest.id,
            quantity_transferred=qty,
            unit=source.unit,
            reason=patch["reason"],
            notes=patch.get("notes"),
            transfer_date=transfer_date,
            created_by=actor_id,
            created_at=record_created,
        )
        db.session.add(record)
        db.session.flush()

        for lot, movement_type, created_at in (
            (source, MovementType.TRANSFER_OUT, out_created),
            (dest, MovementType.TRANSFER_IN, in_created),
        ):
            append_movement(
                item_type=item_type,
                item_reference=lot.id,
                movement_type=movement_type,
                quantity=qty,
                effective_date=transfer_date,
                created_at=created_at,
                unit=lot.unit,
                reference_id=record.id,
                reference_type=TRANSFER_REFERENCE,
                created_by=actor_id,
                notes=patch["reason"],
            )
            _refresh_cache(item_type, lot)
        return record

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _reconcile_item(item_type: ItemType, item, fix: bool) -> dict:
    ledger = balance_as_of(item_type, item.id)
    cached = item.quantity_available if item.quantity_available is not None else Decimal("0")
    drift = cached - ledger
    report = {
        "item_type": item_type.value,
        "item_id": item.id,
        "cached": str(cached),
        "ledger": str(ledger),
        "drift": str(drift),
        "fixed": False,
    }
    if drift != 0:
        current_app.logger.warning(
            "Cached balance drift on %s %s: cached=%s ledger=%s",
            item_type.value, item.id, cached, ledger,
        )
        if fix:
            item.quantity_available = ledger
            report["fixed"] = True
    return report


def reconcile_cached_balance(item_type: ItemType | str, item_id: int, *, fix: bool = False) -> dict:
    """Compare quantity_available with the ledger balance; optionally overwrite the cache."""
    item_type = parse_item_type(item_type)

    def _op():
        if fix:
            begin_write()
        item = get_item(item_type, item_id, lock=fix)
        return _reconcile_item(item_type, item, fix)

    return run_in_transaction(_op)


def reconcile_all(*, fix: bool = False) -> list[dict]:
    """Drift reports for every lot and processed good whose cache disagrees with the ledger."""
    def _op():
        if fix:
            begin_write()
        reports = []
        for lot in db.session.query(Lot).order_by(Lot.id.asc()).all():
            reports.append(_reconcile_item(ItemType(lot.item_type), lot, fix))
        for good in db.session.query(ProcessedGood).order_by(ProcessedGood.id.asc()).all():
            reports.append(_reconcile_item(ItemType.PROCESSED_GOOD, good, fix))
        return [r for r in reports if Decimal(r["drift"]) != 0]

    return run_in_transaction(_op)
