# Overview: Pytest coverage for the append-only movement store.

"""
Movement Store Tests

Covers:
- Input validation on append (quantity, item type, movement type)
- Movement types restricted by item type
- Explicit created_at kept as given; defaulted created_at bumped past the latest
- Append-only guard: ORM updates/deletes and bulk writes are rejected
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from stockledger.exceptions import ImmutableMovementError, ValidationError
from stockledger.extensions import db
from stockledger.models import (
    MOVEMENT_SIGNS,
    ItemType,
    MovementType,
    OrderAuditLog,
    StockMovement,
    movement_allowed,
)
from stockledger.services import movement_service
from stockledger.time_utils import TICK, as_utc_naive


def _movement_count() -> int:
    return db.session.query(StockMovement).count()


class TestMovementValidation:
    """Nothing is written when the input is rejected."""

    @pytest.mark.parametrize("quantity", ["0", "-5", 0, -1, "abc", None, True, "NaN", "Infinity"])
    def test_rejects_bad_quantity(self, db_session, good, quantity):
        before = _movement_count()
        with pytest.raises(ValidationError):
            movement_service.append_movement(
                item_type=ItemType.PROCESSED_GOOD,
                item_reference=good.id,
                movement_type=MovementType.IN,
                quantity=quantity,
            )
        assert _movement_count() == before

    def test_rejects_more_than_three_decimal_places(self, db_session, good):
        """1.0005 does not fit Numeric(14, 3); it is refused instead of rounded."""
        before = _movement_count()
        with pytest.raises(ValidationError) as exc:
            movement_service.append_movement(
                item_type=ItemType.PROCESSED_GOOD,
                item_reference=good.id,
                movement_type=MovementType.IN,
                quantity="1.0005",
            )
        assert "decimal places" in str(exc.value)
        assert _movement_count() == before

    def test_trailing_zeros_within_scale_accepted(self, db_session, good):
        m = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1.5000",
        )
        db.session.commit()

        assert m.quantity == Decimal("1.500")

    def test_rejects_unknown_item_type(self, db_session):
        with pytest.raises(ValidationError):
            movement_service.append_movement(
                item_type="WIDGET",
                item_reference=1,
                movement_type=MovementType.IN,
                quantity="1",
            )

    def test_rejects_unknown_movement_type(self, db_session, good):
        with pytest.raises(ValidationError):
            movement_service.append_movement(
                item_type=ItemType.PROCESSED_GOOD,
                item_reference=good.id,
                movement_type="SHRINKAGE",
                quantity="1",
            )

    def test_order_movements_only_on_processed_goods(self, db_session, flour_lot):
        """ORDER_ITEM_* on a raw-material lot is refused."""
        with pytest.raises(ValidationError):
            movement_service.append_movement(
                item_type=ItemType.RAW_MATERIAL,
                item_reference=flour_lot.id,
                movement_type=MovementType.ORDER_ITEM_ADDED,
                quantity="1",
            )

    def test_transfers_only_on_lots(self, db_session, good):
        with pytest.raises(ValidationError):
            movement_service.append_movement(
                item_type=ItemType.PROCESSED_GOOD,
                item_reference=good.id,
                movement_type=MovementType.TRANSFER_IN,
                quantity="1",
            )

    def test_every_movement_type_has_a_sign(self):
        assert set(MOVEMENT_SIGNS) == set(MovementType)
        assert MOVEMENT_SIGNS[MovementType.ORDER_ITEM_DELETED] == 1
        assert MOVEMENT_SIGNS[MovementType.ORDER_ITEM_ADJUSTED] == -1

    def test_movement_allowed_matrix(self):
        assert movement_allowed(ItemType.RECURRING_PRODUCT, MovementType.TRANSFER_OUT)
        assert movement_allowed(ItemType.PROCESSED_GOOD, MovementType.WASTE)
        assert not movement_allowed(ItemType.RECURRING_PRODUCT, MovementType.ORDER_ITEM_DELETED)


class TestMovementOrdering:
    """Explicit created_at is kept; a defaulted one sorts after the item's latest."""

    def test_append_quantizes_and_keeps_positive_quantity(self, db_session, good):
        m = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.WASTE,
            quantity="2.5",
        )
        db.session.commit()

        assert m.quantity == Decimal("2.500")
        assert m.signed_quantity == Decimal("-2.500")

    def test_explicit_created_at_is_kept_when_earlier_than_latest(self, db_session, good):
        """A caller-supplied created_at places a back-filled movement; it is never rewritten."""
        late = datetime(2030, 1, 1, 12, 0, 0)
        first = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1",
            created_at=late,
        )
        second = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1",
            created_at=late - timedelta(hours=1),
        )
        db.session.commit()

        assert as_utc_naive(first.created_at) == late
        assert as_utc_naive(second.created_at) == late - timedelta(hours=1)

    def test_defaulted_created_at_is_bumped_past_latest(self, db_session, good):
        """Without a created_at, "now" is moved to latest + 1 tick if it would not sort last."""
        late = datetime(2030, 1, 1, 12, 0, 0)
        movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1",
            created_at=late,
        )
        m = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1",
        )
        db.session.commit()

        assert as_utc_naive(m.created_at) == late + TICK

    def test_bump_is_per_item(self, db_session, good, other_good):
        """Another item's later movement does not push this item's defaulted created_at."""
        far_future = datetime(2999, 1, 1)
        movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=other_good.id,
            movement_type=MovementType.IN,
            quantity="1",
            created_at=far_future,
        )
        m = movement_service.append_movement(
            item_type=ItemType.PROCESSED_GOOD,
            item_reference=good.id,
            movement_type=MovementType.IN,
            quantity="1",
        )
        db.session.commit()

        assert as_utc_naive(m.created_at) < far_future

    def test_list_movements_in_ledger_order(self, db_session, flour_lot):
        d1, d2 = date(2024, 5, 1), date(2024, 5, 2)
        movement_service.append_movement(
            item_type=ItemType.RAW_MATERIAL,
            item_reference=flour_lot.id,
            movement_type=MovementType.CONSUMPTION,
            quantity="5",
            effective_date=d2,
        )
        movement_service.append_movement(
            item_type=ItemType.RAW_MATERIAL,
            item_reference=flour_lot.id,
            movement_type=MovementType.IN,
            quantity="7",
            effective_date=d1,
        )
        db.session.commit()

        rows = movement_service.list_movements(ItemType.RAW_MATERIAL, flour_lot.id, end_date=d2)
        assert [(r.effective_date, r.movement_type) for r in rows] == [
            (d1, MovementType.IN.value),
            (d2, MovementType.CONSUMPTION.value),
        ]


class TestAppendOnlyGuard:
    """Ledger and audit rows accept INSERT only."""

    def _movement(self, good):
        return db.session.query(StockMovement).filter_by(item_reference=good.id).first()

    def test_update_rejected_on_flush(self, db_session, good):
        m = self._movement(good)
        m.quantity = Decimal("1")
        with pytest.raises(ImmutableMovementError):
            db.session.flush()
        db.session.rollback()

        assert self._movement(good).quantity == Decimal("100")

    def test_delete_rejected_on_flush(self, db_session, good):
        m = self._movement(good)
        db.session.delete(m)
        with pytest.raises(ImmutableMovementError):
            db.session.flush()
        db.session.rollback()

        assert self._movement(good) is not None

    def test_bulk_update_rejected(self, db_session, good):
        with pytest.raises(ImmutableMovementError):
            db.session.query(StockMovement).filter_by(item_reference=good.id).update({"quantity": Decimal("1")})
        db.session.rollback()

    def test_bulk_delete_rejected(self, db_session, good):
        with pytest.raises(ImmutableMovementError):
            db.session.query(StockMovement).delete()
        db.session.rollback()

        assert _movement_count() == 1

    def test_audit_rows_are_append_only(self, db_session, order):
        row = db.session.query(OrderAuditLog).filter_by(order_id=order.id).first()
        row.description = "rewritten"
        with pytest.raises(ImmutableMovementError):
            db.session.flush()
        db.session.rollback()
