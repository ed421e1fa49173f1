# Overview: Pytest coverage for order-driven deduction, restoration and adjustment.

"""
Deduction Engine Tests

The engine never commits; each test commits or rolls back itself, the way the
order coordinator would.
"""

from decimal import Decimal

import pytest
from stockledger.exceptions import InsufficientInventory, NotFoundError, ValidationError
from stockledger.extensions import db
from stockledger.models import InventoryChangeLog, InventoryOperation, MovementType, ProcessedGood, StockMovement
from stockledger.services import deduction_service
from conftest import ledger_balance


def _cached(good_id) -> Decimal:
    db.session.expire_all()
    return db.session.get(ProcessedGood, good_id).quantity_available


class TestDeduct:
    def test_deduct_writes_movement_cache_and_change_log(self, db_session, good):
        movement = deduction_service.deduct(good.id, "10", order_id=None, order_item_id=None, actor_id=7)
        db.session.commit()

        assert movement.movement_type == MovementType.ORDER_ITEM_ADDED.value
        assert movement.signed_quantity == Decimal("-10")
        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("90")
        assert _cached(good.id) == Decimal("90")

        log = db.session.query(InventoryChangeLog).filter_by(movement_id=movement.id).one()
        assert log.operation_type == InventoryOperation.ORDER_ITEM_ADDED.value
        assert log.quantity_change == Decimal("-10")
        assert log.created_by == 7

    def test_deduct_exact_balance(self, db_session, good):
        deduction_service.deduct(good.id, "100")
        db.session.commit()

        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("0")

    def test_insufficient_writes_nothing(self, db_session, good):
        count = db.session.query(StockMovement).count()

        with pytest.raises(InsufficientInventory) as exc:
            deduction_service.deduct(good.id, "100.001")
        db.session.rollback()

        assert exc.value.available == Decimal("100")
        assert exc.value.details["required"] == "100.001"
        assert db.session.query(StockMovement).count() == count
        assert db.session.query(InventoryChangeLog).count() == 0

    def test_missing_good(self, db_session):
        with pytest.raises(NotFoundError):
            deduction_service.deduct(4242, "1")
        db.session.rollback()

    @pytest.mark.parametrize("quantity", ["0", "-3"])
    def test_non_positive_quantity(self, db_session, good, quantity):
        with pytest.raises(ValidationError):
            deduction_service.deduct(good.id, quantity)


class TestRestore:
    def test_restore_adds_back(self, db_session, good):
        deduction_service.deduct(good.id, "30")
        movement = deduction_service.restore(good.id, "12", actor_id=2)
        db.session.commit()

        assert movement.movement_type == MovementType.ORDER_ITEM_DELETED.value
        assert movement.signed_quantity == Decimal("12")
        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("82")
        assert _cached(good.id) == Decimal("82")

    def test_restore_records_operation(self, db_session, good):
        movement = deduction_service.restore(good.id, "1", operation_type=InventoryOperation.ORDER_CANCELLED)
        db.session.commit()

        log = db.session.query(InventoryChangeLog).filter_by(movement_id=movement.id).one()
        assert log.operation_type == InventoryOperation.ORDER_CANCELLED.value


class TestAdjust:
    def test_increase_deducts_delta(self, db_session, good):
        movement = deduction_service.adjust(good.id, "7", "10")
        db.session.commit()

        assert movement.movement_type == MovementType.ORDER_ITEM_ADJUSTED.value
        assert movement.quantity == Decimal("3")
        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("97")

        log = db.session.query(InventoryChangeLog).filter_by(movement_id=movement.id).one()
        assert log.operation_type == InventoryOperation.ORDER_ITEM_QUANTITY_INCREASED.value

    def test_decrease_restores_delta(self, db_session, good):
        movement = deduction_service.adjust(good.id, "10", "4")
        db.session.commit()

        assert movement.movement_type == MovementType.ORDER_ITEM_DELETED.value
        assert movement.quantity == Decimal("6")
        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("106")

        log = db.session.query(InventoryChangeLog).filter_by(movement_id=movement.id).one()
        assert log.operation_type == InventoryOperation.ORDER_ITEM_QUANTITY_DECREASED.value

    def test_unchanged_writes_nothing(self, db_session, good):
        count = db.session.query(StockMovement).count()

        assert deduction_service.adjust(good.id, "5", "5.000") is None
        assert db.session.query(StockMovement).count() == count

    def test_increase_beyond_stock(self, db_session, good):
        with pytest.raises(InsufficientInventory) as exc:
            deduction_service.adjust(good.id, "1", "102")
        db.session.rollback()

        assert exc.value.required == Decimal("101")
        assert ledger_balance("PROCESSED_GOOD", good.id) == Decimal("100")


class TestChangeLog:
    def test_change_log_for_order(self, db_session, good, order):
        deduction_service.deduct(good.id, "4", order_id=order.id, order_item_id=1)
        deduction_service.restore(good.id, "4", order_id=order.id, order_item_id=1)
        deduction_service.deduct(good.id, "1")
        db.session.commit()

        rows = deduction_service.change_log_for_order(order.id)
        assert [r.operation_type for r in rows] == [
            InventoryOperation.ORDER_ITEM_ADDED.value,
            InventoryOperation.ORDER_ITEM_DELETED.value,
        ]
        assert sum((r.quantity_change for r in rows), Decimal("0")) == Decimal("0")
