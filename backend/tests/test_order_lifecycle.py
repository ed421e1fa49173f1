# Overview: Pytest coverage for order item changes, status transitions, payment and audit.

"""
Order Lifecycle Tests

Every order operation is one transaction: item rows, ledger movements, the
inventory change log and the audit log commit together or not at all.

Test Coverage:
- Item add / quantity change / good change / delete move stock by the right amount
- Insufficient stock rejects the change without a trace
- Status transitions: cancel, rollback to DRAFT, re-confirm, terminal CANCELLED
- Derived completion: payment tolerance, holds, discounts
- Pre-migration orders are read-only
- A storage failure mid-operation rolls everything back
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError
from stockledger.exceptions import (
    HistoricalOrderImmutable,
    InsufficientInventory,
    InvalidStatusTransition,
    NotFoundError,
    TransactionFailure,
    ValidationError,
)
from stockledger.extensions import db
from stockledger.models import (
    AuditEvent,
    InventoryChangeLog,
    InventoryOperation,
    OrderAuditLog,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PreMigrationOrder,
    StockMovement,
)
from stockledger.services import audit_service, deduction_service, lock_service, order_service
from conftest import ledger_balance

PG = "PROCESSED_GOOD"


def _movement_count() -> int:
    return db.session.query(StockMovement).count()


def _events(order_id, event_type=None) -> list[str]:
    return [row.event_type for row in audit_service.get_audit_log(order_id, event_type=event_type)]


class TestItemChanges:
    """Item edits move stock by exactly the quantity that changed."""

    def test_add_item_deducts(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "7", "2.50", actor_id=4)

        assert ledger_balance(PG, good.id) == Decimal("93")
        assert item.inventory_deducted is True
        assert item.line_total == Decimal("17.50")
        assert order_service.get_order(order.id).total_amount == Decimal("17.50")

        changes = deduction_service.change_log_for_order(order.id)
        assert len(changes) == 1
        assert changes[0].order_item_id == item.id
        assert changes[0].quantity_change == Decimal("-7")

    def test_increase_quantity_deducts_delta(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "7")
        order_service.update_item(order.id, item.id, quantity="10")

        assert ledger_balance(PG, good.id) == Decimal("90")

    def test_decrease_quantity_restores_delta(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "10")
        order_service.update_item(order.id, item.id, quantity="4")

        assert ledger_balance(PG, good.id) == Decimal("96")
        ops = [c.operation_type for c in deduction_service.change_log_for_order(order.id)]
        assert ops == [
            InventoryOperation.ORDER_ITEM_ADDED.value,
            InventoryOperation.ORDER_ITEM_QUANTITY_DECREASED.value,
        ]

    def test_unchanged_quantity_writes_no_movement(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "7", "1")
        count = _movement_count()

        updated = order_service.update_item(order.id, item.id, quantity="7.000", unit_price="2")

        assert _movement_count() == count
        assert updated.line_total == Decimal("14.00")
        assert ledger_balance(PG, good.id) == Decimal("93")

    def test_change_good_restores_old_and_deducts_new(self, db_session, good, other_good, order):
        item = order_service.add_item(order.id, good.id, "5")
        order_service.update_item(order.id, item.id, processed_good_id=other_good.id, quantity="8")

        assert ledger_balance(PG, good.id) == Decimal("100")
        assert ledger_balance(PG, other_good.id) == Decimal("42")
        ops = [c.operation_type for c in deduction_service.change_log_for_order(order.id)]
        assert ops[-2:] == [
            InventoryOperation.ORDER_ITEM_PRODUCT_CHANGED_RESTORE.value,
            InventoryOperation.ORDER_ITEM_PRODUCT_CHANGED_DEDUCT.value,
        ]

    def test_change_to_missing_good_after_rollback(self, db_session, good, order):
        """A released item cannot be pointed at a good that does not exist."""
        item_id = order_service.add_item(order.id, good.id, "7").id
        order_service.set_status(order.id, "CONFIRMED")
        order_service.set_status(order.id, "DRAFT")

        with pytest.raises(NotFoundError):
            order_service.update_item(order.id, item_id, processed_good_id=999999)

        assert db.session.get(OrderItem, item_id).processed_good_id == good.id
        order_service.set_status(order.id, "CONFIRMED")
        assert ledger_balance(PG, good.id) == Decimal("93")

    def test_change_deducted_item_to_missing_good(self, db_session, good, order):
        item_id = order_service.add_item(order.id, good.id, "7").id
        count = _movement_count()

        with pytest.raises(NotFoundError):
            order_service.update_item(order.id, item_id, processed_good_id=999999)

        assert _movement_count() == count
        assert db.session.get(OrderItem, item_id).processed_good_id == good.id
        assert ledger_balance(PG, good.id) == Decimal("93")

    def test_delete_item_restores(self, db_session, good, order):
        item_id = order_service.add_item(order.id, good.id, "7", "3").id
        result = order_service.delete_item(order.id, item_id)

        assert ledger_balance(PG, good.id) == Decimal("100")
        assert result.items == []
        assert result.total_amount == Decimal("0")
        assert db.session.get(OrderItem, item_id) is None

    def test_delete_unknown_item(self, db_session, order):
        with pytest.raises(NotFoundError):
            order_service.delete_item(order.id, 9999)

    def test_update_requires_a_change(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "1")
        with pytest.raises(ValidationError):
            order_service.update_item(order.id, item.id)

    def test_add_item_to_missing_order(self, db_session, good):
        with pytest.raises(NotFoundError):
            order_service.add_item(4242, good.id, "1")

    def test_item_changes_are_audited(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "2")
        order_service.update_item(order.id, item.id, quantity="3")
        order_service.delete_item(order.id, item.id)

        events = _events(order.id)
        assert events[0] == AuditEvent.ORDER_CREATED.value
        for expected in (AuditEvent.ITEM_ADDED, AuditEvent.ITEM_UPDATED, AuditEvent.ITEM_DELETED):
            assert expected.value in events
        assert _events(order.id, AuditEvent.INVENTORY_CHANGED.value) == [AuditEvent.INVENTORY_CHANGED.value] * 3


class TestInsufficientStock:
    """A rejected change leaves no item, no movement and no audit row behind."""

    def test_add_more_than_available(self, db_session, good, order):
        count = _movement_count()
        audit_count = db.session.query(OrderAuditLog).count()

        with pytest.raises(InsufficientInventory) as exc:
            order_service.add_item(order.id, good.id, "150")

        assert exc.value.available == Decimal("100")
        assert ledger_balance(PG, good.id) == Decimal("100")
        assert _movement_count() == count
        assert db.session.query(OrderItem).filter_by(order_id=order.id).count() == 0
        assert db.session.query(OrderAuditLog).count() == audit_count

    def test_increase_beyond_stock_keeps_old_quantity(self, db_session, good, order):
        item = order_service.add_item(order.id, good.id, "60")

        with pytest.raises(InsufficientInventory):
            order_service.update_item(order.id, item.id, quantity="120")

        db.session.expire_all()
        assert db.session.get(OrderItem, item.id).quantity == Decimal("60")
        assert ledger_balance(PG, good.id) == Decimal("40")


class TestStatusTransitions:
    def test_cancel_restores_every_item(self, db_session, good, other_good, order):
        order_service.add_item(order.id, good.id, "7")
        order_service.add_item(order.id, other_good.id, "5")

        cancelled = order_service.set_status(order.id, "CANCELLED", actor_id=9)

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert ledger_balance(PG, good.id) == Decimal("100")
        assert ledger_balance(PG, other_good.id) == Decimal("50")
        assert all(not item.inventory_deducted for item in cancelled.items)

    def test_cancel_twice_is_a_noop(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "7")
        order_service.set_status(order.id, OrderStatus.CANCELLED)
        count = _movement_count()

        order_service.set_status(order.id, OrderStatus.CANCELLED)

        assert _movement_count() == count
        assert ledger_balance(PG, good.id) == Decimal("100")

    def test_cancelled_is_terminal(self, db_session, good, order):
        order_service.set_status(order.id, "CANCELLED")

        with pytest.raises(InvalidStatusTransition):
            order_service.set_status(order.id, "DRAFT")
        with pytest.raises(InvalidStatusTransition):
            order_service.add_item(order.id, good.id, "1")
        with pytest.raises(InvalidStatusTransition):
            order_service.record_payment(order.id, "5")

    def test_rollback_to_draft_and_reconfirm(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "7")
        order_service.set_status(order.id, "CONFIRMED")
        assert ledger_balance(PG, good.id) == Decimal("93")

        drafted = order_service.set_status(order.id, "DRAFT")
        assert drafted.status == OrderStatus.DRAFT.value
        assert ledger_balance(PG, good.id) == Decimal("100")
        assert drafted.items[0].inventory_deducted is False

        confirmed = order_service.set_status(order.id, "CONFIRMED")
        assert ledger_balance(PG, good.id) == Decimal("93")
        assert confirmed.items[0].inventory_deducted is True

        ops = [c.operation_type for c in deduction_service.change_log_for_order(order.id)]
        assert ops == [
            InventoryOperation.ORDER_ITEM_ADDED.value,
            InventoryOperation.ORDER_REVERTED_TO_DRAFT.value,
            InventoryOperation.ORDER_CONFIRMED.value,
        ]

    def test_reconfirm_fails_when_stock_is_gone(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "80")
        order_service.set_status(order.id, "CONFIRMED")
        order_service.set_status(order.id, "DRAFT")

        second = order_service.create_order()
        order_service.add_item(second.id, good.id, "50")

        with pytest.raises(InsufficientInventory):
            order_service.set_status(order.id, "CONFIRMED")
        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value
        assert ledger_balance(PG, good.id) == Decimal("50")

    def test_cancel_after_rollback_does_not_double_restore(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "7")
        order_service.set_status(order.id, "CONFIRMED")
        order_service.set_status(order.id, "DRAFT")

        order_service.set_status(order.id, "CANCELLED")

        assert ledger_balance(PG, good.id) == Decimal("100")

    @pytest.mark.parametrize("status", ["ORDER_COMPLETED", "PARTIALLY_DELIVERED", "DELIVERY_COMPLETED"])
    def test_status_that_cannot_be_requested(self, db_session, order, status):
        with pytest.raises(InvalidStatusTransition):
            order_service.set_status(order.id, status)

    def test_unknown_status(self, db_session, order):
        with pytest.raises(ValidationError):
            order_service.set_status(order.id, "SHIPPED")

    def test_status_change_is_audited(self, db_session, order):
        order_service.set_status(order.id, "CONFIRMED", actor_id=5)

        row = audit_service.get_audit_log(order.id, event_type="STATUS_CHANGED")[0]
        assert row.event_data["from"] == "DRAFT"
        assert row.event_data["to"] == "CONFIRMED"
        assert row.performed_by == 5

    def test_unknown_audit_filter(self, db_session, order):
        with pytest.raises(ValidationError):
            audit_service.get_audit_log(order.id, event_type="NOPE")


class TestCompletion:
    """ORDER_COMPLETED is derived: items deducted, fully paid, not on hold."""

    def test_payment_completes_order(self, db_session, completed_order):
        assert completed_order.status == OrderStatus.ORDER_COMPLETED.value
        assert completed_order.payment_status == PaymentStatus.FULL_PAYMENT.value
        assert completed_order.completed_at is not None
        assert AuditEvent.ORDER_COMPLETED.value in _events(completed_order.id)

    def test_payment_tolerance(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        order_service.record_payment(order.id, "5")
        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value

        order_service.record_payment(order.id, "4.99")

        completed = order_service.get_order(order.id)
        assert completed.status == OrderStatus.ORDER_COMPLETED.value
        assert completed.total_paid == Decimal("9.99")

    def test_underpayment_beyond_tolerance(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        order_service.record_payment(order.id, "9.98")

        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value

    def test_empty_order_never_completes(self, db_session, order):
        order_service.record_payment(order.id, "5")

        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value

    def test_hold_blocks_completion(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        order_service.place_hold(order.id, "Awaiting delivery address")
        order_service.record_payment(order.id, "10")
        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value

        released = order_service.remove_hold(order.id)

        assert released.status == OrderStatus.ORDER_COMPLETED.value
        assert released.is_on_hold is False

    def test_hold_requires_reason(self, db_session, order):
        with pytest.raises(ValidationError):
            order_service.place_hold(order.id, "   ")

    def test_hold_twice(self, db_session, order):
        order_service.place_hold(order.id, "Check stock")
        with pytest.raises(InvalidStatusTransition):
            order_service.place_hold(order.id, "Again")

    def test_remove_hold_when_not_held(self, db_session, order):
        with pytest.raises(InvalidStatusTransition):
            order_service.remove_hold(order.id)

    def test_discount_lowers_amount_due(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        discounted = order_service.apply_discount(order.id, "2")
        assert discounted.net_total == Decimal("8.00")

        order_service.record_payment(order.id, "8")

        assert order_service.get_order(order.id).status == OrderStatus.ORDER_COMPLETED.value

    def test_discount_above_total(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        with pytest.raises(ValidationError):
            order_service.apply_discount(order.id, "10.01")

    def test_zero_payment_rejected(self, db_session, order):
        with pytest.raises(ValidationError):
            order_service.record_payment(order.id, "0")

    def test_payment_finer_than_a_cent_rejected(self, db_session, good, order):
        order_service.add_item(order.id, good.id, "2", "5")
        with pytest.raises(ValidationError):
            order_service.record_payment(order.id, "9.995")

        assert order_service.get_order(order.id).status == OrderStatus.DRAFT.value

    def test_completed_order_can_still_be_edited_while_unlocked(self, db_session, good, completed_order):
        order_service.add_item(completed_order.id, good.id, "1", "0")

        assert ledger_balance(PG, good.id) == Decimal("97")

    def test_rollback_completed_order_to_draft(self, db_session, good, completed_order):
        drafted = order_service.set_status(completed_order.id, "DRAFT")

        assert drafted.status == OrderStatus.DRAFT.value
        assert drafted.completed_at is None
        assert ledger_balance(PG, good.id) == Decimal("100")

    def test_list_orders_by_status(self, db_session, order, completed_order):
        completed = order_service.list_orders(status="ORDER_COMPLETED")
        assert [o.id for o in completed] == [completed_order.id]


class TestPreMigrationOrders:
    """Imported orders keep their legacy status and never touch stock."""

    def _import(self, good):
        return order_service.import_historical_order(
            status="DELIVERY_COMPLETED",
            order_number="LEGACY-0001",
            items=[{"processed_good_id": good.id, "quantity": "3", "unit_price": "2"}],
        )

    def test_import_writes_no_movements(self, db_session, good):
        count = _movement_count()

        legacy = self._import(good)

        assert isinstance(order_service.get_order(legacy.id), PreMigrationOrder)
        assert legacy.status == OrderStatus.DELIVERY_COMPLETED.value
        assert legacy.total_amount == Decimal("6.00")
        assert _movement_count() == count
        assert all(item.inventory_deducted is False for item in legacy.items)

    def test_import_with_missing_good_rejected(self, db_session, good):
        with pytest.raises(NotFoundError):
            order_service.import_historical_order(
                order_number="LEGACY-0002",
                items=[
                    {"processed_good_id": good.id, "quantity": "1"},
                    {"processed_good_id": 999999, "quantity": "2"},
                ],
            )

        assert db.session.query(PreMigrationOrder).count() == 0

    def test_every_mutation_is_refused(self, db_session, good):
        legacy = self._import(good)
        item_id = legacy.items[0].id
        count = _movement_count()

        with pytest.raises(HistoricalOrderImmutable):
            order_service.add_item(legacy.id, good.id, "1")
        with pytest.raises(HistoricalOrderImmutable):
            order_service.update_item(legacy.id, item_id, quantity="5")
        with pytest.raises(HistoricalOrderImmutable):
            order_service.delete_item(legacy.id, item_id)
        with pytest.raises(HistoricalOrderImmutable):
            order_service.set_status(legacy.id, "CANCELLED")
        with pytest.raises(HistoricalOrderImmutable):
            order_service.record_payment(legacy.id, "6")
        with pytest.raises(HistoricalOrderImmutable):
            lock_service.lock_order(legacy.id, actor_id=1, has_write_access=True)

        assert _movement_count() == count
        assert ledger_balance(PG, good.id) == Decimal("100")


class TestAtomicity:
    """A storage failure after the ledger write rolls the ledger write back too."""

    def test_failure_after_deduction_rolls_back(self, db_session, good, order, monkeypatch):
        item = order_service.add_item(order.id, good.id, "7")
        count = _movement_count()
        change_count = db.session.query(InventoryChangeLog).count()

        def broken_total(_order):
            raise SQLAlchemyError("simulated storage failure")

        monkeypatch.setattr(order_service, "_recalculate_order_total", broken_total)

        with pytest.raises(TransactionFailure):
            order_service.update_item(order.id, item.id, quantity="10")

        db.session.expire_all()
        assert ledger_balance(PG, good.id) == Decimal("93")
        assert _movement_count() == count
        assert db.session.query(InventoryChangeLog).count() == change_count
        assert db.session.get(OrderItem, item.id).quantity == Decimal("7")

    def test_failure_on_add_leaves_no_item(self, db_session, good, order, monkeypatch):
        def broken_total(_order):
            raise SQLAlchemyError("simulated storage failure")

        monkeypatch.setattr(order_service, "_recalculate_order_total", broken_total)

        with pytest.raises(TransactionFailure):
            order_service.add_item(order.id, good.id, "7")

        assert ledger_balance(PG, good.id) == Decimal("100")
        assert db.session.query(OrderItem).filter_by(order_id=order.id).count() == 0
