# Overview: Flask API routes for orders, order items, lock and audit; parses input and returns JSON responses.

"""
Order API routes.

Every mutating route runs one service call, which is one transaction: any
error rolls back item rows, ledger rows and audit rows together.

Actor context comes from X-Actor-Id / X-Actor-Can-Write (see with_actor).
"""

from flask import Blueprint, request, jsonify, g

from ..exceptions import LedgerError, ValidationError
from ..models import OrderItem
from ..time_utils import parse_iso_datetime
from ..validation import ModelValidationPolicy, validate_payload, enforce_rules_order_item
from ..decorators import with_actor
from ..services import audit_service, deduction_service, lock_service, order_service
from . import error_response, internal_error


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

ITEM_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"processed_good_id", "quantity", "unit_price"},
    required_on_create={"processed_good_id", "quantity"},
)

ITEM_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"processed_good_id", "quantity", "unit_price"},
)


def _json() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


@orders_bp.post("")
@with_actor
def create_order_route():
    try:
        data = _json()
        order = order_service.create_order(
            created_by=g.actor_id,
            customer_name=data.get("customer_name"),
            order_number=data.get("order_number"),
        )
        return jsonify({"order": order.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "create order")
    except Exception:
        return internal_error("create order")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "load order")
    except Exception:
        return internal_error("load order")


@orders_bp.post("/<int:order_id>/items")
@with_actor
def add_item_route(order_id: int):
    try:
        patch = validate_payload(model=OrderItem, payload=_json(), policy=ITEM_CREATE_POLICY, partial=False)
        enforce_rules_order_item(patch)
        item = order_service.add_item(
            order_id,
            patch["processed_good_id"],
            patch["quantity"],
            patch.get("unit_price") or 0,
            actor_id=g.actor_id,
        )
        return jsonify({"item": item.to_dict(), "order": order_service.get_order(order_id).to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "add order item")
    except Exception:
        return internal_error("add order item")


@orders_bp.patch("/<int:order_id>/items/<int:item_id>")
@with_actor
def update_item_route(order_id: int, item_id: int):
    try:
        patch = validate_payload(model=OrderItem, payload=_json(), policy=ITEM_UPDATE_POLICY, partial=True)
        enforce_rules_order_item(patch)
        item = order_service.update_item(
            order_id,
            item_id,
            quantity=patch.get("quantity"),
            processed_good_id=patch.get("processed_good_id"),
            unit_price=patch.get("unit_price"),
            actor_id=g.actor_id,
        )
        return jsonify({"item": item.to_dict(), "order": order_service.get_order(order_id).to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "update order item")
    except Exception:
        return internal_error("update order item")


@orders_bp.delete("/<int:order_id>/items/<int:item_id>")
@with_actor
def delete_item_route(order_id: int, item_id: int):
    try:
        order = order_service.delete_item(order_id, item_id, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "delete order item")
    except Exception:
        return internal_error("delete order item")


@orders_bp.post("/<int:order_id>/status")
@with_actor
def set_status_route(order_id: int):
    try:
        status = _json().get("status")
        if not status:
            raise ValidationError("status required")
        order = order_service.set_status(order_id, status, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "change order status")
    except Exception:
        return internal_error("change order status")


@orders_bp.post("/<int:order_id>/payments")
@with_actor
def record_payment_route(order_id: int):
    try:
        data = _json()
        if data.get("amount") is None:
            raise ValidationError("amount required")
        try:
            payment_at = parse_iso_datetime(data.get("payment_at"))
        except ValueError:
            raise ValidationError("payment_at must be an ISO-8601 datetime")
        payment = order_service.record_payment(
            order_id,
            data["amount"],
            actor_id=g.actor_id,
            method=data.get("method"),
            reference=data.get("reference"),
            payment_at=payment_at,
        )
        return jsonify({"payment": payment.to_dict(), "order": order_service.get_order(order_id).to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "record payment")
    except Exception:
        return internal_error("record payment")


@orders_bp.post("/<int:order_id>/discount")
@with_actor
def apply_discount_route(order_id: int):
    try:
        data = _json()
        if data.get("amount") is None:
            raise ValidationError("amount required")
        order = order_service.apply_discount(order_id, data["amount"], actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "apply discount")
    except Exception:
        return internal_error("apply discount")


@orders_bp.post("/<int:order_id>/hold")
@with_actor
def place_hold_route(order_id: int):
    try:
        order = order_service.place_hold(order_id, _json().get("reason"), actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "place hold")
    except Exception:
        return internal_error("place hold")


@orders_bp.delete("/<int:order_id>/hold")
@with_actor
def remove_hold_route(order_id: int):
    try:
        order = order_service.remove_hold(order_id, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "remove hold")
    except Exception:
        return internal_error("remove hold")


@orders_bp.post("/<int:order_id>/lock")
@with_actor
def lock_order_route(order_id: int):
    try:
        order = lock_service.lock_order(order_id, actor_id=g.actor_id, has_write_access=g.can_write)
        return jsonify({"order": order.to_dict(), "lock": lock_service.lock_state(order_id)}), 200
    except LedgerError as e:
        return error_response(e, "lock order")
    except Exception:
        return internal_error("lock order")


@orders_bp.post("/<int:order_id>/unlock")
@with_actor
def unlock_order_route(order_id: int):
    try:
        order = lock_service.unlock_order(
            order_id,
            _json().get("reason"),
            actor_id=g.actor_id,
            has_write_access=g.can_write,
        )
        return jsonify({"order": order.to_dict(), "lock": lock_service.lock_state(order_id)}), 200
    except LedgerError as e:
        return error_response(e, "unlock order")
    except Exception:
        return internal_error("unlock order")


@orders_bp.get("/<int:order_id>/lock")
def lock_state_route(order_id: int):
    try:
        return jsonify({"lock": lock_service.lock_state(order_id)}), 200
    except LedgerError as e:
        return error_response(e, "load lock state")


@orders_bp.get("/<int:order_id>/lock-history")
def lock_history_route(order_id: int):
    try:
        rows = lock_service.get_lock_history(order_id)
        return jsonify({"order_id": order_id, "history": [r.to_dict() for r in rows]}), 200
    except LedgerError as e:
        return error_response(e, "load lock history")


@orders_bp.get("/<int:order_id>/audit-log")
def audit_log_route(order_id: int):
    """Audit rows oldest first; ?event_type= filters, ?include_inventory=1 adds the inventory change log."""
    try:
        order = order_service.get_order(order_id)
        rows = audit_service.get_audit_log(order.id, event_type=request.args.get("event_type"))
        body = {"order_id": order.id, "events": [r.to_dict() for r in rows]}
        if request.args.get("include_inventory", "").lower() in ("1", "true", "yes"):
            body["inventory_changes"] = [c.to_dict() for c in deduction_service.change_log_for_order(order.id)]
        return jsonify(body), 200
    except LedgerError as e:
        return error_response(e, "load audit log")
    except Exception:
        return internal_error("load audit log")
