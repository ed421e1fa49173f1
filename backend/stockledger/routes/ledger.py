# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..exceptions import LedgerError, ValidationError
from ..models import StockMovement
from ..time_utils import parse_iso_datetime
from ..validation import ModelValidationPolicy, validate_payload, to_date
from ..decorators import with_actor
from ..services import balance_service, stock_service
from . import error_response, internal_error

"""
Time semantics:
- effective dates are business dates ("YYYY-MM-DD").
- cutoff accepts ISO-8601 datetimes with Z/offsets; normalized to UTC-naive.
- as_of is inclusive: movements on as_of with created_at <= cutoff count.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"quantity", "effective_date", "reference_id", "reference_type", "notes"},
    required_on_create={"quantity"},
)


def _item_type(raw: str) -> str:
    return raw.strip().upper().replace("-", "_")


@ledger_bp.post("/lots")
@with_actor
def create_lot_route():
    try:
        lot = stock_service.create_lot(request.get_json(silent=True) or {}, actor_id=g.actor_id)
        return jsonify({"lot": lot.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "create lot")
    except Exception:
        return internal_error("create lot")


@ledger_bp.post("/processed-goods")
@with_actor
def create_processed_good_route():
    try:
        good = stock_service.create_processed_good(request.get_json(silent=True) or {}, actor_id=g.actor_id)
        return jsonify({"processed_good": good.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "create processed good")
    except Exception:
        return internal_error("create processed good")


@ledger_bp.get("/<item_type>/<int:item_id>")
def get_item_route(item_type: str, item_id: int):
    try:
        item = stock_service.get_item(_item_type(item_type), item_id)
        return jsonify({"item": item.to_dict()}), 200
    except LedgerError as e:
        return error_response(e, "load stock item")


@ledger_bp.get("/<item_type>/<int:item_id>/balance")
def balance_route(item_type: str, item_id: int):
    """
    Point-in-time balance.

    Query params:
    - as_of: business date (optional; omitted = all movements)
    - cutoff: ISO-8601 datetime bounding movements on as_of (optional)
    """
    try:
        item_type = _item_type(item_type)
        item = stock_service.get_item(item_type, item_id)
        as_of = to_date(request.args.get("as_of"), "as_of")
        try:
            cutoff = parse_iso_datetime(request.args.get("cutoff"))
        except ValueError:
            raise ValidationError("cutoff must be an ISO-8601 datetime")
        if cutoff is not None and as_of is None:
            raise ValidationError("cutoff requires as_of")

        balance = balance_service.balance_as_of(item_type, item.id, as_of, cutoff)
        return jsonify({
            "item_type": item_type,
            "item_id": item.id,
            "as_of": as_of.isoformat() if as_of else None,
            "balance": str(balance),
            "cached_quantity_available": str(item.quantity_available),
        }), 200
    except LedgerError as e:
        return error_response(e, "compute balance")
    except Exception:
        return internal_error("compute balance")


@ledger_bp.get("/<item_type>/<int:item_id>/movements")
def movements_route(item_type: str, item_id: int):
    """Movement history with running balances; start / end are inclusive business dates."""
    try:
        item_type = _item_type(item_type)
        item = stock_service.get_item(item_type, item_id)
        rows = balance_service.movement_history(
            item_type,
            item.id,
            start_date=to_date(request.args.get("start"), "start"),
            end_date=to_date(request.args.get("end"), "end"),
        )
        return jsonify({"item_type": item_type, "item_id": item.id, "movements": rows}), 200
    except LedgerError as e:
        return error_response(e, "load movement history")
    except Exception:
        return internal_error("load movement history")


@ledger_bp.post("/<item_type>/<int:item_id>/intake")
@with_actor
def intake_route(item_type: str, item_id: int):
    try:
        patch = validate_payload(
            model=StockMovement,
            payload=request.get_json(silent=True),
            policy=MOVEMENT_POLICY,
            partial=False,
        )
        movement = stock_service.record_intake(
            _item_type(item_type),
            item_id,
            patch["quantity"],
            effective_date=patch.get("effective_date"),
            reference_id=patch.get("reference_id"),
            reference_type=patch.get("reference_type"),
            actor_id=g.actor_id,
            notes=patch.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "record intake")
    except Exception:
        return internal_error("record intake")


@ledger_bp.post("/<item_type>/<int:item_id>/consumption")
@with_actor
def consumption_route(item_type: str, item_id: int):
    try:
        patch = validate_payload(
            model=StockMovement,
            payload=request.get_json(silent=True),
            policy=MOVEMENT_POLICY,
            partial=False,
        )
        movement = stock_service.record_consumption(
            _item_type(item_type),
            item_id,
            patch["quantity"],
            effective_date=patch.get("effective_date"),
            reference_id=patch.get("reference_id"),
            reference_type=patch.get("reference_type"),
            actor_id=g.actor_id,
            notes=patch.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "record consumption")
    except Exception:
        return internal_error("record consumption")


@ledger_bp.post("/<item_type>/<int:item_id>/waste")
@with_actor
def waste_route(item_type: str, item_id: int):
    try:
        record = stock_service.record_waste(
            _item_type(item_type),
            item_id,
            request.get_json(silent=True) or {},
            actor_id=g.actor_id,
        )
        return jsonify({"waste": record.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "record waste")
    except Exception:
        return internal_error("record waste")


@ledger_bp.post("/transfers")
@with_actor
def transfer_route():
    try:
        record = stock_service.transfer_between_lots(request.get_json(silent=True) or {}, actor_id=g.actor_id)
        return jsonify({"transfer": record.to_dict()}), 201
    except LedgerError as e:
        return error_response(e, "transfer between lots")
    except Exception:
        return internal_error("transfer between lots")
