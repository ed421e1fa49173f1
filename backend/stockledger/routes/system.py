# backend/stockledger/routes/system.py
"""
System health endpoint.

Reports database reachability and a cheap ledger summary for deployment
debugging. 503 when any check is unhealthy.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, ProcessedGood, Lot, StockMovement
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        movement_count = db.session.query(StockMovement).count()
        lot_count = db.session.query(Lot).count()
        good_count = db.session.query(ProcessedGood).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stock_movements": movement_count,
                "lots": lot_count,
                "processed_goods": good_count,
            },
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_order_health() -> dict:
    """Orders whose lock window is still open; a large number means unlocks are piling up."""
    start_time = time.time()
    try:
        now = utcnow()
        open_windows = db.session.query(Order).filter(
            Order.is_locked.is_(True),
            Order.can_unlock_until > now,
        ).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"locked_within_unlock_window": open_windows},
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Order health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Order store error",
        }


@system_bp.get("/health")
def health():
    start_time = time.time()

    database_health = check_database_health()
    order_health = check_order_health()

    all_checks = [database_health, order_health]
    unhealthy = any(check["status"] == "unhealthy" for check in all_checks)

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "orders": order_health,
        },
    }
    return response, 503 if unhealthy else 200
