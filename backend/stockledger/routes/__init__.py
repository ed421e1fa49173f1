from flask import current_app, jsonify

from ..exceptions import LedgerError


def error_response(exc: LedgerError, action: str):
    """JSON body + status for a domain error. Server-side failures are logged with traceback."""
    if exc.http_status >= 500:
        current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": str(exc), "details": exc.details}), exc.http_status


def internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500
