# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def with_actor(f):
    """
    Establish the acting user for ledger and order routes.

    Identity is decided upstream; this service only consumes it:
    - X-Actor-Id: integer actor id (optional; anonymous actions record NULL)
    - X-Actor-Can-Write: "true" / "false" (defaults to false)

    Sets g.actor_id and g.can_write. Returns 400 on malformed headers.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = (request.headers.get("X-Actor-Id") or "").strip()
        if raw_id:
            if not raw_id.isdigit():
                return jsonify({"error": "X-Actor-Id must be an integer"}), 400
            g.actor_id = int(raw_id)
        else:
            g.actor_id = None

        raw_write = (request.headers.get("X-Actor-Can-Write") or "").strip().lower()
        if raw_write in TRUE_VALUES:
            g.can_write = True
        elif raw_write in FALSE_VALUES:
            g.can_write = False
        else:
            return jsonify({"error": "X-Actor-Can-Write must be true or false"}), 400

        return f(*args, **kwargs)

    return decorated_function
