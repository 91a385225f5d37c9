# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-User-Id"


def identify_actor(f):
    """
    Establish who is making the request.

    Authentication happens upstream; the gateway forwards the authenticated
    user id in the X-User-Id header. Sets:
    - g.actor_id: int user id, or None when the header is absent

    Returns 400 if the header is present but not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER)
        if raw is None or not raw.strip():
            g.actor_id = None
            return f(*args, **kwargs)

        raw = raw.strip()
        if not raw.isdigit() or int(raw) <= 0:
            return jsonify({"error": f"{ACTOR_HEADER} must be a positive integer", "code": "validation_error"}), 400

        g.actor_id = int(raw)
        return f(*args, **kwargs)

    return decorated_function
