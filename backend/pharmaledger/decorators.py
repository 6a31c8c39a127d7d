# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-Actor-Id"
ACTOR_ID_MAX_LENGTH = 64


def require_actor(f):
    """
    Require the acting user's id and expose it as g.actor_id.

    Authentication happens upstream (gateway); this service only needs to
    know who to record on movements and sales.

    Returns 401 if the header is missing or blank, 400 if it is too long.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()

        if not actor_id:
            return jsonify({"error": f"{ACTOR_HEADER} header required"}), 401
        if len(actor_id) > ACTOR_ID_MAX_LENGTH:
            return jsonify({"error": f"{ACTOR_HEADER} cannot exceed {ACTOR_ID_MAX_LENGTH} characters"}), 400

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
