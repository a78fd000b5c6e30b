# Overview: Request decorators for API routes: acting user context and error translation.

from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .time_utils import parse_iso_datetime
from .validation import DomainError, ValidationError, http_status_for


def require_actor(f):
    """
    Read the acting user id from the X-User-Id header into g.actor_id.

    The header is optional; a missing header leaves g.actor_id as None. A
    non-integer header is rejected with 400. Nothing is authenticated here.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get("X-User-Id")
        if raw is None or not raw.strip():
            g.actor_id = None
        else:
            try:
                g.actor_id = int(raw.strip())
            except ValueError:
                return jsonify({"error": "X-User-Id must be an integer"}), 400
        return f(*args, **kwargs)

    return decorated_function


def json_errors(action: str):
    """
    Translate service errors into JSON responses.

    Domain errors map to their status code (400/404/409/500). Anything else is
    logged with a traceback and returned as a generic 500. The session is always
    rolled back before responding.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except DomainError as e:
                db.session.rollback()
                status = http_status_for(e)
                if status >= 500:
                    current_app.logger.error("Failed to %s: %s", action, e)
                return jsonify(e.to_dict()), status
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Failed to %s", action)
                return jsonify({"error": f"Failed to {action}"}), 500

        return decorated_function
    return decorator


def json_body() -> dict:
    """Request JSON as a dict; an absent or non-object body is an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def datetime_arg(name: str):
    """Optional ISO-8601 query parameter; malformed values are a 400."""
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError as exc:
        raise ValidationError({name: ["must be an ISO-8601 datetime"]}) from exc
