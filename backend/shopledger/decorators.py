# Overview: Request, authorization and error-contract decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .services import session_service
from .validation import ValidationError, ConflictError, NotFoundError


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'store_id')


def require_auth(f):
    """
    Require a valid bearer session and establish tenant context.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.store_id: The tenant the session was issued for
    - g.session_context: The full SessionContext object

    Returns 401 before any lookup if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"success": False, "error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"success": False, "error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.store_id = context.store_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require the authenticated user to have the admin role. Use after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"success": False, "error": "Authentication required"}), 401
        if not g.current_user.is_admin:
            return jsonify({"success": False, "error": "Admin access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def api_action(description: str):
    """
    Convert service exceptions into the {success: false, error} contract.

    ValidationError -> 400, NotFoundError -> 404, ConflictError -> 409,
    anything else is logged and answered with a generic 500.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except ValidationError as e:
                return jsonify({"success": False, "error": str(e)}), 400
            except NotFoundError as e:
                return jsonify({"success": False, "error": str(e.args[0]) if e.args else "Not found"}), 404
            except ConflictError as e:
                return jsonify({"success": False, "error": str(e)}), 409
            except Exception:
                current_app.logger.exception("Failed to %s", description)
                return jsonify({"success": False, "error": f"Failed to {description}"}), 500

        return decorated_function
    return decorator
