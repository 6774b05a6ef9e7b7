"""General helper utilities."""
from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Optional

from flask import jsonify
from flask_login import current_user

from approvals.errors import ApprovalError, ValidationError
from approvals.models import AuditLedgerError, UserRole

logger = logging.getLogger(__name__)

JsonView = Callable[..., Any]


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def role_required(*roles: UserRole):
    """Restrict a route to one or more roles."""
    def decorator(view_func: JsonView) -> JsonView:
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return json_response({"error": "Authentication required."}, status=401)
            if current_user.role not in roles:
                return json_response({"error": "Insufficient permissions."}, status=403)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


def parse_datetime_arg(value: Optional[str], name: str) -> Optional[datetime]:
    """Read an ISO date or datetime query argument."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid '{name}' format. Use ISO 8601.", field=name) from None


def form_errors(form) -> ValidationError:
    return ValidationError("Invalid payload.", fields=form.errors)


def register_error_handlers(app) -> None:
    @app.errorhandler(ApprovalError)
    def handle_approval_error(exc: ApprovalError):
        return json_response(exc.to_dict(), status=exc.status_code)

    @app.errorhandler(AuditLedgerError)
    def handle_ledger_error(exc: AuditLedgerError):
        logger.error(f"Refused approval history mutation: {exc}")
        return json_response({"error": str(exc), "code": "audit_ledger"}, status=409)

    @app.errorhandler(404)
    def handle_not_found(exc):
        return json_response({"error": "Not found."}, status=404)

    @app.errorhandler(405)
    def handle_method_not_allowed(exc):
        return json_response({"error": "Method not allowed."}, status=405)
