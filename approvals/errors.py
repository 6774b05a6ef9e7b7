"""Typed errors raised by the approval engine.

Every error carries a machine readable ``code``, the HTTP status the JSON
adapter should answer with and a ``details`` mapping with enough context (for
instance the current status of a task) for a client to re-sync.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ApprovalError(Exception):
    code = "approval_error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {key: value for key, value in details.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(ApprovalError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found.", entity=entity, id=entity_id)


class InvalidTransition(ApprovalError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, current_status=current_status, **details)

    @property
    def current_status(self) -> Optional[str]:
        return self.details.get("current_status")


class ValidationError(ApprovalError):
    code = "validation_error"
    status_code = 400


class ConflictError(ApprovalError):
    code = "conflict"
    status_code = 409
