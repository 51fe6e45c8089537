"""
Error Taxonomy
==============

Domain errors raised by the workflow core. The API layer turns them into the
`{"error": {"code", "message", "details"}}` envelope.
"""

from typing import Any, Dict, Optional


class LawmanError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidRequest(LawmanError):
    code = "invalid_request"
    status_code = 400


class IllegalTransition(LawmanError):
    """Requested move is not an edge of the transition graph."""

    code = "illegal_transition"
    status_code = 409

    def __init__(self, current, attempted):
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot move case from {_value(current)} to {_value(attempted)}",
            details={"current": _value(current), "attempted": _value(attempted)},
        )


class CaseNotFound(LawmanError):
    code = "case_not_found"
    status_code = 404

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case {case_id} not found", details={"case_id": case_id})


class CustomerNotFound(LawmanError):
    code = "customer_not_found"
    status_code = 404

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found", details={"customer_id": customer_id})


class TaskNotFound(LawmanError):
    code = "task_not_found"
    status_code = 404

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found", details={"task_id": task_id})


class NotificationNotFound(LawmanError):
    code = "notification_not_found"
    status_code = 404

    def __init__(self, notification_id: str):
        super().__init__(
            f"Notification {notification_id} not found",
            details={"notification_id": notification_id},
        )


class VersionConflict(LawmanError):
    code = "conflict"
    status_code = 409


class LedgerWriteFailure(LawmanError):
    """Transition + history append could not be committed; nothing was written."""

    code = "ledger_write_failure"
    status_code = 503


class DeliveryFailure(LawmanError):
    """Every mail transport attempt failed. Reported, never raised to callers."""

    code = "delivery_failure"
    status_code = 502


class Unauthenticated(LawmanError):
    code = "unauthenticated"
    status_code = 401


class InvalidToken(LawmanError):
    code = "invalid_token"
    status_code = 401


class TokenExpired(LawmanError):
    code = "token_expired"
    status_code = 401


class PermissionDenied(LawmanError):
    code = "forbidden"
    status_code = 403


def _value(v):
    return v.value if hasattr(v, "value") else v
