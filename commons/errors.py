# commons/errors.py
"""
Typed errors raised by the expense lifecycle.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so handlers never parse messages:

    CommonsError
    +-- ValidationError          validation_error          400
    +-- AuthorizationError       unauthorized              400
    +-- NotFoundError            not_found                 404
    +-- InvalidStateTransition   invalid_state_transition  409
    +-- InvalidAmountError       invalid_amount            400
    +-- UploadError              upload_failed             500
    +-- AnalysisParseError       analysis_parse_error      500
    +-- ReceiptAnalysisError     analysis_failed           500
    +-- NotificationError        notification_failed       (never surfaced)
"""
from typing import Any, Dict


class CommonsError(Exception):
    """Base class for all service errors."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "error": self.message,
            "details": self.details,
        }


class ValidationError(CommonsError):
    """Malformed or missing input. The caller can fix it and retry."""

    code = "validation_error"
    status_code = 400


class AuthorizationError(CommonsError):
    """Modification key missing or not matching the referenced member."""

    code = "unauthorized"
    status_code = 400


class NotFoundError(CommonsError):
    code = "not_found"
    status_code = 404


class InvalidStateTransition(CommonsError):
    """An operation was attempted from a payout status that does not allow it."""

    code = "invalid_state_transition"
    status_code = 409

    def __init__(self, current_status: str, event: str, expense_id: Any = None):
        message = f"Cannot {event} an expense in status '{current_status}'"
        details: Dict[str, Any] = {"current_status": current_status, "event": event}
        if expense_id is not None:
            details["expense_id"] = expense_id
        super().__init__(message, **details)
        self.current_status = current_status
        self.event = event


class InvalidAmountError(CommonsError):
    code = "invalid_amount"
    status_code = 400


class UploadError(CommonsError):
    code = "upload_failed"
    status_code = 500


class AnalysisParseError(CommonsError):
    """The analysis model answered with content that is not a usable JSON object."""

    code = "analysis_parse_error"
    status_code = 500


class ReceiptAnalysisError(CommonsError):
    """The analysis model could not be reached or timed out."""

    code = "analysis_failed"
    status_code = 500


class NotificationError(CommonsError):
    """Email delivery failed. Caught and logged by the notifier."""

    code = "notification_failed"
    status_code = 500
