"""
Reconciliation Errors

Typed failures surfaced by the coordinator, the bulk executor and the
HTTP client. Each maps onto an HTTP status and an {"error": message} body.

- ValidationFailed: rejected before any write
- NotFound: referenced record does not exist
- Conflict: the store rejected the write (already linked, claimed concurrently);
  callers refetch and recompute suggestions instead of retrying
- StoreUnavailable: the mutation failed in the database and was rolled back
"""

from typing import Dict, Any, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationFailed(ReconciliationError):
    status_code = 400


class NotFound(ReconciliationError):
    status_code = 404


class Conflict(ReconciliationError):
    status_code = 409


class StoreUnavailable(ReconciliationError):
    status_code = 503


_BY_STATUS = {
    400: ValidationFailed,
    404: NotFound,
    409: Conflict,
    503: StoreUnavailable,
}


def error_from_status(status_code: int, message: str) -> ReconciliationError:
    """Rebuild a typed error from an HTTP status and message."""
    error_cls = _BY_STATUS.get(status_code, ReconciliationError)
    return error_cls(message, status_code=status_code)
