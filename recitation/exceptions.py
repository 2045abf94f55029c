"""
Typed errors raised by the recitation review engines.

Every guard failure in the ticket workflow and the Personal Mushaf ledger is
reported with one of these classes; none of them is ever swallowed. Each error
knows the HTTP status it maps to so the API middleware can render it without a
lookup table.
"""

from typing import Any, Dict, List, Optional

import pydantic


class RecitationError(Exception):
    """Base class for every domain error."""

    status_code = 400
    code = 'error'

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def as_payload(self) -> Dict[str, Any]:
        """JSON body for API responses."""
        payload: Dict[str, Any] = {'error': self.message, 'code': self.code}
        payload.update(self.context)
        return payload


class ValidationError(RecitationError):
    """Malformed input: missing fields, out-of-range index, bad enum value."""

    status_code = 400
    code = 'validation_error'

    def __init__(
        self, message: str, details: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        if details:
            super().__init__(message, details=details)
        else:
            super().__init__(message)
        self.details = details or []

    @classmethod
    def from_pydantic(
        cls, exc: pydantic.ValidationError, message: str = 'Invalid payload.'
    ) -> 'ValidationError':
        """Wrap a pydantic error, keeping its per-field details."""
        details = [
            {
                'field': '.'.join(str(part) for part in error['loc']),
                'message': error['msg'],
            }
            for error in exc.errors()
        ]
        return cls(message, details=details)


class Forbidden(RecitationError):
    """Caller lacks the capability or does not own the listening session."""

    status_code = 403
    code = 'forbidden'


class NotFound(RecitationError):
    """Ticket, student, teacher, ledger or ledger record is absent."""

    status_code = 404
    code = 'not_found'


class InvalidState(RecitationError):
    """Operation is not legal in the ticket's current status."""

    status_code = 409
    code = 'invalid_state'

    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message, current_status=current_status)
        self.current_status = current_status


class ConcurrencyConflict(RecitationError):
    """A ledger write lost the compare-and-swap race (safe to retry)."""

    status_code = 409
    code = 'concurrency_conflict'
