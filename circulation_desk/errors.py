"""Typed failures raised by the circulation core.

Every error carries a stable ``code`` so the API and CLI layers can report
it without parsing messages.
"""


class CirculationError(Exception):
    code = "circulation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(CirculationError, LookupError):
    code = "not_found"


class Unavailable(CirculationError):
    code = "unavailable"


class DuplicateLoan(CirculationError):
    code = "duplicate_loan"


class AlreadyReturned(CirculationError):
    code = "already_returned"


class RenewalLimitReached(CirculationError):
    code = "renewal_limit_reached"


class Unauthorized(CirculationError):
    code = "unauthorized"


class ConcurrentUpdate(CirculationError):
    """A version-checked write found the record changed underneath it."""

    code = "concurrent_update"


class InvariantViolation(CirculationError):
    """A counter would leave its legal range. Signals a bug upstream."""

    code = "invariant_violation"
