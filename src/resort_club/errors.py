"""Exception types raised by the club core.

Expected outcomes (duplicate check-in, bad token, replayed webhook) are returned
as result objects, not raised. These exceptions are for conditions the caller
cannot treat as normal flow.
"""

from __future__ import annotations


class ClubError(Exception):
    """Base class for club errors."""

    code = "club_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


class ConfigurationError(ClubError):
    code = "configuration_error"


class CheckinFailed(ClubError):
    """Persistence failed for a reason other than the once-per-day constraint."""

    code = "checkin_failed"


class PaymentError(ClubError):
    code = "payment_error"
