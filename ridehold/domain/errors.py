"""
Error taxonomy shared by the services and the API layer.

* ``ValidationError``   -- the request is refused, nothing was mutated.
* ``ConsistencyError``  -- a referenced record does not exist.
* ``TransientNetworkError`` -- an external collaborator (processor, dispatch,
  feed) failed; callers log it and move on to the next checkpoint.
* ``MalformedTripRecord`` -- data crossing the boundary failed validation.
"""

from __future__ import annotations


class RideholdError(Exception):
    code = "ERROR"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or code or self.code)
        if code:
            self.code = code
        self.message = message or self.code


class ValidationError(RideholdError):
    code = "VALIDATION_ERROR"


class ConsistencyError(RideholdError):
    code = "NOT_FOUND"


class TransientNetworkError(RideholdError):
    code = "UPSTREAM_UNAVAILABLE"


class MalformedTripRecord(RideholdError):
    code = "MALFORMED_TRIP_RECORD"


# Reason codes surfaced to callers verbatim
DISPUTE_WINDOW_EXPIRED = "DISPUTE_WINDOW_EXPIRED"
DISPUTE_EXISTS = "DISPUTE_EXISTS"
DISPUTE_ALREADY_RESOLVED = "DISPUTE_ALREADY_RESOLVED"
TRIP_NOT_COMPLETED = "TRIP_NOT_COMPLETED"
TRIP_NOT_FOUND = "TRIP_NOT_FOUND"
DISPUTE_NOT_FOUND = "DISPUTE_NOT_FOUND"
AUTHORIZATION_NOT_FOUND = "AUTHORIZATION_NOT_FOUND"
CAPTURE_EXCEEDS_AUTHORIZATION = "CAPTURE_EXCEEDS_AUTHORIZATION"
REFUND_EXCEEDS_AMOUNT = "REFUND_EXCEEDS_AMOUNT"
