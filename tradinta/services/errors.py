"""Error taxonomy for Foundry operations.

Validation and state errors carry user-facing messages; the HTTP layer maps
``status_code`` straight onto the response.
"""
from __future__ import annotations


class ForgingEventError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ForgingEventError):
    status_code = 400


class AlreadyPledgedError(ValidationError):
    pass


class NotAuthorizedError(ForgingEventError):
    status_code = 403


class NotFoundError(ForgingEventError):
    status_code = 404


class EventStateError(ForgingEventError):
    status_code = 409


class EventNotActiveError(EventStateError):
    pass


class EventNotFinishedError(EventStateError):
    pass


class EventNotProposedError(EventStateError):
    pass


class ExternalServiceError(ForgingEventError):
    status_code = 503


__all__ = [
    "ForgingEventError",
    "ValidationError",
    "AlreadyPledgedError",
    "NotAuthorizedError",
    "NotFoundError",
    "EventStateError",
    "EventNotActiveError",
    "EventNotFinishedError",
    "EventNotProposedError",
    "ExternalServiceError",
]
