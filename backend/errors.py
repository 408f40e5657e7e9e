"""
Error taxonomy shared by the card engine and its collaborators.

Each error carries the HTTP status the API layer answers with; the message is
what the client sees, so upstream errors keep theirs generic.
"""

from typing import Optional


class CardError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CardError):
    status_code = 400
    default_message = "Invalid request"


class InvalidDestinationError(ValidationError):
    default_message = "Invalid destination wallet address"


class NotAuthenticatedError(CardError):
    status_code = 401
    default_message = "Not authenticated"


class EmailNotConfirmedError(NotAuthenticatedError):
    status_code = 403
    default_message = "Please confirm your email before logging in."


class NotFoundError(CardError):
    status_code = 404
    default_message = "Card not found"


class StateConflictError(CardError):
    status_code = 409
    default_message = "Card is not in a state that allows this action"


class InvalidCvvError(StateConflictError):
    status_code = 403
    default_message = "Invalid CVV for this card"


class NotLockedError(StateConflictError):
    default_message = "Card must be locked before claiming"


class AlreadyClaimedError(StateConflictError):
    default_message = "Card has already been claimed"


class AlreadyRefundedError(StateConflictError):
    default_message = "Card has already been refunded"


class NoBalanceError(StateConflictError):
    default_message = "Card has no balance to claim"


class ClaimPendingError(StateConflictError):
    default_message = "A transfer for this card is still being confirmed; retry shortly"


class UpstreamError(CardError):
    status_code = 502
    default_message = "Upstream service failure"


class StorageError(UpstreamError):
    default_message = "Storage failure"


class ChainError(UpstreamError):
    default_message = "Blockchain request failed"


class ConfigurationError(UpstreamError):
    status_code = 500
    default_message = "Server is not configured for this action"
