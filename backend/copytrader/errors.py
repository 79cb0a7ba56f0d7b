"""Error taxonomy shared by the engines, services and API layer.

Every error carries the HTTP status the API layer renders it with. Idempotent
duplicates (payment replays, repeated follow/fade clicks) are NOT errors: the
ledger and recorder report them as outcomes.
"""

from __future__ import annotations


class CopyTraderError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CopyTraderError):
    """Bad input. No state was changed."""

    status_code = 400


class NotFoundError(CopyTraderError):
    """A referenced entity does not exist."""

    status_code = 404


class BrokerError(CopyTraderError):
    """A broker call failed, was rejected, or never confirmed in time."""

    status_code = 502


class TransactionError(CopyTraderError):
    """A multi-write commit failed and was rolled back. Safe to retry."""

    status_code = 503


class SignatureError(CopyTraderError):
    """Webhook signature missing or not matching."""

    status_code = 401


class ForbiddenError(CopyTraderError):
    """The caller may not perform this action on the entity in its current state."""

    status_code = 403


class RateLimitError(CopyTraderError):
    """Too many actions in the current window."""

    status_code = 429

    def __init__(self, message: str, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConfigurationError(CopyTraderError):
    """The server is missing required configuration."""

    status_code = 500
