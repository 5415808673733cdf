"""
Ledger exceptions.

Every error carries a developer message, structured details and a short
reason string that can be shown to the end user as-is.
"""

from typing import Any


GENERIC_RETRY_MESSAGE = "Something went wrong. Please check your balance and try again."


class LedgerError(Exception):
    """Base exception for the appreciation ledger."""

    user_message = GENERIC_RETRY_MESSAGE

    def __init__(self, message: str, details: dict[str, Any] | None = None, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if user_message is not None:
            self.user_message = user_message


class AccountNotFound(LedgerError):
    """Raised when a referenced user has no balance record."""

    def __init__(self, user_id: str):
        super().__init__(
            message=f"Account not found: {user_id}",
            details={"user_id": user_id},
            user_message="Account not found",
        )


class ValidationRejected(LedgerError):
    """Base for rejections raised before any mutation happens."""


class BelowMinimum(ValidationRejected):
    def __init__(self, requested: int, minimum: int):
        super().__init__(
            message=f"Conversion of {requested} points is below the minimum of {minimum}",
            details={"requested": requested, "minimum": minimum},
            user_message=f"Minimum conversion is {minimum} points",
        )


class NotDivisible(ValidationRejected):
    def __init__(self, requested: int, rate: int):
        super().__init__(
            message=f"{requested} points is not divisible by the conversion rate {rate}",
            details={"requested": requested, "rate": rate},
            user_message=f"Points must be divisible by {rate}",
        )


class InsufficientPoints(ValidationRejected):
    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            message=f"Insufficient points: required {required}, available {available}",
            details={"user_id": user_id, "required": required, "available": available},
            user_message=f"You only have {available} points available",
        )


class InsufficientTokens(ValidationRejected):
    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            message=f"Insufficient tokens: required {required}, available {available}",
            details={"user_id": user_id, "required": required, "available": available},
            user_message=f"Insufficient tokens. You have {available}, need {required}",
        )


class DailyLimitExceeded(ValidationRejected):
    def __init__(self, user_id: str, limit: int):
        super().__init__(
            message=f"User {user_id} reached the daily conversion limit of {limit}",
            details={"user_id": user_id, "limit": limit},
            user_message=f"Maximum {limit} conversions per day reached",
        )


class ThankYouLimitExceeded(ValidationRejected):
    def __init__(self, user_id: str, technician_id: str, limit: int):
        super().__init__(
            message=f"User {user_id} reached the daily free thank-you limit for {technician_id}",
            details={"user_id": user_id, "technician_id": technician_id, "limit": limit},
            user_message=f"Daily free thank you limit reached ({limit} per day per technician)",
        )


class InvalidAmount(ValidationRejected):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details, user_message=message)


class SelfAppreciation(ValidationRejected):
    def __init__(self, user_id: str):
        super().__init__(
            message=f"User {user_id} attempted to appreciate themselves",
            details={"user_id": user_id},
            user_message="You cannot send appreciation to yourself",
        )


class IdempotencyConflict(LedgerError):
    """Raised when an idempotency key is reused for a different operation."""

    def __init__(self, idempotency_key: str, reason: str):
        super().__init__(
            message=f"Idempotency key {idempotency_key!r} conflicts: {reason}",
            details={"idempotency_key": idempotency_key},
            user_message="This request was already submitted with different details",
        )


class InvalidTransaction(LedgerError):
    """Raised when a transaction record does not match its type's shape."""


class RecordingFailed(LedgerError):
    """Raised when the durable transaction-log write fails."""

    def __init__(self, reason: str, original_error: Exception | None = None):
        super().__init__(
            message=f"Failed to record transaction: {reason}",
            details={"original_error": str(original_error) if original_error else None},
        )
        self.original_error = original_error


class StoreUnavailable(LedgerError):
    """Raised when the store cannot be reached or a call times out.

    The outcome of a write is unknown; re-read state before retrying.
    """

    def __init__(self, operation: str, original_error: Exception | None = None):
        super().__init__(
            message=f"Ledger store unavailable during {operation}",
            details={
                "operation": operation,
                "original_error": str(original_error) if original_error else None,
            },
        )
        self.original_error = original_error
