"""Error taxonomy shared by the store, the notification pipeline and reconciliation."""

from __future__ import annotations


class StoreError(Exception):
    """Base exception for marketplace_core failures."""


class NotFound(StoreError, LookupError):
    """An entity, index entry or document is absent."""

    def __init__(self, family: str, entity_id: str) -> None:
        super().__init__(f"{family} not found: {entity_id}")
        self.family = family
        self.entity_id = entity_id


class CorruptDocument(StoreError, ValueError):
    """A document exists on disk but cannot be parsed or validated."""

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"corrupt document at {path}: {reason}")
        self.path = path
        self.reason = reason


class ValidationFailure(StoreError, ValueError):
    """A write or transition was rejected before any file was touched."""


class IllegalTransition(ValidationFailure):
    """A status change is not allowed by the entity's state machine."""


class TransientIOFailure(StoreError):
    """A filesystem operation failed in a way that may succeed on retry."""


class AlreadyExists(StoreError):
    """The operation was already applied; callers treat this as a no-op success."""


class DuplicateFact(AlreadyExists):
    """A fact with the same idempotency key has already been recorded."""


class RetryExhausted(StoreError):
    """A retried operation kept failing until the attempt budget ran out."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class PaymentStepFailed(StoreError):
    """One step of the mark-paid sequence failed; earlier steps remain applied."""

    def __init__(self, invoice_number: str, step: str, cause: BaseException) -> None:
        super().__init__(f"payment of {invoice_number} failed at step '{step}': {cause}")
        self.invoice_number = invoice_number
        self.step = step
        self.cause = cause
