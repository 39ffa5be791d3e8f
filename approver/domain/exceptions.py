"""Domain-specific exceptions for the approval lifecycle.

Domain exceptions represent business rule violations and storage failures seen
by the service layer. Every error carries a ``context`` dict with the
identifiers (code, record id, current status, actors) a presentation layer
needs to render a specific message without re-querying the store.
"""


class DomainError(Exception):
    """Base exception for domain layer errors."""

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message (for logs, not end users)
            context: Additional context about the error
        """
        self.message = message
        self.context = context or {}
        super().__init__(message)


class RecordNotFoundError(DomainError):
    """Raised when an approval record does not exist.

    Also raised when a code index entry points at a record that is gone; in
    that case context includes the stale ``record_id``.
    """


class RecordImmutableError(DomainError):
    """Raised when a transition is attempted on a record in the wrong status.

    Context should include:
        - record_id / code: Which record
        - current_status: Status that blocked the transition
    """


class NotApprovedError(RecordImmutableError):
    """Raised when verifying a record whose status is not approved."""


class AlreadyVerifiedError(RecordImmutableError):
    """Raised when verifying a record that is already verified."""


class PermissionDeniedError(DomainError):
    """Raised when the acting user is not the party allowed to act.

    Context should include:
        - actor_id: User who attempted the operation
        - expected_actor_id: User who is allowed to perform it
    """


class InvalidInputError(DomainError):
    """Raised for malformed codes, missing fields, or invalid decision values."""


class CodeGenerationExhaustedError(DomainError):
    """Raised when no unique approval code was found within the retry bound."""


class PersistenceError(DomainError):
    """Raised when the backing key/value store fails.

    Context should include:
        - operation: Store operation that failed (get/set/delete/list)
        - key: Storage key involved, when known
    """


class RecordCorruptedError(DomainError):
    """Raised when stored bytes cannot be decoded into an approval record."""


__all__ = [
    "DomainError",
    "RecordNotFoundError",
    "RecordImmutableError",
    "NotApprovedError",
    "AlreadyVerifiedError",
    "PermissionDeniedError",
    "InvalidInputError",
    "CodeGenerationExhaustedError",
    "PersistenceError",
    "RecordCorruptedError",
]
