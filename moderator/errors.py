"""
Error taxonomy for the moderation core.

NotFoundError and ValidationError reach the caller unchanged.
ConcurrencyConflict is retried inside the decision ledger and surfaces
as PersistenceError once retries are exhausted.
"""


class ModerationError(Exception):
    """Base class for all moderation core errors."""


class NotFoundError(ModerationError):
    """A comment, actor or score request does not exist."""


class ValidationError(ModerationError):
    """Unrecognized state field, bad value or unknown actor group."""


class PersistenceError(ModerationError):
    """A storage round trip failed."""


class ConcurrencyConflict(ModerationError):
    """
    Lost a race on the single-current-decision invariant.

    `transaction_aborted` is set when the database gave up on the whole
    transaction (lock timeout, serialization failure, deadlock); only a
    fresh transaction can retry it.
    """

    def __init__(self, message: str = "", transaction_aborted: bool = False):
        super().__init__(message)
        self.transaction_aborted = transaction_aborted
