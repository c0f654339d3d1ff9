"""
Awqaf exception hierarchy.

All awqaf exceptions inherit from AwqafError, making it easy for consumers
to catch library-level errors while still distinguishing specific failure modes.

Engine errors additionally carry a stable ``kind`` (the class name) so the UI
layer can map them to actionable messages, and a ``retryable`` flag so callers
know which conditions are worth retrying.
"""


class AwqafError(Exception):
    """Base exception class for all awqaf errors."""


class ConfigurationError(AwqafError):
    """Raised for configuration errors (missing keys, invalid values)."""


class FileIOError(AwqafError):
    """Raised for file I/O errors."""


class NormalizationError(AwqafError, ValueError):
    """Raised when a raw endowment document cannot be normalized."""


class EngineError(AwqafError):
    """Base class for typed engine results surfaced to the caller."""

    retryable = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidAllocation(EngineError, ValueError):
    """Percentages do not total 100, or a routing names an unknown cause."""


class InvalidDuration(EngineError, ValueError):
    """A lock, rollover, or spend-down period is outside its allowed range."""


class InvalidAmount(EngineError, ValueError):
    """A contribution, distribution, or payment amount is not positive."""


class AlreadyResolved(EngineError):
    """The tranche already reached a terminal state."""


class TrancheNotMatured(EngineError):
    """A maturity action was requested before the tranche's maturity date."""


class TrancheNotFound(EngineError, KeyError):
    """No tranche with the requested id exists on the endowment."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class EndowmentNotFound(EngineError, KeyError):
    """No endowment with the requested id exists in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnsupportedOperation(EngineError):
    """The operation does not apply to this endowment's type."""


class ScheduleClosed(EngineError):
    """A consumable endowment cannot accept further funds."""


class InsufficientBalance(EngineError):
    """A distribution exceeds the distributable share of a cause."""


class DuplicateTransaction(EngineError):
    """A payment confirmation with this transaction id was already applied."""


class ConcurrentModification(EngineError):
    """The stored aggregate changed since it was read; reload and retry."""

    retryable = True


class LedgerInconsistency(EngineError):
    """A post-condition invariant was violated. Never retried automatically."""


class PrincipalMutationError(LedgerInconsistency):
    """An operation attempted to change an endowment's immutable principal."""
