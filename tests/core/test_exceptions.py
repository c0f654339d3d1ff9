"""Tests for awqaf.core.exceptions."""

import pytest

from awqaf.core.exceptions import (
    AlreadyResolved,
    AwqafError,
    ConcurrentModification,
    ConfigurationError,
    DuplicateTransaction,
    EndowmentNotFound,
    EngineError,
    FileIOError,
    InsufficientBalance,
    InvalidAllocation,
    InvalidAmount,
    InvalidDuration,
    LedgerInconsistency,
    NormalizationError,
    PrincipalMutationError,
    ScheduleClosed,
    TrancheNotFound,
    TrancheNotMatured,
    UnsupportedOperation,
)

ENGINE_ERRORS = [
    InvalidAllocation,
    InvalidDuration,
    InvalidAmount,
    AlreadyResolved,
    TrancheNotMatured,
    TrancheNotFound,
    EndowmentNotFound,
    UnsupportedOperation,
    ScheduleClosed,
    InsufficientBalance,
    DuplicateTransaction,
    ConcurrentModification,
    LedgerInconsistency,
    PrincipalMutationError,
]


def test_hierarchy():
    """All exceptions should inherit from AwqafError."""
    for exc_cls in [ConfigurationError, FileIOError, NormalizationError, EngineError, *ENGINE_ERRORS]:
        assert issubclass(exc_cls, AwqafError)

    for exc_cls in ENGINE_ERRORS:
        assert issubclass(exc_cls, EngineError)


@pytest.mark.parametrize("exc_cls", ENGINE_ERRORS)
def test_kind_is_class_name(exc_cls):
    assert exc_cls("details").kind == exc_cls.__name__


def test_only_concurrent_modification_is_retryable():
    retryable = [exc_cls for exc_cls in ENGINE_ERRORS if exc_cls("x").retryable]
    assert retryable == [ConcurrentModification]


def test_principal_mutation_is_ledger_inconsistency():
    with pytest.raises(LedgerInconsistency):
        raise PrincipalMutationError("principal changed")


def test_validation_errors_are_value_errors():
    for exc_cls in [InvalidAllocation, InvalidDuration, InvalidAmount, NormalizationError]:
        assert issubclass(exc_cls, ValueError)


def test_not_found_errors_are_key_errors_with_plain_message():
    err = TrancheNotFound("tranche t-9 not found")
    assert isinstance(err, KeyError)
    assert str(err) == "tranche t-9 not found"
    assert str(EndowmentNotFound()) == ""


def test_catch_all():
    """Catching AwqafError should catch all subclasses."""
    try:
        raise InsufficientBalance("school has 10.00 available")
    except AwqafError as e:
        assert "school" in str(e)
