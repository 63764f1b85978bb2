import pytest

from boomersig.errors import (
    BoomerSigError,
    EngineError,
    InsufficientParticipants,
    IntegrityError,
    NetworkError,
    ProtocolViolation,
    SessionStateError,
    Timeout,
    TransactionError,
)


def test_boomersig_error_base():
    err = BoomerSigError("CODE", "message", "ctx")
    assert err.code == "CODE"
    assert err.message == "message"
    assert err.context == "ctx"
    assert str(err) == "[CODE] message Context: ctx"
    assert err.retryable is False


def test_concrete_errors():
    classes = [
        NetworkError, ProtocolViolation, EngineError, IntegrityError,
        InsufficientParticipants, SessionStateError, TransactionError,
    ]
    codes = set()
    for cls in classes:
        err = cls("some context")
        assert isinstance(err, BoomerSigError)
        assert err.context == "some context"
        assert err.code.startswith("BOOMERSIG_E")
        assert "some context" in str(err)
        codes.add(err.code)
    assert len(codes) == len(classes)


def test_only_network_errors_are_retryable():
    assert NetworkError().retryable is True
    assert ProtocolViolation().retryable is False
    assert IntegrityError().retryable is False


def test_timeout_names_unresponsive_sorted():
    err = Timeout({3, 1}, round_number=2)
    assert err.unresponsive == [1, 3]
    assert err.round_number == 2
    assert "round 2" in err.context
    assert "1, 3" in err.context


def test_errors_are_catchable_as_base():
    with pytest.raises(BoomerSigError):
        raise IntegrityError("tag mismatch")
