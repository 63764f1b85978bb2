import pytest

from boomersig.errors import EngineError
from boomersig.messaging import exchange_public_bytes, new_exchange_key, open_sealed, seal


def test_sealed_roundtrip_between_two_parties():
    alice, bob = new_exchange_key(), new_exchange_key()
    sealed = seal(alice, exchange_public_bytes(bob), b"share for bob", b"aad")
    assert b"share for bob" not in sealed
    assert open_sealed(bob, exchange_public_bytes(alice), sealed, b"aad") == bytearray(b"share for bob")


def test_wrong_recipient_or_aad_fails():
    alice, bob, eve = new_exchange_key(), new_exchange_key(), new_exchange_key()
    sealed = seal(alice, exchange_public_bytes(bob), b"share", b"aad")

    with pytest.raises(EngineError):
        open_sealed(eve, exchange_public_bytes(alice), sealed, b"aad")
    with pytest.raises(EngineError):
        open_sealed(bob, exchange_public_bytes(alice), sealed, b"other aad")


def test_truncated_and_bad_key():
    alice, bob = new_exchange_key(), new_exchange_key()
    with pytest.raises(EngineError, match="truncated"):
        open_sealed(bob, exchange_public_bytes(alice), b"\x00" * 5, b"")
    with pytest.raises(EngineError):
        seal(alice, b"short", b"x", b"")
