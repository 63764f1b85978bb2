"""
messaging.py — pairwise sealed payloads between protocol participants

Directed round payloads carry secret shares and must stay opaque to the relay.
Each party publishes an ephemeral X25519 key in round 1; later directed
payloads are sealed with AES-GCM under HKDF(X25519(mine, theirs)).
"""

from __future__ import annotations
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import EngineError
from .secure_memory import wipe

HKDF_INFO = b"boomersig-pairwise-v1"
NONCE_SIZE = 12
PUBLIC_KEY_SIZE = 32


def new_exchange_key() -> x25519.X25519PrivateKey:
    return x25519.X25519PrivateKey.generate()


def exchange_public_bytes(private_key: x25519.X25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _pairwise_key(private_key: x25519.X25519PrivateKey, peer_public: bytes) -> bytearray:
    if len(peer_public) != PUBLIC_KEY_SIZE:
        raise EngineError(f"peer exchange key must be {PUBLIC_KEY_SIZE} bytes")
    try:
        peer = x25519.X25519PublicKey.from_public_bytes(peer_public)
        shared = bytearray(private_key.exchange(peer))
    except ValueError as exc:
        raise EngineError(f"unusable peer exchange key: {exc}") from exc
    try:
        return bytearray(HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=HKDF_INFO,
        ).derive(shared))
    finally:
        wipe(shared)


def seal(
    private_key: x25519.X25519PrivateKey,
    peer_public: bytes,
    plaintext: Union[bytes, bytearray],
    aad: bytes,
) -> bytes:
    """Encrypt for one peer. Returns ``nonce || ciphertext``."""
    key = _pairwise_key(private_key, peer_public)
    try:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)
    finally:
        wipe(key)


def open_sealed(
    private_key: x25519.X25519PrivateKey,
    peer_public: bytes,
    sealed: bytes,
    aad: bytes,
) -> bytearray:
    """Decrypt a payload from one peer; tampering raises ``EngineError``."""
    if len(sealed) <= NONCE_SIZE:
        raise EngineError("sealed payload is truncated")
    key = _pairwise_key(private_key, peer_public)
    try:
        return bytearray(AESGCM(key).decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], aad))
    except InvalidTag:
        raise EngineError("sealed payload failed authentication") from None
    finally:
        wipe(key)
