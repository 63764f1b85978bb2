"""
share_store.py — encrypted at-rest storage for key shares

Each completed key generation leaves one file per session:

    <shares_dir>/<session_id>.share  =  nonce (12) || ciphertext || tag (16)

The AES-256-GCM key is derived from the operator's passphrase with scrypt, and
the session id is bound in as associated data, so a blob moved to another
session id fails authentication exactly like a wrong passphrase does.

Usage:
    store = SecureShareStore(Path("~/.boomersig/shares").expanduser())
    share = store.seal_share(key_share, local_share, passphrase)
    with store.open_share(share.session_id, passphrase) as record:
        engine.restore_keygen(record.local_share)
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import struct
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import StoreConfig
from .errors import IntegrityError, SessionStateError
from .models import KeyShare
from .secure_memory import SecretBuffer, wipe
from .wire import canonical_bytes, check_session_id

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
SHARE_SUFFIX = ".share"
_SALT_DOMAIN = b"boomersig/share-salt/v1\x00"
_HEADER_LEN = struct.Struct(">I")

Passphrase = Union[str, bytes, bytearray, SecretBuffer]


@dataclass(frozen=True)
class KdfParams:
    n: int = 2 ** 17
    r: int = 8
    p: int = 1


@dataclass
class ShareRecord:
    """Decrypted share, valid only inside ``SecureShareStore.open_share``."""

    key: KeyShare
    local_share: bytearray


def _passphrase_bytes(passphrase: Passphrase) -> SecretBuffer:
    if isinstance(passphrase, SecretBuffer):
        return SecretBuffer(passphrase.value)
    if isinstance(passphrase, str):
        return SecretBuffer.from_text(passphrase)
    return SecretBuffer(passphrase)


def session_salt(session_id: str) -> bytes:
    """Per-session scrypt salt. Session ids are unique, so salts are too."""
    return hashlib.sha256(_SALT_DOMAIN + session_id.encode("utf-8")).digest()[:16]


class SecureShareStore:
    """Authenticated-encryption store with per-session locking."""

    def __init__(self, shares_dir: Union[str, Path], kdf: KdfParams = KdfParams()) -> None:
        self.shares_dir = Path(shares_dir)
        self.kdf = kdf
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: StoreConfig) -> "SecureShareStore":
        kdf = KdfParams(n=config.kdf_n, r=config.kdf_r, p=config.kdf_p)
        return cls(Path(config.shares_dir).expanduser(), kdf)

    # -- crypto -----------------------------------------------------------

    def _derive_key(self, session_id: str, passphrase: Passphrase) -> bytearray:
        with _passphrase_bytes(passphrase) as secret:
            if not len(secret):
                raise ValueError("passphrase must not be empty")
            kdf = Scrypt(salt=session_salt(session_id), length=KEY_SIZE, n=self.kdf.n, r=self.kdf.r, p=self.kdf.p)
            return bytearray(kdf.derive(secret.value))

    def encrypt(
        self,
        session_id: str,
        plaintext: Union[bytes, bytearray],
        passphrase: Passphrase,
    ) -> Tuple[bytes, bytes, bytes]:
        """Encrypt ``plaintext`` for ``session_id``. Returns (ciphertext, nonce, tag)."""
        check_session_id(session_id)
        key = self._derive_key(session_id, passphrase)
        try:
            nonce = os.urandom(NONCE_SIZE)
            sealed = AESGCM(key).encrypt(nonce, plaintext, session_id.encode("utf-8"))
        finally:
            wipe(key)
        return sealed[:-TAG_SIZE], nonce, sealed[-TAG_SIZE:]

    def decrypt(
        self,
        session_id: str,
        ciphertext: bytes,
        nonce: bytes,
        tag: bytes,
        passphrase: Passphrase,
    ) -> bytearray:
        """Authenticate and decrypt. Raises ``IntegrityError`` on any mismatch."""
        check_session_id(session_id)
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise IntegrityError(f"session {session_id}: malformed nonce or tag")
        key = self._derive_key(session_id, passphrase)
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, session_id.encode("utf-8"))
        except InvalidTag:
            raise IntegrityError(f"session {session_id}: authentication tag mismatch") from None
        finally:
            wipe(key)
        return bytearray(plaintext)

    @staticmethod
    def pack(ciphertext: bytes, nonce: bytes, tag: bytes) -> bytes:
        return nonce + ciphertext + tag

    @staticmethod
    def unpack(blob: bytes) -> Tuple[bytes, bytes, bytes]:
        """Split a stored blob into (ciphertext, nonce, tag)."""
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise IntegrityError("share file is truncated")
        return blob[NONCE_SIZE:-TAG_SIZE], blob[:NONCE_SIZE], blob[-TAG_SIZE:]

    # -- files ------------------------------------------------------------

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.Lock())
        with lock:
            yield

    def path_for(self, session_id: str) -> Path:
        return self.shares_dir / f"{check_session_id(session_id)}{SHARE_SUFFIX}"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).is_file()

    def list_sessions(self) -> List[str]:
        if not self.shares_dir.is_dir():
            return []
        return sorted(p.name[: -len(SHARE_SUFFIX)] for p in self.shares_dir.glob(f"*{SHARE_SUFFIX}"))

    def save(self, session_id: str, blob: bytes) -> Path:
        """Write a sealed blob. An existing share is never overwritten."""
        path = self.path_for(session_id)
        with self._locked(session_id):
            if path.exists():
                raise SessionStateError(f"a key share for session {session_id} already exists at {path}")
            self.shares_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
        logger.info("stored key share for session %s", session_id)
        return path

    def load(self, session_id: str) -> bytes:
        path = self.path_for(session_id)
        with self._locked(session_id):
            try:
                return path.read_bytes()
            except FileNotFoundError:
                raise SessionStateError(f"no key share stored for session {session_id}") from None

    def delete(self, session_id: str) -> bool:
        """Overwrite the share file with random bytes, sync, then unlink it."""
        path = self.path_for(session_id)
        with self._locked(session_id):
            if not path.is_file():
                return False
            size = path.stat().st_size
            with open(path, "r+b") as f:
                f.write(os.urandom(size))
                f.flush()
                os.fsync(f.fileno())
            path.unlink()
        logger.info("securely deleted key share for session %s", session_id)
        return True

    # -- key share records ------------------------------------------------

    def seal_share(self, key: KeyShare, local_share: Union[bytes, bytearray], passphrase: Passphrase) -> KeyShare:
        """Encrypt ``local_share`` with ``key``'s public metadata and persist it."""
        header = canonical_bytes({
            "session_id": key.session_id,
            "owner_index": key.owner_index,
            "public_key": key.public_key.hex(),
            "threshold": key.threshold,
            "participants": list(key.participants),
            "created_at": key.created_at,
        })
        plaintext = bytearray(_HEADER_LEN.pack(len(header)))
        try:
            plaintext += header
            plaintext += local_share
            ciphertext, nonce, tag = self.encrypt(key.session_id, plaintext, passphrase)
        finally:
            wipe(plaintext)
        blob = self.pack(ciphertext, nonce, tag)
        self.save(key.session_id, blob)
        return KeyShare(
            session_id=key.session_id,
            owner_index=key.owner_index,
            public_key=key.public_key,
            threshold=key.threshold,
            participants=tuple(key.participants),
            created_at=key.created_at,
            encrypted_share=blob,
        )

    @contextmanager
    def open_share(self, session_id: str, passphrase: Passphrase) -> Iterator[ShareRecord]:
        """Decrypt a stored share for the duration of the ``with`` block."""
        blob = self.load(session_id)
        plaintext = self.decrypt(session_id, *self.unpack(blob), passphrase)
        local_share = bytearray()
        try:
            try:
                (header_len,) = _HEADER_LEN.unpack_from(plaintext)
                header = json.loads(bytes(plaintext[_HEADER_LEN.size:_HEADER_LEN.size + header_len]))
            except (struct.error, ValueError):
                raise IntegrityError(f"session {session_id}: share record is malformed") from None
            if not isinstance(header, dict):
                raise IntegrityError(f"session {session_id}: share header is not an object")
            local_share += plaintext[_HEADER_LEN.size + header_len:]
            wipe(plaintext)
            if header.get("session_id") != session_id:
                raise IntegrityError(f"share header names session {header.get('session_id')!r}")
            key = _key_from_header(header, blob)
            yield ShareRecord(key=key, local_share=local_share)
        finally:
            wipe(plaintext)
            wipe(local_share)


def _key_from_header(header: Dict[str, Any], blob: bytes) -> KeyShare:
    try:
        return KeyShare(
            session_id=header["session_id"],
            owner_index=int(header["owner_index"]),
            public_key=bytes.fromhex(header["public_key"]),
            threshold=int(header["threshold"]),
            participants=tuple(int(i) for i in header["participants"]),
            created_at=float(header.get("created_at", time.time())),
            encrypted_share=blob,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise IntegrityError(f"share header is malformed: {exc}") from None
