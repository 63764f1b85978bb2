"""
models.py — session, message and key-share records

Plain dataclasses shared by the orchestrator, relay and store. Nothing in here
holds plaintext key material; ``KeyShare.encrypted_share`` is the sealed blob.
"""

from __future__ import annotations
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from .errors import InsufficientParticipants

DIGEST_SIZE = 32


class ProtocolKind(str, Enum):
    KEYGEN = "keygen"
    SIGN = "sign"


class Phase(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    ROUND_PENDING = "round_pending"
    ADVANCING = "advancing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETE, Phase.FAILED)


class FailureReason(str, Enum):
    ABORTED = "aborted"
    TIMEOUT = "timeout"
    PROTOCOL_VIOLATION = "protocol_violation"
    INTEGRITY = "integrity"
    STORAGE = "storage"
    INTERNAL = "internal"


class ConnectionStatus(str, Enum):
    UNKNOWN = "unknown"
    RESPONSIVE = "responsive"
    UNRESPONSIVE = "unresponsive"


class DeliveryMode(str, Enum):
    BROADCAST = "broadcast"
    DIRECTED = "directed"


@dataclass
class Participant:
    index: int
    address: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.UNKNOWN


@dataclass(frozen=True)
class Failure:
    reason: FailureReason
    detail: str = ""
    unresponsive: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "detail": self.detail,
            "unresponsive": list(self.unresponsive),
        }


@dataclass(frozen=True)
class RoundMessage:
    """One protocol message. ``recipients=None`` means broadcast to everyone."""

    session_id: str
    sender: int
    round: int
    payload: bytes
    recipients: Optional[Tuple[int, ...]] = None

    @property
    def mode(self) -> DeliveryMode:
        return DeliveryMode.BROADCAST if self.recipients is None else DeliveryMode.DIRECTED

    def addressed_to(self, index: int) -> bool:
        if index == self.sender:
            return False
        return self.recipients is None or index in self.recipients


@dataclass(frozen=True)
class SignatureResult:
    r: int
    s: int
    public_key: bytes
    digest: bytes

    def to_der(self) -> bytes:
        return encode_dss_signature(self.r, self.s)

    def verify(self) -> bool:
        """Standard ECDSA/secp256k1 verification of the signature over ``digest``."""
        pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), self.public_key)
        try:
            pub.verify(self.to_der(), self.digest, ec.ECDSA(Prehashed(hashes.SHA256())))
            return True
        except InvalidSignature:
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "r": f"{self.r:064x}",
            "s": f"{self.s:064x}",
            "der": self.to_der().hex(),
            "public_key": self.public_key.hex(),
            "digest": self.digest.hex(),
        }


@dataclass
class Session:
    session_id: str
    kind: ProtocolKind
    participants: Dict[int, Participant]
    threshold: int
    my_index: int
    phase: Phase = Phase.IDLE
    round: int = 0
    created_at: float = field(default_factory=time.time)
    failure: Optional[Failure] = None
    key_session_id: Optional[str] = None
    public_key: Optional[bytes] = None
    digest: Optional[bytes] = None
    signature: Optional[SignatureResult] = None

    @classmethod
    def create(
        cls,
        session_id: str,
        kind: ProtocolKind,
        indices: Sequence[int],
        threshold: int,
        my_index: int,
        key_session_id: Optional[str] = None,
    ) -> "Session":
        participants = {i: Participant(i) for i in sorted(indices)}
        return cls(
            session_id=session_id,
            kind=kind,
            participants=participants,
            threshold=threshold,
            my_index=my_index,
            key_session_id=key_session_id,
        )

    @property
    def indices(self) -> List[int]:
        return list(self.participants)

    @property
    def peers(self) -> List[int]:
        return [i for i in self.participants if i != self.my_index]

    @property
    def terminal(self) -> bool:
        return self.phase.terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "phase": self.phase.value,
            "round": self.round,
            "threshold": self.threshold,
            "my_index": self.my_index,
            "participants": {str(p.index): p.status.value for p in self.participants.values()},
            "created_at": self.created_at,
            "key_session_id": self.key_session_id,
            "public_key": self.public_key.hex() if self.public_key else None,
            "digest": self.digest.hex() if self.digest else None,
            "signature": self.signature.to_dict() if self.signature else None,
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass(frozen=True)
class KeyShare:
    """Public view of a stored share plus its sealed ``nonce || ct || tag`` blob."""

    session_id: str
    owner_index: int
    public_key: bytes
    threshold: int
    participants: Tuple[int, ...]
    created_at: float
    encrypted_share: bytes = b""


@dataclass(frozen=True)
class SigningRequest:
    key_session_id: str
    digest: bytes
    signers: Tuple[int, ...]

    def validate(self, key: KeyShare) -> None:
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(f"digest must be {DIGEST_SIZE} bytes, got {len(self.digest)}")
        unknown = [i for i in self.signers if i not in key.participants]
        if unknown:
            raise ValueError(f"signers {unknown} do not hold a share of key {key.session_id}")
        if key.owner_index not in self.signers:
            raise ValueError(f"local participant {key.owner_index} must be among the signers")
        if len(set(self.signers)) < key.threshold:
            raise InsufficientParticipants(
                f"{len(set(self.signers))} signer(s) given, threshold is {key.threshold}"
            )
