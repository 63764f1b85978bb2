"""
threshold.py — reference t-of-n engine over secp256k1 (prototype)

Key generation is a three-round Feldman VSS / Pedersen DKG:
  round 1  broadcast coefficient commitments C_k = a_k*G and an X25519 key
  round 2  send every peer its share f_i(j), sealed pairwise
  round 3  verify each share against its sender's commitments, sum over the
           qualified set, and broadcast the qualified set with the resulting
           group key (the sum of the C_0 terms)
  finish   every confirmation must name the same set and key, otherwise the
           parties dealt with different peers and the run is rejected

Signing is two rounds:
  round 1  broadcast a fresh X25519 key
  round 2  seal the local share to every co-signer
  finish   check each share against the group commitments, interpolate the
           key inside engine state, sign with RFC 6979 deterministic ECDSA

WARNING: signing reconstructs the private key inside each signer's engine
state for the duration of one call, so a signing quorum learns the key. A
production deployment plugs a real threshold-ECDSA engine (GG18/GG20, CGGMP)
in behind ``boomersig.engine.CryptoEngine``; the orchestration does not change.
"""

from __future__ import annotations
import hashlib
import json
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import x25519
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.ellipticcurve import PointJacobi
from ecdsa.errors import MalformedPointError
from ecdsa.util import sigencode_strings_canonize

from .engine import CryptoEngine, Outgoing, RoundOutput
from .errors import EngineError, ProtocolViolation
from .messaging import exchange_public_bytes, new_exchange_key, open_sealed, seal
from .secure_memory import wipe
from .wire import b64, canonical_bytes, unb64

SCHEME = "feldman-secp256k1-v1"
ORDER = SECP256k1.order
G = SECP256k1.generator
SCALAR_SIZE = 32
KEYGEN_DONE = 4


# ---------------------------------------------------------------------------
# Group helpers
# ---------------------------------------------------------------------------

def point_bytes(point) -> bytes:
    return VerifyingKey.from_public_point(point, curve=SECP256k1).to_string("compressed")


def point_from_bytes(data: bytes):
    try:
        point = VerifyingKey.from_string(data, curve=SECP256k1).pubkey.point
    except (MalformedPointError, ValueError, AssertionError) as exc:
        raise EngineError(f"invalid curve point: {exc}") from None
    if not isinstance(point, PointJacobi):
        point = PointJacobi.from_affine(point)
    return point


def point_sum(points):
    total = None
    for p in points:
        total = p if total is None else total + p
    return total


def poly_eval(coefficients: Sequence[int], x: int) -> int:
    result = 0
    for coeff in reversed(coefficients):
        result = (result * x + coeff) % ORDER
    return result


def commitment_eval(commitments: Sequence, x: int):
    """sum_k x^k * C_k, the public image of f(x)."""
    return point_sum(c * pow(x, k, ORDER) for k, c in enumerate(commitments))


def lagrange_at_zero(i: int, indices: Sequence[int]) -> int:
    num, den = 1, 1
    for j in indices:
        if j != i:
            num = (num * j) % ORDER
            den = (den * (j - i)) % ORDER
    return (num * pow(den, -1, ORDER)) % ORDER


def _scalar_to_bytes(value: int) -> bytearray:
    return bytearray(value.to_bytes(SCALAR_SIZE, "big"))


def _scalar_from_bytes(data: Union[bytes, bytearray]) -> int:
    if len(data) != SCALAR_SIZE:
        raise EngineError("share has the wrong length")
    value = int.from_bytes(data, "big")
    if not 0 < value < ORDER:
        raise EngineError("share is out of range")
    return value


def _decode_json(payload: bytes, sender: int) -> dict:
    try:
        obj = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise EngineError(f"participant {sender}: payload is not JSON") from None
    if not isinstance(obj, dict) or obj.get("scheme") != SCHEME:
        raise EngineError(f"participant {sender}: unexpected payload scheme")
    return obj


def _exchange_key(obj: dict, sender: int) -> bytes:
    try:
        return unb64(obj.get("kx"), "exchange key")
    except ProtocolViolation as exc:
        raise EngineError(f"participant {sender}: {exc.context}") from None


# ---------------------------------------------------------------------------
# Engine states
# ---------------------------------------------------------------------------

@dataclass
class KeygenState:
    my_index: int
    n: int
    threshold: int
    step: int = 0
    coefficients: List[int] = field(default_factory=list)
    commitments: Dict[int, list] = field(default_factory=dict)
    exchange_key: Optional[x25519.X25519PrivateKey] = None
    peer_exchange: Dict[int, bytes] = field(default_factory=dict)
    qualified: Tuple[int, ...] = ()
    group_commitments: list = field(default_factory=list)
    secret_share: Optional[int] = None
    public_key: Optional[bytes] = None

    @property
    def done(self) -> bool:
        return self.step == KEYGEN_DONE and self.secret_share is not None


@dataclass
class SigningState:
    my_index: int
    threshold: int
    signers: Tuple[int, ...]
    digest: bytes
    public_key: bytes
    group_commitments: list
    secret_share: Optional[int]
    step: int = 0
    exchange_key: Optional[x25519.X25519PrivateKey] = None
    peer_exchange: Dict[int, bytes] = field(default_factory=dict)
    signature: Optional[Tuple[int, int]] = None

    @property
    def done(self) -> bool:
        return self.signature is not None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ShamirEngine(CryptoEngine):
    """Reference engine; see the module docstring for its trust model."""

    name = SCHEME

    # -- construction -----------------------------------------------------

    def new_keygen(self, my_index: int, n: int, threshold: int) -> KeygenState:
        if not 1 <= threshold <= n:
            raise EngineError(f"threshold {threshold} must be between 1 and {n}")
        if not 1 <= my_index <= n:
            raise EngineError(f"index {my_index} is outside 1..{n}")
        return KeygenState(my_index=my_index, n=n, threshold=threshold)

    def new_signing(
        self,
        keygen_state: KeygenState,
        digest: bytes,
        participants: Sequence[int],
    ) -> SigningState:
        if not isinstance(keygen_state, KeygenState) or not keygen_state.done:
            raise EngineError("signing needs a completed key generation state")
        if len(digest) != SCALAR_SIZE:
            raise EngineError("digest must be 32 bytes")
        signers = tuple(sorted(set(participants)))
        if keygen_state.my_index not in signers:
            raise EngineError(f"participant {keygen_state.my_index} is not among the signers")
        outsiders = [i for i in signers if i not in keygen_state.qualified]
        if outsiders:
            raise EngineError(f"participants {outsiders} hold no share of this key")
        if len(signers) < keygen_state.threshold:
            raise EngineError(f"{len(signers)} signers cannot meet threshold {keygen_state.threshold}")
        return SigningState(
            my_index=keygen_state.my_index,
            threshold=keygen_state.threshold,
            signers=signers,
            digest=bytes(digest),
            public_key=keygen_state.public_key,
            group_commitments=list(keygen_state.group_commitments),
            secret_share=keygen_state.secret_share,
        )

    # -- rounds -----------------------------------------------------------

    def process_round(self, state, incoming: Mapping[int, bytes]) -> RoundOutput:
        if isinstance(state, KeygenState):
            if state.done:
                raise EngineError("key generation already finished")
            return self._keygen_round(state, incoming)
        if isinstance(state, SigningState):
            if state.done:
                raise EngineError("signing already finished")
            return self._signing_round(state, incoming)
        raise EngineError(f"unknown engine state {type(state).__name__}")

    def _check_senders(self, incoming: Mapping[int, bytes], allowed: Sequence[int], me: int) -> None:
        for sender in incoming:
            if sender == me or sender not in allowed:
                raise EngineError(f"unexpected payload from participant {sender}")

    def _keygen_round(self, state: KeygenState, incoming: Mapping[int, bytes]) -> RoundOutput:
        me = state.my_index
        if state.step == 0:
            state.coefficients = [secrets.randbelow(ORDER - 1) + 1 for _ in range(state.threshold)]
            state.commitments[me] = [G * a for a in state.coefficients]
            state.exchange_key = new_exchange_key()
            state.step = 1
            return Outgoing.to_all(canonical_bytes({
                "scheme": SCHEME,
                "commitments": [point_bytes(c).hex() for c in state.commitments[me]],
                "kx": b64(exchange_public_bytes(state.exchange_key)),
            })), False

        if state.step == 1:
            self._check_senders(incoming, range(1, state.n + 1), me)
            for sender, payload in incoming.items():
                obj = _decode_json(payload, sender)
                raw = obj.get("commitments")
                if not isinstance(raw, list) or len(raw) != state.threshold:
                    raise EngineError(f"participant {sender}: expected {state.threshold} commitments")
                try:
                    state.commitments[sender] = [point_from_bytes(bytes.fromhex(c)) for c in raw]
                except (TypeError, ValueError):
                    raise EngineError(f"participant {sender}: commitments are not hex") from None
                state.peer_exchange[sender] = _exchange_key(obj, sender)
            shares = {}
            for peer in sorted(incoming):
                share = _scalar_to_bytes(poly_eval(state.coefficients, peer))
                try:
                    shares[peer] = seal(state.exchange_key, state.peer_exchange[peer], share, self._aad("keygen", me, peer))
                finally:
                    wipe(share)
            state.step = 2
            return Outgoing.to_each(shares), False

        if state.step == 2:
            committed = [i for i in state.commitments if i != me]
            self._check_senders(incoming, committed, me)
            qualified = sorted([me, *incoming])
            if len(qualified) < state.threshold:
                raise EngineError(f"only {len(qualified)} participants dealt shares, threshold is {state.threshold}")
            total = poly_eval(state.coefficients, me)
            for sender, payload in incoming.items():
                plain = open_sealed(state.exchange_key, state.peer_exchange[sender], payload, self._aad("keygen", sender, me))
                try:
                    value = _scalar_from_bytes(plain)
                finally:
                    wipe(plain)
                if point_bytes(G * value) != point_bytes(commitment_eval(state.commitments[sender], me)):
                    raise EngineError(f"participant {sender}: share does not match its commitments")
                total = (total + value) % ORDER
            state.qualified = tuple(qualified)
            state.group_commitments = [
                point_sum(state.commitments[i][k] for i in qualified) for k in range(state.threshold)
            ]
            state.public_key = point_bytes(state.group_commitments[0])
            state.secret_share = total
            self._forget_dealing(state)
            state.step = 3
            return Outgoing.to_all(self._confirmation(state)), False

        # every peer that confirms must have summed the same dealers
        self._check_senders(incoming, state.qualified, me)
        expected = self._confirmation(state)
        for sender, payload in sorted(incoming.items()):
            if payload != expected:
                obj = _decode_json(payload, sender)
                raise EngineError(
                    f"participant {sender} derived a different group key "
                    f"(qualified {obj.get('qualified')}, ours {list(state.qualified)})"
                )
        if len(incoming) + 1 < state.threshold:
            raise EngineError(f"only {len(incoming) + 1} participants confirmed, threshold is {state.threshold}")
        state.step = KEYGEN_DONE
        return Outgoing.nothing(), True

    def _signing_round(self, state: SigningState, incoming: Mapping[int, bytes]) -> RoundOutput:
        me = state.my_index
        if state.step == 0:
            state.exchange_key = new_exchange_key()
            state.step = 1
            return Outgoing.to_all(canonical_bytes({
                "scheme": SCHEME,
                "digest": state.digest.hex(),
                "kx": b64(exchange_public_bytes(state.exchange_key)),
            })), False

        if state.step == 1:
            self._check_senders(incoming, state.signers, me)
            for sender, payload in incoming.items():
                obj = _decode_json(payload, sender)
                if obj.get("digest") != state.digest.hex():
                    raise EngineError(f"participant {sender} is signing a different digest")
                state.peer_exchange[sender] = _exchange_key(obj, sender)
            sealed = {}
            share = _scalar_to_bytes(state.secret_share)
            try:
                for peer in sorted(incoming):
                    sealed[peer] = seal(state.exchange_key, state.peer_exchange[peer], share, self._aad("sign", me, peer, state.digest))
            finally:
                wipe(share)
            state.step = 2
            return Outgoing.to_each(sealed), False

        self._check_senders(incoming, list(state.peer_exchange), me)
        shares = {me: state.secret_share}
        for sender, payload in incoming.items():
            plain = open_sealed(state.exchange_key, state.peer_exchange[sender], payload, self._aad("sign", sender, me, state.digest))
            try:
                value = _scalar_from_bytes(plain)
            finally:
                wipe(plain)
            if point_bytes(G * value) != point_bytes(commitment_eval(state.group_commitments, sender)):
                raise EngineError(f"participant {sender}: share does not match the group commitments")
            shares[sender] = value
        if len(shares) < state.threshold:
            raise EngineError(f"only {len(shares)} signers contributed, threshold is {state.threshold}")
        indices = sorted(shares)
        key = sum(shares[i] * lagrange_at_zero(i, indices) for i in indices) % ORDER
        shares.clear()
        if point_bytes(G * key) != state.public_key:
            raise EngineError("reconstructed key does not match the group public key")
        signer = SigningKey.from_secret_exponent(key, curve=SECP256k1, hashfunc=hashlib.sha256)
        r, s = signer.sign_digest_deterministic(
            state.digest, hashfunc=hashlib.sha256, sigencode=sigencode_strings_canonize
        )
        del key, signer
        state.signature = (int.from_bytes(r, "big"), int.from_bytes(s, "big"))
        state.secret_share = None
        state.exchange_key = None
        state.step = 3
        return Outgoing.nothing(), True

    @staticmethod
    def _aad(kind: str, sender: int, recipient: int, digest: bytes = b"") -> bytes:
        return canonical_bytes({
            "scheme": SCHEME,
            "kind": kind,
            "from": sender,
            "to": recipient,
            "digest": digest.hex(),
        })

    @staticmethod
    def _confirmation(state: KeygenState) -> bytes:
        return canonical_bytes({
            "scheme": SCHEME,
            "qualified": list(state.qualified),
            "public_key": state.public_key.hex(),
        })

    @staticmethod
    def _forget_dealing(state: KeygenState) -> None:
        state.coefficients.clear()
        state.exchange_key = None
        state.peer_exchange.clear()

    # -- outputs ----------------------------------------------------------

    def extract_key_share(self, state: KeygenState) -> Tuple[bytes, bytearray]:
        if not isinstance(state, KeygenState) or not state.done:
            raise EngineError("key generation has not completed")
        local = canonical_bytes({
            "scheme": SCHEME,
            "index": state.my_index,
            "n": state.n,
            "threshold": state.threshold,
            "qualified": list(state.qualified),
            "group_commitments": [point_bytes(c).hex() for c in state.group_commitments],
            "share": f"{state.secret_share:064x}",
        })
        return state.public_key, bytearray(local)

    def extract_signature(self, state: SigningState) -> Tuple[int, int]:
        if not isinstance(state, SigningState) or not state.done:
            raise EngineError("signing has not completed")
        return state.signature

    def restore_keygen(self, local_share: Union[bytes, bytearray]) -> KeygenState:
        obj = _decode_json(bytes(local_share), 0)
        try:
            commitments = [point_from_bytes(bytes.fromhex(c)) for c in obj["group_commitments"]]
            state = KeygenState(
                my_index=int(obj["index"]),
                n=int(obj["n"]),
                threshold=int(obj["threshold"]),
                step=KEYGEN_DONE,
                qualified=tuple(int(i) for i in obj["qualified"]),
                group_commitments=commitments,
                secret_share=int(obj["share"], 16),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise EngineError(f"local share is malformed: {exc}") from None
        if len(commitments) != state.threshold:
            raise EngineError("local share commitments do not match its threshold")
        if point_bytes(G * state.secret_share) != point_bytes(commitment_eval(commitments, state.my_index)):
            raise EngineError("local share does not match the group commitments")
        state.public_key = point_bytes(commitments[0])
        return state

    def destroy(self, state) -> None:
        if isinstance(state, KeygenState):
            self._forget_dealing(state)
        if isinstance(state, (KeygenState, SigningState)):
            state.secret_share = None
            state.exchange_key = None
            state.peer_exchange.clear()
