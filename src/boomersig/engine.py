"""
engine.py — the boundary between orchestration and threshold cryptography

The orchestrator drives any ``CryptoEngine`` through opaque byte payloads and
never looks inside them. An engine owns its per-session state object; states
are never shared between sessions.

Round contract: the first ``process_round(state, {})`` call yields the
payloads for round 1. Each later call consumes the payloads collected for the
previous round and yields the next round's, until it reports ``done``.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from .errors import EngineError

__all__ = ["CryptoEngine", "EngineError", "EngineState", "Outgoing"]

# Engines return their own state type; the orchestrator only passes it back.
EngineState = Any


@dataclass(frozen=True)
class Outgoing:
    """Payloads one party emits in one round: a broadcast or per-recipient map."""

    broadcast: Optional[bytes] = None
    directed: Dict[int, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.broadcast is not None and self.directed:
            raise ValueError("a round emits either a broadcast or directed payloads, not both")

    @classmethod
    def to_all(cls, payload: bytes) -> "Outgoing":
        return cls(broadcast=payload)

    @classmethod
    def to_each(cls, payloads: Mapping[int, bytes]) -> "Outgoing":
        return cls(directed=dict(payloads))

    @classmethod
    def nothing(cls) -> "Outgoing":
        return cls()

    @property
    def empty(self) -> bool:
        return self.broadcast is None and not self.directed


RoundOutput = Tuple[Outgoing, bool]


class CryptoEngine(ABC):
    """Narrow interface to a threshold-signature scheme.

    Implementations raise ``EngineError`` for malformed or dishonest input;
    the orchestrator treats that as a protocol violation.
    """

    name = "abstract"

    @abstractmethod
    def new_keygen(self, my_index: int, n: int, threshold: int) -> EngineState:
        ...

    @abstractmethod
    def new_signing(
        self,
        keygen_state: EngineState,
        digest: bytes,
        participants: Sequence[int],
    ) -> EngineState:
        ...

    @abstractmethod
    def process_round(self, state: EngineState, incoming: Mapping[int, bytes]) -> RoundOutput:
        ...

    @abstractmethod
    def extract_key_share(self, state: EngineState) -> Tuple[bytes, bytearray]:
        """Return ``(public_key, local_share)``; the caller wipes ``local_share``."""

    @abstractmethod
    def extract_signature(self, state: EngineState) -> Tuple[int, int]:
        ...

    @abstractmethod
    def restore_keygen(self, local_share: Union[bytes, bytearray]) -> EngineState:
        """Rebuild a completed keygen state from ``extract_key_share`` output."""

    def destroy(self, state: EngineState) -> None:
        """Drop secret material held by ``state``. Called on every exit path."""
