"""
errors.py — boomersig Error Taxonomy

Every failure a session can end in maps to one of these classes. Each carries
a stable code so operators and log readers can grep for it.
"""

from typing import Iterable, List, Optional

__all__ = [
    "BoomerSigError",
    "NetworkError",
    "ProtocolViolation",
    "Timeout",
    "IntegrityError",
    "InsufficientParticipants",
    "SessionStateError",
    "EngineError",
    "TransactionError",
]


class BoomerSigError(Exception):
    """Base class for all boomersig errors."""

    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.context = context

        full_msg = f"[{code}] {message}"
        if context:
            full_msg += f" Context: {context}"

        super().__init__(full_msg)


# Transport (E0xx)
class NetworkError(BoomerSigError):
    retryable = True

    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E001", "Relay could not be reached or returned a transient failure.", context)


# Protocol (E1xx)
class ProtocolViolation(BoomerSigError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E100", "A round message broke the session protocol.", context)


class EngineError(BoomerSigError):
    """Raised by an engine when it rejects a payload or its own state."""

    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E101", "The cryptographic engine rejected the round input.", context)


# Liveness (E2xx)
class Timeout(BoomerSigError):
    def __init__(self, unresponsive: Iterable[int], round_number: Optional[int] = None):
        self.unresponsive: List[int] = sorted(unresponsive)
        self.round_number = round_number
        where = f"round {round_number}" if round_number is not None else "session"
        context = f"{where}: no response from participant(s) {', '.join(map(str, self.unresponsive))}"
        super().__init__("BOOMERSIG_E200", "Quorum was not reached before the round deadline.", context)


# Storage (E3xx)
class IntegrityError(BoomerSigError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E300", "Key share failed authentication (wrong passphrase or tampered file).", context)


# Session setup (E4xx)
class InsufficientParticipants(BoomerSigError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E400", "Not enough participants for the requested threshold.", context)


class SessionStateError(BoomerSigError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E401", "The session is unknown or in the wrong state for this operation.", context)


# Transaction assembly (E5xx)
class TransactionError(BoomerSigError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("BOOMERSIG_E500", "The transaction could not be parsed, hashed or finalized.", context)
