"""boomersig: threshold ECDSA sessions coordinated over a message relay.

The pieces compose as:

    engine (CryptoEngine)  <->  SessionManager / RoundOrchestrator  <->  RelayClient  <->  relay
                                          |
                                  SecureShareStore

Example:
    from boomersig import SessionManager, ShamirEngine, RelayClient, SecureShareStore

    manager = SessionManager(ShamirEngine(), RelayClient.from_config(cfg.relay_client),
                             SecureShareStore.from_config(cfg.store), passphrase_provider=ask)
"""

__version__ = "0.1.0"

from .config import BoomerSigConfig, OrchestratorConfig, RelayClientConfig, RelayServiceConfig, StoreConfig
from .engine import CryptoEngine, Outgoing
from .errors import (
    BoomerSigError,
    EngineError,
    InsufficientParticipants,
    IntegrityError,
    NetworkError,
    ProtocolViolation,
    SessionStateError,
    Timeout,
)
from .models import (
    Failure,
    FailureReason,
    KeyShare,
    Phase,
    ProtocolKind,
    RoundMessage,
    Session,
    SignatureResult,
    SigningRequest,
)
from .orchestrator import RoundOrchestrator, SessionManager
from .relay import RelayService, RetentionPolicy
from .relay_client import HttpRelayTransport, LocalRelayTransport, RelayClient
from .share_store import KdfParams, SecureShareStore
from .threshold import ShamirEngine

__all__ = [
    "__version__",
    "BoomerSigConfig",
    "OrchestratorConfig",
    "RelayClientConfig",
    "RelayServiceConfig",
    "StoreConfig",
    "CryptoEngine",
    "Outgoing",
    "BoomerSigError",
    "EngineError",
    "InsufficientParticipants",
    "IntegrityError",
    "NetworkError",
    "ProtocolViolation",
    "SessionStateError",
    "Timeout",
    "Failure",
    "FailureReason",
    "KeyShare",
    "Phase",
    "ProtocolKind",
    "RoundMessage",
    "Session",
    "SignatureResult",
    "SigningRequest",
    "RoundOrchestrator",
    "SessionManager",
    "RelayService",
    "RetentionPolicy",
    "HttpRelayTransport",
    "LocalRelayTransport",
    "RelayClient",
    "KdfParams",
    "SecureShareStore",
    "ShamirEngine",
]
