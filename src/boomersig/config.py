"""
config.py — runtime settings

Settings come from defaults, then an optional JSON file, then CLI flags.
Passphrases are deliberately absent: they are only ever read interactively.
"""

from __future__ import annotations
import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

T = TypeVar("T")

DEFAULT_HOME = Path.home() / ".boomersig"
DEFAULT_RELAY_URL = "http://127.0.0.1:8000"


@dataclass
class OrchestratorConfig:
    round_timeout: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.round_timeout <= 0:
            raise ValueError("round_timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")

    def wait_for_attempt(self, attempt: int) -> float:
        return self.round_timeout * (self.backoff_factor ** attempt)


@dataclass
class RelayClientConfig:
    base_url: str = DEFAULT_RELAY_URL
    send_retries: int = 4
    retry_backoff: float = 0.25
    poll_interval: float = 0.2
    request_timeout: float = 10.0


@dataclass
class RelayServiceConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    # None keeps session logs until the process exits
    retention_ttl: Optional[float] = 3600.0


@dataclass
class StoreConfig:
    shares_dir: str = str(DEFAULT_HOME / "shares")
    # scrypt cost: n=2**17, r=8 needs 128 MiB per derivation
    kdf_n: int = 2 ** 17
    kdf_r: int = 8
    kdf_p: int = 1


@dataclass
class BoomerSigConfig:
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    relay_client: RelayClientConfig = field(default_factory=RelayClientConfig)
    relay_service: RelayServiceConfig = field(default_factory=RelayServiceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoomerSigConfig":
        if not isinstance(data, dict):
            raise ValueError("config root must be a JSON object")
        if "passphrase" in data:
            raise ValueError("passphrases are never read from configuration")
        return cls(
            orchestrator=_section(OrchestratorConfig, data.get("orchestrator")),
            relay_client=_section(RelayClientConfig, data.get("relay_client")),
            relay_service=_section(RelayServiceConfig, data.get("relay_service")),
            store=_section(StoreConfig, data.get("store")),
        )

    @classmethod
    def load(cls, path: Optional[Path]) -> "BoomerSigConfig":
        """Load a JSON config file; a missing ``path`` yields the defaults."""
        if path is None:
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _section(kind: Type[T], raw: Optional[Dict[str, Any]]) -> T:
    if raw is None:
        return kind()
    if not isinstance(raw, dict):
        raise ValueError(f"config section for {kind.__name__} must be an object")
    known = {f.name for f in fields(kind)}  # type: ignore[arg-type]
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"unknown {kind.__name__} keys: {', '.join(unknown)}")
    return kind(**raw)
