"""Shared fixtures: in-process relay, cheap KDF, fast round timeouts."""

from __future__ import annotations

import pytest

from boomersig.config import OrchestratorConfig
from boomersig.relay import RelayService
from boomersig.relay_client import LocalRelayTransport, RelayClient
from boomersig.share_store import KdfParams, SecureShareStore

# scrypt at production cost takes ~0.5s per derivation
FAST_KDF = KdfParams(n=2 ** 10, r=8, p=1)
PASSPHRASE = "correct horse battery staple"


def make_store(root, index: int) -> SecureShareStore:
    return SecureShareStore(root / f"party-{index}", FAST_KDF)


def make_client(service: RelayService, transport=None) -> RelayClient:
    return RelayClient(
        transport if transport is not None else LocalRelayTransport(service),
        retries=1,
        backoff=0.01,
        poll_interval=0.01,
    )


@pytest.fixture
def relay_service() -> RelayService:
    return RelayService()


@pytest.fixture
def store(tmp_path) -> SecureShareStore:
    return make_store(tmp_path, 1)


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    return OrchestratorConfig(round_timeout=0.3, max_retries=1, backoff_factor=1.5)
