"""
relay_client.py — async access to the relay

``RelayClient`` adds bounded retry with exponential backoff on top of a
transport, and turns the relay's cursor-based session log into an async
stream of ``RoundMessage`` for the orchestrator's inbox.

Transports:
    HttpRelayTransport   talks to ``boomersig.relay_server`` over httpx
    LocalRelayTransport  calls an in-process ``RelayService`` directly
"""

from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import httpx

from .config import RelayClientConfig
from .errors import BoomerSigError, NetworkError, ProtocolViolation, SessionStateError
from .models import RoundMessage
from .relay import RelayService
from .wire import message_from_json, message_to_json

logger = logging.getLogger(__name__)


@dataclass
class RelayBatch:
    messages: List[RoundMessage] = field(default_factory=list)
    cursor: int = 0
    closed: bool = False


class RelayTransport(ABC):
    @abstractmethod
    async def publish(self, message: RoundMessage) -> int:
        """Append ``message`` to the relay log; returns its sequence number."""

    @abstractmethod
    async def fetch(self, session_id: str, recipient: int, after: int) -> RelayBatch:
        """Messages for ``recipient`` after log position ``after``."""

    @abstractmethod
    async def finish(self, session_id: str, participant: int, participants: Sequence[int]) -> bool:
        """Tell the relay ``participant`` is done; True if that closed the session."""

    async def aclose(self) -> None:
        pass


class HttpRelayTransport(RelayTransport):
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = client if client is not None else httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path}: {exc.__class__.__name__}: {exc}") from exc
        if resp.status_code >= 500:
            raise NetworkError(f"{method} {path}: relay answered {resp.status_code}")
        if resp.status_code == 410:
            raise SessionStateError(f"{method} {path}: relay session is closed")
        if resp.status_code >= 400:
            raise ProtocolViolation(f"{method} {path}: relay rejected request ({resp.status_code}): {resp.text[:200]}")
        return resp

    async def publish(self, message: RoundMessage) -> int:
        path = f"/session/{message.session_id}/round/{message.round}/message"
        resp = await self._request("POST", path, json=message_to_json(message))
        return int(resp.json().get("sequence", 0))

    async def fetch(self, session_id: str, recipient: int, after: int) -> RelayBatch:
        try:
            resp = await self._request(
                "GET", f"/session/{session_id}/messages", params={"to": recipient, "after": after}
            )
        except SessionStateError:
            return RelayBatch(cursor=after, closed=True)
        try:
            body = resp.json()
        except ValueError:
            raise NetworkError(f"relay returned non-JSON body for session {session_id}") from None
        messages = []
        for raw in body.get("messages", []):
            try:
                messages.append(message_from_json(raw))
            except ProtocolViolation as exc:
                logger.warning("skipping malformed relay entry in session %s: %s", session_id, exc)
        return RelayBatch(messages=messages, cursor=int(body.get("cursor", after)), closed=bool(body.get("closed")))

    async def finish(self, session_id: str, participant: int, participants: Sequence[int]) -> bool:
        resp = await self._request(
            "POST", f"/session/{session_id}/done", json={"from": participant, "participants": list(participants)}
        )
        return bool(resp.json().get("closed"))

    async def aclose(self) -> None:
        await self._http.aclose()


class LocalRelayTransport(RelayTransport):
    """In-process transport; used for single-host runs and tests."""

    def __init__(self, service: RelayService) -> None:
        self.service = service

    async def publish(self, message: RoundMessage) -> int:
        ack = self.service.publish(
            message.session_id, message.round, message.sender, message.payload, message.recipients
        )
        return ack.sequence

    async def fetch(self, session_id: str, recipient: int, after: int) -> RelayBatch:
        messages, cursor, closed = self.service.session_messages(session_id, recipient, after=after)
        return RelayBatch(messages=messages, cursor=cursor, closed=closed)

    async def finish(self, session_id: str, participant: int, participants: Sequence[int]) -> bool:
        return self.service.finish(session_id, participant, participants)


class RelayClient:
    def __init__(
        self,
        transport: RelayTransport,
        retries: int = 4,
        backoff: float = 0.25,
        poll_interval: float = 0.2,
    ) -> None:
        self.transport = transport
        self.retries = retries
        self.backoff = backoff
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: RelayClientConfig) -> "RelayClient":
        transport = HttpRelayTransport(config.base_url, timeout=config.request_timeout)
        return cls(
            transport,
            retries=config.send_retries,
            backoff=config.retry_backoff,
            poll_interval=config.poll_interval,
        )

    async def _retrying(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await call()
            except BoomerSigError as exc:
                if not exc.retryable or attempt >= self.retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning("%s failed (%s); retry %d/%d in %.2fs",
                               what, exc.context, attempt, self.retries, delay)
                await asyncio.sleep(delay)

    async def send(self, message: RoundMessage) -> int:
        """Publish with bounded exponential backoff on transient failures."""
        return await self._retrying(
            f"send {message.session_id} round {message.round} from {message.sender}",
            lambda: self.transport.publish(message),
        )

    async def finish(self, session_id: str, participant: int, participants: Sequence[int]) -> bool:
        """Report that ``participant`` reached a terminal state in ``session_id``."""
        return await self._retrying(
            f"finish {session_id} for {participant}",
            lambda: self.transport.finish(session_id, participant, participants),
        )

    async def subscribe(self, session_id: str, recipient: int, after: int = 0) -> AsyncIterator[RoundMessage]:
        """Yield every message addressed to ``recipient`` in ``session_id``.

        Polls from a cursor, so a restart with the last cursor resumes without
        loss. Transient relay failures are retried indefinitely; the stream ends
        when the relay reports the session closed or the consumer cancels.
        """
        cursor = after
        failures = 0
        while True:
            try:
                batch = await self.transport.fetch(session_id, recipient, cursor)
            except BoomerSigError as exc:
                if not exc.retryable:
                    raise
                failures += 1
                delay = min(self.backoff * (2 ** min(failures, 6)), 10.0)
                logger.warning("poll of session %s failed (%s); retrying in %.2fs", session_id, exc.context, delay)
                await asyncio.sleep(delay)
                continue
            failures = 0
            for message in batch.messages:
                yield message
            cursor = batch.cursor
            if batch.closed:
                logger.info("relay closed session %s; subscription for %d ends", session_id, recipient)
                return
            if not batch.messages:
                await asyncio.sleep(self.poll_interval)

    async def aclose(self) -> None:
        await self.transport.aclose()
