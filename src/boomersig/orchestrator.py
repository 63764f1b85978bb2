"""
orchestrator.py — round-based session orchestration

A ``RoundOrchestrator`` drives one protocol session (key generation or
signing) through its rounds:

    IDLE -> INITIATING -> ROUND_PENDING <-> ADVANCING -> FINALIZING -> COMPLETE
                                \\______________________________________/ FAILED

Per round it publishes the engine's payloads, collects exactly one message
from every peer still taking part, and hands the collected payloads back to
the engine. Messages for the next round are buffered; older rounds and
duplicates are dropped. Peers that stay silent through every resend are
excluded if the remaining parties still meet the threshold, otherwise the
session fails with ``Timeout``.

``SessionManager`` owns the orchestrators of one party: it creates sessions,
runs one task per session plus one relay subscription feeding its inbox,
persists the key share when key generation completes, and tells the relay
when a session is over. Sealing and unsealing shares (scrypt) run in worker
threads, off the event loop.

Usage:
    manager = SessionManager(ShamirEngine(), relay, store, passphrase_provider=ask)
    session = await manager.start_keygen(3, threshold=2, my_index=1, session_id="k1")
    await manager.wait("k1")
"""

from __future__ import annotations
import asyncio
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .config import OrchestratorConfig
from .engine import CryptoEngine, EngineState, Outgoing
from .errors import (
    BoomerSigError,
    EngineError,
    InsufficientParticipants,
    IntegrityError,
    ProtocolViolation,
    SessionStateError,
    Timeout,
)
from .models import (
    ConnectionStatus,
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
from .relay_client import RelayClient
from .secure_memory import SecretBuffer, wipe
from .share_store import Passphrase, SecureShareStore
from .wire import check_session_id

logger = logging.getLogger(__name__)

# (session_id, purpose) -> passphrase; purpose is "protect" or "unlock"
PassphraseProvider = Callable[[str, str], Passphrase]
KeyShareSink = Callable[["RoundOrchestrator", bytes, bytearray], Awaitable[None]]


def failure_reason(exc: BaseException) -> FailureReason:
    """The reason a session fails with when ``exc`` ends it."""
    if isinstance(exc, Timeout):
        return FailureReason.TIMEOUT
    if isinstance(exc, (ProtocolViolation, EngineError)):
        return FailureReason.PROTOCOL_VIOLATION
    if isinstance(exc, IntegrityError):
        return FailureReason.INTEGRITY
    if isinstance(exc, (SessionStateError, OSError)):
        return FailureReason.STORAGE
    return FailureReason.INTERNAL


class RoundOrchestrator:
    """State machine for one session of one party."""

    def __init__(
        self,
        session: Session,
        engine: CryptoEngine,
        state: EngineState,
        relay: RelayClient,
        config: OrchestratorConfig,
        on_key_share: Optional[KeyShareSink] = None,
    ) -> None:
        self.session = session
        self.engine = engine
        self._state = state
        self._relay = relay
        self._config = config
        self._on_key_share = on_key_share
        # None wakes the collector after interrupt()
        self._inbox: "asyncio.Queue[Optional[RoundMessage]]" = asyncio.Queue()
        self._interrupted: Optional[BoomerSigError] = None
        # round -> sender -> first message seen for that round
        self._early: Dict[int, Dict[int, RoundMessage]] = {}
        self._sent: Dict[int, Outgoing] = {}
        self._active: Set[int] = set(session.peers)

    @property
    def active_participants(self) -> List[int]:
        """Indices still taking part, including this party."""
        return sorted(self._active | {self.session.my_index})

    def deliver(self, message: RoundMessage) -> bool:
        """Queue an inbound message. Returns False once the session is over."""
        if self.session.terminal:
            logger.debug(
                "session %s is %s; dropping round %d message from %d",
                self.session.session_id, self.session.phase.value, message.round, message.sender,
            )
            return False
        self._inbox.put_nowait(message)
        return True

    def interrupt(self, error: BoomerSigError) -> None:
        """Fail the session with ``error`` the next time it waits for messages."""
        if self.session.terminal or self._interrupted is not None:
            return
        self._interrupted = error
        self._inbox.put_nowait(None)

    # -- driver -----------------------------------------------------------

    async def run(self) -> Session:
        s = self.session
        try:
            self._set_phase(Phase.INITIATING)
            outgoing, done = self.engine.process_round(self._state, {})
            round_number = 1
            while not done:
                s.round = round_number
                self._set_phase(Phase.ROUND_PENDING)
                await self._publish(round_number, outgoing)
                collected = await self._collect(round_number)
                self._set_phase(Phase.ADVANCING)
                outgoing, done = self.engine.process_round(
                    self._state, {sender: m.payload for sender, m in collected.items()}
                )
                round_number += 1
            if not outgoing.empty:
                s.round = round_number
                await self._publish(round_number, outgoing)
            self._set_phase(Phase.FINALIZING)
            await self._finalize()
        except asyncio.CancelledError:
            self.fail(FailureReason.ABORTED, "session aborted")
            raise
        except Timeout as exc:
            self.fail(FailureReason.TIMEOUT, exc.context or exc.message, exc.unresponsive)
        except (BoomerSigError, OSError) as exc:
            self.fail(failure_reason(exc), str(exc))
        except Exception as exc:
            self.fail(FailureReason.INTERNAL, f"{exc.__class__.__name__}: {exc}")
            raise
        else:
            self._set_phase(Phase.COMPLETE)
        finally:
            self.close()
        return s

    def close(self) -> None:
        """Destroy engine state and drop every buffered message."""
        if self._state is not None:
            self.engine.destroy(self._state)
            self._state = None
        self._early.clear()
        self._sent.clear()
        while not self._inbox.empty():
            self._inbox.get_nowait()

    def fail(self, reason: FailureReason, detail: str, unresponsive: Sequence[int] = ()) -> None:
        s = self.session
        if s.terminal:
            return
        s.failure = Failure(reason=reason, detail=detail, unresponsive=tuple(sorted(unresponsive)))
        s.phase = Phase.FAILED
        logger.error("session %s failed in round %d (%s): %s", s.session_id, s.round, reason.value, detail)

    def _set_phase(self, phase: Phase) -> None:
        s = self.session
        s.phase = phase
        level = logging.INFO if phase in (Phase.INITIATING, Phase.COMPLETE) else logging.DEBUG
        logger.log(level, "session %s (%s, party %d): %s round=%d",
                   s.session_id, s.kind.value, s.my_index, phase.value, s.round)

    # -- outbound ---------------------------------------------------------

    def _messages_for(
        self,
        round_number: int,
        outgoing: Outgoing,
        only: Optional[Set[int]] = None,
    ) -> Iterator[RoundMessage]:
        s = self.session
        if outgoing.broadcast is not None:
            recipients = None if only is None else tuple(sorted(only))
            yield RoundMessage(s.session_id, s.my_index, round_number, outgoing.broadcast, recipients)
        for recipient, payload in sorted(outgoing.directed.items()):
            if only is None or recipient in only:
                yield RoundMessage(s.session_id, s.my_index, round_number, payload, (recipient,))

    async def _publish(self, round_number: int, outgoing: Outgoing, only: Optional[Set[int]] = None) -> None:
        self._sent[round_number] = outgoing
        for message in self._messages_for(round_number, outgoing, only):
            try:
                await self._relay.send(message)
            except BoomerSigError as exc:
                # the round deadline resends to whoever did not answer
                logger.warning("session %s round %d: publish failed: %s",
                               message.session_id, round_number, exc)

    # -- inbound ----------------------------------------------------------

    async def _collect(self, round_number: int) -> Dict[int, RoundMessage]:
        s = self.session
        expected = set(self._active)
        collected = {
            sender: m for sender, m in self._early.pop(round_number, {}).items() if sender in expected
        }
        attempt = 0
        while expected - collected.keys():
            await self._receive(round_number, collected, expected, self._config.wait_for_attempt(attempt))
            missing = expected - collected.keys()
            if not missing or attempt >= self._config.max_retries:
                break
            attempt += 1
            logger.warning(
                "session %s round %d: no message from %s; resending (attempt %d/%d)",
                s.session_id, round_number, sorted(missing), attempt, self._config.max_retries,
            )
            await self._publish(round_number, self._sent[round_number], only=missing)

        missing = expected - collected.keys()
        if missing:
            for index in missing:
                s.participants[index].status = ConnectionStatus.UNRESPONSIVE
            if len(collected) + 1 < s.threshold:
                raise Timeout(missing, round_number)
            self._active -= missing
            logger.warning(
                "session %s round %d: excluding unresponsive %s, continuing with %s",
                s.session_id, round_number, sorted(missing), self.active_participants,
            )
        for sender in collected:
            s.participants[sender].status = ConnectionStatus.RESPONSIVE
        return collected

    async def _receive(
        self,
        round_number: int,
        collected: Dict[int, RoundMessage],
        expected: Set[int],
        wait: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while expected - collected.keys():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                message = await asyncio.wait_for(self._inbox.get(), remaining)
            except asyncio.TimeoutError:
                return
            if message is None:
                raise self._interrupted
            self._accept(message, round_number, collected, expected)

    def _accept(
        self,
        message: RoundMessage,
        round_number: int,
        collected: Dict[int, RoundMessage],
        expected: Set[int],
    ) -> None:
        s = self.session
        if message.session_id != s.session_id:
            logger.debug("session %s: ignoring message for session %s", s.session_id, message.session_id)
            return
        if message.sender not in s.participants or message.sender == s.my_index:
            raise ProtocolViolation(
                f"session {s.session_id}: round {message.round} message from unregistered sender {message.sender}"
            )
        if not message.addressed_to(s.my_index):
            return
        if message.round < round_number:
            logger.debug("session %s: dropping retransmitted round %d message from %d",
                         s.session_id, message.round, message.sender)
            return
        if message.round == round_number:
            if message.sender in collected:
                logger.debug("session %s round %d: duplicate from %d", s.session_id, round_number, message.sender)
            elif message.sender not in expected:
                logger.debug("session %s round %d: late message from excluded %d",
                             s.session_id, round_number, message.sender)
            else:
                collected[message.sender] = message
            return
        if message.round == round_number + 1:
            early = self._early.setdefault(message.round, {})
            if message.sender not in early:
                early[message.sender] = message
                logger.debug("session %s: buffered round %d message from %d",
                             s.session_id, message.round, message.sender)
            return
        raise ProtocolViolation(
            f"session {s.session_id}: participant {message.sender} sent round {message.round} "
            f"while the session is in round {round_number}"
        )

    # -- completion -------------------------------------------------------

    async def _finalize(self) -> None:
        s = self.session
        if s.kind is ProtocolKind.KEYGEN:
            public_key, local_share = self.engine.extract_key_share(self._state)
            try:
                s.public_key = public_key
                if self._on_key_share is not None:
                    await self._on_key_share(self, public_key, local_share)
            finally:
                wipe(local_share)
            return
        r, sig_s = self.engine.extract_signature(self._state)
        result = SignatureResult(r=r, s=sig_s, public_key=s.public_key, digest=s.digest)
        if not result.verify():
            raise ProtocolViolation(f"session {s.session_id}: signature does not verify under the group key")
        s.signature = result


class SessionManager:
    """Runs every session of one party against a shared relay and store."""

    def __init__(
        self,
        engine: CryptoEngine,
        relay: RelayClient,
        store: SecureShareStore,
        config: Optional[OrchestratorConfig] = None,
        passphrase_provider: Optional[PassphraseProvider] = None,
    ) -> None:
        self.engine = engine
        self.relay = relay
        self.store = store
        self.config = config if config is not None else OrchestratorConfig()
        self._passphrase_provider = passphrase_provider
        self._sessions: Dict[str, Session] = {}
        self._runners: Dict[str, RoundOrchestrator] = {}
        self._tasks: Dict[str, "asyncio.Task[Session]"] = {}
        self._subscriptions: Dict[str, "asyncio.Task[None]"] = {}

    # -- starting sessions ------------------------------------------------

    async def start_keygen(
        self,
        participants: Union[int, Sequence[int]],
        threshold: int,
        my_index: int,
        session_id: Optional[str] = None,
    ) -> Session:
        """Begin a T-of-N key generation as party ``my_index``."""
        indices = _participant_indices(participants)
        n = len(indices)
        if n < 2:
            raise InsufficientParticipants(f"key generation needs at least 2 participants, got {n}")
        if not 1 <= threshold <= n:
            raise InsufficientParticipants(f"threshold {threshold} must be between 1 and {n}")
        if my_index not in indices:
            raise ValueError(f"party {my_index} is not among participants {indices}")
        sid = self._claim_session_id(session_id)
        if self.store.exists(sid):
            raise SessionStateError(f"a key share for session {sid} already exists")
        state = self.engine.new_keygen(my_index, n, threshold)
        session = Session.create(sid, ProtocolKind.KEYGEN, indices, threshold, my_index)
        self._launch(session, state, on_key_share=self._persist_key_share)
        return session

    async def start_signing(
        self,
        keygen_session: Union[str, Session],
        digest: bytes,
        signers: Optional[Sequence[int]] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """Sign a 32-byte ``digest`` with the key from a completed key generation."""
        key_id = keygen_session.session_id if isinstance(keygen_session, Session) else keygen_session
        known = self._sessions.get(key_id)
        if known is not None and (known.kind is not ProtocolKind.KEYGEN or known.phase is not Phase.COMPLETE):
            raise SessionStateError(f"session {key_id} is not a completed key generation ({known.phase.value})")
        if not self.store.exists(key_id):
            raise SessionStateError(f"no key share stored for session {key_id}")
        sid = self._claim_session_id(session_id)
        # scrypt and the passphrase prompt block; keep them off the event loop
        key, request, state = await asyncio.to_thread(self._prepare_signing, key_id, bytes(digest), signers)
        try:
            self._claim_session_id(sid)
        except SessionStateError:
            self.engine.destroy(state)
            raise

        session = Session.create(
            sid, ProtocolKind.SIGN, request.signers, key.threshold, key.owner_index, key_session_id=key_id
        )
        session.public_key = key.public_key
        session.digest = request.digest
        self._launch(session, state)
        return session

    def _claim_session_id(self, session_id: Optional[str]) -> str:
        sid = check_session_id(session_id) if session_id else uuid.uuid4().hex
        if sid in self._sessions:
            raise SessionStateError(f"session {sid} already exists on this party")
        return sid

    def _prepare_signing(
        self,
        key_id: str,
        digest: bytes,
        signers: Optional[Sequence[int]],
    ) -> Tuple[KeyShare, SigningRequest, EngineState]:
        with self._passphrase(key_id, "unlock") as passphrase:
            with self.store.open_share(key_id, passphrase) as record:
                key = record.key
                request = SigningRequest(
                    key_session_id=key_id,
                    digest=digest,
                    signers=tuple(sorted(set(signers if signers is not None else key.participants))),
                )
                request.validate(key)
                keygen_state = self.engine.restore_keygen(record.local_share)
                try:
                    state = self.engine.new_signing(keygen_state, request.digest, request.signers)
                finally:
                    self.engine.destroy(keygen_state)
        return key, request, state

    def _launch(self, session: Session, state: EngineState, on_key_share: Optional[KeyShareSink] = None) -> None:
        sid = session.session_id
        runner = RoundOrchestrator(session, self.engine, state, self.relay, self.config, on_key_share)
        self._sessions[sid] = session
        self._runners[sid] = runner
        self._tasks[sid] = asyncio.create_task(self._drive(runner), name=f"boomersig-session-{sid}")
        self._subscriptions[sid] = asyncio.create_task(
            self._pump(sid, session.my_index), name=f"boomersig-subscription-{sid}"
        )
        logger.info("started %s session %s as party %d of %s (threshold %d)",
                    session.kind.value, sid, session.my_index, session.indices, session.threshold)

    async def _drive(self, runner: RoundOrchestrator) -> Session:
        s = runner.session
        try:
            return await runner.run()
        finally:
            self._stop_subscription(s.session_id)
            self._runners.pop(s.session_id, None)
            await self._report_finished(s)

    async def _report_finished(self, session: Session) -> None:
        try:
            await self.relay.finish(session.session_id, session.my_index, session.indices)
        except BoomerSigError as exc:
            # the relay still drops the log after its retention TTL
            logger.warning("session %s: could not report %s to the relay: %s",
                           session.session_id, session.phase.value, exc)

    async def _pump(self, session_id: str, my_index: int) -> None:
        try:
            async for message in self.relay.subscribe(session_id, my_index):
                self.on_message(message)
        except BoomerSigError as exc:
            logger.error("subscription for session %s failed: %s", session_id, exc)
            error = exc
        else:
            error = ProtocolViolation(f"relay closed session {session_id} while it was still running")
        runner = self._runners.get(session_id)
        if runner is not None:
            # nothing more can arrive; fail now instead of blaming live peers at the deadline
            runner.interrupt(error)

    def _stop_subscription(self, session_id: str) -> None:
        task = self._subscriptions.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()

    # -- key share persistence --------------------------------------------

    @contextmanager
    def _passphrase(self, session_id: str, purpose: str) -> Iterator[SecretBuffer]:
        if self._passphrase_provider is None:
            raise SessionStateError("no passphrase provider configured")
        raw = self._passphrase_provider(session_id, purpose)
        secret = raw if isinstance(raw, SecretBuffer) else (
            SecretBuffer.from_text(raw) if isinstance(raw, str) else SecretBuffer(raw)
        )
        try:
            yield secret
        finally:
            secret.close()
            if isinstance(raw, bytearray):
                wipe(raw)

    async def _persist_key_share(self, runner: RoundOrchestrator, public_key: bytes, local_share: bytearray) -> None:
        s = runner.session
        key = KeyShare(
            session_id=s.session_id,
            owner_index=s.my_index,
            public_key=public_key,
            threshold=s.threshold,
            participants=tuple(runner.active_participants),
            created_at=time.time(),
        )
        sealing = asyncio.ensure_future(asyncio.to_thread(self._seal_key_share, key, local_share))
        try:
            await asyncio.shield(sealing)
        except asyncio.CancelledError:
            # the worker still reads local_share; let it finish, then undo the write
            await asyncio.wait({sealing})
            if not sealing.cancelled() and sealing.exception() is None:
                self.store.delete(s.session_id)
            raise

    def _seal_key_share(self, key: KeyShare, local_share: bytearray) -> None:
        with self._passphrase(key.session_id, "protect") as passphrase:
            self.store.seal_share(key, local_share, passphrase)

    # -- inbound routing --------------------------------------------------

    def on_message(self, message: RoundMessage) -> bool:
        """Route a relay message to its session. Unknown or finished sessions drop it."""
        runner = self._runners.get(message.session_id)
        if runner is None:
            logger.debug("no running session %s; dropping round %d message from %d",
                          message.session_id, message.round, message.sender)
            return False
        return runner.deliver(message)

    # -- queries and control ----------------------------------------------

    def _session(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionStateError(f"unknown session {session_id}") from None

    def status(self, session_id: str) -> Dict[str, Any]:
        """JSON-able snapshot of one session."""
        return self._session(session_id).to_dict()

    def list_sessions(self) -> List[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """Wait for a session to reach ``COMPLETE`` or ``FAILED``."""
        session = self._session(session_id)
        task = self._tasks.get(session_id)
        if task is None:
            return session
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done and not task.cancelled():
            exc = task.exception()
            if exc is not None:
                raise exc
        return session

    async def abort(self, session_id: str) -> Session:
        """Cancel a running session; it ends ``FAILED(ABORTED)`` and persists nothing."""
        session = self._session(session_id)
        task = self._tasks.get(session_id)
        runner = self._runners.get(session_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if runner is not None and not session.terminal:
            # cancelled before its first step ran
            runner.fail(FailureReason.ABORTED, "session aborted")
            runner.close()
            self._runners.pop(session_id, None)
            self._stop_subscription(session_id)
            await self._report_finished(session)
        self._stop_subscription(session_id)
        return session

    def delete_key_share(self, session_id: str) -> bool:
        """Securely erase the stored share of a key generation session."""
        session = self._sessions.get(session_id)
        if session is not None and not session.terminal:
            raise SessionStateError(f"session {session_id} is still running")
        return self.store.delete(session_id)

    async def close(self) -> None:
        """Abort whatever is still running."""
        for sid, task in list(self._tasks.items()):
            if not task.done():
                await self.abort(sid)


def _participant_indices(participants: Union[int, Sequence[int]]) -> List[int]:
    if isinstance(participants, int):
        return list(range(1, participants + 1))
    indices = sorted(set(int(i) for i in participants))
    if indices != list(range(1, len(indices) + 1)):
        raise ValueError(f"participant indices must be 1..N, got {indices}")
    return indices
