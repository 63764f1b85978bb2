"""
relay.py — in-memory message relay for protocol rounds

Every session gets its own append-only log. Writers take the session's lock
to append; readers take a snapshot of the list length and never lock. Entries
stay in the log for the session's lifetime, so a late or reconnecting party
can replay everything addressed to it (at-least-once delivery). Ordering is
kept per sender; round ordering is the orchestrator's job, not the relay's.

A party reports through ``finish`` when its session reaches a terminal state;
its own streams end there, and the log is closed once every participant of
the session has reported. Parties that crash never report, so idle sessions
are also purged after the configured retention TTL.

The relay is not persistent: restarting the process loses all buffered
messages for in-flight sessions.
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import SessionStateError
from .models import RoundMessage
from .wire import check_session_id

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class RetentionPolicy:
    """How long an idle session log is kept. ``ttl=None`` keeps it forever."""

    ttl: Optional[float] = 3600.0

    def expired(self, last_activity: float, now: float) -> bool:
        return self.ttl is not None and now - last_activity > self.ttl


@dataclass(frozen=True)
class Ack:
    session_id: str
    round: int
    sequence: int


@dataclass
class SessionLog:
    session_id: str
    created_at: float
    last_activity: float
    entries: List[RoundMessage] = field(default_factory=list)
    rounds: Dict[int, List[RoundMessage]] = field(default_factory=dict)
    closed: bool = False
    participants: Tuple[int, ...] = ()
    finished: Set[int] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    changed: threading.Condition = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.changed = threading.Condition(self.lock)


class RelayService:
    """Buffers and redistributes round messages, one log per session."""

    def __init__(self, retention: RetentionPolicy = RetentionPolicy(), clock: Clock = time.monotonic) -> None:
        self.retention = retention
        self._clock = clock
        self._sessions: Dict[str, SessionLog] = {}
        # closed session id -> time closed, so late readers learn the session ended
        self._tombstones: Dict[str, float] = {}
        self._registry_lock = threading.Lock()

    # -- internals ----------------------------------------------------------

    def _log(self, session_id: str, create: bool) -> Optional[SessionLog]:
        self.purge_expired()
        log = self._sessions.get(session_id)
        if log is not None or not create:
            return log
        with self._registry_lock:
            if session_id in self._tombstones:
                raise SessionStateError(f"relay session {session_id} is closed")
            log = self._sessions.get(session_id)
            if log is None:
                now = self._clock()
                log = SessionLog(session_id=session_id, created_at=now, last_activity=now)
                self._sessions[session_id] = log
                logger.debug("relay opened session %s", session_id)
            return log

    def purge_expired(self) -> List[str]:
        """Drop session logs idle for longer than the retention TTL."""
        if self.retention.ttl is None:
            return []
        now = self._clock()
        for sid, closed_at in list(self._tombstones.items()):
            if self.retention.expired(closed_at, now):
                self._tombstones.pop(sid, None)
        expired = [sid for sid, log in list(self._sessions.items())
                   if self.retention.expired(log.last_activity, now)]
        if expired:
            with self._registry_lock:
                for sid in expired:
                    log = self._sessions.pop(sid, None)
                    self._tombstones[sid] = now
                    if log is not None:
                        with log.changed:
                            log.closed = True
                            log.changed.notify_all()
            logger.info("relay purged %d expired session(s)", len(expired))
        return expired

    # -- writers ------------------------------------------------------------

    def publish(
        self,
        session_id: str,
        round_number: int,
        sender: int,
        payload: bytes,
        recipients: Optional[Sequence[int]] = None,
    ) -> Ack:
        """Append one message to the session log and wake waiting readers."""
        check_session_id(session_id)
        if round_number < 1 or sender < 1:
            raise ValueError("round and sender must be positive")
        message = RoundMessage(
            session_id=session_id,
            sender=sender,
            round=round_number,
            payload=bytes(payload),
            recipients=None if recipients is None else tuple(sorted(set(recipients))),
        )
        log = self._log(session_id, create=True)
        with log.changed:
            if log.closed:
                raise SessionStateError(f"relay session {session_id} is closed")
            log.entries.append(message)
            log.rounds.setdefault(round_number, []).append(message)
            log.last_activity = self._clock()
            sequence = len(log.entries)
            log.changed.notify_all()
        logger.debug("relay %s round %d: message %d from %d", session_id, round_number, sequence, sender)
        return Ack(session_id=session_id, round=round_number, sequence=sequence)

    def close_session(self, session_id: str) -> bool:
        """Mark a session terminal and forget its log. Subscribers stop."""
        with self._registry_lock:
            log = self._sessions.pop(session_id, None)
            if log is None and session_id in self._tombstones:
                return False
            self._tombstones[session_id] = self._clock()
        if log is None:
            return False
        with log.changed:
            log.closed = True
            log.changed.notify_all()
        logger.info("relay closed session %s", session_id)
        return True

    def finish(self, session_id: str, participant: int, participants: Sequence[int]) -> bool:
        """Record that ``participant`` reached a terminal state.

        Streams read by ``participant`` end at once. The session is closed when
        every index in ``participants`` has reported; returns True if this
        report closed it.
        """
        check_session_id(session_id)
        expected = tuple(sorted(set(participants)))
        if participant not in expected:
            raise ValueError(f"participant {participant} is not among {list(expected)}")
        if session_id in self._tombstones:
            return False
        log = self._log(session_id, create=True)
        with log.changed:
            if log.participants and log.participants != expected:
                raise ValueError(
                    f"relay session {session_id} was reported with participants {list(log.participants)}"
                )
            log.participants = expected
            log.finished.add(participant)
            log.last_activity = self._clock()
            log.changed.notify_all()
            everyone = log.finished.issuperset(expected)
        logger.debug("relay %s: participant %d finished (%d/%d)",
                     session_id, participant, len(log.finished), len(expected))
        if everyone:
            return self.close_session(session_id)
        return False

    # -- readers ------------------------------------------------------------

    def messages(self, session_id: str, round_number: int, recipient: int, after: int = 0) -> List[RoundMessage]:
        """Messages of one round addressed to ``recipient``, skipping the first ``after``."""
        log = self._log(session_id, create=False)
        if log is None:
            return []
        snapshot = log.rounds.get(round_number, [])[:]
        return [m for m in snapshot[after:] if m.addressed_to(recipient)]

    def session_messages(
        self,
        session_id: str,
        recipient: int,
        after: int = 0,
    ) -> Tuple[List[RoundMessage], int, bool]:
        """All messages for ``recipient`` past log position ``after``.

        Returns ``(messages, cursor, closed)`` where ``cursor`` is the position
        to resume from. A session nobody has published to yet is simply empty;
        a closed or purged one reports ``closed=True``.
        """
        log = self._log(session_id, create=False)
        if log is None:
            return [], after, session_id in self._tombstones
        end = len(log.entries)
        snapshot = log.entries[after:end]
        log.last_activity = self._clock()
        closed = log.closed or recipient in log.finished
        return [m for m in snapshot if m.addressed_to(recipient)], end, closed

    def subscribe(
        self,
        session_id: str,
        round_number: int,
        recipient: int,
        after: int = 0,
        wait: float = 1.0,
    ) -> Iterator[RoundMessage]:
        """Lazily yield a round's messages for ``recipient`` as they arrive.

        Restartable: pass the number of round entries already seen as
        ``after``. Ends when the session closes or ``recipient`` reports it
        finished; callers stop it early with ``close()`` on the generator.
        """
        if session_id in self._tombstones:
            return
        log = self._log(session_id, create=True)
        position = after
        while True:
            entries = log.rounds.get(round_number, [])
            end = len(entries)
            for message in entries[position:end]:
                if message.addressed_to(recipient):
                    yield message
            position = end
            with log.changed:
                if log.closed or recipient in log.finished:
                    return
                if len(log.rounds.get(round_number, [])) == position:
                    log.changed.wait(wait)

    def summary(self, session_id: str) -> Optional[Dict[str, object]]:
        log = self._log(session_id, create=False)
        if log is None:
            return None
        now = self._clock()
        return {
            "session": session_id,
            "messages": len(log.entries),
            "rounds": {str(n): len(msgs) for n, msgs in sorted(log.rounds.items())},
            "senders": sorted({m.sender for m in log.entries}),
            "age": now - log.created_at,
            "idle": now - log.last_activity,
            "closed": log.closed,
            "finished": sorted(log.finished),
        }

    def sessions(self) -> List[str]:
        self.purge_expired()
        return sorted(self._sessions)
