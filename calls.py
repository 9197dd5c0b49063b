"""In-memory call signaling relay.

Tracks at most one call per user and forwards WebRTC offer/answer/ICE
messages between the two parties of that call. Media never passes
through here; every method returns the deliveries the gateway has to
send, addressed to a single username.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


@dataclass
class CallSession:
    caller: str
    callee: str
    state: CallState = CallState.RINGING
    started_at: float = field(default_factory=time.monotonic)

    def peer(self, username: str) -> Optional[str]:
        if username == self.caller:
            return self.callee
        if username == self.callee:
            return self.caller
        return None


@dataclass(frozen=True)
class Delivery:
    to: str
    event: str
    payload: Dict[str, Any]


class CallRelay:
    def __init__(self, ring_timeout: float = 0, clock=time.monotonic):
        self.ring_timeout = ring_timeout
        self.clock = clock
        # username -> Session; beide Teilnehmer zeigen auf dasselbe Objekt
        self._sessions: Dict[str, CallSession] = {}

    def session_for(self, username: str) -> Optional[CallSession]:
        return self._sessions.get(username)

    def in_call(self, username: str) -> bool:
        return username in self._sessions

    def _discard(self, session: CallSession) -> None:
        session.state = CallState.ENDED
        for name in (session.caller, session.callee):
            if self._sessions.get(name) is session:
                del self._sessions[name]

    def expire_stale(self) -> List[Delivery]:
        if not self.ring_timeout:
            return []
        now = self.clock()
        stale = {
            id(s): s
            for s in self._sessions.values()
            if s.state is CallState.RINGING and now - s.started_at > self.ring_timeout
        }
        out: List[Delivery] = []
        for session in stale.values():
            logger.info("[CALL] Klingeln %s -> %s abgelaufen", session.caller, session.callee)
            self._discard(session)
            out.append(Delivery(session.caller, "call_ended", {"to": session.caller, "from": session.callee}))
            out.append(Delivery(session.callee, "call_ended", {"to": session.callee, "from": session.caller}))
        return out

    def initiate(self, caller: str, callee: str, offer: Any) -> List[Delivery]:
        if not callee or not offer:
            raise ValidationError("to and offer are required")
        if caller == callee:
            raise ValidationError("You can't call yourself")

        out = self.expire_stale()
        if self.in_call(caller):
            raise ConflictError("already in a call")
        if self.in_call(callee):
            raise ConflictError(f"{callee} is busy")

        session = CallSession(caller=caller, callee=callee, started_at=self.clock())
        self._sessions[caller] = session
        self._sessions[callee] = session
        logger.info("[CALL] %s ruft %s an", caller, callee)
        out.append(Delivery(callee, "call_incoming", {"from": caller, "to": callee, "offer": offer}))
        return out

    def signal(self, sender: str, to: str, signal: Any) -> List[Delivery]:
        if not to or signal is None:
            raise ValidationError("to and signal are required")
        session = self._sessions.get(sender)
        # ICE-Kandidaten dürfen schon während des Klingelns fließen
        if session is None or session.peer(sender) != to:
            raise NotFoundError(f"Not in a call with {to}")
        return [Delivery(to, "call_signal_received", {"from": sender, "signal": signal})]

    def accept(self, callee: str, caller: str, answer: Any) -> List[Delivery]:
        if not caller or not answer:
            raise ValidationError("caller and answer are required")
        session = self._sessions.get(callee)
        if (
            session is None
            or session.callee != callee
            or session.caller != caller
            or session.state is not CallState.RINGING
        ):
            raise NotFoundError(f"No incoming call from {caller}")
        session.state = CallState.CONNECTED
        logger.info("[CALL] %s <-> %s verbunden", caller, callee)
        return [Delivery(caller, "call_accepted", {"caller": caller, "answer": answer})]

    def reject(self, callee: str, caller: str) -> List[Delivery]:
        if not caller:
            raise ValidationError("caller is required")
        session = self._sessions.get(callee)
        if (
            session is None
            or session.callee != callee
            or session.caller != caller
            or session.state is not CallState.RINGING
        ):
            raise NotFoundError(f"No incoming call from {caller}")
        self._discard(session)
        logger.info("[CALL] %s hat %s abgelehnt", callee, caller)
        return [Delivery(caller, "call_rejected", {"caller": caller})]

    def end(self, sender: str, to: str) -> List[Delivery]:
        if not to:
            raise ValidationError("to is required")
        session = self._sessions.get(sender)
        if session is None or session.peer(sender) != to:
            # schon beendet: kein Fehler
            return []
        self._discard(session)
        logger.info("[CALL] %s hat den Anruf mit %s beendet", sender, to)
        return [Delivery(to, "call_ended", {"to": to, "from": sender})]

    def disconnect(self, username: str) -> List[Delivery]:
        session = self._sessions.get(username)
        if session is None:
            return []
        return self.end(username, session.peer(username))

    def rename(self, old: str, new: str) -> None:
        session = self._sessions.pop(old, None)
        if session is None:
            return
        if session.caller == old:
            session.caller = new
        if session.callee == old:
            session.callee = new
        self._sessions[new] = session
