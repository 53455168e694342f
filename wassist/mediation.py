"""Mediation sessions — replies to relayed messages find their way back.

When the bot relays a message from A to B, the outgoing message id is
remembered. If B replies to that message, the reply is forwarded to A, and
the forwarded message's id joins the same session so A can answer in turn.
Sessions expire after a period without activity.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("wassist.mediation")


@dataclass
class MediationSession:
    initiator_jid: str
    initiator_name: str
    recipient_jid: str
    recipient_name: str
    last_activity: float

    def counterpart(self, jid: str) -> Optional[tuple[str, str]]:
        """(jid, name) of the other party, seen from ``jid``; None for strangers."""
        if jid == self.recipient_jid:
            return self.initiator_jid, self.initiator_name
        if jid == self.initiator_jid:
            return self.recipient_jid, self.recipient_name
        return None

    def name_of(self, jid: str) -> str:
        if jid == self.initiator_jid:
            return self.initiator_name
        if jid == self.recipient_jid:
            return self.recipient_name
        return jid.split("@")[0]


class MediationRegistry:
    """In-memory, per-process map of relayed message id → session."""

    def __init__(self, ttl: float = 3600.0, clock: Optional[Callable[[], float]] = None):
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._sessions: dict[str, MediationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def open(
        self,
        message_id: str,
        initiator_jid: str,
        initiator_name: str,
        recipient_jid: str,
        recipient_name: str,
    ) -> MediationSession:
        session = MediationSession(
            initiator_jid=initiator_jid,
            initiator_name=initiator_name,
            recipient_jid=recipient_jid,
            recipient_name=recipient_name,
            last_activity=self._clock(),
        )
        self._sessions[message_id] = session
        logger.info(f"Mediation opened: {initiator_name} → {recipient_name} (msg {message_id})")
        return session

    def lookup(self, message_id: Optional[str]) -> Optional[MediationSession]:
        """Live session for a relayed message id. Counts as activity."""
        if not message_id:
            return None
        now = self._clock()
        self.prune(now)
        session = self._sessions.get(message_id)
        if session is not None:
            session.last_activity = now
        return session

    def extend(self, message_id: str, session: MediationSession):
        """Add another relayed message to an existing chain."""
        session.last_activity = self._clock()
        self._sessions[message_id] = session

    def prune(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [mid for mid, s in self._sessions.items() if now - s.last_activity > self.ttl]
        for mid in expired:
            del self._sessions[mid]
        if expired:
            logger.debug(f"Mediation pruned {len(expired)} expired message id(s)")
        return len(expired)
