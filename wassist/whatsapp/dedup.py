"""Deduplication Engine — decides once whether a message reaches the handler.

The transport redelivers the same logical message through several paths
(reconnect replays, identity-linked DMs arriving under a second id), so
every inbound message passes three filters in order:

1. message id      — bounded FIFO set of ids already seen
2. text fingerprint — (scope, text) seen within the trailing window;
                      scope is the group JID, or a single shared "dm"
                      scope for every direct message
3. in-flight lock   — the conversation is already being handled; the
                      message is dropped, not queued

Self-sent echoes are filtered before any of them.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .cache import BoundedFifoSet, TimeWindowMap
from .messages import InboundMessage

logger = logging.getLogger("wassist.dedup")

DM_SCOPE = "dm"


class DropReason(str, Enum):
    SELF = "self"
    DUPLICATE_ID = "dedup:id"
    DUPLICATE_TEXT = "dedup:text"
    IN_FLIGHT = "dedup:lock"


def fingerprint(message: InboundMessage) -> Optional[tuple[str, str]]:
    """(scope, normalized text) or None when there is no text to compare."""
    text = " ".join(message.text.split())
    if not text:
        return None
    scope = message.chat_jid if message.is_group else DM_SCOPE
    return scope, text


class DeduplicationEngine:
    """Per-tenant dedup state and the conversation exclusivity lock."""

    def __init__(
        self,
        tenant_id: str,
        capacity: int = 1000,
        window: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.tenant_id = tenant_id
        self.seen_ids = BoundedFifoSet(capacity)
        self.recent_texts = TimeWindowMap(window, clock=clock)
        self._in_flight: set[str] = set()

    def is_in_flight(self, chat_jid: str) -> bool:
        return chat_jid in self._in_flight

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    def screen(self, message: InboundMessage) -> Optional[DropReason]:
        """Apply the self filter and layers 1-2, recording what passes.

        Returns the reason to drop, or None if the message may proceed to
        the exclusivity lock.
        """
        if message.from_me:
            return DropReason.SELF

        # Layer 1: message id
        msg_id = message.message_id
        if msg_id:
            if msg_id in self.seen_ids:
                logger.debug(f"[{self.tenant_id}][dedup:id] Skip {msg_id}")
                return DropReason.DUPLICATE_ID
            self.seen_ids.insert(msg_id)

        # Layer 2: text fingerprint
        key = fingerprint(message)
        if key is not None:
            now = self.recent_texts.now()
            if self.recent_texts.contains(key, now):
                logger.debug(f"[{self.tenant_id}][dedup:text] Skip {msg_id} (same text within window)")
                return DropReason.DUPLICATE_TEXT
            self.recent_texts.insert(key, now)
            self.recent_texts.prune(now)

        return None

    async def run_exclusive(self, chat_jid: str, fn: Callable[[], Awaitable[None]]) -> bool:
        """Layer 3: run fn while holding the conversation's in-flight mark.

        Returns False without running fn if the conversation is already
        being handled. Exceptions from fn propagate; the mark is always
        released.
        """
        if chat_jid in self._in_flight:
            return False
        self._in_flight.add(chat_jid)
        try:
            await fn()
        finally:
            self._in_flight.discard(chat_jid)
        return True

    async def process(
        self,
        message: InboundMessage,
        handler: Callable[[InboundMessage], Awaitable[None]],
    ) -> Optional[DropReason]:
        """Run all three layers and, if the message survives, the handler."""
        reason = self.screen(message)
        if reason is not None:
            return reason

        ran = await self.run_exclusive(message.chat_jid, lambda: handler(message))
        if not ran:
            logger.debug(
                f"[{self.tenant_id}][dedup:lock] Skip {message.message_id} - "
                f"already processing for {message.chat_jid}"
            )
            return DropReason.IN_FLIGHT
        return None
