"""Message Dispatch Pipeline — dedup engine wired to exactly one handler."""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from .dedup import DeduplicationEngine, DropReason
from .messages import InboundMessage, normalize_message

logger = logging.getLogger("wassist.dispatch")

MessageHandler = Callable[[InboundMessage], Awaitable[None]]

# messages.upsert types; only live notifications are handled ("append" is history sync)
UPSERT_NOTIFY = "notify"


class MessagePipeline:
    """Serializes delivery of de-duplicated messages for one tenant.

    A single handler slot: on_message() replaces whatever was registered
    before. Handler exceptions are logged and the message is considered
    consumed; nothing is retried.
    """

    def __init__(self, dedup: DeduplicationEngine, handler_timeout: Optional[float] = None):
        self.dedup = dedup
        self.handler_timeout = handler_timeout
        self._handler: Optional[MessageHandler] = None

    @property
    def tenant_id(self) -> str:
        return self.dedup.tenant_id

    def on_message(self, handler: Optional[MessageHandler]):
        self._handler = handler

    async def dispatch_batch(self, raw_messages: Iterable[dict], upsert_type: str = UPSERT_NOTIFY) -> list[Optional[DropReason]]:
        """Feed one messages.upsert batch through dedup, in arrival order.

        Returns the per-message outcome (None = handed to the handler).
        """
        if upsert_type != UPSERT_NOTIFY:
            return []

        outcomes: list[Optional[DropReason]] = []
        for raw in raw_messages:
            if (raw.get("key") or {}).get("fromMe"):
                outcomes.append(DropReason.SELF)
                continue
            try:
                message = normalize_message(raw)
            except ValueError as e:
                logger.warning(f"[{self.tenant_id}] Dropping malformed message: {e}")
                continue
            outcomes.append(await self.dedup.process(message, self._invoke))
        return outcomes

    async def _invoke(self, message: InboundMessage):
        handler = self._handler
        if handler is None:
            logger.debug(f"[{self.tenant_id}] No handler registered, dropping {message.message_id}")
            return

        try:
            if self.handler_timeout:
                await asyncio.wait_for(handler(message), timeout=self.handler_timeout)
            else:
                await handler(message)
        except asyncio.TimeoutError:
            logger.error(
                f"[{self.tenant_id}] Handler timed out after {self.handler_timeout}s "
                f"for {message.chat_jid} (msg {message.message_id}); releasing conversation"
            )
        except Exception as e:
            logger.error(
                f"[{self.tenant_id}] Message handler error for {message.chat_jid} "
                f"(msg {message.message_id}): {e}",
                exc_info=True,
            )
