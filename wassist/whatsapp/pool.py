"""Connection Pool — one ConnectionSupervisor per tenant, one handler for all."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..credentials import CredentialStore
from ..transport.base import Transport, TransportFactory
from .dedup import DeduplicationEngine
from .dispatch import MessagePipeline
from .messages import MEDIA_KINDS, InboundMessage
from .supervisor import ConnectionSupervisor, SessionStatus, TenantCallback, TenantRegistry

logger = logging.getLogger("wassist.pool")

TenantMessageHandler = Callable[[str, InboundMessage], Awaitable[None]]


class ConnectionPool:
    """Registry of per-tenant supervisors with isolated dedup state.

    Supervisors are created lazily on first reference and kept for the life
    of the process, so a tenant's epoch and dedup state survive reconnects.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        credentials: CredentialStore,
        tenants: TenantRegistry,
        reconnect_delay: float = 3.0,
        dedup_capacity: int = 1000,
        dedup_window: float = 10.0,
        handler_timeout: Optional[float] = None,
        on_connected: Optional[TenantCallback] = None,
        on_logged_out: Optional[TenantCallback] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.transport_factory = transport_factory
        self.credentials = credentials
        self.tenants = tenants
        self.reconnect_delay = reconnect_delay
        self.dedup_capacity = dedup_capacity
        self.dedup_window = dedup_window
        self.handler_timeout = handler_timeout
        self.on_connected = on_connected
        self.on_logged_out = on_logged_out
        self._clock = clock
        self._supervisors: dict[str, ConnectionSupervisor] = {}
        self._handler: Optional[TenantMessageHandler] = None

    # ── Supervisors ───────────────────────────────────────────

    def supervisor(self, tenant_id: str) -> ConnectionSupervisor:
        sup = self._supervisors.get(tenant_id)
        if sup is None:
            dedup = DeduplicationEngine(
                tenant_id,
                capacity=self.dedup_capacity,
                window=self.dedup_window,
                clock=self._clock,
            )
            pipeline = MessagePipeline(dedup, handler_timeout=self.handler_timeout)
            pipeline.on_message(self._tenant_handler(tenant_id))
            sup = ConnectionSupervisor(
                tenant_id,
                transport_factory=self.transport_factory,
                credentials=self.credentials,
                tenants=self.tenants,
                pipeline=pipeline,
                reconnect_delay=self.reconnect_delay,
                on_connected=self.on_connected,
                on_logged_out=self.on_logged_out,
            )
            self._supervisors[tenant_id] = sup
        return sup

    def _tenant_handler(self, tenant_id: str):
        async def handle(message: InboundMessage):
            handler = self._handler
            if handler is not None:
                await handler(tenant_id, message)

        return handle

    def on_message(self, handler: Optional[TenantMessageHandler]):
        """Register the application handler, called as handler(tenant_id, message)."""
        self._handler = handler

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self, tenant_id: str) -> Optional[Transport]:
        return await self.supervisor(tenant_id).connect()

    async def disconnect(self, tenant_id: str):
        sup = self._supervisors.get(tenant_id)
        if sup is not None:
            await sup.disconnect()

    async def connect_all_active(self) -> list[str]:
        """Reconnect every persisted tenant whose last status was not disconnected.

        Tenants connect concurrently; one failing does not affect the rest.
        Returns the ids that connected without raising.
        """
        tenants = await self.tenants.get_all()
        targets = [t.id for t in tenants if t.status != SessionStatus.DISCONNECTED.value]
        if not targets:
            logger.info("No active tenants to reconnect")
            return []

        async def connect_one(tenant_id: str) -> bool:
            try:
                await self.connect(tenant_id)
                return True
            except Exception as e:
                logger.error(f"[{tenant_id}] Failed to connect: {e}", exc_info=True)
                return False

        results = await asyncio.gather(*(connect_one(t) for t in targets))
        connected = [t for t, ok in zip(targets, results) if ok]
        logger.info(f"Reconnected {len(connected)}/{len(targets)} tenant(s)")
        return connected

    async def disconnect_all(self):
        for tenant_id in list(self._supervisors):
            try:
                await self.disconnect(tenant_id)
            except Exception as e:
                logger.error(f"[{tenant_id}] Error during disconnect: {e}")

    # ── Queries ───────────────────────────────────────────────

    def get_status(self, tenant_id: str) -> SessionStatus:
        sup = self._supervisors.get(tenant_id)
        if sup is None:
            return SessionStatus.DISCONNECTED
        return sup.status

    def get_pairing_code(self, tenant_id: str) -> Optional[str]:
        sup = self._supervisors.get(tenant_id)
        return sup.pairing_code if sup else None

    def is_connected(self, tenant_id: str) -> bool:
        return self.get_status(tenant_id) == SessionStatus.CONNECTED

    def connected_tenants(self) -> list[str]:
        return [tid for tid, sup in self._supervisors.items() if sup.status == SessionStatus.CONNECTED]

    def bot_jid(self, tenant_id: str) -> Optional[str]:
        sup = self._supervisors.get(tenant_id)
        return sup.bot_jid() if sup else None

    def bot_lid(self, tenant_id: str) -> Optional[str]:
        sup = self._supervisors.get(tenant_id)
        return sup.bot_lid() if sup else None

    def _transport(self, tenant_id: str) -> Transport:
        return self.supervisor(tenant_id).require_transport()

    # ── Send / download ───────────────────────────────────────
    # All raise TenantNotConnectedError when the tenant has no live transport.

    async def send_text_message(self, tenant_id: str, jid: str, text: str) -> dict:
        key = await self._transport(tenant_id).send_message(jid, {"text": text})
        logger.info(f"[{tenant_id}] Sent message to {jid}")
        return key

    async def send_reply(self, tenant_id: str, jid: str, text: str, quoted: InboundMessage) -> dict:
        key = await self._transport(tenant_id).send_message(jid, {"text": text}, quoted=quoted.raw)
        logger.info(f"[{tenant_id}] Sent reply to {jid}")
        return key

    async def send_image(self, tenant_id: str, jid: str, image: bytes, caption: str = "") -> dict:
        key = await self._transport(tenant_id).send_message(jid, {"image": image, "caption": caption or ""})
        logger.info(f"[{tenant_id}] Sent image to {jid}")
        return key

    async def send_image_reply(
        self, tenant_id: str, jid: str, image: bytes, caption: str, quoted: InboundMessage
    ) -> dict:
        key = await self._transport(tenant_id).send_message(
            jid, {"image": image, "caption": caption or ""}, quoted=quoted.raw
        )
        logger.info(f"[{tenant_id}] Sent image reply to {jid}")
        return key

    async def send_voice_reply(self, tenant_id: str, jid: str, audio: bytes, quoted: InboundMessage) -> dict:
        key = await self._transport(tenant_id).send_message(
            jid,
            {"audio": audio, "ptt": True, "mimetype": "audio/ogg; codecs=opus"},
            quoted=quoted.raw,
        )
        logger.info(f"[{tenant_id}] Sent voice reply to {jid}")
        return key

    async def download_media(self, tenant_id: str, descriptor: dict, kind: str) -> bytes:
        """Download a media message's bytes (kind: audio, image or document)."""
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unsupported media kind: {kind}")
        transport = self._transport(tenant_id)
        chunks = []
        async for chunk in transport.download_media(descriptor, kind):
            chunks.append(chunk)
        return b"".join(chunks)

    async def get_groups(self, tenant_id: str) -> list[dict]:
        groups = await self._transport(tenant_id).group_fetch_all_participating()
        return [
            {"id": group.get("id", gid), "name": group.get("subject") or ""}
            for gid, group in groups.items()
        ]
