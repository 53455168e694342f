"""Connection Supervisor — one transport session per tenant.

Every connect attempt advances the session's epoch. The batched event
consumer registered on a transport captures the epoch that was current at
registration and drops any batch once the session has moved on, so a
superseded socket's late events cannot touch state after a fast reconnect.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..credentials import CredentialStore
from ..errors import TenantNotConnectedError
from ..transport.base import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    MESSAGES_UPSERT,
    EventBatch,
    Transport,
    TransportFactory,
    Unsubscribe,
    disconnect_status,
    is_logged_out,
)
from .dispatch import MessagePipeline
from .messages import normalize_jid

logger = logging.getLogger("wassist.supervisor")

TenantCallback = Callable[[str], Awaitable[None]]


class SessionStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, order=True)
class Epoch:
    """Generation of a tenant's connection. Compared, never mutated."""
    value: int = 0

    def next(self) -> "Epoch":
        return Epoch(self.value + 1)


@dataclass
class Session:
    transport: Optional[Transport] = None
    epoch: Epoch = field(default_factory=Epoch)
    pairing_code: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    unsubscribe: Optional[Unsubscribe] = None
    connecting: bool = False

    def clear(self):
        self.transport = None
        self.pairing_code = None
        self.unsubscribe = None
        self.status = SessionStatus.DISCONNECTED


class TenantRegistry(Protocol):
    """What the connection layer needs from tenant persistence."""

    async def get_all(self) -> list: ...

    async def get_by_id(self, tenant_id: str) -> Optional[Any]: ...

    async def set_status(self, tenant_id: str, status: str) -> None: ...

    async def update(self, tenant_id: str, **fields) -> Optional[Any]: ...


class ConnectionSupervisor:
    """Owns one tenant's Session: (re)connect, teardown and event routing."""

    def __init__(
        self,
        tenant_id: str,
        transport_factory: TransportFactory,
        credentials: CredentialStore,
        tenants: TenantRegistry,
        pipeline: MessagePipeline,
        reconnect_delay: float = 3.0,
        on_connected: Optional[TenantCallback] = None,
        on_logged_out: Optional[TenantCallback] = None,
    ):
        self.tenant_id = tenant_id
        self.transport_factory = transport_factory
        self.credentials = credentials
        self.tenants = tenants
        self.pipeline = pipeline
        self.reconnect_delay = reconnect_delay
        self.on_connected = on_connected
        self.on_logged_out = on_logged_out
        self.session = Session()
        self._reconnect_task: Optional[asyncio.Task] = None

    # ── State ─────────────────────────────────────────────────

    @property
    def epoch(self) -> Epoch:
        return self.session.epoch

    @property
    def transport(self) -> Optional[Transport]:
        return self.session.transport

    @property
    def status(self) -> SessionStatus:
        if self.session.transport is None:
            return SessionStatus.DISCONNECTED
        return self.session.status

    @property
    def pairing_code(self) -> Optional[str]:
        return self.session.pairing_code

    @property
    def is_connecting(self) -> bool:
        return self.session.connecting

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def require_transport(self) -> Transport:
        transport = self.session.transport
        if transport is None:
            raise TenantNotConnectedError(self.tenant_id)
        return transport

    def bot_jid(self) -> Optional[str]:
        user = self.session.transport.user if self.session.transport else None
        if not user or not user.id:
            return None
        return normalize_jid(user.id)

    def bot_lid(self) -> Optional[str]:
        user = self.session.transport.user if self.session.transport else None
        if not user or not user.lid:
            return None
        return normalize_jid(user.lid)

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> Optional[Transport]:
        """Open a fresh transport, replacing any previous one.

        A call made while another connect is in progress returns the current
        (possibly None) transport without starting a second sequence.
        Transport construction errors propagate.
        """
        session = self.session
        if session.connecting:
            logger.warning(f"[{self.tenant_id}] Connection attempt already in progress, skipping")
            return session.transport

        session.connecting = True
        session.epoch = session.epoch.next()
        epoch = session.epoch
        self._cancel_reconnect()

        try:
            await self._teardown_transport()

            creds = await self.credentials.load(self.tenant_id)
            logger.info(f"[{self.tenant_id}] Connecting (epoch {epoch.value})...")
            await self._record_status(SessionStatus.CONNECTING)
            transport = await self.transport_factory(self.tenant_id, creds)

            if epoch != session.epoch:
                # disconnect() ran while the transport was being opened
                logger.info(f"[{self.tenant_id}] Connect superseded, closing new transport")
                await self._close_quietly(transport)
                return None

            session.transport = transport
            session.pairing_code = None
            session.status = SessionStatus.CONNECTING
            session.unsubscribe = transport.process(
                lambda events: self._consume(epoch, events)
            )
            return transport
        finally:
            session.connecting = False

    async def disconnect(self):
        """Stop event delivery and close the transport. Idempotent."""
        self._cancel_reconnect()
        session = self.session
        if session.transport is None and not session.connecting:
            return

        logger.info(f"[{self.tenant_id}] Disconnecting...")
        session.epoch = session.epoch.next()
        await self._teardown_transport()
        session.clear()
        await self._record_status(SessionStatus.DISCONNECTED)

    async def _teardown_transport(self):
        session = self.session
        if session.unsubscribe is not None:
            try:
                session.unsubscribe()
            except Exception as e:
                logger.warning(f"[{self.tenant_id}] Error removing event consumer: {e}")
            session.unsubscribe = None

        if session.transport is not None:
            logger.info(f"[{self.tenant_id}] Cleaning up previous transport")
            transport, session.transport = session.transport, None
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: Transport):
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"[{self.tenant_id}] Error closing transport: {e}")

    # ── Reconnect ─────────────────────────────────────────────

    def _schedule_reconnect(self):
        if self.reconnect_pending:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        try:
            await self.connect()
        except Exception as e:
            logger.error(
                f"[{self.tenant_id}] Reconnect failed: {e}. Retrying in {self.reconnect_delay}s"
            )
            self._schedule_reconnect()

    # ── Events ────────────────────────────────────────────────

    async def _consume(self, epoch: Epoch, events: EventBatch):
        """Batched event consumer. Never raises into the transport."""
        if epoch != self.session.epoch:
            return

        try:
            update = events.get(CONNECTION_UPDATE)
            if update:
                await self._on_connection_update(update)
                if epoch != self.session.epoch:
                    return

            if CREDS_UPDATE in events:
                await self.credentials.persist_on_update(self.tenant_id, events[CREDS_UPDATE] or {})

            upsert = events.get(MESSAGES_UPSERT)
            if upsert and epoch == self.session.epoch:
                await self.pipeline.dispatch_batch(upsert.get("messages") or [], upsert.get("type", ""))
        except Exception as e:
            logger.error(f"[{self.tenant_id}] Error processing transport events: {e}", exc_info=True)

    async def _on_connection_update(self, update: dict):
        session = self.session
        connection = update.get("connection")

        qr = update.get("qr")
        if qr:
            logger.info(f"[{self.tenant_id}] Pairing code generated")
            session.pairing_code = qr
            session.status = SessionStatus.CONNECTING
            await self._record_status(SessionStatus.CONNECTING)

        if connection == "close":
            status_code = disconnect_status(update)
            logged_out = is_logged_out(update)
            logger.warning(
                f"[{self.tenant_id}] Connection closed. Status: {status_code}. "
                f"Reconnecting: {not logged_out}"
            )
            session.pairing_code = None
            session.status = SessionStatus.DISCONNECTED
            await self._record_status(SessionStatus.DISCONNECTED)

            if logged_out:
                logger.error(f"[{self.tenant_id}] Logged out. Need to re-authenticate.")
                session.epoch = session.epoch.next()
                await self._teardown_transport()
                session.clear()
                if self.on_logged_out:
                    await self.on_logged_out(self.tenant_id)
            else:
                self._schedule_reconnect()

        elif connection == "open":
            logger.info(f"[{self.tenant_id}] Connected to WhatsApp successfully!")
            session.pairing_code = None
            session.status = SessionStatus.CONNECTED
            await self._record_status(SessionStatus.CONNECTED)

            jid = self.bot_jid()
            if jid:
                try:
                    await self.tenants.update(self.tenant_id, phone=jid.split("@")[0])
                except Exception as e:
                    logger.warning(f"[{self.tenant_id}] Could not store phone number: {e}")

            if self.on_connected:
                await self.on_connected(self.tenant_id)

    async def _record_status(self, status: SessionStatus):
        try:
            await self.tenants.set_status(self.tenant_id, status.value)
        except Exception as e:
            logger.warning(f"[{self.tenant_id}] Could not record status {status.value}: {e}")
