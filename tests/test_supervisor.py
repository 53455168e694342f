"""Tests for the per-tenant connection supervisor."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from wassist.errors import TenantNotConnectedError
from wassist.transport.base import CREDS_UPDATE, DisconnectReason
from wassist.whatsapp.dedup import DeduplicationEngine
from wassist.whatsapp.dispatch import MessagePipeline
from wassist.whatsapp.supervisor import ConnectionSupervisor, Epoch, SessionStatus

from conftest import BOT_JID, BOT_LID, FakeClock, connection_close, connection_open, raw_text, upsert

RECONNECT_DELAY = 0.01


def make_supervisor(factory, credentials, tenants, handler=None, **kw) -> ConnectionSupervisor:
    pipeline = MessagePipeline(DeduplicationEngine("t1", clock=FakeClock()))
    if handler is not None:
        pipeline.on_message(handler)
    return ConnectionSupervisor(
        "t1", factory, credentials, tenants, pipeline, reconnect_delay=RECONNECT_DELAY, **kw
    )


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, message):
        self.calls.append(message.message_id)


class TestEpoch:
    def test_next_is_greater(self):
        e = Epoch()
        assert e.next() > e
        assert e.next() == Epoch(1)
        assert e == Epoch(0)


class TestConnect:
    @pytest.mark.asyncio
    async def test_never_connected_is_disconnected(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        assert sup.status == SessionStatus.DISCONNECTED
        with pytest.raises(TenantNotConnectedError):
            sup.require_transport()

    @pytest.mark.asyncio
    async def test_connect_advances_epoch_and_registers_consumer(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        assert transport is factory.last
        assert sup.epoch == Epoch(1)
        assert transport.consumer is not None
        assert factory.calls == [("t1", {})]

    @pytest.mark.asyncio
    async def test_connect_records_connecting_before_open(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        await sup.connect()
        assert tenants.status_history == [("t1", "connecting")]
        assert tenants.rows["t1"].status == "connecting"
        assert sup.status == SessionStatus.CONNECTING

    @pytest.mark.asyncio
    async def test_open_event_marks_connected(self, factory, credentials, tenants):
        connected = AsyncMock()
        sup = make_supervisor(factory, credentials, tenants, on_connected=connected)
        transport = await sup.connect()
        await transport.emit(connection_open())

        assert sup.status == SessionStatus.CONNECTED
        assert ("t1", "connected") in tenants.status_history
        assert tenants.rows["t1"].phone == "15550000000"
        connected.assert_awaited_once_with("t1")
        assert sup.bot_jid() == BOT_JID
        assert sup.bot_lid() == BOT_LID

    @pytest.mark.asyncio
    async def test_concurrent_connect_returns_in_flight_reference(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        factory.gate = asyncio.Event()

        first = asyncio.create_task(sup.connect())
        await asyncio.sleep(0)
        assert sup.is_connecting

        second = await sup.connect()
        assert second is None
        assert sup.epoch == Epoch(1)

        factory.gate.set()
        transport = await first
        assert len(factory.calls) == 1
        assert sup.transport is transport

    @pytest.mark.asyncio
    async def test_reconnect_tears_down_previous_transport(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        old = await sup.connect()
        new = await sup.connect()
        assert old.closed
        assert old.consumer is None
        assert sup.transport is new
        assert sup.epoch == Epoch(2)

    @pytest.mark.asyncio
    async def test_factory_error_propagates(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        factory.error = OSError("bridge missing")
        with pytest.raises(OSError):
            await sup.connect()
        assert not sup.is_connecting
        assert sup.transport is None

    @pytest.mark.asyncio
    async def test_stored_credentials_passed_to_factory(self, factory, credentials, tenants):
        await credentials.persist_on_update("t1", {"me": {"id": BOT_JID}})
        sup = make_supervisor(factory, credentials, tenants)
        await sup.connect()
        assert factory.calls[0][1] == {"me": {"id": BOT_JID}}


class TestStaleEvents:
    @pytest.mark.asyncio
    async def test_old_socket_events_have_no_effect(self, factory, credentials, tenants):
        handler = Recorder()
        sup = make_supervisor(factory, credentials, tenants, handler=handler)
        old = await sup.connect()
        stale_consumer = old.consumer

        await sup.connect()
        history_before = list(tenants.status_history)

        await stale_consumer(upsert(raw_text("A1", "111@s.whatsapp.net", "late")))
        await stale_consumer(connection_close(DisconnectReason.CONNECTION_LOST))
        await stale_consumer(connection_open())

        assert handler.calls == []
        assert tenants.status_history == history_before
        assert not sup.reconnect_pending
        assert sup.status == SessionStatus.CONNECTING
        assert "A1" not in sup.pipeline.dedup.seen_ids

    @pytest.mark.asyncio
    async def test_current_socket_messages_reach_handler(self, factory, credentials, tenants):
        handler = Recorder()
        sup = make_supervisor(factory, credentials, tenants, handler=handler)
        transport = await sup.connect()
        await transport.emit(upsert(raw_text("A1", "111@s.whatsapp.net", "hi")))
        assert handler.calls == ["A1"]


class TestDisconnectEvents:
    @pytest.mark.asyncio
    async def test_logout_is_terminal(self, factory, credentials, tenants):
        logged_out = AsyncMock()
        sup = make_supervisor(factory, credentials, tenants, on_logged_out=logged_out)
        transport = await sup.connect()
        await transport.emit(connection_open())
        assert sup.status == SessionStatus.CONNECTED

        await transport.emit(connection_close(DisconnectReason.LOGGED_OUT))
        assert sup.status == SessionStatus.DISCONNECTED
        assert not sup.reconnect_pending
        logged_out.assert_awaited_once_with("t1")
        assert sup.transport is None
        assert transport.closed

        await asyncio.sleep(RECONNECT_DELAY * 10)
        assert len(factory.calls) == 1

    @pytest.mark.asyncio
    async def test_transient_close_schedules_one_reconnect(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()

        await transport.emit(connection_close(DisconnectReason.CONNECTION_LOST))
        await transport.emit(connection_close(DisconnectReason.CONNECTION_LOST))
        assert sup.reconnect_pending
        assert len(factory.calls) == 1

        await asyncio.sleep(RECONNECT_DELAY * 10)
        assert len(factory.calls) == 2
        assert sup.transport is factory.last
        assert sup.epoch == Epoch(2)
        await sup.disconnect()

    @pytest.mark.asyncio
    async def test_failed_reconnect_is_retried(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        factory.error = OSError("network down")

        await transport.emit(connection_close(DisconnectReason.RESTART_REQUIRED))
        await asyncio.sleep(RECONNECT_DELAY * 20)

        assert len(factory.calls) == 3
        assert sup.transport is factory.last
        await sup.disconnect()

    @pytest.mark.asyncio
    async def test_close_without_status_reconnects(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        await transport.emit({"connection.update": {"connection": "close"}})
        assert sup.reconnect_pending
        await sup.disconnect()
        assert not sup.reconnect_pending

    @pytest.mark.asyncio
    async def test_pairing_code_exposed(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        await transport.emit({"connection.update": {"qr": "2@abc,def"}})
        assert sup.pairing_code == "2@abc,def"
        assert sup.status == SessionStatus.CONNECTING

        await transport.emit(connection_open())
        assert sup.pairing_code is None


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()

        await sup.disconnect()
        assert transport.closed
        assert sup.transport is None
        assert sup.status == SessionStatus.DISCONNECTED
        count = len(tenants.status_history)

        await sup.disconnect()
        assert len(tenants.status_history) == count

    @pytest.mark.asyncio
    async def test_disconnect_never_connected_is_noop(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        await sup.disconnect()
        assert tenants.status_history == []

    @pytest.mark.asyncio
    async def test_disconnect_during_connect(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        factory.gate = asyncio.Event()
        pending = asyncio.create_task(sup.connect())
        await asyncio.sleep(0)

        await sup.disconnect()
        factory.gate.set()
        assert await pending is None
        assert factory.last.closed
        assert sup.transport is None

    @pytest.mark.asyncio
    async def test_events_after_disconnect_ignored(self, factory, credentials, tenants):
        handler = Recorder()
        sup = make_supervisor(factory, credentials, tenants, handler=handler)
        transport = await sup.connect()
        consumer = transport.consumer
        await sup.disconnect()

        await consumer(upsert(raw_text("A1", "111@s.whatsapp.net", "late")))
        await consumer(connection_close(DisconnectReason.CONNECTION_LOST))
        assert handler.calls == []
        assert not sup.reconnect_pending


class TestCredentialsAndErrors:
    @pytest.mark.asyncio
    async def test_creds_update_persisted(self, factory, credentials, tenants):
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        await transport.emit({CREDS_UPDATE: {"registered": True, "noiseKey": b"\x01\x02"}})
        stored = await credentials.load("t1")
        assert stored == {"registered": True, "noiseKey": b"\x01\x02"}

    @pytest.mark.asyncio
    async def test_consumer_never_raises(self, factory, tenants):
        creds = AsyncMock()
        creds.load.return_value = {}
        creds.persist_on_update.side_effect = OSError("disk full")
        sup = make_supervisor(factory, creds, tenants)
        transport = await sup.connect()
        await transport.emit({CREDS_UPDATE: {"registered": True}})

    @pytest.mark.asyncio
    async def test_status_write_failure_is_tolerated(self, factory, credentials, tenants):
        tenants.set_status = AsyncMock(side_effect=RuntimeError("db down"))
        sup = make_supervisor(factory, credentials, tenants)
        transport = await sup.connect()
        await transport.emit(connection_open())
        assert sup.status == SessionStatus.CONNECTED
