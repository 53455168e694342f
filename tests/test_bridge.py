"""Tests for the JSON-lines sidecar transport."""

import asyncio
import sys
import textwrap

import pytest

from wassist.errors import TransportClosedError, TransportError
from wassist.transport.base import CONNECTION_UPDATE, DisconnectReason, disconnect_status
from wassist.transport.bridge import (
    BridgeTransport,
    bridge_transport_factory,
    connection_lost_batch,
    decode_binary,
    encode_binary,
)

# Minimal sidecar: echoes events on request, answers a few methods, exits on "exit".
FAKE_BRIDGE = textwrap.dedent('''
    import json, sys

    def out(frame):
        sys.stdout.write(json.dumps(frame) + "\\n")
        sys.stdout.flush()

    creds = None
    for line in sys.stdin:
        req = json.loads(line)
        method = req.get("method")
        if method == "init":
            creds = req["params"]["creds"]
            continue
        rid = req.get("id")
        if method == "getCreds":
            out({"id": rid, "result": creds})
        elif method == "echoEvents":
            out({"events": req["params"]})
            out({"id": rid, "result": True})
        elif method == "sendMessage":
            out({"id": rid, "result": {"id": "ABC", "remoteJid": req["params"]["jid"], "fromMe": True}})
        elif method == "downloadMedia":
            out({"id": rid, "result": {"chunks": [{"$b64": "aGVs"}, {"$b64": "bG8="}]}})
        elif method == "groupFetchAllParticipating":
            out("not a frame but still json")
            print("garbage", flush=True)
            out({"id": rid, "result": {"g1@g.us": {"subject": "Family"}}})
        elif method == "exit":
            sys.exit(0)
        else:
            out({"id": rid, "error": "unknown method " + str(method)})
''')


@pytest.fixture
def bridge_command(tmp_path):
    script = tmp_path / "fake_bridge.py"
    script.write_text(FAKE_BRIDGE)
    return f"{sys.executable} {script}"


async def start(command, tmp_path, creds=None):
    return await BridgeTransport.start(command, "t1", str(tmp_path / "auth" / "t1"), creds or {})


class TestBinaryCodec:
    def test_nested_bytes(self):
        value = {"a": b"\x00\x01", "b": [b"xy", 1, "s"], "c": {"d": bytearray(b"z")}}
        encoded = encode_binary(value)
        assert encoded["a"] == {"$b64": "AAE="}
        assert decode_binary(encoded) == {"a": b"\x00\x01", "b": [b"xy", 1, "s"], "c": {"d": b"z"}}

    def test_dict_with_extra_keys_is_not_binary(self):
        assert decode_binary({"$b64": "AAE=", "x": 1}) == {"$b64": "AAE=", "x": 1}

    def test_connection_lost_batch_is_transient_close(self):
        update = connection_lost_batch()[CONNECTION_UPDATE]
        assert update["connection"] == "close"
        assert disconnect_status(update) == DisconnectReason.CONNECTION_LOST


class TestBridgeTransport:
    @pytest.mark.asyncio
    async def test_init_passes_credentials(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path, {"key": b"\x01\x02"})
        try:
            assert await transport._request("getCreds", {}) == {"key": b"\x01\x02"}
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_send_message(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        try:
            key = await transport.send_message("111@s.whatsapp.net", {"text": "hi"})
            assert key == {"id": "ABC", "remoteJid": "111@s.whatsapp.net", "fromMe": True}
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_download_media_chunks(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        try:
            chunks = [c async for c in transport.download_media({"key": {}}, "image")]
            assert b"".join(chunks) == b"hello"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_noise_lines_are_skipped(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        try:
            groups = await transport.group_fetch_all_participating()
            assert groups == {"g1@g.us": {"subject": "Family"}}
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_error_reply_raises(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        try:
            with pytest.raises(TransportError, match="unknown method"):
                await transport._request("bogus", {})
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_events_reach_consumer_and_set_identity(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        received = asyncio.Queue()

        async def consumer(events):
            await received.put(events)

        transport.process(consumer)
        try:
            batch = {CONNECTION_UPDATE: {"connection": "open", "user": {"id": "1:2@s.whatsapp.net", "lid": "9@lid"}}}
            await transport._request("echoEvents", batch)
            events = await asyncio.wait_for(received.get(), timeout=5)
            assert events == batch
            assert transport.user.id == "1:2@s.whatsapp.net"
            assert transport.user.lid == "9@lid"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_unsubscribed_consumer_gets_nothing(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        received = []

        async def consumer(events):
            received.append(events)

        unsubscribe = transport.process(consumer)
        unsubscribe()
        try:
            await transport._request("echoEvents", {CONNECTION_UPDATE: {"connection": "open"}})
            await asyncio.sleep(0.05)
            assert received == []
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_sidecar_exit_reports_close(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        received = asyncio.Queue()

        async def consumer(events):
            await received.put(events)

        transport.process(consumer)
        try:
            with pytest.raises(TransportClosedError):
                await transport._request("exit", {})
            events = await asyncio.wait_for(received.get(), timeout=5)
            assert events == connection_lost_batch()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_requests_after_close_fail(self, bridge_command, tmp_path):
        transport = await start(bridge_command, tmp_path)
        await transport.close()
        await transport.close()
        with pytest.raises(TransportClosedError):
            await transport.send_message("111@s.whatsapp.net", {"text": "hi"})

    @pytest.mark.asyncio
    async def test_factory_uses_tenant_directory(self, bridge_command, tmp_path):
        factory = bridge_transport_factory(bridge_command, str(tmp_path / "auth"))
        transport = await factory("t9", {})
        try:
            assert transport.tenant_id == "t9"
            assert await transport._request("getCreds", {}) == {}
        finally:
            await transport.close()
