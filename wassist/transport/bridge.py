"""BridgeTransport — WhatsApp Web client run as a JSON-lines sidecar process.

The sidecar owns the actual socket (pairing, encryption, protocol). We talk
to it over stdin/stdout, one JSON object per line:

    → {"method": "init", "params": {"creds": {...}}}
    → {"id": 7, "method": "sendMessage", "params": {...}}
    ← {"id": 7, "result": {...}}            or {"id": 7, "error": "..."}
    ← {"events": {"messages.upsert": {...}, "connection.update": {...}}}

Binary payloads travel base64-encoded as {"$b64": "..."}.
"""

import asyncio
import base64
import itertools
import json
import logging
import os
from typing import Any, AsyncIterator, Optional

from ..errors import TransportClosedError, TransportError
from .base import (
    CONNECTION_UPDATE,
    DisconnectReason,
    EventBatch,
    EventConsumer,
    Identity,
    Transport,
    TransportFactory,
    Unsubscribe,
)

logger = logging.getLogger("wassist.transport.bridge")

# Media lines can be large
_LINE_LIMIT = 32 * 1024 * 1024
_CLOSE_TIMEOUT = 5


def encode_binary(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"$b64": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {k: encode_binary(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_binary(v) for v in value]
    return value


def decode_binary(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$b64"}:
            return base64.b64decode(value["$b64"])
        return {k: decode_binary(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_binary(v) for v in value]
    return value


def connection_lost_batch() -> EventBatch:
    """The close event reported when the sidecar goes away on its own."""
    return {
        CONNECTION_UPDATE: {
            "connection": "close",
            "lastDisconnect": {
                "error": {
                    "statusCode": int(DisconnectReason.CONNECTION_LOST),
                    "message": "connection_lost",
                },
            },
        },
    }


class BridgeTransport(Transport):
    """Transport backed by one sidecar subprocess."""

    def __init__(self, tenant_id: str, process: asyncio.subprocess.Process):
        self.tenant_id = tenant_id
        self._process = process
        self._consumer: Optional[EventConsumer] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._user: Optional[Identity] = None
        self._closed = False
        self._batch_tasks: set[asyncio.Task] = set()
        self._reader_task: Optional[asyncio.Task] = None

    @classmethod
    async def start(cls, command: str, tenant_id: str, auth_dir: str, creds: dict) -> "BridgeTransport":
        """Spawn the sidecar and hand it the tenant's stored credentials."""
        argv = command.split() + ["--tenant", tenant_id, "--auth-dir", auth_dir]
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=None,
            limit=_LINE_LIMIT,
        )
        transport = cls(tenant_id, process)
        transport._reader_task = asyncio.create_task(transport._read_loop())
        await transport._write({"method": "init", "params": {"creds": creds}})
        logger.info(f"[{tenant_id}] Bridge started (pid {process.pid})")
        return transport

    # ── Transport API ─────────────────────────────────────────

    def process(self, consumer: EventConsumer) -> Unsubscribe:
        self._consumer = consumer

        def unsubscribe():
            if self._consumer is consumer:
                self._consumer = None

        return unsubscribe

    @property
    def user(self) -> Optional[Identity]:
        return self._user

    async def send_message(self, jid: str, content: dict, quoted: Optional[dict] = None) -> dict:
        params = {"jid": jid, "content": content}
        if quoted is not None:
            params["quoted"] = quoted
        return await self._request("sendMessage", params) or {}

    async def download_media(self, descriptor: dict, kind: str) -> AsyncIterator[bytes]:
        result = await self._request("downloadMedia", {"message": descriptor, "type": kind})
        chunks = result.get("chunks") if isinstance(result, dict) else None
        if chunks is None:
            chunks = [result.get("data", b"")] if isinstance(result, dict) else [result]
        for chunk in chunks:
            if chunk:
                yield chunk

    async def group_fetch_all_participating(self) -> dict[str, dict]:
        return await self._request("groupFetchAllParticipating", {}) or {}

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._consumer = None
        self._fail_pending(TransportClosedError(f"Bridge for {self.tenant_id} closed"))

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        process = self._process
        if process.returncode is None:
            try:
                if process.stdin:
                    process.stdin.close()
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=_CLOSE_TIMEOUT)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        logger.info(f"[{self.tenant_id}] Bridge stopped")

    # ── Wire ──────────────────────────────────────────────────

    async def _write(self, payload: dict):
        stdin = self._process.stdin
        if self._closed or stdin is None or stdin.is_closing():
            raise TransportClosedError(f"Bridge for {self.tenant_id} is closed")
        line = json.dumps(encode_binary(payload), separators=(",", ":")) + "\n"
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportClosedError(f"Bridge for {self.tenant_id} went away: {e}") from e

    async def _request(self, method: str, params: dict) -> Any:
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write({"id": request_id, "method": method, "params": params})
            return await future
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, error: Exception):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self):
        stdout = self._process.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    frame = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"[{self.tenant_id}] Bridge sent non-JSON line: {line[:200]!r}")
                    continue
                if not isinstance(frame, dict):
                    logger.warning(f"[{self.tenant_id}] Bridge sent non-object frame: {line[:200]!r}")
                    continue
                self._handle_frame(frame)
        except (ValueError, asyncio.LimitOverrunError) as e:
            logger.error(f"[{self.tenant_id}] Bridge output unreadable: {e}")

        if not self._closed:
            logger.warning(f"[{self.tenant_id}] Bridge exited unexpectedly")
            self._fail_pending(TransportClosedError(f"Bridge for {self.tenant_id} exited"))
            self._deliver(connection_lost_batch())

    def _handle_frame(self, frame: dict):
        if "events" in frame:
            events = decode_binary(frame["events"]) or {}
            update = events.get(CONNECTION_UPDATE)
            if isinstance(update, dict) and isinstance(update.get("user"), dict):
                user = update["user"]
                self._user = Identity(id=user.get("id", ""), lid=user.get("lid"), name=user.get("name"))
            self._deliver(events)
            return

        request_id = frame.get("id")
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug(f"[{self.tenant_id}] Bridge reply for unknown request {request_id}")
            return
        if frame.get("error") is not None:
            future.set_exception(TransportError(str(frame["error"])))
        else:
            future.set_result(decode_binary(frame.get("result")))

    def _deliver(self, events: EventBatch):
        consumer = self._consumer
        if consumer is None:
            return
        task = asyncio.create_task(consumer(events))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)


def bridge_transport_factory(command: str, auth_dir: str) -> TransportFactory:
    """TransportFactory that spawns one sidecar per tenant."""

    async def factory(tenant_id: str, creds: dict) -> Transport:
        tenant_dir = os.path.join(auth_dir, tenant_id)
        return await BridgeTransport.start(command, tenant_id, tenant_dir, creds)

    return factory
