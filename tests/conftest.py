"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
from dataclasses import replace
from typing import Optional

import pytest

from wassist.credentials import CredentialStore
from wassist.db.repositories import Tenant
from wassist.transport.base import (
    CONNECTION_UPDATE,
    MESSAGES_UPSERT,
    Identity,
    Transport,
)

BOT_JID = "15550000000@s.whatsapp.net"
BOT_LID = "98765@lid"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport(Transport):
    """In-memory transport: tests push event batches with emit()."""

    _ids = itertools.count(1)

    def __init__(self, tenant_id: str = "t1", user: Optional[Identity] = None):
        self.tenant_id = tenant_id
        self.consumer = None
        self.sent: list[tuple[str, dict, Optional[dict]]] = []
        self.keys: list[dict] = []
        self.groups: dict[str, dict] = {}
        self.media: bytes = b"media-bytes"
        self.closed = False
        self.fail_send: Optional[Exception] = None
        self._user = user if user is not None else Identity(id="15550000000:7@s.whatsapp.net", lid="98765:7@lid")

    def process(self, consumer):
        self.consumer = consumer

        def unsubscribe():
            if self.consumer is consumer:
                self.consumer = None

        return unsubscribe

    @property
    def user(self):
        return self._user

    async def send_message(self, jid, content, quoted=None):
        if self.fail_send:
            raise self.fail_send
        self.sent.append((jid, content, quoted))
        key = {"id": f"SENT{next(self._ids)}", "remoteJid": jid, "fromMe": True}
        self.keys.append(key)
        return key

    async def download_media(self, descriptor, kind):
        half = len(self.media) // 2
        yield self.media[:half]
        yield self.media[half:]

    async def group_fetch_all_participating(self):
        return dict(self.groups)

    async def close(self):
        self.closed = True
        self.consumer = None

    async def emit(self, events: dict):
        """Deliver a batch the way a transport would (to whatever consumer is registered)."""
        if self.consumer is not None:
            await self.consumer(events)

    @property
    def sent_texts(self) -> list[str]:
        return [content.get("text") for _, content, _ in self.sent]


class FakeTransportFactory:
    """TransportFactory that hands out FakeTransports and records calls.

    Set ``gate`` to an asyncio.Event to hold factory calls until it is set;
    set ``error`` to make the next call raise.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.transports: list[FakeTransport] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def __call__(self, tenant_id: str, creds: dict) -> FakeTransport:
        self.calls.append((tenant_id, creds))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        transport = FakeTransport(tenant_id)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class InMemoryTenants:
    """TenantRegistry backed by a dict."""

    def __init__(self, *tenants: Tenant):
        self.rows = {t.id: t for t in tenants}
        self.status_history: list[tuple[str, str]] = []

    async def get_all(self):
        return list(self.rows.values())

    async def get_by_id(self, tenant_id):
        return self.rows.get(tenant_id)

    async def set_status(self, tenant_id, status):
        self.status_history.append((tenant_id, status))
        if tenant_id in self.rows:
            self.rows[tenant_id] = replace(self.rows[tenant_id], status=status)

    async def update(self, tenant_id, **fields):
        if tenant_id not in self.rows:
            return None
        self.rows[tenant_id] = replace(self.rows[tenant_id], **fields)
        return self.rows[tenant_id]


# ── Raw transport payload builders ───────────────────────────

def raw_text(
    msg_id: Optional[str],
    chat: str,
    text: str,
    participant: Optional[str] = None,
    from_me: bool = False,
    push_name: str = "",
    quoted_participant: Optional[str] = None,
    quoted_id: Optional[str] = None,
    mentions: Optional[list] = None,
) -> dict:
    key = {"remoteJid": chat, "fromMe": from_me}
    if msg_id is not None:
        key["id"] = msg_id
    if participant:
        key["participant"] = participant

    if quoted_participant or quoted_id or mentions:
        context = {}
        if quoted_participant:
            context["participant"] = quoted_participant
        if quoted_id:
            context["stanzaId"] = quoted_id
        if mentions:
            context["mentionedJid"] = mentions
        message = {"extendedTextMessage": {"text": text, "contextInfo": context}}
    else:
        message = {"conversation": text}

    return {"key": key, "message": message, "pushName": push_name, "messageTimestamp": 1700000000}


def upsert(*messages: dict, kind: str = "notify") -> dict:
    return {MESSAGES_UPSERT: {"messages": list(messages), "type": kind}}


def connection_open() -> dict:
    return {CONNECTION_UPDATE: {"connection": "open"}}


def connection_close(status_code: int) -> dict:
    return {
        CONNECTION_UPDATE: {
            "connection": "close",
            "lastDisconnect": {"error": {"output": {"statusCode": status_code}}},
        }
    }


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def tenants():
    return InMemoryTenants(
        Tenant(id="t1", name="Tenant One", status="connected"),
        Tenant(id="t2", name="Tenant Two", status="pending"),
        Tenant(id="t3", name="Tenant Three", status="disconnected"),
    )


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore(str(tmp_path / "auth"))


class InMemorySchedules:
    """ScheduleRepository stand-in."""

    def __init__(self):
        self.jobs = {}

    async def create(self, job):
        self.jobs[job.id] = job
        return job

    async def find_all_active(self, tenant_id=None):
        return [
            j for j in self.jobs.values()
            if j.active and (tenant_id is None or j.tenant_id == tenant_id)
        ]

    async def find_due(self, now):
        due = [j for j in self.jobs.values() if j.active and j.next_run is not None and j.next_run <= now]
        return sorted(due, key=lambda j: j.next_run)

    async def mark_inactive(self, job_id, tenant_id=None):
        job = self.jobs.get(job_id)
        if job is None or not job.active:
            return False
        if tenant_id is not None and job.tenant_id != tenant_id:
            return False
        job.active = False
        return True

    async def set_next_run(self, job_id, next_run, ran_at=None):
        job = self.jobs[job_id]
        job.next_run = next_run
        if ran_at is not None:
            job.last_run = ran_at
            job.run_count += 1
