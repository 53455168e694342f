"""Transport abstraction — the duplex chat channel under a tenant's session.

A transport emits batched, named event groups to exactly one consumer and
accepts send / download / roster requests. Pairing, encryption and the wire
protocol live behind it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

# ── Event names ───────────────────────────────────────────────

CONNECTION_UPDATE = "connection.update"
CREDS_UPDATE = "creds.update"
MESSAGES_UPSERT = "messages.upsert"
GROUPS_UPDATE = "groups.update"
CONTACTS_UPDATE = "contacts.update"

EVENT_NAMES = (CONNECTION_UPDATE, CREDS_UPDATE, MESSAGES_UPSERT, GROUPS_UPDATE, CONTACTS_UPDATE)


class DisconnectReason(IntEnum):
    """Close status codes reported in connection.update "lastDisconnect"."""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


def disconnect_status(update: dict) -> Optional[int]:
    """Status code of a close update, or None if the transport gave none."""
    last = update.get("lastDisconnect") or {}
    error = last.get("error") or {}
    status = error.get("statusCode")
    if status is None:
        status = (error.get("output") or {}).get("statusCode")
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_logged_out(update: dict) -> bool:
    return disconnect_status(update) == DisconnectReason.LOGGED_OUT


@dataclass
class Identity:
    """The bot's own addressing identifiers on this transport."""
    id: str
    lid: Optional[str] = None
    name: Optional[str] = None


EventBatch = dict[str, Any]
EventConsumer = Callable[[EventBatch], Awaitable[None]]
Unsubscribe = Callable[[], None]


class Transport(ABC):
    """One live connection for one tenant."""

    @abstractmethod
    def process(self, consumer: EventConsumer) -> Unsubscribe:
        """Register the single batched event consumer.

        Each call replaces the previous consumer. Returns a callable that
        removes it again.
        """
        ...

    @abstractmethod
    async def send_message(self, jid: str, content: dict, quoted: Optional[dict] = None) -> dict:
        """Send content to a chat. Returns the sent message key."""
        ...

    @abstractmethod
    def download_media(self, descriptor: dict, kind: str) -> AsyncIterator[bytes]:
        """Stream the decrypted bytes of a media message."""
        ...

    @abstractmethod
    async def group_fetch_all_participating(self) -> dict[str, dict]:
        """Group JID → group metadata (subject, participants, ...)."""
        ...

    @property
    @abstractmethod
    def user(self) -> Optional[Identity]:
        """Own identity, known once the connection has opened."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Best-effort teardown. Safe to call more than once."""
        ...


TransportFactory = Callable[[str, dict], Awaitable[Transport]]
"""(tenant_id, credentials state) → opened transport."""
