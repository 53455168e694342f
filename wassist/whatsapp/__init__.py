"""WhatsApp connection layer: sessions, dedup and dispatch."""

from .dedup import DeduplicationEngine, DropReason
from .dispatch import MessagePipeline
from .messages import InboundMessage, normalize_message
from .pool import ConnectionPool
from .supervisor import ConnectionSupervisor, Epoch, SessionStatus

__all__ = [
    "ConnectionPool",
    "ConnectionSupervisor",
    "DeduplicationEngine",
    "DropReason",
    "Epoch",
    "InboundMessage",
    "MessagePipeline",
    "SessionStatus",
    "normalize_message",
]
