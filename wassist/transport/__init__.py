"""Chat transports."""

from .base import DisconnectReason, Identity, Transport, TransportFactory

__all__ = ["DisconnectReason", "Identity", "Transport", "TransportFactory"]
