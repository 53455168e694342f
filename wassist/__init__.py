"""wassist — multi-tenant WhatsApp assistant."""

__version__ = "0.3.0"
