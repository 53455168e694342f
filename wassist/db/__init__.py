"""Persistence: asyncpg pool and repositories."""

from .connection import Database
from .repositories import (
    ActivityLogRepository,
    BotSettingsRepository,
    ChatConfig,
    ChatConfigRepository,
    ScheduledJob,
    ScheduleRepository,
    Tenant,
    TenantRepository,
)

__all__ = [
    "ActivityLogRepository",
    "BotSettingsRepository",
    "ChatConfig",
    "ChatConfigRepository",
    "Database",
    "ScheduleRepository",
    "ScheduledJob",
    "Tenant",
    "TenantRepository",
]
