"""Repositories over the wassist tables.

Each repository takes the injected Database. Rows come back as small
dataclasses so the decision and scheduling code can be tested without a
database.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Optional

from .connection import Database

logger = logging.getLogger("wassist.db.repositories")

DEFAULT_TENANT_ID = "default"


def _from_row(cls, row) -> Any:
    if row is None:
        return None
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in dict(row).items() if k in names})


def _update_clause(updates: dict, allowed: tuple, start: int) -> tuple[str, list]:
    """Build "a = $n, b = $n+1" for the allowed, non-None fields."""
    parts, values = [], []
    for name in allowed:
        if name in updates and updates[name] is not None:
            values.append(updates[name])
            parts.append(f"{name} = ${start + len(values) - 1}")
    return ", ".join(parts), values


# ============================================================
# TENANTS
# ============================================================

@dataclass
class Tenant:
    id: str
    name: str
    phone: Optional[str] = None
    status: str = "pending"
    system_prompt: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TenantRepository:
    """Persisted tenant registry."""

    _UPDATABLE = ("name", "phone", "status", "system_prompt")

    def __init__(self, db: Database):
        self.db = db

    async def get_all(self) -> list[Tenant]:
        async with self.db.connection() as conn:
            rows = await conn.fetch("SELECT * FROM tenants ORDER BY created_at DESC")
            return [_from_row(Tenant, r) for r in rows]

    async def get_by_id(self, tenant_id: str) -> Optional[Tenant]:
        async with self.db.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM tenants WHERE id = $1", tenant_id)
            return _from_row(Tenant, row)

    async def create(
        self,
        tenant_id: str,
        name: str,
        phone: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Tenant:
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO tenants (id, name, phone, system_prompt)
                VALUES ($1, $2, $3, $4)
                RETURNING *
            """, tenant_id, name, phone, system_prompt)
            return _from_row(Tenant, row)

    async def ensure(self, tenant_id: str, name: str) -> Tenant:
        """Create the tenant if missing; return the stored row."""
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO tenants (id, name) VALUES ($1, $2)
                ON CONFLICT (id) DO NOTHING
            """, tenant_id, name)
        return await self.get_by_id(tenant_id)

    async def update(self, tenant_id: str, **updates) -> Optional[Tenant]:
        clause, values = _update_clause(updates, self._UPDATABLE, start=2)
        if not clause:
            return await self.get_by_id(tenant_id)
        async with self.db.connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE tenants SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
                tenant_id, *values,
            )
            return _from_row(Tenant, row)

    async def set_status(self, tenant_id: str, status: str) -> None:
        async with self.db.connection() as conn:
            await conn.execute(
                "UPDATE tenants SET status = $2, updated_at = NOW() WHERE id = $1",
                tenant_id, status,
            )


# ============================================================
# CHAT CONFIGS (whitelist)
# ============================================================

@dataclass
class ChatConfig:
    jid: str
    tenant_id: str = DEFAULT_TENANT_ID
    display_name: Optional[str] = None
    is_group: bool = False
    enabled: bool = False
    ai_mode: str = "off"
    custom_prompt: Optional[str] = None
    auto_reply_message: Optional[str] = None
    schedule_enabled: bool = False
    schedule_start_hour: int = 0
    schedule_end_hour: int = 24
    schedule_days: str = "0,1,2,3,4,5,6"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def ai_enabled(self) -> bool:
        return self.ai_mode == "on"


class ChatConfigRepository:
    """Per-tenant whitelist of chats the bot may answer in."""

    _UPDATABLE = (
        "display_name", "is_group", "enabled", "ai_mode", "custom_prompt",
        "auto_reply_message", "schedule_enabled", "schedule_start_hour",
        "schedule_end_hour", "schedule_days",
    )

    def __init__(self, db: Database):
        self.db = db

    async def get_all(self, tenant_id: str) -> list[ChatConfig]:
        async with self.db.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM chat_configs WHERE tenant_id = $1 ORDER BY display_name NULLS LAST, jid",
                tenant_id,
            )
            return [_from_row(ChatConfig, r) for r in rows]

    async def get_by_jid(self, tenant_id: str, jid: str) -> Optional[ChatConfig]:
        async with self.db.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM chat_configs WHERE tenant_id = $1 AND jid = $2",
                tenant_id, jid,
            )
            return _from_row(ChatConfig, row)

    async def create(self, config: ChatConfig) -> ChatConfig:
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO chat_configs (
                    tenant_id, jid, display_name, is_group, enabled, ai_mode,
                    custom_prompt, auto_reply_message, schedule_enabled,
                    schedule_start_hour, schedule_end_hour, schedule_days
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (tenant_id, jid) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    enabled = EXCLUDED.enabled,
                    ai_mode = EXCLUDED.ai_mode,
                    custom_prompt = EXCLUDED.custom_prompt,
                    auto_reply_message = EXCLUDED.auto_reply_message,
                    updated_at = NOW()
                RETURNING *
            """,
                config.tenant_id, config.jid, config.display_name, config.is_group,
                config.enabled, config.ai_mode, config.custom_prompt,
                config.auto_reply_message, config.schedule_enabled,
                config.schedule_start_hour, config.schedule_end_hour, config.schedule_days,
            )
            return _from_row(ChatConfig, row)

    async def update(self, tenant_id: str, jid: str, **updates) -> Optional[ChatConfig]:
        clause, values = _update_clause(updates, self._UPDATABLE, start=3)
        if not clause:
            return await self.get_by_jid(tenant_id, jid)
        async with self.db.connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE chat_configs SET {clause}, updated_at = NOW() "
                f"WHERE tenant_id = $1 AND jid = $2 RETURNING *",
                tenant_id, jid, *values,
            )
            return _from_row(ChatConfig, row)

    async def set_enabled(self, tenant_id: str, jid: str, enabled: bool) -> None:
        await self.update(tenant_id, jid, enabled=enabled)

    async def delete(self, tenant_id: str, jid: str) -> bool:
        async with self.db.connection() as conn:
            result = await conn.execute(
                "DELETE FROM chat_configs WHERE tenant_id = $1 AND jid = $2",
                tenant_id, jid,
            )
            return result != "DELETE 0"


# ============================================================
# BOT SETTINGS (global)
# ============================================================

class BotSettingsRepository:
    """Process-wide key/value switches."""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, key: str) -> Optional[str]:
        async with self.db.connection() as conn:
            return await conn.fetchval("SELECT value FROM bot_settings WHERE key = $1", key)

    async def set(self, key: str, value: str):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO bot_settings (key, value) VALUES ($1, $2)
                ON CONFLICT (key) DO UPDATE SET value = $2, updated_at = NOW()
            """, key, value)

    async def is_bot_enabled(self) -> bool:
        return (await self.get("bot_enabled")) == "true"

    async def set_bot_enabled(self, enabled: bool):
        await self.set("bot_enabled", "true" if enabled else "false")

    async def should_log_all_messages(self) -> bool:
        return (await self.get("log_all_messages")) != "false"


# ============================================================
# ACTIVITY LOG
# ============================================================

class ActivityLogRepository:
    """Record of every inbound message the decision engine saw."""

    def __init__(self, db: Database):
        self.db = db

    async def log(
        self,
        tenant_id: str,
        jid: str,
        message: str,
        sender: Optional[str] = None,
        is_group: bool = False,
        response_status: str = "ignored",
        reason: Optional[str] = None,
    ):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO activity_log (tenant_id, jid, sender, message, is_group, response_status, reason)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, tenant_id, jid, sender, message, is_group, response_status, reason)

    async def get_stats(self, tenant_id: str) -> dict[str, int]:
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE response_status = 'responded') AS responded,
                    COUNT(*) FILTER (WHERE response_status = 'ignored') AS ignored,
                    COUNT(*) FILTER (WHERE response_status = 'auto_reply') AS auto_reply,
                    COUNT(*) FILTER (WHERE timestamp::date = CURRENT_DATE) AS today_total,
                    COUNT(*) FILTER (
                        WHERE timestamp::date = CURRENT_DATE
                          AND response_status IN ('responded', 'auto_reply')
                    ) AS today_responded
                FROM activity_log
                WHERE tenant_id = $1
            """, tenant_id)
            return dict(row)

    async def clear_old(self, days_to_keep: int = 30) -> int:
        """Delete entries older than days_to_keep. Returns the number removed."""
        async with self.db.connection() as conn:
            result = await conn.execute(
                "DELETE FROM activity_log WHERE timestamp < NOW() - make_interval(days => $1)",
                days_to_keep,
            )
            return int(result.split()[-1])


# ============================================================
# SCHEDULED MESSAGES
# ============================================================

@dataclass
class ScheduledJob:
    id: str
    tenant_id: str
    jid: str
    message: str
    cron_expression: Optional[str] = None
    one_time: bool = False
    scheduled_at: Optional[datetime] = None
    use_ai: bool = False
    active: bool = True
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    run_count: int = 0
    created_at: Optional[datetime] = None


class ScheduleRepository:
    """Persisted scheduled messages."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO scheduled_messages
                    (id, tenant_id, jid, message, cron_expression, one_time, scheduled_at, use_ai, next_run)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
            """,
                job.id, job.tenant_id, job.jid, job.message, job.cron_expression,
                job.one_time, job.scheduled_at, job.use_ai, job.next_run,
            )
            return _from_row(ScheduledJob, row)

    async def find_all_active(self, tenant_id: Optional[str] = None) -> list[ScheduledJob]:
        query = "SELECT * FROM scheduled_messages WHERE active = true"
        args = []
        if tenant_id is not None:
            query += " AND tenant_id = $1"
            args.append(tenant_id)
        query += " ORDER BY next_run NULLS LAST, created_at"
        async with self.db.connection() as conn:
            rows = await conn.fetch(query, *args)
            return [_from_row(ScheduledJob, r) for r in rows]

    async def find_due(self, now: datetime) -> list[ScheduledJob]:
        async with self.db.connection() as conn:
            rows = await conn.fetch("""
                SELECT * FROM scheduled_messages
                WHERE active = true AND next_run <= $1
                ORDER BY next_run ASC
            """, now)
            return [_from_row(ScheduledJob, r) for r in rows]

    async def mark_inactive(self, job_id: str, tenant_id: Optional[str] = None) -> bool:
        async with self.db.connection() as conn:
            if tenant_id is None:
                result = await conn.execute(
                    "UPDATE scheduled_messages SET active = false WHERE id = $1 AND active = true",
                    job_id,
                )
            else:
                result = await conn.execute(
                    "UPDATE scheduled_messages SET active = false "
                    "WHERE id = $1 AND tenant_id = $2 AND active = true",
                    job_id, tenant_id,
                )
            return result != "UPDATE 0"

    async def set_next_run(self, job_id: str, next_run: Optional[datetime], ran_at: Optional[datetime] = None):
        async with self.db.connection() as conn:
            if ran_at is None:
                await conn.execute(
                    "UPDATE scheduled_messages SET next_run = $2 WHERE id = $1",
                    job_id, next_run,
                )
            else:
                await conn.execute("""
                    UPDATE scheduled_messages
                    SET next_run = $2, last_run = $3, run_count = run_count + 1
                    WHERE id = $1
                """, job_id, next_run, ran_at)
