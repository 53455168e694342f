"""Decision Engine — whether and how to answer a de-duplicated message.

decide() is pure: given the global switch, the chat's whitelist entry and
whether "now" falls in the chat's active hours, it returns the same
decision and reason every time. BotControl does the lookups around it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from .db.repositories import (
    ActivityLogRepository,
    BotSettingsRepository,
    ChatConfig,
    ChatConfigRepository,
)

logger = logging.getLogger("wassist.control")


class ResponseType(str, Enum):
    AI = "ai"
    AUTO_REPLY = "auto_reply"
    NONE = "none"


# Activity log response_status values
STATUS_RESPONDED = "responded"
STATUS_AUTO_REPLY = "auto_reply"
STATUS_IGNORED = "ignored"


@dataclass(frozen=True)
class MessageDecision:
    response_type: ResponseType
    reason: str
    custom_prompt: Optional[str] = None
    auto_reply_message: Optional[str] = None

    @property
    def should_respond(self) -> bool:
        return self.response_type != ResponseType.NONE

    @property
    def log_status(self) -> str:
        if self.response_type == ResponseType.AI:
            return STATUS_RESPONDED
        if self.response_type == ResponseType.AUTO_REPLY:
            return STATUS_AUTO_REPLY
        return STATUS_IGNORED


def _parse_days(days: str) -> set[int]:
    result = set()
    for part in (days or "").split(","):
        part = part.strip()
        if part.isdigit():
            result.add(int(part))
    return result


def is_within_schedule(config: ChatConfig, now: datetime) -> bool:
    """True if scheduling is off for the chat or ``now`` is inside its window.

    Days use Sunday=0 .. Saturday=6; hours are [start, end).
    """
    if not config.schedule_enabled:
        return True
    day = (now.weekday() + 1) % 7
    if day not in _parse_days(config.schedule_days):
        return False
    return config.schedule_start_hour <= now.hour < config.schedule_end_hour


def decide(bot_enabled: bool, config: Optional[ChatConfig], within_schedule: bool) -> MessageDecision:
    """First match wins."""
    if not bot_enabled:
        return MessageDecision(ResponseType.NONE, "Bot is disabled globally")
    if config is None:
        return MessageDecision(ResponseType.NONE, "Chat not in whitelist")
    if not config.enabled:
        return MessageDecision(ResponseType.NONE, "Chat is disabled")
    if not within_schedule:
        return MessageDecision(ResponseType.NONE, "Outside scheduled hours")
    if config.ai_enabled:
        return MessageDecision(
            ResponseType.AI,
            "AI mode enabled for this chat",
            custom_prompt=config.custom_prompt or None,
        )
    if config.auto_reply_message:
        return MessageDecision(
            ResponseType.AUTO_REPLY,
            "Auto-reply message configured",
            auto_reply_message=config.auto_reply_message,
        )
    return MessageDecision(ResponseType.NONE, "AI mode off, no auto-reply configured")


class BotControl:
    """Decision lookups, activity logging and whitelist administration."""

    def __init__(
        self,
        settings: BotSettingsRepository,
        chats: ChatConfigRepository,
        activity: ActivityLogRepository,
        timezone: str = "UTC",
    ):
        self.settings = settings
        self.chats = chats
        self.activity = activity
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    async def should_respond(self, tenant_id: str, jid: str) -> MessageDecision:
        if not await self.settings.is_bot_enabled():
            return decide(False, None, True)
        config = await self.chats.get_by_jid(tenant_id, jid)
        within = is_within_schedule(config, self.now()) if config else True
        return decide(True, config, within)

    async def log_activity(
        self,
        tenant_id: str,
        jid: str,
        sender: Optional[str],
        message: str,
        is_group: bool,
        decision: MessageDecision,
    ):
        """Record the decision, unless logging of all messages is switched off."""
        if not await self.settings.should_log_all_messages():
            return
        await self.activity.log(
            tenant_id,
            jid,
            message,
            sender=sender,
            is_group=is_group,
            response_status=decision.log_status,
            reason=decision.reason,
        )

    # ── Administration ────────────────────────────────────────

    async def is_bot_enabled(self) -> bool:
        return await self.settings.is_bot_enabled()

    async def set_bot_enabled(self, enabled: bool):
        await self.settings.set_bot_enabled(enabled)
        logger.info(f"Bot {'enabled' if enabled else 'disabled'} globally")

    async def add_chat(self, config: ChatConfig) -> ChatConfig:
        stored = await self.chats.create(config)
        logger.info(f"[{config.tenant_id}] Chat added to whitelist: {config.jid}")
        return stored

    async def remove_chat(self, tenant_id: str, jid: str) -> bool:
        removed = await self.chats.delete(tenant_id, jid)
        if removed:
            logger.info(f"[{tenant_id}] Chat removed from whitelist: {jid}")
        return removed

    async def toggle_chat(self, tenant_id: str, jid: str, enabled: bool):
        await self.chats.set_enabled(tenant_id, jid, enabled)
        logger.info(f"[{tenant_id}] Chat {jid} {'enabled' if enabled else 'disabled'}")
