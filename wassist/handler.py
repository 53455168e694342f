"""Application message handler — consumer of the connection pool.

Called once per de-duplicated message as ``handle(tenant_id, message)``.
Routes mediation replies, applies group addressing rules, asks the
Decision Engine, then answers with a command result, the fixed auto-reply
or an AI response (which may request a schedule or a relay).
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .config import WassistSettings
from .control import BotControl, MessageDecision, ResponseType
from .db.repositories import TenantRepository
from .errors import classify_error
from .llm.provider import FunctionCall, LLMProvider, MediaPart
from .mediation import MediationRegistry
from .scheduler import Scheduler, is_valid_cron
from .whatsapp.messages import (
    AudioContent,
    DocumentContent,
    ImageContent,
    InboundMessage,
    TextContent,
    UnsupportedContent,
    jid_from_phone,
    normalize_jid,
)
from .whatsapp.pool import ConnectionPool

logger = logging.getLogger("wassist.handler")

SELF_TARGETS = {"self", "me", "here", "this chat", "this group", "לי", "לעצמי", "אלי", "פה", "כאן"}

_LEADING_MENTION_RE = re.compile(r"^@\d+\s*")
_SCHEDULE_ARGS_RE = re.compile(r'"([^"]+)"\s+(.*)', re.DOTALL)
_PHONE_RE = re.compile(r"^\d{7,15}$")

# Prompts used when a media message arrives without a caption
_MEDIA_PROMPTS = {
    "audio": "The user sent a voice message. Listen to it and respond to what they said.",
    "image": "The user sent an image. Look at it and respond helpfully.",
    "document": "The user sent a document. Read it and respond helpfully.",
}


def log_text(message: InboundMessage, clean_text: str) -> str:
    """Activity-log representation: the text, or a placeholder for media."""
    content = message.content
    if isinstance(content, AudioContent):
        return "[voice message]"
    if isinstance(content, ImageContent):
        return f"[image] {content.caption}".strip()
    if isinstance(content, DocumentContent):
        return f"[document: {content.file_name}]"
    return clean_text


def normalize_schedule_time(hour, minute=None) -> tuple[int, int]:
    """Turn model-supplied hour/minute into integers.

    Models sometimes pass 14.25 meaning 14:25; the fractional part is read
    as minutes when it makes sense. Raises ValueError when out of range.
    """
    if hour is None:
        raise ValueError("hour is required")
    hour_f = float(hour)
    h = int(hour_f)
    m = float(minute) if minute is not None else 0.0
    if hour_f != h:
        frac = hour_f - h
        if 0 < frac < 1:
            possible = round(frac * 100)
            if possible < 60:
                m = possible
    m = int(m)
    if not (0 <= h <= 23) or not (0 <= m <= 59):
        raise ValueError(f"invalid time {hour}:{minute}")
    return h, m


def build_cron_expression(hour: int, minute: int, days: list[int]) -> str:
    """Cron for the given weekdays (0=Sunday); every day collapses to '*'."""
    unique = sorted(set(int(d) for d in days))
    days_part = "*" if len(unique) == 7 else ",".join(str(d) for d in unique)
    return f"{minute} {hour} * * {days_part}"


def match_group(groups: list[dict], name: str) -> Optional[dict]:
    """Exact (case-insensitive) group name match first, then partial either way."""
    target = name.strip().lower()
    if not target:
        return None
    for g in groups:
        if g["name"].lower() == target:
            return g
    for g in groups:
        gname = g["name"].lower()
        if gname and (target in gname or gname in target):
            return g
    return None


class MessageHandler:
    """Turns one inbound message into at most one response."""

    def __init__(
        self,
        pool: ConnectionPool,
        control: BotControl,
        llm: LLMProvider,
        scheduler: Scheduler,
        mediation: MediationRegistry,
        tenants: TenantRepository,
        settings: WassistSettings,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.pool = pool
        self.control = control
        self.llm = llm
        self.scheduler = scheduler
        self.mediation = mediation
        self.tenants = tenants
        self.settings = settings
        self.tz = ZoneInfo(settings.timezone)
        self._clock = clock or time.monotonic
        self._send_cooldowns: dict[str, float] = {}

        words = "|".join(re.escape(w) for w in settings.trigger_words if w)
        self._trigger_re = re.compile(rf"(?:^|[\s,.!?])(?:{words})(?:[\s,.!?]|$)", re.IGNORECASE) if words else None
        self._trigger_strip_re = re.compile(rf"^(?:{words})[,\s]*", re.IGNORECASE) if words else None

    async def handle(self, tenant_id: str, message: InboundMessage):
        try:
            await self._handle(tenant_id, message)
        except Exception as e:
            logger.error(
                f"[{tenant_id}] Error handling message {message.message_id} in {message.chat_jid}: {e}",
                exc_info=True,
            )
            await self._send_failure(tenant_id, message, e)

    async def _send_failure(self, tenant_id: str, message: InboundMessage, error: Exception):
        try:
            await self.pool.send_reply(
                tenant_id, message.chat_jid,
                classify_error(error, self.settings.failure_message), message,
            )
        except Exception as e:
            logger.error(f"[{tenant_id}] Could not deliver failure reply to {message.chat_jid}: {e}")

    # ═══════════════════════════════════════════════════════════
    # ROUTING
    # ═══════════════════════════════════════════════════════════

    async def _handle(self, tenant_id: str, message: InboundMessage):
        if isinstance(message.content, UnsupportedContent):
            logger.debug(f"[{tenant_id}] Ignoring unsupported message types {message.content.types}")
            return

        if await self._route_mediation_reply(tenant_id, message):
            return

        await self._remember_display_name(tenant_id, message)

        addressed, clean_text = self._addressing(tenant_id, message)
        if not addressed:
            return

        logger.info(
            f"[{tenant_id}] {message.content.kind} from {message.sender_jid} "
            f"in {'group' if message.is_group else 'DM'}: {clean_text[:100]}"
        )

        decision = await self.control.should_respond(tenant_id, message.chat_jid)
        await self.control.log_activity(
            tenant_id,
            message.chat_jid,
            message.sender_jid,
            log_text(message, clean_text),
            message.is_group,
            decision,
        )

        if not decision.should_respond:
            logger.info(f"[{tenant_id}] Not responding: {decision.reason}")
            return

        if isinstance(message.content, TextContent):
            if not clean_text:
                await self.pool.send_reply(tenant_id, message.chat_jid, self.help_text(), message)
                return
            if clean_text.startswith("/"):
                await self._handle_command(tenant_id, message, clean_text)
                return

        if decision.response_type == ResponseType.AUTO_REPLY and decision.auto_reply_message:
            await self.pool.send_reply(tenant_id, message.chat_jid, decision.auto_reply_message, message)
            return

        await self._respond_with_ai(tenant_id, message, clean_text, decision)

    def _addressing(self, tenant_id: str, message: InboundMessage) -> tuple[bool, str]:
        """Whether the bot is being addressed, and the text with the address removed.

        DMs are always addressed. In groups the bot answers a prefix, an
        @mention, a reply to its own message or a trigger word; voice notes
        only when they reply to the bot.
        """
        text = message.text.strip()
        is_reply = self._is_reply_to_bot(tenant_id, message)
        is_mention = self._is_mentioning_bot(tenant_id, message)
        prefix = self.settings.bot_prefix
        has_prefix = bool(prefix) and text.startswith(prefix)
        has_trigger = bool(self._trigger_re and self._trigger_re.search(text))

        if message.is_group:
            if isinstance(message.content, AudioContent):
                if not is_reply:
                    return False, ""
            elif not (has_prefix or is_reply or is_mention or has_trigger):
                return False, ""

        clean = text[len(prefix):].strip() if has_prefix else text
        if message.is_group and is_mention:
            clean = _LEADING_MENTION_RE.sub("", clean).strip()
        if has_trigger and self._trigger_strip_re:
            clean = self._trigger_strip_re.sub("", clean).strip()
        return True, clean

    def _bot_ids(self, tenant_id: str) -> set[str]:
        return {j for j in (self.pool.bot_jid(tenant_id), self.pool.bot_lid(tenant_id)) if j}

    def _is_reply_to_bot(self, tenant_id: str, message: InboundMessage) -> bool:
        if not message.quoted_participant:
            return False
        return normalize_jid(message.quoted_participant) in self._bot_ids(tenant_id)

    def _is_mentioning_bot(self, tenant_id: str, message: InboundMessage) -> bool:
        if not message.mentioned_jids:
            return False
        bots = self._bot_ids(tenant_id)
        return any(normalize_jid(j) in bots for j in message.mentioned_jids)

    async def _remember_display_name(self, tenant_id: str, message: InboundMessage):
        if message.is_group or not message.push_name:
            return
        config = await self.control.chats.get_by_jid(tenant_id, message.chat_jid)
        if config and (not config.display_name or config.display_name == message.chat_jid):
            await self.control.chats.update(tenant_id, message.chat_jid, display_name=message.push_name)
            logger.info(f"[{tenant_id}] Saved display_name \"{message.push_name}\" for {message.chat_jid}")

    # ═══════════════════════════════════════════════════════════
    # MEDIATION
    # ═══════════════════════════════════════════════════════════

    async def _route_mediation_reply(self, tenant_id: str, message: InboundMessage) -> bool:
        """Forward a reply to a relayed message to the other party. True if handled."""
        session = self.mediation.lookup(message.quoted_message_id)
        if session is None:
            return False
        other = session.counterpart(message.chat_jid)
        text = message.text.strip()
        if other is None or not text:
            return False

        other_jid, _ = other
        from_name = message.push_name or session.name_of(message.chat_jid)
        key = await self.pool.send_text_message(
            tenant_id, other_jid, f"↩️ *{from_name}* replied:\n\n{text}"
        )
        if key and key.get("id"):
            self.mediation.extend(key["id"], session)
        logger.info(f"[{tenant_id}] Mediation reply {message.chat_jid} → {other_jid}")
        return True

    # ═══════════════════════════════════════════════════════════
    # AI
    # ═══════════════════════════════════════════════════════════

    async def _system_prompt(self, tenant_id: str, decision: MessageDecision) -> Optional[str]:
        if decision.custom_prompt:
            return decision.custom_prompt
        tenant = await self.tenants.get_by_id(tenant_id)
        if tenant and tenant.system_prompt:
            return tenant.system_prompt
        return None

    async def _respond_with_ai(
        self,
        tenant_id: str,
        message: InboundMessage,
        clean_text: str,
        decision: MessageDecision,
    ):
        content = message.content
        media = None
        if isinstance(content, (AudioContent, ImageContent, DocumentContent)):
            data = await self.pool.download_media(tenant_id, content.descriptor, content.kind)
            media = MediaPart(data=data, mime_type=content.mimetype)
            if not clean_text:
                clean_text = _MEDIA_PROMPTS[content.kind]

        text_for_ai = clean_text
        if message.is_group and message.push_name:
            text_for_ai = f"[{message.push_name}]: {clean_text}"

        response = await self.llm.generate_response(
            f"{tenant_id}:{message.chat_jid}",
            text_for_ai,
            system_prompt=await self._system_prompt(tenant_id, decision),
            media=media,
            allow_tools=media is None,
        )

        if response.is_function_call:
            await self._handle_function_call(tenant_id, message, response.function_call)
            return

        await self.pool.send_reply(tenant_id, message.chat_jid, response.text, message)

    async def _handle_function_call(self, tenant_id: str, message: InboundMessage, call: FunctionCall):
        if call.name == "create_schedule":
            await self._handle_schedule_call(tenant_id, message, call.args)
        elif call.name == "send_message":
            await self._handle_send_message_call(tenant_id, message, call.args)
        else:
            logger.warning(f"[{tenant_id}] Unknown function call: {call.name}")

    def _local_datetime(self, date_str: str, hour: int, minute: int) -> datetime:
        """YYYY-MM-DD + time in the configured zone, as UTC."""
        day = datetime.strptime(date_str, "%Y-%m-%d")
        local = day.replace(hour=hour, minute=minute, tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    async def _resolve_schedule_target(self, tenant_id: str, target_name: str, current_jid: str) -> str:
        name = (target_name or "").strip()
        if not name or name.lower() in SELF_TARGETS:
            return current_jid
        try:
            group = match_group(await self.pool.get_groups(tenant_id), name)
        except Exception as e:
            logger.warning(f"[{tenant_id}] Error searching groups for target: {e}")
            group = None
        if group:
            logger.info(f"[{tenant_id}] Resolved target \"{name}\" to group {group['name']} ({group['id']})")
            return group["id"]
        logger.info(f"[{tenant_id}] Could not find target \"{name}\", using current chat {current_jid}")
        return current_jid

    async def _handle_schedule_call(self, tenant_id: str, message: InboundMessage, args: dict):
        jid = message.chat_jid
        try:
            hour, minute = normalize_schedule_time(args.get("hour"), args.get("minute"))
        except (TypeError, ValueError):
            await self.pool.send_reply(tenant_id, jid, "❌ Invalid time. Try a format like 14:30 or 9am.", message)
            return

        target = await self._resolve_schedule_target(tenant_id, args.get("targetName", ""), jid)
        payload = args.get("message") or ""
        use_ai = bool(args.get("useAi", False))
        time_str = f"{hour:02d}:{minute:02d}"

        days = args.get("days") or []
        if days:
            cron = build_cron_expression(hour, minute, days)
            job = await self.scheduler.schedule_recurring(tenant_id, target, payload, cron, use_ai)
            when = f"'{cron}' ({time_str})"
        elif args.get("oneTimeDate"):
            try:
                when_utc = self._local_datetime(args["oneTimeDate"], hour, minute)
                job = await self.scheduler.schedule_once(tenant_id, target, payload, when_utc, use_ai)
            except ValueError:
                await self.pool.send_reply(
                    tenant_id, jid, "❌ That date has already passed or is invalid. Try a future date.", message
                )
                return
            when = f"{args['oneTimeDate']} at {time_str}"
        else:
            await self.pool.send_reply(
                tenant_id, jid, "❌ I couldn't work out when to send it. Mention days or a date.", message
            )
            return

        where = "here" if target == jid else target
        kind = "🤖 AI (fresh content each time)" if use_ai else "📝 Fixed text"
        await self.pool.send_reply(
            tenant_id, jid,
            f"✅ *Scheduled!*\n\n📍 To: {where}\n⏰ When: {when}\n{kind}\n🆔 {job.id}",
            message,
        )

    async def _resolve_message_target(self, tenant_id: str, target_name: str) -> Optional[tuple[str, str]]:
        """(jid, display name) for a phone number or group name."""
        name = (target_name or "").strip()
        digits = re.sub(r"[-\s()+]", "", name)
        if _PHONE_RE.match(digits):
            return jid_from_phone(digits), name
        try:
            group = match_group(await self.pool.get_groups(tenant_id), name)
        except Exception as e:
            logger.warning(f"[{tenant_id}] Error searching groups for relay target: {e}")
            return None
        if group:
            return group["id"], group["name"]
        return None

    def _prune_cooldowns(self, now: float) -> int:
        cooldown = self.settings.send_cooldown
        expired = [s for s, last in self._send_cooldowns.items() if now - last >= cooldown]
        for sender in expired:
            del self._send_cooldowns[sender]
        return len(expired)

    async def _handle_send_message_call(self, tenant_id: str, message: InboundMessage, args: dict):
        jid = message.chat_jid
        sender = message.sender_jid

        now = self._clock()
        cooldown = self.settings.send_cooldown
        self._prune_cooldowns(now)
        last = self._send_cooldowns.get(sender)
        if last is not None and now - last < cooldown:
            seconds_left = int(cooldown - (now - last) + 0.999)
            await self.pool.send_reply(
                tenant_id, jid, f"⏳ Please wait {seconds_left} seconds before sending another message.", message
            )
            return

        target = await self._resolve_message_target(tenant_id, args.get("targetName", ""))
        if target is None:
            await self.pool.send_reply(
                tenant_id, jid,
                f"❌ I couldn't find \"{args.get('targetName', '')}\". Check the group name or use a phone number.",
                message,
            )
            return
        target_jid, target_name = target

        content = args.get("messageContent") or ""
        if args.get("generateContent"):
            content = await self.llm.generate_text(
                f"Write a short, natural WhatsApp message about: {content}. "
                f"Reply with the message only, no introduction."
            )

        sender_name = message.push_name
        if not sender_name:
            config = await self.control.chats.get_by_jid(tenant_id, jid)
            sender_name = (config.display_name if config else None) or "Someone"
        outgoing = f"📩 *{sender_name}* sent you a message:\n\n{content}"

        timing = args.get("timing")
        if timing and timing != "now" and args.get("scheduledDate") and args.get("scheduledHour") is not None:
            try:
                hour, minute = normalize_schedule_time(args["scheduledHour"], args.get("scheduledMinute"))
                when_utc = self._local_datetime(args["scheduledDate"], hour, minute)
                await self.scheduler.schedule_once(tenant_id, target_jid, outgoing, when_utc)
            except ValueError:
                await self.pool.send_reply(
                    tenant_id, jid, "❌ That time has already passed or is invalid. Try a future time.", message
                )
                return
            await self.pool.send_reply(
                tenant_id, jid,
                f"✅ *Message scheduled!*\n\n📍 To: {target_name}\n⏰ When: "
                f"{args['scheduledDate']} at {hour:02d}:{minute:02d}",
                message,
            )
        else:
            key = await self.pool.send_text_message(tenant_id, target_jid, outgoing)
            if key and key.get("id"):
                self.mediation.open(key["id"], jid, sender_name, target_jid, target_name)
            await self.pool.send_reply(tenant_id, jid, f"✅ Message sent to {target_name}!", message)

        self._send_cooldowns[sender] = now

    # ═══════════════════════════════════════════════════════════
    # COMMANDS
    # ═══════════════════════════════════════════════════════════

    def help_text(self) -> str:
        prefix = self.settings.bot_prefix
        return (
            "*Assistant - Help*\n\n"
            "*Chat with AI:*\n"
            f"{prefix} <your message>\n"
            "Send a voice note, image or document and I'll look at it.\n\n"
            "*Commands:*\n"
            "/help - Show this help message\n"
            "/clear - Clear conversation history\n"
            "/groups - List all groups with IDs\n"
            "/schedule <jid> \"<cron>\" <message> - Schedule a message\n"
            "/scheduled - List scheduled messages\n"
            "/cancel <id> - Cancel a scheduled message"
        )

    async def _handle_command(self, tenant_id: str, message: InboundMessage, command: str):
        jid = message.chat_jid
        cmd, _, rest = command[1:].partition(" ")
        cmd = cmd.lower()
        rest = rest.strip()

        if cmd == "help":
            reply = self.help_text()
        elif cmd == "clear":
            self.llm.clear_history(f"{tenant_id}:{jid}")
            reply = "Conversation history cleared."
        elif cmd == "groups":
            reply = await self._groups_text(tenant_id)
        elif cmd == "schedule":
            reply = await self._schedule_command(tenant_id, rest)
        elif cmd == "scheduled":
            reply = await self._scheduled_text(tenant_id)
        elif cmd == "cancel":
            if not rest:
                reply = "Usage: /cancel <id>"
            elif await self.scheduler.cancel(rest.split()[0], tenant_id):
                reply = f"Scheduled message {rest.split()[0]} cancelled."
            else:
                reply = f"No active scheduled message with ID {rest.split()[0]}."
        else:
            reply = "Unknown command. Type /help for available commands."

        await self.pool.send_reply(tenant_id, jid, reply, message)

    async def _groups_text(self, tenant_id: str) -> str:
        groups = await self.pool.get_groups(tenant_id)
        if not groups:
            return "No groups found."
        lines = [f"{i}. {g['name']}\n   ID: {g['id']}" for i, g in enumerate(groups, 1)]
        return "*Your Groups:*\n\n" + "\n\n".join(lines)

    async def _schedule_command(self, tenant_id: str, rest: str) -> str:
        usage = (
            "*Schedule Message Usage:*\n\n"
            "/schedule <jid> \"<cron>\" <message>\n\n"
            "Example:\n/schedule 123456789@g.us \"0 9 * * *\" Good morning!\n\n"
            "Cron format: minute hour day month weekday"
        )
        target, _, remainder = rest.partition(" ")
        if not target or not remainder.strip():
            return usage
        match = _SCHEDULE_ARGS_RE.match(remainder.strip())
        if not match or not match.group(2).strip():
            return "Invalid format. Put cron expression in quotes: \"0 9 * * *\""
        cron, text = match.group(1), match.group(2).strip()
        if not is_valid_cron(cron):
            return f"Error scheduling message: invalid cron expression '{cron}'"
        job = await self.scheduler.schedule_recurring(tenant_id, target, text, cron)
        return f"Message scheduled!\nID: {job.id}\nTarget: {target}\nCron: {cron}\nMessage: {text}"

    async def _scheduled_text(self, tenant_id: str) -> str:
        jobs = await self.scheduler.list_active(tenant_id)
        if not jobs:
            return "No scheduled messages."
        lines = []
        for i, job in enumerate(jobs, 1):
            when = job.cron_expression if not job.one_time else (
                job.scheduled_at.isoformat() if job.scheduled_at else "one-time"
            )
            preview = job.message[:50] + ("..." if len(job.message) > 50 else "")
            label = "Prompt" if job.use_ai else "Message"
            lines.append(
                f"{i}. {'[AI] ' if job.use_ai else ''}ID: {job.id}\n"
                f"   To: {job.jid}\n   When: {when}\n   {label}: {preview}"
            )
        return "*Scheduled Messages:*\n\n" + "\n\n".join(lines)
