"""wassist — Main entry point."""

import asyncio
import logging
import os
import signal
from typing import Optional

from .config import WassistSettings, load_settings
from .control import BotControl
from .credentials import CredentialStore
from .db import (
    ActivityLogRepository,
    BotSettingsRepository,
    ChatConfigRepository,
    Database,
    ScheduledJob,
    ScheduleRepository,
    TenantRepository,
)
from .handler import MessageHandler
from .llm.gemini import GeminiProvider
from .llm.provider import LLMProvider
from .mediation import MediationRegistry
from .scheduler import Scheduler
from .transport.bridge import bridge_transport_factory
from .whatsapp.pool import ConnectionPool

_log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_log_file = os.path.expanduser("~/wassist.log")

logger = logging.getLogger("wassist")


def setup_logging(debug: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=_log_format,
        handlers=[
            logging.StreamHandler(),                          # stderr (console)
            logging.FileHandler(_log_file, encoding="utf-8"), # ~/wassist.log
        ],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class WassistApp:
    """Every long-lived component, constructed once and wired explicitly."""

    def __init__(self, settings: WassistSettings, db: Database, llm: LLMProvider):
        self.settings = settings
        self.db = db
        self.llm = llm

        self.tenants = TenantRepository(db)
        self.chats = ChatConfigRepository(db)
        self.bot_settings = BotSettingsRepository(db)
        self.activity = ActivityLogRepository(db)
        self.schedules = ScheduleRepository(db)
        self.credentials = CredentialStore(settings.auth_dir)

        self.pool = ConnectionPool(
            transport_factory=bridge_transport_factory(settings.bridge_command, settings.auth_dir),
            credentials=self.credentials,
            tenants=self.tenants,
            reconnect_delay=settings.reconnect_delay,
            dedup_capacity=settings.dedup_capacity,
            dedup_window=settings.dedup_window,
            handler_timeout=settings.handler_timeout,
            on_connected=self.on_connected,
            on_logged_out=self.on_logged_out,
        )
        self.control = BotControl(self.bot_settings, self.chats, self.activity, settings.timezone)
        self.mediation = MediationRegistry(ttl=settings.mediation_ttl)
        self.scheduler = Scheduler(
            self.schedules,
            on_fire=self.execute_job,
            tz=settings.timezone,
            interval=settings.scheduler_interval,
        )
        self.handler = MessageHandler(
            pool=self.pool,
            control=self.control,
            llm=self.llm,
            scheduler=self.scheduler,
            mediation=self.mediation,
            tenants=self.tenants,
            settings=settings,
        )
        self.pool.on_message(self.handler.handle)

    @classmethod
    def from_settings(cls, settings: WassistSettings) -> "WassistApp":
        db = Database(settings.database_url)
        llm = GeminiProvider(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_model,
            system_prompt=settings.system_prompt,
            history_turns=settings.history_turns,
            max_conversations=settings.history_conversations,
        )
        return cls(settings, db, llm)

    # ── Callbacks ─────────────────────────────────────────────

    async def execute_job(self, job: ScheduledJob):
        """Scheduler callback: generate if asked, then send. Send errors propagate."""
        text = job.message
        if job.use_ai:
            text = await self.llm.generate_text(job.message)
        await self.pool.send_text_message(job.tenant_id, job.jid, text)

    async def on_connected(self, tenant_id: str):
        """Refresh display names of whitelisted groups from the live roster."""
        try:
            groups = {g["id"]: g["name"] for g in await self.pool.get_groups(tenant_id)}
            updated = 0
            for config in await self.chats.get_all(tenant_id):
                name = groups.get(config.jid)
                if config.is_group and name and name != config.display_name:
                    await self.chats.update(tenant_id, config.jid, display_name=name)
                    updated += 1
            if updated:
                logger.info(f"[{tenant_id}] Synced {updated} group name(s)")
        except Exception as e:
            logger.warning(f"[{tenant_id}] Group name sync failed: {e}")

    async def on_logged_out(self, tenant_id: str):
        """Stored credentials are useless after a logout; pairing starts over."""
        await self.credentials.clear(tenant_id)
        logger.error(f"[{tenant_id}] Credentials cleared. Re-pair with `wassist start` to reconnect.")

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        await self.db.connect()
        await self.db.init_schema()
        await self.tenants.ensure(self.settings.default_tenant, "Default")

        connected = await self.pool.connect_all_active()
        if self.settings.default_tenant not in connected:
            try:
                await self.pool.connect(self.settings.default_tenant)
            except Exception as e:
                logger.error(f"[{self.settings.default_tenant}] Failed to connect: {e}", exc_info=True)

        await self.scheduler.restore()
        await self.scheduler.start()
        logger.info("Scheduler active.")

    async def stop(self):
        await self.scheduler.stop()
        await self.pool.disconnect_all()
        await self.llm.close()
        await self.db.close()


async def run(settings: Optional[WassistSettings] = None):
    """Main run loop."""
    settings = settings or load_settings()
    app = WassistApp.from_settings(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows
            pass

    try:
        await app.start()
        logger.info("wassist is running. Press Ctrl+C to stop.")
        await stop.wait()
        logger.info("Shutting down...")
    except Exception as e:
        logger.critical(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
    finally:
        await app.stop()


def main(debug: bool = False):
    """Entry point."""
    setup_logging(debug)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
