"""Scheduler — Background message scheduler with DB persistence.

Runs as an asyncio background task next to the connection pool. Checks for
due jobs every ``interval`` seconds and hands each one to the execution
callback (which generates content if needed and sends it).

Job kinds:
- recurring: cron expression, evaluated in the configured timezone
- one-shot:  a single UTC instant; marked inactive after its one attempt
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from .db.repositories import ScheduledJob, ScheduleRepository

logger = logging.getLogger("wassist.scheduler")

JobCallback = Callable[[ScheduledJob], Awaitable[None]]


def is_valid_cron(cron_expr: str) -> bool:
    return bool(cron_expr) and croniter.is_valid(cron_expr)


def _calculate_next_run(
    cron_expr: str,
    from_time: Optional[datetime] = None,
    tz: str = "UTC",
) -> Optional[datetime]:
    """Next firing of a cron expression after from_time.

    The expression is read as wall-clock time in ``tz``; the result is a
    timezone-aware UTC datetime, or None if the expression is invalid.
    """
    now = from_time or datetime.now(timezone.utc)
    try:
        local = now.astimezone(ZoneInfo(tz))
        nxt = croniter(cron_expr, local).get_next(datetime)
    except Exception as e:
        logger.error(f"Invalid cron expression '{cron_expr}': {e}")
        return None
    return nxt.astimezone(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex[:8]


class Scheduler:
    """Background job scheduler.

    Usage:
        scheduler = Scheduler(repo, on_fire=send_job)
        await scheduler.restore()
        await scheduler.start()
        # ... later ...
        await scheduler.stop()
    """

    def __init__(
        self,
        repo: ScheduleRepository,
        on_fire: JobCallback,
        tz: str = "UTC",
        interval: float = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self._on_fire = on_fire
        self.tz = tz
        self.interval = interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def now(self) -> datetime:
        return self._clock()

    # ── Scheduling API ────────────────────────────────────────

    async def schedule_recurring(
        self,
        tenant_id: str,
        jid: str,
        payload: str,
        cron_expr: str,
        use_ai: bool = False,
    ) -> ScheduledJob:
        """Raises ValueError for an invalid cron expression."""
        if not is_valid_cron(cron_expr):
            raise ValueError(f"Invalid cron expression: {cron_expr}")
        next_run = _calculate_next_run(cron_expr, self.now(), self.tz)
        job = await self.repo.create(ScheduledJob(
            id=new_job_id(),
            tenant_id=tenant_id,
            jid=jid,
            message=payload,
            cron_expression=cron_expr,
            one_time=False,
            use_ai=use_ai,
            next_run=next_run,
        ))
        logger.info(f"[{tenant_id}] Scheduled recurring job {job.id} for {jid}: '{cron_expr}'")
        return job

    async def schedule_once(
        self,
        tenant_id: str,
        jid: str,
        payload: str,
        when_utc: datetime,
        use_ai: bool = False,
    ) -> ScheduledJob:
        """Raises ValueError if ``when_utc`` is not in the future."""
        if when_utc.tzinfo is None:
            when_utc = when_utc.replace(tzinfo=timezone.utc)
        if when_utc <= self.now():
            raise ValueError("Scheduled time is in the past")
        job = await self.repo.create(ScheduledJob(
            id=new_job_id(),
            tenant_id=tenant_id,
            jid=jid,
            message=payload,
            one_time=True,
            scheduled_at=when_utc,
            use_ai=use_ai,
            next_run=when_utc,
        ))
        logger.info(f"[{tenant_id}] Scheduled one-time job {job.id} for {jid} at {when_utc.isoformat()}")
        return job

    async def cancel(self, job_id: str, tenant_id: Optional[str] = None) -> bool:
        """Deactivate a job. With tenant_id, only that tenant's job is touched."""
        cancelled = await self.repo.mark_inactive(job_id, tenant_id)
        if cancelled:
            logger.info(f"Cancelled scheduled job {job_id}")
        return cancelled

    async def list_active(self, tenant_id: Optional[str] = None) -> list[ScheduledJob]:
        return await self.repo.find_all_active(tenant_id)

    async def restore(self) -> int:
        """Reconcile persisted jobs at startup.

        One-shots whose time passed while we were down are retired; recurring
        jobs get their next run recomputed from now. Returns the number of
        jobs left active.
        """
        now = self.now()
        restored = 0
        for job in await self.repo.find_all_active():
            if job.one_time:
                when = job.scheduled_at or job.next_run
                if when is None or when <= now:
                    logger.info(f"Retiring missed one-time job {job.id}")
                    await self.repo.mark_inactive(job.id)
                    continue
                if job.next_run != when:
                    await self.repo.set_next_run(job.id, when)
            else:
                next_run = _calculate_next_run(job.cron_expression or "", now, self.tz)
                if next_run is None:
                    await self.repo.mark_inactive(job.id)
                    continue
                await self.repo.set_next_run(job.id, next_run)
            restored += 1
        logger.info(f"Restored {restored} scheduled job(s)")
        return restored

    # ── Loop ──────────────────────────────────────────────────

    async def start(self):
        """Start the scheduler background task."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started")

    async def stop(self):
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")

    async def _run_loop(self):
        """Main scheduler loop."""
        while self._running:
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def run_due(self) -> int:
        """Execute every due job once. Returns the number executed."""
        now = self.now()
        due = await self.repo.find_due(now)

        for job in due:
            logger.info(f"[{job.tenant_id}] Executing scheduled job {job.id} → {job.jid}")
            try:
                await self._on_fire(job)
            except Exception as e:
                # Send failures are not retried; the job still advances
                logger.error(f"[{job.tenant_id}] Scheduled job {job.id} failed: {e}", exc_info=True)

            if job.one_time:
                await self.repo.mark_inactive(job.id)
                continue

            next_run = _calculate_next_run(job.cron_expression or "", now, self.tz)
            if next_run:
                await self.repo.set_next_run(job.id, next_run, ran_at=now)
            else:
                logger.error(f"Failed to calculate next run for job {job.id}, disabling")
                await self.repo.mark_inactive(job.id)

        return len(due)
