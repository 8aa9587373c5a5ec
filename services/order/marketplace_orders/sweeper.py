"""
Order Service — Reminder / Expiry Sweeper

A background loop that turns time into transitions. Each run:

    1. reminds sellers whose commit deadline is inside the warning window
       (once per order: reminder_sent_at is claimed before notifying)
    2. asks the engine to cancel orders whose deadline has passed
    3. retries settlements that failed against the gateway

Runs are independent. Expiry is derived from the stored deadline, not from
sweep history, so a skipped or crashed run only delays detection. Overlap is
prevented in-process by a lock and, across processes, by an optional Redis
lock; a run that cannot take the lock is skipped.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .engine import OrderLifecycleEngine, utc_now
from .notifications import NotificationKind
from .store import OrderStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_WINDOW = timedelta(hours=6)
DEFAULT_INTERVAL = 60.0


class SweepReport(BaseModel):
    started_at: datetime
    skipped: bool = False
    reminders_sent: list[str] = []
    expired: list[str] = []
    settlements_retried: int = 0
    settlements_failed: int = 0
    errors: int = 0


class RedisSweepLock:
    """SET NX EX lock so that only one process sweeps at a time."""

    def __init__(self, redis: aioredis.Redis, key: str = "order-sweeper:lock", ttl: int = 300) -> None:
        self.redis = redis
        self.key = key
        self.ttl = ttl
        self._token: str | None = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if await self.redis.set(self.key, token, nx=True, ex=self.ttl):
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        # Only delete the key if it is still ours; it may have expired and
        # been taken by another sweeper.
        current = await self.redis.get(self.key)
        if isinstance(current, bytes):
            current = current.decode()
        if current == token:
            await self.redis.delete(self.key)


class Sweeper:
    def __init__(
        self,
        engine: OrderLifecycleEngine,
        store: OrderStore,
        notifier,
        *,
        clock: Callable[[], datetime] = utc_now,
        reminder_window: timedelta = DEFAULT_REMINDER_WINDOW,
        interval: float = DEFAULT_INTERVAL,
        lock: RedisSweepLock | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.reminder_window = reminder_window
        self.interval = interval
        self.lock = lock
        self._running = asyncio.Lock()

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(started_at=now)
        if self._running.locked():
            logger.info("Previous sweep still running; skipping")
            report.skipped = True
            return report

        async with self._running:
            if self.lock is not None:
                try:
                    acquired = await self.lock.acquire()
                except RedisError:
                    logger.warning("Sweep lock unavailable; skipping this run", exc_info=True)
                    acquired = False
                if not acquired:
                    report.skipped = True
                    return report
            try:
                await self._send_reminders(now, report)
                await self._expire(now, report)
                await self._retry_settlements(report)
            finally:
                if self.lock is not None:
                    try:
                        await self.lock.release()
                    except RedisError:
                        logger.warning("Failed to release sweep lock", exc_info=True)

        logger.info(
            "Sweep done: %d reminder(s), %d expired, %d settlement(s) retried, %d error(s)",
            len(report.reminders_sent), len(report.expired),
            report.settlements_retried, report.errors,
        )
        return report

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Sweep every `interval` seconds until shutdown_event is set."""
        logger.info("Sweeper started (interval=%ss)", self.interval)
        while not shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep run failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Sweeper stopped")

    # ── Steps ────────────────────────────────────

    async def _send_reminders(self, now: datetime, report: SweepReport) -> None:
        due = await self.store.query_reminders_due(now, self.reminder_window)
        for order in due:
            try:
                if not await self.store.mark_reminder_sent(order.id, now):
                    continue
            except Exception:
                logger.exception("Failed to record reminder for order %s", order.id)
                report.errors += 1
                continue
            hours_left = max(int((order.commit_deadline - now).total_seconds() // 3600), 0)
            try:
                await self.notifier.notify(
                    order.seller_id,
                    NotificationKind.COMMIT_REMINDER,
                    order.id,
                    f"Reminder: you have about {hours_left} hour(s) left to commit to this order.",
                )
            except Exception:
                logger.warning("Reminder for order %s could not be sent", order.id, exc_info=True)
            report.reminders_sent.append(order.id)

    async def _expire(self, now: datetime, report: SweepReport) -> None:
        try:
            expired = await self.engine.sweep_expired(now)
        except Exception:
            logger.exception("Expiry scan failed")
            report.errors += 1
            return
        report.expired.extend(order.id for order in expired)

    async def _retry_settlements(self, report: SweepReport) -> None:
        try:
            claimed = await self.store.claim_failed_settlements(self.clock())
        except Exception:
            logger.exception("Settlement scan failed")
            report.errors += 1
            return
        for settlement in claimed:
            report.settlements_retried += 1
            try:
                if not await self.engine.retry_settlement(settlement):
                    report.settlements_failed += 1
            except Exception:
                logger.exception("Retrying settlement %s failed", settlement.id)
                report.errors += 1
