#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
CheckinManager — Orchestrator for the Visit Poller and the Daily Scheduler

Responsibilities:
  1. Build the Virtuagym and Homey clients (shared rate limiter)
  2. Build the guard, enricher, dispatcher, poller and scheduler
  3. Launch poller and scheduler as asyncio tasks
  4. Crash isolation: one loop crashing does NOT stop the other
  5. No infinite restart loop — container restart handles crash recovery
"""

import asyncio
import logging
from typing import Optional

from app.checkin.base import (
    API_KEY,
    CIVIL_TIMEZONE,
    CLUB_ID,
    CLUB_SECRET,
    HOMEY_REPORT_URL,
    HOMEY_TOTAL_URL,
    HOMEY_URL,
    AsyncRateLimiter,
    HomeyClient,
    VirtuagymClient,
)
from app.checkin.dispatcher import NotificationDispatcher
from app.checkin.enrichment import StatusEnricher
from app.checkin.guard import RateLimitGuard
from app.checkin.poller import VisitPoller
from app.checkin.scheduler import DailyScheduler
from app.checkin.timewindow import get_zone

# Use a child logger for manager
log = logging.getLogger("checkin.manager")


class CheckinManager:
    """
    Runs the poller and the scheduler within a single asyncio event loop.

    Concurrency model:
        - Single process, single event loop
        - Two asyncio.create_task() — poller loop and scheduler loop
        - Shared AsyncRateLimiter for every Virtuagym call
        - No locking between the two loops beyond the poller's in-flight
          flag and the scheduler's daily gates
    """

    def __init__(
        self,
        virtuagym: Optional[VirtuagymClient] = None,
        homey: Optional[HomeyClient] = None,
    ):
        self.tz = get_zone(CIVIL_TIMEZONE)
        self._rate_limiter = AsyncRateLimiter()
        self.virtuagym = virtuagym or VirtuagymClient(
            CLUB_ID, API_KEY, CLUB_SECRET, rate_limiter=self._rate_limiter
        )
        self.homey = homey or HomeyClient(
            {"checkin": HOMEY_URL, "total": HOMEY_TOTAL_URL, "report": HOMEY_REPORT_URL}
        )

        self.guard = RateLimitGuard()
        self.enricher = StatusEnricher(self.virtuagym, self.tz, guard=self.guard)
        self.dispatcher = NotificationDispatcher(self.homey, self.tz, guard=self.guard)
        self.poller = VisitPoller(self.virtuagym, self.enricher, self.dispatcher, self.guard)
        self.scheduler = DailyScheduler(self.virtuagym, self.enricher, self.dispatcher, self.tz)

        self._poller_task: Optional[asyncio.Task] = None
        self._scheduler_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Launch both loops as background tasks."""
        log.info("=" * 70)
        log.info("🚀 CHECK-IN CONNECTOR STARTING")
        log.info(f"  → Civil timezone : {self.tz.key}")
        log.info("=" * 70)

        self._poller_task = asyncio.create_task(
            self._supervise("VisitPoller", self.poller), name="visit-poller"
        )
        self._scheduler_task = asyncio.create_task(
            self._supervise("DailyScheduler", self.scheduler), name="daily-scheduler"
        )

        # Heartbeat task to show system health in logs even during quiet hours
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="heartbeat")

        log.info("✓ Poller and scheduler launched as background tasks")

    def is_running(self) -> bool:
        tasks = (self._poller_task, self._scheduler_task)
        return all(t is not None and not t.done() for t in tasks)

    async def _supervise(self, name: str, loop) -> None:
        """Run one service loop. A crash ends that loop only; the other keeps going."""
        try:
            await loop.start()
        except asyncio.CancelledError:
            log.info(f"[{name}] cancelled")
            raise
        except Exception as exc:
            log.critical(
                f"🚨 [{name}] crashed and is no longer running: {exc}. "
                f"/ready now reports 503 until the process is restarted.",
                exc_info=True,
            )
        else:
            log.info(f"[{name}] stopped")

    async def _heartbeat(self) -> None:
        """Periodic log to confirm the manager is alive."""
        while True:
            await asyncio.sleep(300)  # 5 minutes
            log.info(
                f"💓 [HEARTBEAT] watermark={self.poller.watermark.isoformat()} "
                f"guard={self.guard.state.value}"
            )

    async def stop(self) -> None:
        """Graceful shutdown of both loops and the HTTP clients."""
        log.info("🛑 Check-in connector shutting down...")

        self.poller.shutdown_event.set()
        self.scheduler.shutdown_event.set()

        for task in (self._scheduler_task, self._heartbeat_task):
            if task is not None:
                task.cancel()

        tasks = [t for t in (self._poller_task, self._scheduler_task, self._heartbeat_task) if t]
        if tasks:
            # The poller finishes its current cycle and logs final statistics
            await asyncio.wait(tasks, timeout=15)

        for client in (self.virtuagym, self.homey):
            try:
                await client.close()
            except Exception as exc:
                log.warning(f"Error closing HTTP client: {exc}")

        log.info("✓ Check-in connector stopped")
