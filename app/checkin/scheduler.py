#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
DailyScheduler — once-per-day aggregate notifications

Checked every SCHEDULER_INTERVAL_S against the civil-timezone wall clock:

    00:00–00:01   reset both daily gates
    DAILY_TOTAL_AT (23:59)
                  count distinct members who checked in since local
                  midnight and send the total
    REPORT_AT (09:00)
                  for every distinct member who checked in yesterday, check
                  for an expiring contract; report members that were not
                  already reported in the last 7 days

A job sets its gate only after the notification was delivered. A failed run
leaves the gate open, so the next tick inside the same trigger minute tries
again. Manual runs ignore the gate and leave it as it was.

The scheduler does not consult the rate-limit guard.
"""

import asyncio
import datetime
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from app.checkin.base import (
    DAILY_TOTAL_AT,
    REPORT_AT,
    REPORT_COOLDOWN,
    REPORT_MEMBER_DELAY_S,
    SCHEDULER_INTERVAL_S,
    utc_now,
)
from app.checkin.dispatcher import NotificationDispatcher
from app.checkin.enrichment import StatusEnricher, placeholder_name
from app.checkin.models import VisitEvent
from app.checkin.timewindow import (
    format_local_hhmm,
    previous_local_day_range,
    start_of_local_day,
)

log = logging.getLogger("checkin.scheduler")

RESET_WINDOW = ("00:00", "00:01")
# Ticks land this far past the interval boundary of the wall clock
TICK_OFFSET_S = 1.0
NO_EXPIRING_CONTRACTS = "No expiring contracts today."


class InMemoryReportedCache:
    """``member_id -> last reported at``. Lost on restart."""

    def __init__(self) -> None:
        self._entries: Dict[str, datetime.datetime] = {}

    def get(self, member_id: str) -> Optional[datetime.datetime]:
        return self._entries.get(member_id)

    def mark(self, member_id: str, reported_at: datetime.datetime) -> None:
        self._entries[member_id] = reported_at

    def __len__(self) -> int:
        return len(self._entries)


def distinct_members(visits: Iterable[VisitEvent]) -> List[str]:
    """Distinct member ids in first-seen order."""
    return list(dict.fromkeys(v.member_id for v in visits if v.member_id))


def join_names(names: List[str]) -> str:
    """``A``, ``A and B``, ``A, B and C``."""
    if len(names) <= 1:
        return "".join(names)
    return f"{', '.join(names[:-1])} and {names[-1]}"


def total_message(count: int) -> str:
    return f"Total unique visitors today: {count}"


def report_message(names: List[str]) -> str:
    if not names:
        return NO_EXPIRING_CONTRACTS
    return f"Expiring contracts: {join_names(names)}."


class DailyScheduler:

    def __init__(
        self,
        client,
        enricher: StatusEnricher,
        dispatcher: NotificationDispatcher,
        tz: ZoneInfo,
        cache: Optional[InMemoryReportedCache] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        total_at: str = DAILY_TOTAL_AT,
        report_at: str = REPORT_AT,
        report_cooldown: datetime.timedelta = REPORT_COOLDOWN,
        member_delay: float = REPORT_MEMBER_DELAY_S,
        interval: int = SCHEDULER_INTERVAL_S,
    ) -> None:
        self.client = client
        self.enricher = enricher
        self.dispatcher = dispatcher
        self.tz = tz
        self.cache = cache if cache is not None else InMemoryReportedCache()
        self._clock = clock
        self._sleep = sleep
        self.total_at = total_at
        self.report_at = report_at
        self.report_cooldown = report_cooldown
        self.member_delay = member_delay
        self.interval = interval
        self.shutdown_event = asyncio.Event()

        # Daily gates, in memory only
        self.total_sent_today = False
        self.report_sent_today = False
        # A manual run and the timed run of the same job never interleave
        self._total_lock = asyncio.Lock()
        self._report_lock = asyncio.Lock()

    # ══════════════════════════════════════════════════════════════════════
    # Timer check
    # ══════════════════════════════════════════════════════════════════════

    async def tick(self) -> None:
        """One timer check. Never raises."""
        hhmm = format_local_hhmm(self._clock(), self.tz)

        if RESET_WINDOW[0] <= hhmm <= RESET_WINDOW[1]:
            if self.total_sent_today or self.report_sent_today:
                log.info("🌙 [SCHEDULER] new day — daily gates reset")
            self.total_sent_today = False
            self.report_sent_today = False

        if hhmm == self.total_at and not self.total_sent_today:
            await self.run_daily_total()

        if hhmm == self.report_at and not self.report_sent_today:
            await self.run_expiring_report()

    # ══════════════════════════════════════════════════════════════════════
    # Daily total
    # ══════════════════════════════════════════════════════════════════════

    async def run_daily_total(self, manual: bool = False) -> bool:
        """Send today's distinct-visitor count. Returns True if delivered."""
        async with self._total_lock:
            return await self._daily_total(manual)

    async def _daily_total(self, manual: bool) -> bool:
        saved_gate = self.total_sent_today
        try:
            now = self._clock()
            since = start_of_local_day(now, self.tz)
            visits = await self.client.fetch_visits(since=since, until=now)
            count = len(distinct_members(visits))
            log.info(f"[TOTAL] {count} unique visitor(s) since {since.isoformat()}")

            delivered = await self.dispatcher.send_text(total_message(count), "total")
            if delivered:
                self.total_sent_today = True
            return delivered

        except Exception as exc:
            log.error(f"❌ [TOTAL] daily total failed: {exc}", exc_info=True)
            return False
        finally:
            if manual:
                self.total_sent_today = saved_gate

    # ══════════════════════════════════════════════════════════════════════
    # Expiring-contract report
    # ══════════════════════════════════════════════════════════════════════

    def _recently_reported(self, member_id: str, now: datetime.datetime) -> bool:
        last = self.cache.get(member_id)
        return last is not None and now - last < self.report_cooldown

    async def _display_name(self, member_id: str) -> str:
        profile = await self.client.fetch_member_profile(member_id)
        if profile is None or not profile.display_name:
            return placeholder_name(member_id)
        return profile.display_name

    async def run_expiring_report(self, manual: bool = False) -> bool:
        """Report yesterday's visitors with an expiring contract. Returns True if delivered."""
        async with self._report_lock:
            return await self._expiring_report(manual)

    async def _expiring_report(self, manual: bool) -> bool:
        saved_gate = self.report_sent_today
        try:
            now = self._clock()
            start, end = previous_local_day_range(now, self.tz)
            visits = await self.client.fetch_visits(since=start, until=end)
            members = distinct_members(visits)
            log.info(
                f"[REPORT] checking {len(members)} member(s) who visited "
                f"{start.date().isoformat()}"
            )

            included: List[str] = []
            names: List[str] = []
            for index, member_id in enumerate(members):
                if index > 0:
                    await self._sleep(self.member_delay)

                end_time = await self.enricher.expiring_contract_end_time(member_id)
                if end_time is None:
                    continue
                if self._recently_reported(member_id, now):
                    log.info(f"[REPORT] member {member_id} already reported within cooldown")
                    continue

                included.append(member_id)
                names.append(await self._display_name(member_id))

            delivered = await self.dispatcher.send_text(report_message(names), "report")
            if delivered:
                for member_id in included:
                    self.cache.mark(member_id, now)
                self.report_sent_today = True
                log.info(f"✅ [REPORT] sent ({len(included)} member(s))")
            return delivered

        except Exception as exc:
            log.error(f"❌ [REPORT] expiring-contract report failed: {exc}", exc_info=True)
            return False
        finally:
            if manual:
                self.report_sent_today = saved_gate

    # ══════════════════════════════════════════════════════════════════════
    # Main loop
    # ══════════════════════════════════════════════════════════════════════

    def _next_delay(self, started: datetime.datetime) -> float:
        """Seconds until just after the interval boundary following *started*.

        Measured from the start of the tick, so a slow tick shortens the
        wait instead of pushing every later tick back. With a 60 s interval
        every civil minute gets exactly one tick.
        """
        base = started.timestamp()
        target = base - (base % self.interval) + self.interval + TICK_OFFSET_S
        return max(0.0, target - self._clock().timestamp())

    async def start(self) -> None:
        log.info("📅 Daily scheduler started")
        log.info(f"  → Daily total : {self.total_at} ({self.tz.key})")
        log.info(f"  → Report      : {self.report_at} ({self.tz.key})")

        while not self.shutdown_event.is_set():
            started = self._clock()
            try:
                await self.tick()
                await self._sleep(self._next_delay(started))
            except asyncio.CancelledError:
                log.info("Daily scheduler cancelled")
                break
            except Exception as exc:
                log.error(f"❌ Daily scheduler error: {exc}", exc_info=True)
                await self._sleep(self._next_delay(started))

        log.info("🛑 Daily scheduler stopped")
