#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
VisitPoller — incremental Virtuagym visit polling

Every POLL_INTERVAL_S:
    1. Skip if the rate-limit guard is cooling down
    2. Skip if the previous poll is still running
    3. Fetch visits with check_in_time > watermark
    4. Spike guard: more than VOLUME_SPIKE_THRESHOLD fetched visits is a
       backlog dump → jump the watermark to the newest one, notify nothing
    5. Otherwise keep visits newer than the watermark and, oldest first:
       enrich → dispatch → advance watermark

Invariants:
    • The watermark starts at process start ("now") and never moves back.
    • An event with check_in_time <= watermark is never processed.
    • A failed enrichment/delivery still advances the watermark past its
      event: failures are dropped and logged, never retried.
    • Throttling on the fetch trips the guard without touching the watermark.
    • Throttling on a delivery trips the guard too; the rest of the cycle waits
      for the cooldown.
"""

import asyncio
import datetime
import logging
from typing import Awaitable, Callable, List

from app.checkin.base import (
    INTER_EVENT_DELAY_S,
    POLL_INTERVAL_S,
    VOLUME_SPIKE_THRESHOLD,
    ThrottledError,
    utc_now,
)
from app.checkin.dispatcher import NotificationDispatcher
from app.checkin.enrichment import StatusEnricher
from app.checkin.guard import RateLimitGuard
from app.checkin.models import VisitEvent

log = logging.getLogger("checkin.poller")


class VisitPoller:

    def __init__(
        self,
        client,
        enricher: StatusEnricher,
        dispatcher: NotificationDispatcher,
        guard: RateLimitGuard,
        clock: Callable[[], datetime.datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        spike_threshold: int = VOLUME_SPIKE_THRESHOLD,
        inter_event_delay: float = INTER_EVENT_DELAY_S,
        interval: int = POLL_INTERVAL_S,
    ) -> None:
        self.client = client
        self.enricher = enricher
        self.dispatcher = dispatcher
        self.guard = guard
        self._sleep = sleep
        self.spike_threshold = spike_threshold
        self.inter_event_delay = inter_event_delay
        self.interval = interval
        self.shutdown_event = asyncio.Event()

        self.watermark: datetime.datetime = clock()
        self._in_flight = False

        # Statistics (lifetime of process)
        self.stats = {
            "polls": 0,
            "skipped_cooldown": 0,
            "skipped_in_flight": 0,
            "events_processed": 0,
            "events_suppressed": 0,
            "fetch_errors": 0,
            "throttled": 0,
        }

    # ══════════════════════════════════════════════════════════════════════
    # Watermark
    # ══════════════════════════════════════════════════════════════════════

    def advance_watermark(self, ts: datetime.datetime) -> None:
        """Move the watermark forward to *ts*; older values are ignored."""
        if ts > self.watermark:
            self.watermark = ts

    @staticmethod
    def _timestamped(visits: List[VisitEvent]) -> List[VisitEvent]:
        return [v for v in visits if v.check_in_time is not None]

    def _new_events(self, visits: List[VisitEvent]) -> List[VisitEvent]:
        # Equality with the watermark counts as already processed
        fresh = [v for v in visits if v.check_in_time > self.watermark]
        return sorted(fresh, key=lambda v: v.check_in_time)

    # ══════════════════════════════════════════════════════════════════════
    # One poll cycle
    # ══════════════════════════════════════════════════════════════════════

    async def poll(self) -> None:
        """Run one cycle. Never raises; a concurrent call is a no-op."""
        if self.guard.is_cooling_down():
            self.stats["skipped_cooldown"] += 1
            log.info(f"🧊 [POLL] cooling down, {self.guard.remaining_seconds()}s left — skipped")
            return
        if self._in_flight:
            self.stats["skipped_in_flight"] += 1
            log.info("[POLL] previous poll still running — skipped")
            return

        self._in_flight = True
        try:
            await self._poll_once()
        except Exception as exc:
            log.error(f"❌ [POLL] unexpected error: {exc}", exc_info=True)
        finally:
            self._in_flight = False

    async def _poll_once(self) -> None:
        self.stats["polls"] += 1
        since = self.watermark

        try:
            visits = await self.client.fetch_visits(since=since)
        except ThrottledError as exc:
            self.stats["throttled"] += 1
            self.guard.trip(str(exc))
            return
        except Exception as exc:
            self.stats["fetch_errors"] += 1
            log.error(f"❌ [POLL] visit fetch failed: {type(exc).__name__}: {exc}")
            return

        batch = self._timestamped(visits)
        if len(batch) > self.spike_threshold:
            newest = max(v.check_in_time for v in batch)
            self.advance_watermark(newest)
            self.stats["events_suppressed"] += len(batch)
            log.warning(
                f"⚠️  [POLL] {len(batch)} visits in one batch (> {self.spike_threshold}) — "
                f"treating as backlog, no notifications. Watermark → {self.watermark.isoformat()}"
            )
            return

        events = self._new_events(batch)
        if not events:
            log.debug(f"[POLL] no new visits since {since.isoformat()}")
            return

        log.info(f"[POLL] {len(events)} new visit(s) since {since.isoformat()}")

        for index, event in enumerate(events):
            if index > 0:
                if self.guard.is_cooling_down():
                    log.warning(
                        f"🧊 [POLL] throttled mid-cycle — {len(events) - index} visit(s) "
                        f"left for after the cooldown"
                    )
                    break
                await self._sleep(self.inter_event_delay)

            await self._process(event)
            self.advance_watermark(event.check_in_time)

        log.info(f"[POLL] watermark={self.watermark.isoformat()}")

    async def _process(self, event: VisitEvent) -> None:
        try:
            status = await self.enricher.derive_status(event.member_id, event.check_in_time)
            await self.dispatcher.dispatch(
                status.display_name, event.check_in_time, status, event.access
            )
            self.stats["events_processed"] += 1
        except Exception as exc:
            log.error(
                f"❌ [POLL] visit of member {event.member_id} at "
                f"{event.check_in_time.isoformat()} dropped: {exc}",
                exc_info=True,
            )

    # ══════════════════════════════════════════════════════════════════════
    # Main loop
    # ══════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Poll every ``interval`` seconds until shutdown."""
        log.info("=" * 70)
        log.info("🚀 VISIT POLLER STARTING")
        log.info(f"  → Interval       : every {self.interval}s")
        log.info(f"  → Watermark      : {self.watermark.isoformat()}")
        log.info(f"  → Spike threshold: {self.spike_threshold} visits")
        log.info("=" * 70)

        while not self.shutdown_event.is_set():
            try:
                await self.poll()

                # Sleep until next cycle (interruptible every 10s for clean shutdown)
                sleep_remaining = self.interval
                while sleep_remaining > 0 and not self.shutdown_event.is_set():
                    await asyncio.sleep(min(sleep_remaining, 10))
                    sleep_remaining -= 10

            except asyncio.CancelledError:
                log.info("Visit poller cancelled")
                break

        log.info("=" * 70)
        log.info("📊 VISIT POLLER FINAL STATISTICS")
        for key, value in self.stats.items():
            log.info(f"  {key:<20} {value:,}")
        log.info(f"  final watermark      {self.watermark.isoformat()}")
        log.info("=" * 70)
