#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
NotificationDispatcher — formats and delivers Homey tags

Check-in tag layout (one line)::

    [X][B][E][N]HH:MM - Firstname Lastname

Only the tags whose condition holds are present, always in that order.
``HH:MM`` is the check-in time in the civil timezone. Delivery failures are
logged and swallowed: the caller only learns True/False. A 429 from Homey
also trips the shared rate-limit guard when one is attached.
"""

import datetime
import logging
from typing import Optional, Set
from zoneinfo import ZoneInfo

from app.checkin.base import DeliveryError, ThrottledError
from app.checkin.guard import RateLimitGuard
from app.checkin.models import AccessState, MemberStatus
from app.checkin.timewindow import format_local_hhmm

log = logging.getLogger("checkin.dispatcher")


def format_checkin_tag(
    display_name: str,
    check_in_time: datetime.datetime,
    status: MemberStatus,
    access: AccessState,
    tz: ZoneInfo,
) -> str:
    prefix = ""
    if access is not AccessState.ALLOWED:
        prefix += "[X]"
    if status.is_birthday:
        prefix += "[B]"
    if status.has_expiring_contract:
        prefix += "[E]"
    if status.is_new_member:
        prefix += "[N]"
    return f"{prefix}{format_local_hhmm(check_in_time, tz)} - {display_name}"


class NotificationDispatcher:

    def __init__(self, homey, tz: ZoneInfo, guard: Optional[RateLimitGuard] = None) -> None:
        self.homey = homey
        self.tz = tz
        self.guard = guard
        self._warned_unconfigured: Set[str] = set()
        self.stats = {"delivered": 0, "failed": 0, "throttled": 0, "skipped": 0}

    async def dispatch(
        self,
        display_name: str,
        check_in_time: datetime.datetime,
        status: MemberStatus,
        access: AccessState = AccessState.ALLOWED,
    ) -> bool:
        tag = format_checkin_tag(display_name, check_in_time, status, access, self.tz)
        return await self._deliver(tag, check_in_time, "checkin")

    async def send_text(self, text: str, channel: str) -> bool:
        """Deliver a free-form sentence (daily total, expiring report)."""
        return await self._deliver(text, None, channel)

    async def _deliver(
        self, text: str, correlation_time: Optional[datetime.datetime], channel: str
    ) -> bool:
        if not self.homey.url_for(channel):
            if channel not in self._warned_unconfigured:
                log.error(
                    f"Homey URL for '{channel}' is not configured — "
                    f"notifications on this channel are skipped."
                )
                self._warned_unconfigured.add(channel)
            self.stats["skipped"] += 1
            return False

        try:
            await self.homey.deliver(text, correlation_time=correlation_time, channel=channel)
        except ThrottledError as e:
            self.stats["throttled"] += 1
            log.warning(f"⚠️  [HOMEY:{channel}] throttled, dropped: {text!r} ({e})")
            if self.guard is not None:
                self.guard.trip(f"429 from Homey ({channel})")
            return False
        except DeliveryError as e:
            self.stats["failed"] += 1
            log.error(f"❌ [HOMEY:{channel}] delivery failed, dropped: {text!r} ({e})")
            return False
        except Exception as e:
            self.stats["failed"] += 1
            log.error(f"❌ [HOMEY:{channel}] unexpected delivery error: {e}", exc_info=True)
            return False

        self.stats["delivered"] += 1
        log.info(f"📣 [HOMEY:{channel}] {text}")
        return True
