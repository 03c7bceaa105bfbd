#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
RateLimitGuard — cooldown after upstream throttling

States:
    NORMAL        polling allowed
    COOLING_DOWN  entered on a 429 from the Virtuagym API; every poll cycle
                  is skipped until ``cooling_until`` has passed

The way back to NORMAL is time-based and evaluated on read, so no timer task
is needed. The daily scheduler does not consult the guard.
"""

import datetime
import enum
import logging
from typing import Callable, Optional

from app.checkin.base import COOLDOWN_S, utc_now

log = logging.getLogger("checkin.guard")


class GuardState(enum.Enum):
    NORMAL = "normal"
    COOLING_DOWN = "cooling_down"


class RateLimitGuard:

    def __init__(
        self,
        cooldown_seconds: int = COOLDOWN_S,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self.cooldown = datetime.timedelta(seconds=cooldown_seconds)
        self._clock = clock
        self.cooling_until: Optional[datetime.datetime] = None
        self.trip_count = 0

    @property
    def state(self) -> GuardState:
        if self.cooling_until is not None and self._clock() < self.cooling_until:
            return GuardState.COOLING_DOWN
        return GuardState.NORMAL

    def is_cooling_down(self) -> bool:
        return self.state is GuardState.COOLING_DOWN

    def remaining_seconds(self) -> int:
        if not self.is_cooling_down():
            return 0
        return int((self.cooling_until - self._clock()).total_seconds())

    def trip(self, reason: str = "429") -> None:
        """Enter COOLING_DOWN. A trip during an active cooldown does not extend it."""
        if self.is_cooling_down():
            log.debug(f"Guard already cooling down ({self.remaining_seconds()}s left): {reason}")
            return
        self.cooling_until = self._clock() + self.cooldown
        self.trip_count += 1
        log.warning(
            f"🧊 Upstream throttling ({reason}) — pausing polling for "
            f"{int(self.cooldown.total_seconds() // 60)} minutes "
            f"(until {self.cooling_until.isoformat()})"
        )
