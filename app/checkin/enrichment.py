#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
StatusEnricher — derives [B] / [N] / [E] for one member

For every check-in the member profile and the active memberships are
fetched concurrently (no caching; each call sees the collaborator's current
snapshot) and three independent conditions are derived:

    birthday        birth date month/day == local today (year ignored)
    new member      registered less than 30 days ago
    expiring        an active, non-excluded contract ends within 4 weeks

A failing fetch only blanks the conditions that depend on it.
"""

import asyncio
import datetime
import logging
from typing import Callable, Iterable, List, Optional
from zoneinfo import ZoneInfo

from app.checkin.base import (
    CONTRACT_EXPIRY_WINDOW,
    EXCLUDED_MEMBERSHIP_NAMES,
    NEW_MEMBER_WINDOW,
    ThrottledError,
    parse_instant,
    utc_now,
)
from app.checkin.guard import RateLimitGuard
from app.checkin.models import ContractInstance, MemberProfile, MemberStatus
from app.checkin.timewindow import is_anniversary

log = logging.getLogger("checkin.enrichment")


def placeholder_name(member_id: str) -> str:
    return f"Lid {member_id}"


def find_expiring_contract(
    contracts: Iterable[ContractInstance],
    now: datetime.datetime,
    window: datetime.timedelta = CONTRACT_EXPIRY_WINDOW,
    excluded_names: Iterable[str] = EXCLUDED_MEMBERSHIP_NAMES,
) -> Optional[ContractInstance]:
    """First contract (in collaborator order) with ``now < end <= now + window``."""
    excluded = set(excluded_names)
    for contract in contracts:
        if not contract.active or contract.contract_end_time is None:
            continue
        if contract.membership_name in excluded:
            continue
        if now < contract.contract_end_time <= now + window:
            return contract
    return None


def is_new_member(
    registration_time, now: datetime.datetime, window: datetime.timedelta = NEW_MEMBER_WINDOW
) -> bool:
    registered_at = parse_instant(registration_time)
    if registered_at is None:
        return False
    return now - registered_at < window


class StatusEnricher:

    def __init__(
        self,
        client,
        tz: ZoneInfo,
        guard: Optional[RateLimitGuard] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
        excluded_names: Iterable[str] = EXCLUDED_MEMBERSHIP_NAMES,
    ) -> None:
        self.client = client
        self.tz = tz
        self.guard = guard
        self._clock = clock
        self.excluded_names = frozenset(excluded_names)

    async def expiring_contract_end_time(self, member_id: str) -> Optional[datetime.datetime]:
        """Contract-expiry check on its own. Collaborator errors propagate."""
        contracts = await self.client.fetch_active_contracts(member_id)
        match = find_expiring_contract(
            contracts, self._clock(), excluded_names=self.excluded_names
        )
        return match.contract_end_time if match else None

    async def derive_status(
        self, member_id: str, check_in_time: Optional[datetime.datetime] = None
    ) -> MemberStatus:
        """Never raises. See module docstring for the three conditions."""
        now = self._clock()
        profile_result, contracts_result = await asyncio.gather(
            self.client.fetch_member_profile(member_id),
            self.client.fetch_active_contracts(member_id),
            return_exceptions=True,
        )

        profile: Optional[MemberProfile] = None
        if isinstance(profile_result, BaseException):
            self._note_failure(member_id, "profile", profile_result)
        else:
            profile = profile_result

        contracts: List[ContractInstance] = []
        if isinstance(contracts_result, BaseException):
            self._note_failure(member_id, "memberships", contracts_result)
        else:
            contracts = contracts_result or []

        if profile is None:
            return MemberStatus(
                display_name=placeholder_name(member_id),
                expiring_contract_end_time=self._expiring_end(contracts, now),
            )

        return MemberStatus(
            display_name=profile.display_name or placeholder_name(member_id),
            is_birthday=(
                profile.birth_date is not None
                and is_anniversary(profile.birth_date, now, self.tz)
            ),
            is_new_member=is_new_member(profile.registration_time, now),
            expiring_contract_end_time=self._expiring_end(contracts, now),
        )

    def _expiring_end(self, contracts, now) -> Optional[datetime.datetime]:
        match = find_expiring_contract(contracts, now, excluded_names=self.excluded_names)
        return match.contract_end_time if match else None

    def _note_failure(self, member_id: str, what: str, exc: BaseException) -> None:
        if isinstance(exc, ThrottledError):
            log.warning(f"⚠️  Member {member_id}: {what} fetch throttled")
            if self.guard is not None:
                self.guard.trip(f"429 on member {what}")
        else:
            log.error(f"❌ Member {member_id}: {what} fetch failed: {type(exc).__name__}: {exc}")
