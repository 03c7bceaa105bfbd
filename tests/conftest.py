"""
Pytest configuration and shared fakes for the check-in connector tests.
"""
import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

from app.checkin.dispatcher import NotificationDispatcher
from app.checkin.enrichment import StatusEnricher
from app.checkin.guard import RateLimitGuard
from app.checkin.models import AccessState, ContractInstance, MemberProfile, VisitEvent
from app.checkin.poller import VisitPoller
from app.checkin.scheduler import DailyScheduler

AMSTERDAM = ZoneInfo("Europe/Amsterdam")
UTC = datetime.timezone.utc

# 11:00 in Amsterdam (CET, before the March DST switch)
T0 = datetime.datetime(2024, 3, 15, 10, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + datetime.timedelta(**kwargs)

    def set(self, now: datetime.datetime) -> None:
        self.now = now


class FakeVirtuagym:
    """In-memory visit / member / membership feed."""

    def __init__(self):
        self.visits: List[VisitEvent] = []
        self.profiles: Dict[str, MemberProfile] = {}
        self.contracts: Dict[str, List[ContractInstance]] = {}
        self.visit_error: Optional[Exception] = None
        self.profile_errors: Dict[str, Exception] = {}
        self.contract_errors: Dict[str, Exception] = {}
        # When True the feed returns every visit, like an upstream that
        # ignores sync_from
        self.ignore_window = False
        self.visit_calls: List[tuple] = []
        self.contract_calls: List[str] = []

    async def fetch_visits(self, since, until=None, limit=None):
        self.visit_calls.append((since, until))
        if self.visit_error is not None:
            raise self.visit_error
        if self.ignore_window:
            return list(self.visits)
        return [
            v for v in self.visits
            if v.check_in_time is None
            or (v.check_in_time > since and (until is None or v.check_in_time <= until))
        ]

    async def fetch_member_profile(self, member_id):
        if member_id in self.profile_errors:
            raise self.profile_errors[member_id]
        return self.profiles.get(member_id)

    async def fetch_active_contracts(self, member_id):
        self.contract_calls.append(member_id)
        if member_id in self.contract_errors:
            raise self.contract_errors[member_id]
        return list(self.contracts.get(member_id, []))

    async def close(self):
        self.closed = True


class FakeHomey:
    """Records delivered tags instead of calling a webhook."""

    def __init__(self, urls=None):
        self.urls = urls if urls is not None else {
            "checkin": "https://homey.test/checkin",
            "total": "https://homey.test/total",
            "report": "https://homey.test/report",
        }
        self.delivered: List[tuple] = []
        self.error: Optional[Exception] = None

    def url_for(self, channel):
        return self.urls.get(channel)

    async def deliver(self, text, correlation_time=None, channel="checkin"):
        if self.error is not None:
            raise self.error
        self.delivered.append((text, correlation_time, channel))

    def texts(self, channel="checkin") -> List[str]:
        return [text for text, _, ch in self.delivered if ch == channel]

    async def close(self):
        self.closed = True


async def no_sleep(seconds):
    return None


def visit(member_id, at, access=AccessState.ALLOWED) -> VisitEvent:
    return VisitEvent(member_id=member_id, check_in_time=at, access=access)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def feed():
    fake = FakeVirtuagym()
    fake.profiles["A"] = MemberProfile(
        "A", "Alice", "Smith", datetime.date(1990, 7, 1), "2020-01-01"
    )
    fake.profiles["B"] = MemberProfile(
        "B", "Bob", "Jones", datetime.date(1985, 11, 20), "2019-05-05"
    )
    return fake


@pytest.fixture
def homey():
    return FakeHomey()


@pytest.fixture
def guard(clock):
    return RateLimitGuard(cooldown_seconds=600, clock=clock)


@pytest.fixture
def enricher(feed, guard, clock):
    return StatusEnricher(feed, AMSTERDAM, guard=guard, clock=clock)


@pytest.fixture
def dispatcher(homey, guard):
    return NotificationDispatcher(homey, AMSTERDAM, guard=guard)


@pytest.fixture
def poller(feed, enricher, dispatcher, guard, clock):
    return VisitPoller(
        feed, enricher, dispatcher, guard,
        clock=clock, sleep=no_sleep, spike_threshold=10,
    )


@pytest.fixture
def scheduler(feed, enricher, dispatcher, clock):
    return DailyScheduler(
        feed, enricher, dispatcher, AMSTERDAM,
        clock=clock, sleep=no_sleep,
    )
