#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Shared Infrastructure for the Virtuagym → Homey Check-in Connector

Components:
  - Configuration       — environment variables (python-dotenv)
  - Error taxonomy      — ThrottledError / TransientFetchError / DeliveryError
  - AsyncRateLimiter    — token bucket rate limiter for the Virtuagym API
  - VirtuagymClient     — visit feed, member profile feed, membership feed
  - HomeyClient         — downstream Homey webhook delivery
  - parse_instant       — timestamp helper (epoch s/ms, ISO strings, dates)
"""

import asyncio
import datetime
import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from app.checkin.models import AccessState, ContractInstance, MemberProfile, VisitEvent

# ---------------------------------------------------------------------------
# Logging (defined early so all module-level code can use `log`)
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)-8s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
log = logging.getLogger("checkin")

# ---------------------------------------------------------------------------
# Environment Variables
# ---------------------------------------------------------------------------
load_dotenv()

_INLINE_COMMENT = re.compile(r"\s+#")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read an env var, stripping an inline ``  # comment`` suffix.

    Only a ``#`` preceded by whitespace starts a comment, so secrets and URL
    fragments that contain ``#`` are kept intact.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = _INLINE_COMMENT.split(raw, maxsplit=1)[0].strip()
    return raw or default


CLUB_ID = _env("CLUB_ID")
API_KEY = _env("API_KEY")
CLUB_SECRET = _env("CLUB_SECRET")
VIRTUAGYM_BASE_URL = _env("VIRTUAGYM_BASE_URL", "https://api.virtuagym.com/api/v1")
if not (CLUB_ID and API_KEY and CLUB_SECRET):
    log.warning(
        "⚠️  CLUB_ID / API_KEY / CLUB_SECRET not set — the poller will fail to start, "
        "but the health endpoints will remain available."
    )

HOMEY_URL = _env("HOMEY_URL")
HOMEY_TOTAL_URL = _env("HOMEY_TOTAL_URL", HOMEY_URL)
HOMEY_REPORT_URL = _env("HOMEY_REPORT_URL", HOMEY_URL)

CIVIL_TIMEZONE = _env("CIVIL_TIMEZONE", "Europe/Amsterdam")

# ---------------------------------------------------------------------------
# Poller / scheduler constants
# ---------------------------------------------------------------------------
POLL_INTERVAL_S = int(_env("POLL_INTERVAL_SECONDS", "120"))
SCHEDULER_INTERVAL_S = int(_env("SCHEDULER_INTERVAL_SECONDS", "60"))
VOLUME_SPIKE_THRESHOLD = int(_env("VOLUME_SPIKE_THRESHOLD", "10"))
INTER_EVENT_DELAY_S = float(_env("INTER_EVENT_DELAY_SECONDS", "1.0"))
REPORT_MEMBER_DELAY_S = float(_env("REPORT_MEMBER_DELAY_SECONDS", "1.0"))
COOLDOWN_S = int(_env("COOLDOWN_MINUTES", "10")) * 60

DAILY_TOTAL_AT = _env("DAILY_TOTAL_AT", "23:59")
REPORT_AT = _env("REPORT_AT", "09:00")

# Status derivation thresholds
NEW_MEMBER_WINDOW = datetime.timedelta(days=30)
CONTRACT_EXPIRY_WINDOW = datetime.timedelta(weeks=4)
REPORT_COOLDOWN = datetime.timedelta(days=7)
EXCLUDED_MEMBERSHIP_NAMES = frozenset({"Premium Flex", "Student Flex"})


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ===========================================================================
# Errors
# ===========================================================================
class ConnectorError(Exception):
    """Base class for collaborator failures the core knows how to handle."""


class ThrottledError(ConnectorError):
    """Raised when a collaborator answers 429 Too Many Requests."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientFetchError(ConnectorError):
    """Network error, timeout or unexpected status from the Virtuagym API."""


class DeliveryError(ConnectorError):
    """The Homey webhook call failed for a reason other than throttling."""


def _retry_after(response: httpx.Response) -> Optional[float]:
    try:
        return float(response.headers.get("Retry-After"))
    except (TypeError, ValueError):
        return None


# ===========================================================================
# Async Rate Limiter
# ===========================================================================
class AsyncRateLimiter:
    """
    Token bucket shared by every Virtuagym request.

    One check-in costs a visit fetch plus two concurrent member lookups, so
    the default burst of 3 lets a quiet poll cycle through unpaced. Beyond
    that requests are held to ``per_second``, which keeps a busy cycle or the
    morning report well clear of the 429 that would cost a 10-minute
    cooldown.
    """

    def __init__(self, per_second: float = 2.0, burst: int = 3):
        self.per_second = per_second
        self.burst = burst
        self.tokens = float(burst)
        self._refilled_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if self._refilled_at is not None:
            elapsed = now - self._refilled_at
            self.tokens = min(self.burst, self.tokens + elapsed * self.per_second)
        self._refilled_at = now

    async def acquire(self) -> None:
        """Take one token, waiting for it if the bucket is empty.

        Waiters queue on the lock, so they are served in arrival order.
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            self._refill(loop.time())
            if self.tokens < 1:
                await asyncio.sleep((1 - self.tokens) / self.per_second)
                self.tokens = 1.0
                self._refilled_at = loop.time()
            self.tokens -= 1


# ===========================================================================
# Virtuagym API Client — visits, members, memberships
# ===========================================================================
class VirtuagymClient:
    """Async HTTP client for the Virtuagym club API."""

    def __init__(
        self,
        club_id: str,
        api_key: str,
        club_secret: str,
        base_url: str = VIRTUAGYM_BASE_URL,
        rate_limiter: Optional[AsyncRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not (club_id and api_key and club_secret):
            raise RuntimeError(
                "CLUB_ID, API_KEY and CLUB_SECRET are required for VirtuagymClient. "
                "Set them in the environment."
            )
        self.club_url = f"{base_url.rstrip('/')}/club/{club_id}"
        self.auth_params = {"api_key": api_key, "club_secret": club_secret}
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )
        self.rate_limiter = rate_limiter or AsyncRateLimiter()

    # ── low-level helper ──────────────────────────────────────────────────

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET ``club_url + path`` and return ``result``; None on 404.

        429 is raised as ThrottledError, everything else that is not a
        2xx (or a transport error) as TransientFetchError. No retries: the
        poller's next interval is the retry.
        """
        url = f"{self.club_url}{path}"
        query = dict(self.auth_params)
        if params:
            query.update(params)

        await self.rate_limiter.acquire()
        try:
            resp = await self.client.get(url, params=query)
        except (httpx.TimeoutException, httpx.TransportError, OSError) as e:
            raise TransientFetchError(f"{type(e).__name__} on GET {path}: {e}") from e

        if resp.status_code == 429:
            retry_after = _retry_after(resp)
            log.warning(f"⚠️  Rate limit hit (429) on GET {path} (Retry-After={retry_after})")
            raise ThrottledError(f"429 on GET {path}", retry_after=retry_after)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransientFetchError(f"HTTP {resp.status_code} on GET {path}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientFetchError(f"Invalid JSON on GET {path}") from e
        return data.get("result") if isinstance(data, dict) else None

    # ── public API ────────────────────────────────────────────────────────

    async def fetch_visits(
        self,
        since: datetime.datetime,
        until: Optional[datetime.datetime] = None,
        limit: Optional[int] = None,
    ) -> List[VisitEvent]:
        """Fetch visits with a check-in after *since* (and up to *until*)."""
        params: Dict[str, Any] = {"sync_from": to_epoch_ms(since)}
        if until is not None:
            params["sync_to"] = to_epoch_ms(until)
        if limit is not None:
            params["limit"] = limit

        result = await self._get("/visits", params) or []
        return [visit_from_payload(item) for item in result if isinstance(item, dict)]

    async def fetch_member_profile(self, member_id: str) -> Optional[MemberProfile]:
        result = await self._get(f"/member/{member_id}")
        # The member endpoint sometimes wraps the single member in a list
        if isinstance(result, list):
            result = result[0] if result else None
        if not result:
            return None
        return profile_from_payload(member_id, result)

    async def fetch_active_contracts(self, member_id: str) -> List[ContractInstance]:
        result = await self._get(f"/member/{member_id}", {"with": "active_memberships"})
        if isinstance(result, list):
            result = result[0] if result else None
        if not result:
            return []
        memberships = result.get("memberships") or []
        return [contract_from_payload(m) for m in memberships if isinstance(m, dict)]

    async def close(self):
        """Close the underlying HTTP client."""
        await self.client.aclose()


# ===========================================================================
# Homey webhook client
# ===========================================================================
class HomeyClient:
    """Delivers text tags to Homey webhook URLs, one URL per channel."""

    def __init__(
        self,
        urls: Dict[str, Optional[str]],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.urls = urls
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=transport,
        )

    def url_for(self, channel: str) -> Optional[str]:
        return self.urls.get(channel)

    async def deliver(
        self,
        text: str,
        correlation_time: Optional[datetime.datetime] = None,
        channel: str = "checkin",
    ) -> None:
        """GET ``<url>?tag=<text>[&timestamp=<ms>]``.

        The query string is percent-encoded by httpx. Raises ThrottledError
        on 429 and DeliveryError on anything else that is not a 2xx.
        """
        url = self.url_for(channel)
        if not url:
            raise DeliveryError(f"No Homey URL configured for channel '{channel}'")

        params: Dict[str, Any] = {"tag": text}
        if correlation_time is not None:
            params["timestamp"] = to_epoch_ms(correlation_time)

        try:
            resp = await self.client.get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError, OSError) as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if resp.status_code == 429:
            raise ThrottledError("Homey returned 429", retry_after=_retry_after(resp))
        if resp.status_code >= 400:
            raise DeliveryError(f"Homey returned HTTP {resp.status_code}")

    async def close(self):
        await self.client.aclose()


# ===========================================================================
# Payload mapping — Virtuagym JSON → domain objects
# ===========================================================================

def visit_from_payload(item: Dict[str, Any]) -> VisitEvent:
    """
    Map a Virtuagym visit record to a VisitEvent.

    ``access_allowed`` false (or any ``error_code``) is a denial; an absent
    or null flag counts as allowed; anything else is UNKNOWN.
    """
    allowed = item.get("access_allowed")
    if item.get("error_code"):
        access = AccessState.DENIED
    elif allowed is None or allowed is True or allowed == 1 or allowed == "true":
        access = AccessState.ALLOWED
    elif allowed is False or allowed == 0 or allowed == "false":
        access = AccessState.DENIED
    else:
        access = AccessState.UNKNOWN

    return VisitEvent(
        member_id=str(item.get("member_id") or ""),
        check_in_time=parse_instant(item.get("check_in_timestamp")),
        access=access,
    )


def profile_from_payload(member_id: str, data: Dict[str, Any]) -> MemberProfile:
    return MemberProfile(
        member_id=str(member_id),
        first_name=data.get("firstname") or "",
        last_name=data.get("lastname") or "",
        birth_date=parse_calendar_date(data.get("birthday")),
        registration_time=data.get("member_since"),
    )


def contract_from_payload(data: Dict[str, Any]) -> ContractInstance:
    active = data.get("active")
    return ContractInstance(
        membership_name=data.get("membership_name") or "",
        contract_end_time=parse_instant(data.get("contract_end_date")),
        active=active not in (0, False, "0", "false"),
    )


# ===========================================================================
# Timestamp helpers
# ===========================================================================

def to_epoch_ms(instant: datetime.datetime) -> int:
    return int(instant.timestamp() * 1000)


def parse_calendar_date(raw) -> Optional[datetime.date]:
    """Birthdays are calendar dates; read ``YYYY-MM-DD`` without a timezone shift."""
    if isinstance(raw, datetime.datetime):
        return raw.date()
    if isinstance(raw, datetime.date):
        return raw
    if isinstance(raw, str) and len(raw.strip()) >= 10:
        try:
            return datetime.date.fromisoformat(raw.strip()[:10])
        except ValueError:
            pass
    parsed = parse_instant(raw)
    return parsed.date() if parsed else None


def parse_instant(raw) -> Optional[datetime.datetime]:
    """
    Parse a raw timestamp value into a tz-aware UTC datetime.

    Handles:
        - ``datetime`` (naive values are taken as UTC)
        - Unix epoch in **seconds** (10-digit int/str)
        - Unix epoch in **milliseconds** (13-digit int/str)
        - ISO-8601 strings with ``Z`` or ``+00:00`` suffix, or bare dates

    Zero and negative epochs count as missing. Never raises.
    """
    if raw is None or raw == "" or isinstance(raw, bool):
        return None

    if isinstance(raw, datetime.datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=datetime.timezone.utc)
        return raw.astimezone(datetime.timezone.utc)

    if isinstance(raw, datetime.date):
        return datetime.datetime(raw.year, raw.month, raw.day, tzinfo=datetime.timezone.utc)

    # --- numeric (epoch seconds or milliseconds) ---
    try:
        epoch = int(raw) if not isinstance(raw, (int, float)) else raw
        if epoch <= 0:
            return None
        if epoch > 1e12:
            epoch = epoch / 1000.0
        return datetime.datetime.fromtimestamp(epoch, tz=datetime.timezone.utc)
    except (ValueError, TypeError, OSError, OverflowError):
        pass

    # --- ISO string ---
    try:
        s = str(raw).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return dt.astimezone(datetime.timezone.utc)
    except (ValueError, TypeError):
        pass

    return None
