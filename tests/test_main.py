"""
Tests for the HTTP surface and the manager wiring.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import app.main as main
from app.checkin.guard import RateLimitGuard
from app.checkin.manager import CheckinManager
from tests.conftest import T0, FakeClock, FakeHomey, FakeVirtuagym


@pytest.fixture
def client():
    # No context manager: the lifespan (and real API clients) never start
    return TestClient(main.app)


@pytest.fixture
def fake_manager(monkeypatch):
    manager = SimpleNamespace(
        poller=SimpleNamespace(watermark=T0),
        guard=RateLimitGuard(cooldown_seconds=600, clock=FakeClock(T0)),
        scheduler=SimpleNamespace(
            total_sent_today=False,
            report_sent_today=True,
            run_daily_total=AsyncMock(return_value=True),
            run_expiring_report=AsyncMock(return_value=False),
        ),
        running=True,
    )
    manager.is_running = lambda: manager.running
    monkeypatch.setattr(main, "_manager", manager)
    return manager


def test_home(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.text == "Virtuagym Connector Online."


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ready_without_manager(client, monkeypatch):
    monkeypatch.setattr(main, "_manager", None)
    assert client.get("/ready").status_code == 503


def test_ready_reports_state(client, fake_manager):
    fake_manager.guard.trip("429")

    body = client.get("/ready").json()

    assert body["ready"] is True
    assert body["watermark"] == T0.isoformat()
    assert body["guard"] == "cooling_down"
    assert body["cooldown_remaining_s"] == 600
    assert body["total_sent_today"] is False
    assert body["report_sent_today"] is True


def test_ready_when_workers_stopped(client, fake_manager):
    fake_manager.running = False
    assert client.get("/ready").status_code == 503


def test_manual_triggers(client, fake_manager):
    total = client.post("/test/daily-total").json()
    report = client.post("/test/expiring-report").json()

    assert total == {"job": "daily_total", "delivered": True}
    assert report == {"job": "expiring_report", "delivered": False}
    fake_manager.scheduler.run_daily_total.assert_awaited_once_with(manual=True)
    fake_manager.scheduler.run_expiring_report.assert_awaited_once_with(manual=True)


def test_manual_trigger_without_manager(client, monkeypatch):
    monkeypatch.setattr(main, "_manager", None)
    assert client.post("/test/daily-total").status_code == 503


class TestCheckinManager:

    def test_wiring_shares_guard(self):
        manager = CheckinManager(virtuagym=FakeVirtuagym(), homey=FakeHomey())

        assert manager.enricher.guard is manager.guard
        assert manager.poller.guard is manager.guard
        assert manager.dispatcher.guard is manager.guard
        assert manager.is_running() is False

    @pytest.mark.asyncio
    async def test_stop_before_start_closes_clients(self):
        virtuagym, homey = FakeVirtuagym(), FakeHomey()
        manager = CheckinManager(virtuagym=virtuagym, homey=homey)

        await manager.stop()

        assert virtuagym.closed and homey.closed

    @pytest.mark.asyncio
    async def test_worker_crash_is_contained(self):
        manager = CheckinManager(virtuagym=FakeVirtuagym(), homey=FakeHomey())
        crashing = SimpleNamespace(start=AsyncMock(side_effect=RuntimeError("boom")))

        await manager._supervise("Crashing", crashing)

        crashing.start.assert_awaited_once()
