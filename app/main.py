import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from app.checkin.manager import CheckinManager

log = logging.getLogger("checkin.app")

# Global reference to keep the manager alive
_manager: CheckinManager = None
_start_task: asyncio.Task = None


def _start_task_done(task: asyncio.Task) -> None:
    """Callback fired when the manager start task completes."""
    try:
        exc = task.exception()
        if exc is not None:
            log.critical(f"🚨 Check-in manager failed to start: {exc}", exc_info=exc)
    except asyncio.CancelledError:
        log.info("Check-in manager start was cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    global _manager, _start_task

    # ── STARTUP ──────────────────────────────────────────────────────────
    try:
        _manager = CheckinManager()
    except RuntimeError as exc:
        # Missing credentials: keep serving health endpoints
        log.error(f"❌ Check-in manager not started: {exc}")
        _manager = None
    else:
        _start_task = asyncio.create_task(_manager.start())
        _start_task.add_done_callback(_start_task_done)

    yield  # ── application runs here ──

    # ── SHUTDOWN ─────────────────────────────────────────────────────────
    if _manager:
        await _manager.stop()


app = FastAPI(lifespan=lifespan)


def _require_manager() -> CheckinManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Check-in manager not running")
    return _manager


# ── Health & readiness endpoints ────────────────────────────────────────────

@app.get("/", response_class=PlainTextResponse)
def home():
    return "Virtuagym Connector Online."


@app.get("/health")
async def health():
    """Liveness check — process is running."""
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    """Readiness check — poller and scheduler are alive."""
    manager = _require_manager()
    if not manager.is_running():
        raise HTTPException(status_code=503, detail="Workers stopped")

    return {
        "ready": True,
        "watermark": manager.poller.watermark.isoformat(),
        "guard": manager.guard.state.value,
        "cooldown_remaining_s": manager.guard.remaining_seconds(),
        "total_sent_today": manager.scheduler.total_sent_today,
        "report_sent_today": manager.scheduler.report_sent_today,
    }


# ── Manual job triggers (daily gates are restored afterwards) ───────────────

@app.post("/test/daily-total")
async def trigger_daily_total():
    manager = _require_manager()
    delivered = await manager.scheduler.run_daily_total(manual=True)
    return {"job": "daily_total", "delivered": delivered}


@app.post("/test/expiring-report")
async def trigger_expiring_report():
    manager = _require_manager()
    delivered = await manager.scheduler.run_expiring_report(manual=True)
    return {"job": "expiring_report", "delivered": delivered}
