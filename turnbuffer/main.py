import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from turnbuffer.config import settings
from turnbuffer.database import SessionLocal
from turnbuffer.logging_config import get_logger, setup_logging
from turnbuffer.routers import admin, dispatch, webhook
from turnbuffer.services.alert_service import alert_critical
from turnbuffer.services.collaborators import get_delivery, get_generator
from turnbuffer.services.dispatch_scheduler import run_sweep

setup_logging(settings.log_level)

app = FastAPI(
    title="Turnbuffer API",
    description="Debounces bursts of chat messages into one reply per conversational turn",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(dispatch.router)
app.include_router(admin.router)

scheduler_logger = get_logger("scheduler_worker")
_scheduler_task: asyncio.Task | None = None


def _is_scheduler_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.scheduler_worker_enabled


def _sweep_once() -> dict[str, int]:
    db = SessionLocal()
    try:
        return run_sweep(db, generator=get_generator(), delivery=get_delivery())
    finally:
        db.close()


async def _scheduler_loop() -> None:
    consecutive_failures = 0
    while True:
        try:
            await asyncio.sleep(max(settings.sweep_interval_seconds, 0.1))
            results = await asyncio.to_thread(_sweep_once)
            consecutive_failures = 0
            if results["claimed"] or results["reclaimed"]:
                scheduler_logger.info("Scheduler worker swept", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            consecutive_failures += 1
            scheduler_logger.error(
                "Scheduler worker loop failed",
                extra={"context": {"error": str(exc), "consecutive_failures": consecutive_failures}},
            )
            if consecutive_failures == 3:
                alert_critical("Dispatch scheduler keeps failing", {"error": str(exc)[:300]})


@app.on_event("startup")
async def start_scheduler_worker() -> None:
    global _scheduler_task
    if not _is_scheduler_worker_enabled():
        return
    if _scheduler_task is None or _scheduler_task.done():
        _scheduler_task = asyncio.create_task(_scheduler_loop())
        scheduler_logger.info("Scheduler worker started")


@app.on_event("shutdown")
async def stop_scheduler_worker() -> None:
    global _scheduler_task
    if _scheduler_task is None:
        return
    _scheduler_task.cancel()
    try:
        await _scheduler_task
    except asyncio.CancelledError:
        pass
    _scheduler_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
