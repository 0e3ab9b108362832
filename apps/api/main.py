"""
Video Credits API - FastAPI Backend
Credit ledger and AI video generation orchestration.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import billing, health, uploads, video
from services.video_generation import build_video_orchestrator
from services.video_queue import recover_stalled_pending_videos, run_poll_sweep


async def _run_periodically(
    label: str,
    interval_seconds: int,
    tick: Callable[[], Awaitable[int]],
    report: Callable[[int], Optional[str]],
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            count = await tick()
            message = report(count)
            if message:
                print(message)
        except Exception as exc:
            print(f"⚠️ {label} tick failed: {exc}")


def _start_loop(label: str, interval_seconds: int, tick, report) -> Optional[asyncio.Task]:
    if interval_seconds <= 0:
        return None
    print(f"📅 {label} loop enabled (every {interval_seconds}s).")
    return asyncio.create_task(_run_periodically(label, interval_seconds, tick, report))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    orchestrator = build_video_orchestrator()
    app.state.video_orchestrator = orchestrator
    ledger = orchestrator.ledger

    try:
        recovered = await recover_stalled_pending_videos(orchestrator)
        if recovered:
            print(f"♻️ Failed {recovered} stalled pending videos after startup; credits released.")
    except Exception as exc:
        print(f"⚠️ Stalled video recovery skipped: {exc}")

    tasks = [
        _start_loop(
            "Video poll",
            int(settings.VIDEO_POLL_INTERVAL_SECONDS),
            lambda: run_poll_sweep(orchestrator),
            lambda n: f"🎬 Video poll tick: refreshed={n}" if n else None,
        ),
        _start_loop(
            "Credit expiry",
            int(settings.CREDIT_EXPIRY_INTERVAL_MINUTES) * 60,
            ledger.expire_credits,
            lambda n: f"⏳ Credit expiry tick: expired={n}" if n else None,
        ),
        _start_loop(
            "Stalled video recovery",
            int(settings.VIDEO_PENDING_STALL_MINUTES) * 60,
            lambda: recover_stalled_pending_videos(orchestrator),
            lambda n: f"♻️ Failed {n} stalled pending videos." if n else None,
        ),
    ]
    yield
    # Shutdown
    for task in tasks:
        if task is None:
            continue
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Credits API",
    description="Spend prepaid credits on AI video generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(video.router, prefix="/video", tags=["Video"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(uploads.router, prefix="/upload", tags=["Uploads"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Credits API",
        "version": "0.1.0",
        "status": "running"
    }
