"""
Gym Operations API - FastAPI Backend
Membership lifecycle, approval queue and refund reconciliation.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    memberships,
    approvals,
    billing,
)
from services.events import event_bus, redis_event_forwarder
from services.membership_state import run_membership_sweep


async def _periodic_membership_sweep() -> None:
    interval_minutes = max(int(settings.FREEZE_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            result = await run_membership_sweep()
            frozen = len(result.get("frozen", []))
            expired = len(result.get("expired", []))
            if frozen or expired:
                print(f"🧊 Membership sweep: frozen={frozen} expired={expired}")
            for error in result.get("errors", []):
                print(f"⚠️ Membership sweep skipped {error}")
        except Exception as exc:
            print(f"⚠️ Membership sweep tick failed: {exc}")
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Gym Operations API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    forwarder_id = None
    if settings.DOMAIN_EVENTS_REDIS_ENABLED:
        forwarder_id = event_bus.subscribe("*", redis_event_forwarder)
        print(f"📣 Domain events forwarded to Redis channel {settings.DOMAIN_EVENTS_CHANNEL}.")
    sweep_task = None
    if int(settings.FREEZE_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_membership_sweep())
        print(
            "📅 Membership sweep loop enabled "
            f"(every {int(settings.FREEZE_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    if forwarder_id is not None:
        event_bus.unsubscribe("*", forwarder_id)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Gym Operations API",
    description="Membership freezes, cancellations, refunds and the approval queue",
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
app.include_router(memberships.router, prefix="/memberships", tags=["Memberships"])
app.include_router(approvals.router, prefix="/approvals", tags=["Approvals"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Gym Operations API",
        "version": "0.1.0",
        "status": "running"
    }
