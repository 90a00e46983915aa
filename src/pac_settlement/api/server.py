"""
PAC Settlement - Production FastAPI Server

Endpoints:
- POST /commitments - Lock in a pledge for the next week
- POST /usage - Report a day's screen-time usage
- POST /commitments/{id}/monitoring - Report monitoring permission changes
- GET /weeks/{week_end_date}/status - Week status for the client (rate limited)
- POST /settlement/weekly-close - Settle the week that just ended (operator)
- POST /settlement/expiry-check - Settle grace-expired commitments (operator)
- POST /reconciliation/{user_id}/{week_end_date}/resolve - Acknowledge a delta (operator)
- POST /webhooks/stripe - Stripe payment_intent.* and payment_method.attached events
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .. import __version__
from ..billing.stripe_integration import WebhookVerificationError
from ..core.logging import configure_logging
from ..core.states import MonitoringStatus
from ..persistence.database import StoreUnavailableError
from ..persistence.repository import DataIntegrityError
from ..settlement.reconciliation import ReconciliationError
from ..settlement.service import SettlementService

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class CommitmentRequest(BaseModel):
    """Request to lock in a weekly commitment."""
    limit_minutes: int = Field(..., ge=0, description="Daily screen-time limit in minutes")
    penalty_per_minute_cents: int = Field(..., ge=0, description="Penalty per minute over the limit")


class UsageReport(BaseModel):
    """One day's usage reading from the client."""
    commitment_id: str
    date: str = Field(..., description="Calendar day, YYYY-MM-DD")
    used_minutes: int = Field(..., ge=0)


class MonitoringUpdate(BaseModel):
    """Monitoring permission reported by the client."""
    status: str = Field(..., description="ok, revoked or not_granted")


class WeeklyCloseRequest(BaseModel):
    """Optional override of the week to close."""
    week_end_date: Optional[str] = Field(None, description="Week identifier, YYYY-MM-DD")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, service: Optional[SettlementService] = None):
        self.service = service or SettlementService()
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    configure_logging()
    logger.info("pac_settlement_starting", version=__version__)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("pac_settlement_stopping")


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PAC Settlement",
        description="""
# Weekly Screen-Time Penalty Settlement

Users commit to a daily screen-time limit and a per-minute penalty. After each
weekly deadline (plus a grace period) every user with a balance is charged
exactly once against their saved payment method.

## Features
- **Worst-case backfill** for days where monitoring was revoked
- **Exactly-once charging** shared by the weekly close and the expiry check
- **Recovery** of charges whose outcome was unknown
- **Reconciliation** tracking when late data moves a charged total
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error("store_unavailable", path=request.url.path, error=str(exc))
        return _error(503, "Data store unavailable")

    @application.exception_handler(DataIntegrityError)
    async def data_integrity_handler(request: Request, exc: DataIntegrityError):
        return _error(404, str(exc))

    @application.exception_handler(ReconciliationError)
    async def reconciliation_handler(request: Request, exc: ReconciliationError):
        return _error(409, str(exc))

    @application.exception_handler(WebhookVerificationError)
    async def webhook_verification_handler(request: Request, exc: WebhookVerificationError):
        return _error(400, str(exc))

    @application.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(400, str(exc))

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify operator API key."""
    if x_api_key != state.service.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Authenticated user id, as asserted by the identity layer in front of this service."""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user id")
    return x_user_id


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        uptime_seconds=uptime,
    )


@app.post("/commitments", status_code=201, tags=["Commitments"])
def create_commitment(
    request: CommitmentRequest,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Lock in a commitment for the next weekly deadline."""
    commitment = state.service.create_commitment(
        user_id,
        request.limit_minutes,
        request.penalty_per_minute_cents,
    )
    return commitment.to_dict()


@app.post("/usage", tags=["Usage"])
def report_usage(
    request: UsageReport,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """
    Report one day's usage.

    If the day already carries a worst-case estimate, the configured estimate
    conflict policy decides which reading is kept; the response is the row
    that was kept.
    """
    record = state.service.report_daily_usage(
        user_id,
        request.commitment_id,
        request.date,
        request.used_minutes,
    )
    return record.to_dict()


@app.post("/commitments/{commitment_id}/monitoring", tags=["Commitments"])
def update_monitoring(
    commitment_id: str,
    request: MonitoringUpdate,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Record a monitoring permission change for a commitment."""
    try:
        status = MonitoringStatus(request.status.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid monitoring status: {request.status}")

    commitment = state.service.update_monitoring_status(commitment_id, status, user_id=user_id)
    return commitment.to_dict()


@app.get("/weeks/{week_end_date}/status", tags=["Usage"])
def get_week_status(
    week_end_date: str,
    user_id: str = Depends(current_user),
    state: AppState = Depends(get_state),
):
    """Penalty total and settlement status for the caller's week."""
    limit = state.service.status_rate_limiter.check(user_id)
    if not limit.allowed:
        headers = limit.headers()
        headers["Retry-After"] = str(limit.retry_after_seconds())
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded"},
            headers=headers,
        )

    status = state.service.get_week_status(user_id, week_end_date)
    return JSONResponse(content=status.to_dict(), headers=limit.headers())


@app.post("/settlement/weekly-close", tags=["Settlement"])
def weekly_close(
    request: Optional[WeeklyCloseRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settle the week that just ended and close its pool."""
    week_end_date = request.week_end_date if request else None
    summary = state.service.run_weekly_close(week_end_date=week_end_date)
    return summary.to_dict()


@app.post("/settlement/expiry-check", tags=["Settlement"])
def expiry_check(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settle every user whose grace period has elapsed."""
    result = state.service.run_expiry_check()
    return result.to_dict()


@app.post("/reconciliation/{user_id}/{week_end_date}/resolve", tags=["Settlement"])
def resolve_reconciliation(
    user_id: str,
    week_end_date: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Acknowledge that an outstanding reconciliation delta was settled out of band."""
    penalty = state.service.mark_reconciled(user_id, week_end_date)
    return penalty.to_dict()


@app.get("/metrics", tags=["Monitoring"])
async def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settlement gate counters for this process."""
    return {"gate": state.service.gate.get_metrics()}


@app.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """Apply an asynchronous payment_intent.* update from Stripe."""
    payload = await request.body()
    return await run_in_threadpool(state.service.handle_webhook, payload, stripe_signature)


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "pac_settlement.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
