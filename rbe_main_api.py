"""
Recurring Billing Engine - FastAPI Application
Invocation surface for subscription lifecycle, charging and governance
"""

from fastapi import FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from typing import Any, Callable, Dict, List, Optional
import logging
from contextlib import asynccontextmanager

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from rbe_config import BillingSettings, get_settings
from rbe_enforcement_integration import (
    SubscriptionBillingEngine,
    InMemoryAssetLedger,
    Subscription,
    InvariantViolation,
    AllowanceInsufficient,
    AlreadySubscribed,
    InvalidAmount,
    IntervalTooLow,
    AmountTooHigh,
    SubscriptionNotFound,
    PeriodNotElapsed,
    TransferFailed,
    NotAuthorized,
    LimitsNotLoosened,
    LedgerUnavailable
)
from rbe_metrics import metrics_registry, record_api_request

logger = logging.getLogger("rbe.api")

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class CreateSubscriptionRequest(BaseModel):
    merchant: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    interval: int = Field(..., ge=0)
    asset_ref: str = Field(..., min_length=1)

    class Config:
        json_schema_extra = {
            "example": {
                "merchant": "MER-001",
                "amount": 200,
                "interval": 86400,
                "asset_ref": "TOKEN-T"
            }
        }

class ModifySubscriptionRequest(BaseModel):
    amount: int = Field(..., ge=0)
    interval: int = Field(..., ge=0)
    asset_ref: str = Field(..., min_length=1)

class ChangeAdministratorRequest(BaseModel):
    new_administrator: str = Field(..., min_length=1)

class RaiseLimitsRequest(BaseModel):
    max_amount: int = Field(..., ge=0)
    min_interval: int = Field(..., ge=0)

class SubscriptionResponse(BaseModel):
    merchant: str
    subscriber: str
    status: str
    amount: int
    interval: int
    asset_ref: Optional[str] = None
    last_charge_cursor: int
    next_charge_time: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "merchant": "MER-001",
                "subscriber": "SUB-001",
                "status": "active",
                "amount": 200,
                "interval": 86400,
                "asset_ref": "TOKEN-T",
                "last_charge_cursor": 1700000000,
                "next_charge_time": 1700086401
            }
        }

class ChargeResponse(BaseModel):
    subscription: SubscriptionResponse
    gross: int
    net: int
    commission: int

class GovernanceResponse(BaseModel):
    administrator: str
    min_interval: int
    max_amount: int

class NotificationResponse(BaseModel):
    sequence: int
    type: str
    timestamp: int
    payload: Dict[str, Any]
    digest: str

class HealthResponse(BaseModel):
    status: str
    version: str
    total_subscriptions: int
    active_subscriptions: int
    notifications: int
    decision_ledger_integrity: bool
    notification_chain_integrity: bool

def to_subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        **subscription.to_dict(),
        next_charge_time=subscription.next_charge_time()
    )

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self, settings: Optional[BillingSettings] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.settings = settings or get_settings()
        self.asset_ledger = InMemoryAssetLedger()
        self.engine = SubscriptionBillingEngine.from_settings(
            self.settings,
            self.asset_ledger,
            clock=clock
        )

app_state = AppState()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("🚀 Recurring Billing Engine starting...")
    logger.info(f"✅ Administrator: {app_state.engine.read_administrator()}")
    yield
    logger.info("🛑 Recurring Billing Engine shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Recurring Billing Engine",
    description="Allowance-backed recurring charges with governance-controlled limits",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    record_api_request(getattr(route, "path", request.url.path), request.method, response.status_code)
    return response

# ============================================
# ERROR HANDLERS
# ============================================

ERROR_STATUS_CODES = {
    AllowanceInsufficient: status.HTTP_402_PAYMENT_REQUIRED,
    TransferFailed: status.HTTP_402_PAYMENT_REQUIRED,
    AlreadySubscribed: status.HTTP_409_CONFLICT,
    PeriodNotElapsed: status.HTTP_409_CONFLICT,
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    IntervalTooLow: status.HTTP_400_BAD_REQUEST,
    AmountTooHigh: status.HTTP_400_BAD_REQUEST,
    LimitsNotLoosened: status.HTTP_400_BAD_REQUEST,
    SubscriptionNotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    LedgerUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.error(f"Invariant violation: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST),
        content={"error": type(exc).__name__, "detail": str(exc)}
    )

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": app_state.settings.service_name,
        "version": app_state.settings.version,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """System health check."""
    engine = app_state.engine
    pairs = engine.registry.pairs()
    active = sum(1 for merchant, subscriber in pairs if engine.read_subscription(merchant, subscriber).is_active)

    decision_integrity = engine.decision_ledger.verify_chain_integrity()
    notification_integrity = engine.notifications.verify_chain_integrity()

    return HealthResponse(
        status="healthy" if decision_integrity and notification_integrity else "compromised",
        version=app_state.settings.version,
        total_subscriptions=len(pairs),
        active_subscriptions=active,
        notifications=len(engine.notifications.entries),
        decision_ledger_integrity=decision_integrity,
        notification_chain_integrity=notification_integrity
    )

# Governance

@app.get("/api/v1/governance", response_model=GovernanceResponse, tags=["Governance"])
async def read_governance():
    return GovernanceResponse(**app_state.engine.read_limits().to_dict())

@app.get("/api/v1/governance/administrator", tags=["Governance"])
async def read_administrator():
    return {"administrator": app_state.engine.read_administrator()}

@app.put("/api/v1/governance/administrator", response_model=GovernanceResponse, tags=["Governance"])
async def change_administrator(request: ChangeAdministratorRequest, x_caller_id: str = Header(...)):
    """Hand the administrator role to another identity (administrator only)."""
    governance = app_state.engine.change_administrator(x_caller_id, request.new_administrator)
    return GovernanceResponse(**governance.to_dict())

@app.post("/api/v1/governance/limits", response_model=GovernanceResponse, tags=["Governance"])
async def raise_limits(request: RaiseLimitsRequest, x_caller_id: str = Header(...)):
    """
    Loosen the global limits (administrator only).

    The new ceiling must be higher and the new floor lower than the current ones.
    """
    governance = app_state.engine.raise_limits(x_caller_id, request.max_amount, request.min_interval)
    return GovernanceResponse(**governance.to_dict())

# Subscriptions

@app.post("/api/v1/subscriptions", response_model=SubscriptionResponse,
          status_code=status.HTTP_201_CREATED, tags=["Subscriptions"])
async def create_subscription(request: CreateSubscriptionRequest, x_caller_id: str = Header(...)):
    """
    Subscribe the caller to a merchant.

    Failure reasons, in check order: AllowanceInsufficient, AlreadySubscribed,
    InvalidAmount, IntervalTooLow, AmountTooHigh.
    """
    subscription = app_state.engine.create_subscription(
        x_caller_id,
        amount=request.amount,
        interval=request.interval,
        merchant=request.merchant,
        asset_ref=request.asset_ref
    )
    return to_subscription_response(subscription)

@app.put("/api/v1/subscriptions/{merchant}", response_model=SubscriptionResponse, tags=["Subscriptions"])
async def modify_subscription(merchant: str, request: ModifySubscriptionRequest, x_caller_id: str = Header(...)):
    """Overwrite the caller's terms with a merchant; the billing period restarts now."""
    subscription = app_state.engine.modify_subscription(
        x_caller_id,
        merchant=merchant,
        amount=request.amount,
        interval=request.interval,
        asset_ref=request.asset_ref
    )
    return to_subscription_response(subscription)

@app.delete("/api/v1/subscriptions/{merchant}", response_model=SubscriptionResponse, tags=["Subscriptions"])
async def cancel_by_subscriber(merchant: str, x_caller_id: str = Header(...)):
    """Caller (subscriber) cancels their subscription to a merchant."""
    return to_subscription_response(app_state.engine.cancel_by_subscriber(x_caller_id, merchant))

@app.get("/api/v1/subscriptions/{merchant}/{subscriber}", response_model=SubscriptionResponse, tags=["Subscriptions"])
async def read_subscription(merchant: str, subscriber: str):
    """Current record; unknown pairs read as an inactive zero-amount record."""
    return to_subscription_response(app_state.engine.read_subscription(merchant, subscriber))

@app.post("/api/v1/subscriptions/{merchant}/{subscriber}/charge", response_model=ChargeResponse, tags=["Charges"])
async def charge(merchant: str, subscriber: str, x_caller_id: str = Header(...)):
    """Bill one elapsed period. Any caller (typically a relayer) may trigger it."""
    receipt = app_state.engine.charge(x_caller_id, merchant, subscriber)
    return ChargeResponse(
        subscription=to_subscription_response(receipt['subscription']),
        gross=receipt['gross'],
        net=receipt['net'],
        commission=receipt['commission']
    )

# Merchant view

@app.get("/api/v1/merchant/subscribers", response_model=List[SubscriptionResponse], tags=["Merchants"])
async def list_merchant_subscriptions(x_caller_id: str = Header(...)):
    """Subscriptions held by the calling merchant only."""
    return [
        to_subscription_response(subscription)
        for subscription in app_state.engine.read_merchant_subscriptions(x_caller_id)
    ]

@app.delete("/api/v1/merchant/subscribers/{subscriber}", response_model=SubscriptionResponse, tags=["Merchants"])
async def cancel_by_merchant(subscriber: str, x_caller_id: str = Header(...)):
    """Caller (merchant) cancels a subscriber."""
    return to_subscription_response(app_state.engine.cancel_by_merchant(x_caller_id, subscriber))

# Audit

@app.get("/api/v1/notifications", response_model=List[NotificationResponse], tags=["Observability"])
async def list_notifications(since: int = 0):
    return [
        NotificationResponse(**entry.to_dict())
        for entry in app_state.engine.notifications.entries_since(since)
    ]

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "rbe_main_api:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
