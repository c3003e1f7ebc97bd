"""
Credits API - FastAPI Server

HTTP surface over CreditService for the web front-end, the monitor engine
and the payment provider.

Endpoints:
- POST /sessions - Start an anonymous session
- GET /balance - Current balance of the calling owner
- POST /spend - Spend credits on a metered action
- GET /usage - Usage history and total
- POST /topup - Open a Lightning top-up invoice
- GET /invoices/{external_id} - Local state of an invoice
- POST /webhooks/nakapay - Gateway payment callback
- POST /admin/reconcile - Poll the gateway for pending invoices
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt
from starlette.concurrency import run_in_threadpool

from billing.service import CreditService
from core.errors import (
    ConfigurationError,
    CreditError,
    GatewayError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from core.owner import Owner, owner_columns

logger = structlog.get_logger()

VERSION = "1.0.0"
START_TIME = datetime.now(timezone.utc)


# ============================================================================
# Pydantic Models
# ============================================================================

class SpendRequest(BaseModel):
    """Request to spend credits on a metered action."""
    amount: StrictInt = Field(..., description="Sats to deduct")
    action: str = Field(..., description="Action tag: monitor_created, alert_sent, check_performed")
    resource_id: Optional[StrictInt] = Field(None, description="Metered resource, e.g. a monitor id")


class TopUpRequest(BaseModel):
    """Request to open a top-up invoice."""
    amount: StrictInt = Field(..., description="Sats to buy")
    description: str = Field(default="Credit top-up")


class SessionResponse(BaseModel):
    session_id: int
    session_token: str
    balance: int


class BalanceResponse(BaseModel):
    balance: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application Factory
# ============================================================================

_service: Optional[CreditService] = None


def get_service() -> CreditService:
    """Process-wide CreditService, built on first use."""
    global _service
    if _service is None:
        _service = CreditService()
    return _service


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Sats Credits",
        description="Prepaid sat balances for metered actions, topped up over Lightning.",
        version=VERSION,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(CreditError)
    async def credit_error_handler(request: Request, exc: CreditError):
        if isinstance(exc, WebhookSignatureError):
            return _error(401, "invalid_signature", str(exc))
        if isinstance(exc, ValidationError):
            return _error(400, "invalid_request", str(exc))
        if isinstance(exc, NotFoundError):
            return _error(404, "not_found", str(exc))
        if isinstance(exc, (GatewayError, ConfigurationError)):
            logger.warning("payment_service_unavailable", error=str(exc), path=request.url.path)
            return _error(503, "payment_service_unavailable", "Payment service unavailable, try again later")
        logger.error("unhandled_credit_error", error=str(exc), path=request.url.path)
        return _error(500, "internal_error", "Internal error")

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_owner(
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    service: CreditService = Depends(get_service),
) -> Owner:
    """Resolve the calling owner from its session token or user id."""
    if x_session_token is None and x_user_id is None:
        raise HTTPException(status_code=401, detail="X-Session-Token or X-User-Id required")
    return service.resolve_owner(user_id=x_user_id, token=x_session_token)


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check():
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
    return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)


@app.post("/sessions", response_model=SessionResponse, tags=["Sessions"])
def create_session(
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
    service: CreditService = Depends(get_service),
):
    """Start an anonymous session; the token is the client's only handle."""
    ip_address = request.client.host if request.client else None
    session = service.create_anonymous_session(user_agent=user_agent, ip_address=ip_address)
    return SessionResponse(
        session_id=session.id,
        session_token=session.token,
        balance=service.get_balance(session),
    )


@app.get("/balance", response_model=BalanceResponse, tags=["Credits"])
def get_balance(
    owner: Owner = Depends(get_owner),
    service: CreditService = Depends(get_service),
):
    """Current balance in sats."""
    return BalanceResponse(balance=service.get_balance(owner))


@app.post("/spend", tags=["Credits"])
def spend_credits(
    body: SpendRequest,
    owner: Owner = Depends(get_owner),
    service: CreditService = Depends(get_service),
):
    """
    Spend credits on a metered action.

    Responds 402 with ``insufficient_credits`` when the balance is short so
    the client can offer a top-up.
    """
    record = service.spend(owner, body.amount, body.action, resource_id=body.resource_id)
    if record is None:
        return JSONResponse(
            status_code=402,
            content={
                "error": "insufficient_credits",
                "detail": f"{body.amount} sats required",
                "balance": service.get_balance(owner),
            },
        )
    return {"usage": record.to_dict(), "balance": service.get_balance(owner)}


@app.get("/usage", tags=["Credits"])
def get_usage(
    limit: int = 50,
    owner: Owner = Depends(get_owner),
    service: CreditService = Depends(get_service),
):
    """Usage history (newest first) and total spent."""
    return service.usage_summary(owner, limit=limit)


@app.post("/topup", tags=["Payments"])
def create_top_up(
    body: TopUpRequest,
    owner: Owner = Depends(get_owner),
    service: CreditService = Depends(get_service),
):
    """Open a Lightning invoice; credits land once it is paid."""
    invoice = service.create_top_up_invoice(owner, body.amount, body.description)
    return invoice.to_dict()


@app.get("/invoices/{external_id}", tags=["Payments"])
def get_invoice(
    external_id: str,
    owner: Owner = Depends(get_owner),
    service: CreditService = Depends(get_service),
):
    """Local state of one of the caller's invoices."""
    invoice = service.settlement.find_by_external_id(external_id)
    if (invoice.user_id, invoice.anonymous_session_id) != owner_columns(owner):
        raise NotFoundError(f"invoice {external_id} not found")
    return invoice.to_dict()


@app.post("/webhooks/nakapay", tags=["Payments"])
async def nakapay_webhook(
    request: Request,
    x_nakapay_signature: Optional[str] = Header(None, alias="X-NakaPay-Signature"),
    service: CreditService = Depends(get_service),
) -> Dict[str, Any]:
    """Gateway callback; the raw body is what the signature covers."""
    raw_payload = await request.body()
    return await run_in_threadpool(service.handle_gateway_webhook, raw_payload, x_nakapay_signature)


@app.post("/admin/reconcile", tags=["Payments"])
def reconcile(
    api_key: str = Depends(verify_api_key),
    service: CreditService = Depends(get_service),
):
    """Poll the gateway for every pending invoice."""
    return service.reconcile_pending_invoices().to_dict()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
