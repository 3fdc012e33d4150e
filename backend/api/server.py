"""
Storefront Server
=================
FastAPI surface of the order lifecycle:
- Sign-in (session tokens)
- Checkout, payment initiation and the gateway confirmation webhook
- Gated product and order reads
- Admin verification, cancellation, deletion and audit trail
- Health monitoring

pip install fastapi uvicorn pydantic structlog
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from api.auth import get_caller, issue_token
from config import configure_logging, settings
from pipeline.credentials import PasswordHasher
from pipeline.errors import (
    AuthenticationError,
    PersistenceError,
    StorefrontError,
    ValidationError,
)
from pipeline.models import Caller, CamelModel, DeliveredContent, OrderStatus, Role
from pipeline.payment_gateway import (
    HttpPaymentGatewayClient,
    PaymentConfirmation,
    verify_signature,
)
from pipeline.storefront import CheckoutSubmission, Storefront

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"
SIGNATURE_HEADER = "X-Gateway-Signature"


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TokenRequest(BaseModel):
    """Sign-in with email or phone"""
    identifier: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class VerifyRequest(CamelModel):
    """Admin verification of one order"""
    status: OrderStatus
    delivered_content: Optional[DeliveredContent] = None


class InitiatePaymentRequest(CamelModel):
    order_id: str = Field(..., min_length=1)


class HealthResponse(CamelModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_storefront(request: Request) -> Storefront:
    return request.app.state.storefront


def build_storefront() -> Storefront:
    """Wire the storefront from settings."""
    gateway_client = HttpPaymentGatewayClient(
        base_url=settings.GATEWAY_BASE_URL,
        api_key=settings.GATEWAY_API_KEY,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    repositories = {}
    if settings.STORAGE_BACKEND == "postgres":
        from database import (
            PostgresAccountRepository,
            PostgresAuditLog,
            PostgresOrderRepository,
            PostgresProductRepository,
        )
        repositories = {
            "accounts": PostgresAccountRepository(),
            "products": PostgresProductRepository(),
            "orders": PostgresOrderRepository(),
            "audit_log": PostgresAuditLog(),
        }

    return Storefront(
        gateway_client,
        hasher=PasswordHasher(rounds=settings.PASSWORD_HASH_ROUNDS),
        max_transition_retries=settings.TRANSITION_MAX_RETRIES,
        default_payer_phone=settings.GATEWAY_DEFAULT_PHONE,
        frontend_url=settings.FRONTEND_URL,
        **repositories,
    )


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    configure_logging()
    logger.info("server_starting", version=VERSION, env=settings.ENV,
                storage=app.state.storage_backend)

    if app.state.storage_backend == "postgres":
        from database import init_database
        await init_database()

    yield

    logger.info("server_shutting_down")
    await app.state.storefront.gateway.client.close()
    if app.state.storage_backend == "postgres":
        from database import close_database
        await close_database()


# =============================================================================
# MIDDLEWARE & ERROR HANDLERS
# =============================================================================

async def add_timing_header(request: Request, call_next):
    """Add response timing and request ID headers"""
    request_id = str(uuid4())[:8]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = time.perf_counter()

    response = await call_next(request)

    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round(duration, 2),
    )
    return response


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if isinstance(exc, PersistenceError):
        logger.error("persistence_failure", path=request.url.path, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.error_code,
                    status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    error = ValidationError("Invalid request", details={"fields": fields})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, response_model_by_alias=True)
async def health_check(request: Request):
    """Health check endpoint"""
    uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        storage_backend=request.app.state.storage_backend,
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """Kubernetes readiness probe"""
    if request.app.state.storage_backend == "postgres":
        from database import Database
        return {"ready": Database._initialized}
    return {"ready": True}


@router.get("/live")
async def liveness_check():
    """Kubernetes liveness probe"""
    return {"live": True}


@router.post("/api/auth/token")
async def create_token(body: TokenRequest, request: Request,
                       storefront: Storefront = Depends(get_storefront)):
    account = await storefront.authenticate(body.identifier, body.password)
    token = issue_token(account, secret=request.app.state.jwt_secret)
    logger.info("session_issued", account_id=account.account_id, role=account.role.value)
    return {
        "token": token,
        "tokenType": "bearer",
        "expiresIn": settings.SESSION_MAX_AGE_SECONDS,
        "account": account.to_wire(),
    }


@router.get("/api/products/{product_id}")
async def get_product(product_id: str, caller: Caller = Depends(get_caller),
                      storefront: Storefront = Depends(get_storefront)):
    return await storefront.get_product(caller, product_id)


@router.post("/api/checkout", status_code=201)
async def checkout(submission: CheckoutSubmission,
                   storefront: Storefront = Depends(get_storefront)):
    """
    Guest-or-member checkout.

    Resolves the buyer's account from the contact details, then creates one
    pending order per resolvable cart line under a shared transaction id.
    No session is issued here; the buyer signs in separately.
    """
    result = await storefront.checkout(submission)
    buyer = Caller(account_id=result.account_id, role=Role.CUSTOMER)
    return {
        "orderId": result.order_id,
        "transactionId": result.transaction_id,
        "orders": [await storefront.get_order(buyer, o.order_id) for o in result.orders],
        "skipped": [s.to_wire() for s in result.skipped],
    }


@router.get("/api/orders")
async def list_orders(caller: Caller = Depends(get_caller),
                      storefront: Storefront = Depends(get_storefront)):
    return {"orders": await storefront.list_orders(caller)}


@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, caller: Caller = Depends(get_caller),
                    storefront: Storefront = Depends(get_storefront)):
    return await storefront.get_order(caller, order_id)


@router.patch("/api/orders/{order_id}")
async def verify_order(order_id: str, body: VerifyRequest,
                       caller: Caller = Depends(get_caller),
                       storefront: Storefront = Depends(get_storefront)):
    """Admin verification: processing (manual payment), completed or declined."""
    return await storefront.verify_order(caller, order_id, body.status, body.delivered_content)


@router.post("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, caller: Caller = Depends(get_caller),
                       storefront: Storefront = Depends(get_storefront)):
    return await storefront.cancel_order(caller, order_id)


@router.delete("/api/orders/{order_id}")
async def delete_order(order_id: str, caller: Caller = Depends(get_caller),
                       storefront: Storefront = Depends(get_storefront)):
    await storefront.delete_order(caller, order_id)
    return {"deleted": True, "orderId": order_id}


@router.post("/api/payment/initiate")
async def initiate_payment(body: InitiatePaymentRequest,
                           storefront: Storefront = Depends(get_storefront)):
    redirect_url = await storefront.initiate_payment(body.order_id)
    return {"redirectUrl": redirect_url}


@router.post("/api/payment/webhook")
async def payment_webhook(request: Request, storefront: Storefront = Depends(get_storefront)):
    """
    Gateway confirmation handler.

    The raw body must be signed with the shared webhook secret. Without a
    configured secret every delivery is refused, unless unsigned deliveries
    were explicitly allowed for a local gateway simulator.
    """
    payload = await request.body()
    secret = request.app.state.webhook_secret
    if secret:
        if not verify_signature(payload, request.headers.get(SIGNATURE_HEADER), secret):
            logger.warning("webhook_signature_invalid")
            raise AuthenticationError("Invalid webhook signature")
    elif not request.app.state.allow_unsigned_webhooks:
        logger.error("webhook_secret_missing")
        raise StorefrontError(
            "Payment confirmations are not accepted",
            status_code=503,
            error_code="webhook_not_configured",
        )

    try:
        confirmation = PaymentConfirmation.model_validate_json(payload)
    except PydanticValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise ValidationError("Invalid confirmation payload", details={"fields": fields}) from e

    result = await storefront.confirm_payment(confirmation)
    return result.to_wire()


@router.get("/api/admin/transactions/{transaction_id}/audit")
async def transaction_audit(transaction_id: str, caller: Caller = Depends(get_caller),
                            storefront: Storefront = Depends(get_storefront)):
    return {"transactionId": transaction_id,
            "entries": await storefront.audit_trail(caller, transaction_id)}


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(
    storefront: Optional[Storefront] = None,
    jwt_secret: Optional[str] = None,
    webhook_secret: Optional[str] = None,
    allow_unsigned_webhooks: Optional[bool] = None,
    storage_backend: Optional[str] = None,
) -> FastAPI:
    app = FastAPI(
        title="Digital Storefront Orders",
        description="Order lifecycle and digital fulfillment",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.storefront = storefront or build_storefront()
    app.state.jwt_secret = jwt_secret or settings.JWT_SECRET
    app.state.webhook_secret = settings.GATEWAY_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    app.state.allow_unsigned_webhooks = (
        settings.GATEWAY_ALLOW_UNSIGNED_WEBHOOKS if allow_unsigned_webhooks is None else allow_unsigned_webhooks
    )
    app.state.storage_backend = storage_backend or ("memory" if storefront else settings.STORAGE_BACKEND)
    app.state.started_at = datetime.now(timezone.utc)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_timing_header)

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )
