from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
from starlette.concurrency import run_in_threadpool
import structlog

from config import configure_logging, settings
from ledger.errors import LedgerServiceError
from ledger.models import (
    ApplyReferralRequest, BalanceResponse, CreditMovementResponse, EarnCreditsRequest,
    LedgerHistoryResponse, ProfileUpdateRequest, ProfileUpdateResponse, ReferralCodeRequest,
    ReferralResponse, SpendCreditsRequest, UserRecord,
)
from partners.models import (
    BridgeAccessRequest, BridgeCheckoutRequest, BridgeLoginRequest, BridgeResponse,
    GateCompleteRequest, GateCompleteResponse, GateStartRequest, GateStartResponse,
)
from payments.models import (
    CheckoutSessionResponse, CreateCheckoutRequest, SessionStatusResponse, WebhookAck,
)

from .container import build_services

configure_logging()
logger = structlog.get_logger().bind(component="api")

app = FastAPI(
    title="Crowbar Credits API",
    description="Checkout, payment reconciliation and credit ledger for the Crowbar partner network",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

services = build_services()


def error_body(code: str, message: str) -> dict:
    return {"success": False, "error": code, "message": message}


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, str(exc)))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else "invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_body("validation_error", message))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("internal_error", "Internal server error"),
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "crowbar-credits"}


@app.post("/checkout/create-session", response_model=CheckoutSessionResponse, tags=["Payments"])
def create_checkout_session(request: CreateCheckoutRequest) -> CheckoutSessionResponse:
    return services.checkout.create_session(request)


@app.get("/checkout/session-status/{session_id}", response_model=SessionStatusResponse, tags=["Payments"])
def checkout_session_status(session_id: str) -> SessionStatusResponse:
    return services.checkout.session_status(session_id)


@app.post("/payment/webhook", response_model=WebhookAck, status_code=status.HTTP_202_ACCEPTED, tags=["Payments"])
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAck:
    payload = await request.body()
    event = services.webhook.verify(payload, stripe_signature)
    ack = await run_in_threadpool(services.webhook.acknowledge, event)
    if ack.status == "accepted":
        background_tasks.add_task(services.webhook.handle_event, event)
    return ack


@app.get("/credits/balance", response_model=BalanceResponse, tags=["Credits"])
def get_balance(email: str) -> BalanceResponse:
    return services.credits.get_balance(email)


@app.post("/credits/earn", response_model=CreditMovementResponse, tags=["Credits"])
def earn_credits(request: EarnCreditsRequest) -> CreditMovementResponse:
    return services.credits.earn(request)


@app.post("/credits/spend", response_model=CreditMovementResponse, tags=["Credits"])
def spend_credits(request: SpendCreditsRequest) -> CreditMovementResponse:
    return services.credits.spend(request)


@app.get("/credits/ledger", response_model=LedgerHistoryResponse, tags=["Credits"])
def get_ledger(email: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return services.credits.get_ledger_history(email, limit, offset)


@app.post("/credits/apply-referral-code", response_model=ReferralResponse, tags=["Referrals"])
def apply_referral_code(request: ApplyReferralRequest) -> ReferralResponse:
    return services.referrals.apply_code(request.referred_email, request.referral_code)


@app.post("/credits/referral-code", tags=["Referrals"])
def referral_code(request: ReferralCodeRequest):
    return {"success": True, "referral_code": services.referrals.ensure_code(request.email)}


@app.get("/user/access", response_model=UserRecord, tags=["Users"])
def user_access(email: str) -> UserRecord:
    return services.credits.get_user_access(email)


@app.post("/user/update-profile", response_model=ProfileUpdateResponse, tags=["Users"])
def update_profile(request: ProfileUpdateRequest) -> ProfileUpdateResponse:
    return services.credits.update_profile(request)


@app.post("/gate/start", response_model=GateStartResponse, tags=["Gate"])
def gate_start(request: GateStartRequest) -> GateStartResponse:
    return services.gate.start(request)


@app.post("/gate/complete", response_model=GateCompleteResponse, tags=["Gate"])
def gate_complete(request: GateCompleteRequest) -> GateCompleteResponse:
    return services.gate.complete(request)


@app.post("/bridge/sync-login", response_model=BridgeResponse, tags=["Bridge"])
def bridge_sync_login(
    request: BridgeLoginRequest,
    x_bridge_token: Optional[str] = Header(default=None, alias="X-Bridge-Token"),
) -> BridgeResponse:
    services.bridge.authorize(x_bridge_token)
    return services.bridge.sync_login(request)


@app.post("/bridge/sync-checkout", response_model=BridgeResponse, tags=["Bridge"])
def bridge_sync_checkout(
    request: BridgeCheckoutRequest,
    x_bridge_token: Optional[str] = Header(default=None, alias="X-Bridge-Token"),
) -> BridgeResponse:
    services.bridge.authorize(x_bridge_token)
    return services.bridge.sync_checkout(request)


@app.post("/bridge/sync-access", response_model=BridgeResponse, tags=["Bridge"])
def bridge_sync_access(
    request: BridgeAccessRequest,
    x_bridge_token: Optional[str] = Header(default=None, alias="X-Bridge-Token"),
) -> BridgeResponse:
    services.bridge.authorize(x_bridge_token)
    return services.bridge.sync_access(request)


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.index:app", host="0.0.0.0", port=8000)
