import logging
from contextlib import asynccontextmanager
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from .config import Settings, configure_logging, load_settings
from .db import Database, init_database
from .errors import (
    BillingError,
    CheckoutFailed,
    InsufficientCredits,
    LedgerContention,
    NoUserMapped,
    NotFound,
    PaymentsNotConfigured,
    PermissionDenied,
    UnparseableWebhookPayload,
    ValidationError,
)
from .models import (
    AdminActionLog,
    AdminGrantRequest,
    AdminTestRunRequest,
    BalanceResponse,
    CheckoutRequest,
    CheckoutResponse,
    CreditPackView,
    IgnoreRefundRequest,
    IgnoreRefundResponse,
    LedgerEntry,
    LedgerPage,
    OpsStatus,
    ProcessRefundRequest,
    ProcessRefundResponse,
    PurchaseReceipt,
    ReceiptPage,
    ReferenceType,
    RefundQueueItem,
    RefundStatus,
    SpendRequest,
    WebhookAck,
    WebhookEvent,
    WebhookEventStatus,
)
from .service import BillingService, CallContext
from .webhooks import verify_and_decode

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

ERROR_STATUS_CODES = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NoUserMapped: status.HTTP_400_BAD_REQUEST,
    InsufficientCredits: status.HTTP_402_PAYMENT_REQUIRED,
    LedgerContention: status.HTTP_409_CONFLICT,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    PaymentsNotConfigured: status.HTTP_503_SERVICE_UNAVAILABLE,
    CheckoutFailed: status.HTTP_502_BAD_GATEWAY,
}


def http_error(exc: BillingError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def get_service(request: Request) -> BillingService:
    return request.app.state.service


def get_caller(
    service: BillingService = Depends(get_service),
    x_user_id: Optional[int] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CallContext:
    """Identity comes from the upstream auth layer; this app only reads it."""
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    is_admin = (x_user_role or "").strip().lower() == ADMIN_ROLE
    return service.context(x_user_id, is_admin=is_admin)


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credit-ledger"}


# Credits

@router.get("/credits/balance", response_model=BalanceResponse, tags=["Credits"])
def get_balance(
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> BalanceResponse:
    return service.get_balance(ctx)


@router.get("/credits/ledger", response_model=list[LedgerEntry], tags=["Credits"])
def get_ledger(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> list[LedgerEntry]:
    return service.get_ledger(ctx, limit)


@router.post("/credits/spend", response_model=LedgerEntry, tags=["Credits"])
def spend_credits(
    request: SpendRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> LedgerEntry:
    try:
        return service.spend_credits(
            ctx, request.amount, request.reason, request.reference_type, request.reference_id
        )
    except BillingError as e:
        raise http_error(e)


@router.post("/credits/signup-bonus", response_model=Optional[LedgerEntry], tags=["Credits"])
def grant_signup_bonus(
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> Optional[LedgerEntry]:
    return service.grant_signup_bonus(ctx)


@router.get("/credits/receipts", response_model=list[PurchaseReceipt], tags=["Credits"])
def list_receipts(
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> list[PurchaseReceipt]:
    return service.list_receipts(ctx)


@router.get("/credits/receipts/{receipt_id}", response_model=PurchaseReceipt, tags=["Credits"])
def get_receipt(
    receipt_id: int,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> PurchaseReceipt:
    try:
        return service.get_receipt(ctx, receipt_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Receipt {receipt_id} not found")


@router.get("/credits/packs", response_model=list[CreditPackView], tags=["Credits"])
def list_packs(service: BillingService = Depends(get_service)) -> list[CreditPackView]:
    return service.list_packs()


@router.post("/credits/checkout", response_model=CheckoutResponse, tags=["Credits"])
def create_checkout(
    request: CheckoutRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> CheckoutResponse:
    try:
        return service.create_checkout(ctx, request.pack_id, request.origin)
    except BillingError as e:
        raise http_error(e)


# Stripe

@router.post("/stripe/webhook", response_model=WebhookAck, tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    service: BillingService = Depends(get_service),
) -> WebhookAck:
    secret = service.settings.stripe_webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not configured")

    payload = await request.body()
    try:
        event = verify_and_decode(payload, stripe_signature, secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Stripe webhook rejected: %s", e)
        await run_in_threadpool(service.ingestor.record_failure)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        outcome = await run_in_threadpool(service.ingest_webhook, event)
    except UnparseableWebhookPayload as e:
        await run_in_threadpool(service.ingestor.record_failure)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception:
        logger.exception("Stripe webhook processing failed for event %s", event.get("id"))
        await run_in_threadpool(service.ingestor.record_failure, event.get("id"), event.get("type"))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")

    return WebhookAck(verified=outcome.test_event or None, status=outcome.status, duplicate=outcome.duplicate)


# Admin

@router.get("/admin/refunds", response_model=list[RefundQueueItem], tags=["Admin"])
def list_refunds(
    status_filter: Optional[RefundStatus] = Query(default=None, alias="status"),
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> list[RefundQueueItem]:
    try:
        return service.list_refunds(ctx, status_filter)
    except BillingError as e:
        raise http_error(e)


@router.post("/admin/refunds/{refund_id}/process", response_model=ProcessRefundResponse, tags=["Admin"])
def process_refund(
    refund_id: int,
    request: ProcessRefundRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> ProcessRefundResponse:
    try:
        return service.process_refund(ctx, refund_id, request.debit_amount, request.override_user_id)
    except BillingError as e:
        raise http_error(e)


@router.post("/admin/refunds/{refund_id}/ignore", response_model=IgnoreRefundResponse, tags=["Admin"])
def ignore_refund(
    refund_id: int,
    request: IgnoreRefundRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> IgnoreRefundResponse:
    try:
        return service.ignore_refund(ctx, refund_id, request.reason)
    except BillingError as e:
        raise http_error(e)


@router.get("/admin/stripe-events", response_model=list[WebhookEvent], tags=["Admin"])
def list_stripe_events(
    status_filter: Optional[WebhookEventStatus] = Query(default=None, alias="status"),
    event_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> list[WebhookEvent]:
    try:
        return service.list_stripe_events(ctx, status_filter, event_type, limit, offset)
    except BillingError as e:
        raise http_error(e)


@router.post("/admin/credits/grant", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def admin_grant_credits(
    request: AdminGrantRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> LedgerEntry:
    try:
        return service.admin_grant_credits(ctx, request.user_id, request.amount)
    except BillingError as e:
        raise http_error(e)


@router.post("/admin/credits/test-run", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def admin_record_test_run(
    request: AdminTestRunRequest,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> LedgerEntry:
    try:
        return service.admin_record_test_run(
            ctx, request.user_id, request.reason, request.reference_type, request.reference_id
        )
    except BillingError as e:
        raise http_error(e)


@router.get("/admin/ledger", response_model=LedgerPage, tags=["Admin"])
def admin_list_ledger(
    user_id: Optional[int] = None,
    reference_type: Optional[ReferenceType] = None,
    limit: int = 100,
    offset: int = 0,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> LedgerPage:
    try:
        return service.admin_list_ledger(ctx, user_id, reference_type, limit, offset)
    except BillingError as e:
        raise http_error(e)


@router.get("/admin/receipts", response_model=ReceiptPage, tags=["Admin"])
def admin_list_receipts(
    user_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> ReceiptPage:
    try:
        return service.admin_list_receipts(ctx, user_id, limit, offset)
    except BillingError as e:
        raise http_error(e)


@router.get("/admin/audit-logs", response_model=list[AdminActionLog], tags=["Admin"])
def admin_audit_logs(
    limit: int = 100,
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> list[AdminActionLog]:
    try:
        return service.admin_audit_logs(ctx, limit)
    except BillingError as e:
        raise http_error(e)


@router.get("/admin/ops-status", response_model=Optional[OpsStatus], tags=["Admin"])
def ops_status(
    ctx: CallContext = Depends(get_caller),
    service: BillingService = Depends(get_service),
) -> Optional[OpsStatus]:
    try:
        return service.ops_status(ctx)
    except BillingError as e:
        raise http_error(e)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    """
    Build the billing API.

    Args:
        settings: Configuration snapshot; read from the environment when omitted
        database: Pre-built database; when omitted one is opened from
            settings.database_url at startup

    Returns:
        Configured FastAPI application
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        opened = None
        if getattr(app.state, "service", None) is None:
            opened = init_database(settings.database_url)
            app.state.service = BillingService(opened, settings)
        yield
        if opened is not None:
            opened.dispose()

    app = FastAPI(
        title="Credit Ledger API",
        description="Credit balances, Stripe purchase reconciliation and the admin refund queue",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if database is not None:
        app.state.service = BillingService(database, settings)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
