from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ReferenceType(str, Enum):
    PURCHASE = "purchase"
    EVIDENCE_RUN = "evidence_run"
    OUTREACH_PACK = "outreach_pack"
    ADMIN_GRANT = "admin_grant"
    SIGNUP_BONUS = "signup_bonus"
    REFUND_REVERSAL = "refund_reversal"
    ADMIN_TEST = "admin_test"


class WebhookEventStatus(str, Enum):
    PROCESSED = "processed"
    MANUAL_REVIEW = "manual_review"
    SKIPPED = "skipped"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    IGNORED = "ignored"


class LedgerEntry(BaseModel):
    id: int
    user_id: int
    amount: int
    reason: str
    reference_type: ReferenceType
    reference_id: Optional[int] = None
    balance_after: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PurchaseReceipt(BaseModel):
    id: int
    user_id: int
    stripe_checkout_session_id: str
    stripe_payment_intent_id: Optional[str] = None
    pack_id: str
    credits_added: int
    amount_cents: int
    currency: str
    stripe_receipt_url: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WebhookEvent(BaseModel):
    """Admin-facing view of one stripe_events row. Carries no payload or PII."""

    id: int
    stripe_event_id: str
    event_type: str
    status: WebhookEventStatus
    user_id: Optional[int] = None
    credits_purchased: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RefundQueueItem(BaseModel):
    id: int
    user_id: Optional[int] = None
    stripe_charge_id: str
    stripe_refund_id: str
    stripe_checkout_session_id: Optional[str] = None
    amount_refunded: int
    currency: str
    pack_id: Optional[str] = None
    credits_to_reverse: Optional[int] = None
    status: RefundStatus
    admin_user_id: Optional[int] = None
    ignore_reason: Optional[str] = None
    ledger_entry_id: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_pending(self) -> bool:
        return self.status == RefundStatus.PENDING


class AdminActionLog(BaseModel):
    id: int
    admin_user_id: int
    action: str
    target_user_id: Optional[int] = None
    metadata_json: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OpsStatus(BaseModel):
    last_webhook_success_at: Optional[datetime] = None
    last_webhook_failure_at: Optional[datetime] = None
    last_webhook_event_id: Optional[str] = None
    last_webhook_event_type: Optional[str] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Request / response shapes for the RPC surface

class BalanceResponse(BaseModel):
    balance: int


class ProcessRefundRequest(BaseModel):
    debit_amount: int = Field(..., ge=1, description="Credits to claw back")
    override_user_id: Optional[int] = Field(
        default=None, description="User to attribute the refund to when the queue item has none"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {"debit_amount": 50, "override_user_id": 42}
    })


class IgnoreRefundRequest(BaseModel):
    reason: str = Field(..., max_length=512, description="Why no credits are reversed")


class ProcessRefundResponse(BaseModel):
    already_processed: bool
    ledger_entry_id: Optional[int] = None


class IgnoreRefundResponse(BaseModel):
    already_processed: bool


class SpendRequest(BaseModel):
    amount: int = Field(..., ge=1)
    reason: str = Field(..., min_length=1, max_length=512)
    reference_type: ReferenceType
    reference_id: Optional[int] = None


class AdminGrantRequest(BaseModel):
    user_id: int
    amount: int = Field(..., ge=1)


class AdminTestRunRequest(BaseModel):
    user_id: int
    reason: str = Field(..., min_length=1, max_length=512)
    reference_type: ReferenceType = ReferenceType.ADMIN_TEST
    reference_id: Optional[int] = None


class LedgerPage(BaseModel):
    entries: list[LedgerEntry]
    total_count: int


class ReceiptPage(BaseModel):
    receipts: list[PurchaseReceipt]
    total_count: int


class WebhookAck(BaseModel):
    received: bool = True
    verified: Optional[bool] = None
    status: Optional[WebhookEventStatus] = None
    duplicate: bool = False


class CreditPackView(BaseModel):
    pack_id: str
    label: str
    credits: int
    price_cents: int
    price_display: str
    currency: str
    description: str

    model_config = ConfigDict(from_attributes=True)


class CheckoutRequest(BaseModel):
    pack_id: str
    origin: Optional[str] = Field(
        default=None, description="Site origin Stripe redirects back to; defaults to the first CORS origin"
    )


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
