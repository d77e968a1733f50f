import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AdminAuditLog
from .checkout import create_checkout_session, normalize_origin
from .config import Settings
from .db import Database
from .errors import PermissionDenied, ValidationError
from .events import OpsStatusStore, WebhookEventLog
from .ledger import SPENDABLE_REFERENCE_TYPES, LedgerStore
from .models import (
    AdminActionLog,
    BalanceResponse,
    CheckoutResponse,
    CreditPackView,
    IgnoreRefundResponse,
    LedgerEntry,
    LedgerPage,
    OpsStatus,
    ProcessRefundResponse,
    PurchaseReceipt,
    ReceiptPage,
    ReferenceType,
    RefundQueueItem,
    RefundStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from .receipts import ReceiptStore
from .refunds import RefundWorkflow
from .webhooks import IngestOutcome, WebhookIngestor

logger = logging.getLogger(__name__)

MAX_EVENT_PAGE_SIZE = 500
MAX_LEDGER_PAGE_SIZE = 500


@dataclass(frozen=True)
class CallContext:
    """Who is calling, plus the configuration snapshot the request runs under."""

    user_id: int
    is_admin: bool
    settings: Settings


def _require_admin(ctx: CallContext) -> None:
    if not ctx.is_admin:
        raise PermissionDenied("Admin access required")


def _require_refund_actions(ctx: CallContext) -> None:
    _require_admin(ctx)
    if not ctx.settings.flags.refund_queue_actions_enabled:
        raise PermissionDenied("Refund queue actions are disabled")


def _check_page(limit: int, offset: int, max_limit: int) -> None:
    if not 1 <= limit <= max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")


class BillingService:
    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings
        self.ingestor = WebhookIngestor(database, settings)

    def context(self, user_id: int, is_admin: bool = False) -> CallContext:
        return CallContext(user_id=user_id, is_admin=is_admin, settings=self.settings)

    # Consumer

    def get_balance(self, ctx: CallContext) -> BalanceResponse:
        with self.database.transaction() as session:
            return BalanceResponse(balance=LedgerStore(session).get_balance(ctx.user_id))

    def get_ledger(self, ctx: CallContext, limit: Optional[int] = None) -> list[LedgerEntry]:
        with self.database.transaction() as session:
            return LedgerStore(session).list_entries(ctx.user_id, limit)

    def list_receipts(self, ctx: CallContext) -> list[PurchaseReceipt]:
        with self.database.transaction() as session:
            return ReceiptStore(session).list_for_user(ctx.user_id)

    def get_receipt(self, ctx: CallContext, receipt_id: int) -> PurchaseReceipt:
        with self.database.transaction() as session:
            return ReceiptStore(session).get_by_id(receipt_id, ctx.user_id)

    def spend_credits(
        self,
        ctx: CallContext,
        amount: int,
        reason: str,
        reference_type: ReferenceType,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        """Charge the caller for a feature run. Raises InsufficientCredits without writing."""
        if ReferenceType(reference_type) not in SPENDABLE_REFERENCE_TYPES:
            raise ValidationError(f"Cannot spend credits against {reference_type!r}")
        with self.database.transaction() as session:
            ledger = LedgerStore(session, max_retries=ctx.settings.ledger_max_retries)
            return ledger.guarded_spend(ctx.user_id, amount, reason, reference_type, reference_id)

    def grant_signup_bonus(self, ctx: CallContext) -> Optional[LedgerEntry]:
        if not ctx.settings.flags.signup_bonus_enabled or ctx.settings.signup_bonus_credits <= 0:
            return None
        with self.database.transaction() as session:
            entry = LedgerStore(session).grant_signup_bonus(ctx.user_id, ctx.settings.signup_bonus_credits)
        if entry is not None:
            logger.info("Signup bonus of %s credits granted to user %s", entry.amount, ctx.user_id)
        return entry

    # Purchases

    def list_packs(self) -> list[CreditPackView]:
        return [CreditPackView.model_validate(pack) for pack in self.settings.credit_packs]

    def create_checkout(self, ctx: CallContext, pack_id: str, origin: Optional[str] = None) -> CheckoutResponse:
        """Start a Stripe Checkout for one pack; credits arrive later via the webhook."""
        pack = ctx.settings.get_pack(pack_id)
        if pack is None:
            raise ValidationError(f"Unknown pack {pack_id!r}")
        checkout = create_checkout_session(ctx.settings, pack, ctx.user_id, normalize_origin(origin, ctx.settings))
        logger.info(
            "Checkout session %s created for user %s (pack %s)",
            checkout.session_id, ctx.user_id, pack.pack_id,
        )
        return checkout

    # Webhooks

    def ingest_webhook(self, payload: dict) -> IngestOutcome:
        return self.ingestor.ingest(payload)

    # Admin: refunds

    def list_refunds(self, ctx: CallContext, status: Optional[RefundStatus] = None) -> list[RefundQueueItem]:
        _require_admin(ctx)
        with self.database.transaction() as session:
            return RefundWorkflow(session).list_items(status)

    def process_refund(
        self,
        ctx: CallContext,
        refund_queue_id: int,
        debit_amount: int,
        override_user_id: Optional[int] = None,
    ) -> ProcessRefundResponse:
        _require_refund_actions(ctx)
        with self.database.transaction() as session:
            workflow = RefundWorkflow(
                session,
                max_refund_debit=ctx.settings.max_refund_debit,
                max_retries=ctx.settings.ledger_max_retries,
            )
            return workflow.process(refund_queue_id, debit_amount, ctx.user_id, override_user_id)

    def ignore_refund(self, ctx: CallContext, refund_queue_id: int, reason: str) -> IgnoreRefundResponse:
        _require_refund_actions(ctx)
        with self.database.transaction() as session:
            return RefundWorkflow(session).ignore(refund_queue_id, reason, ctx.user_id)

    # Admin: audit and browsing

    def list_stripe_events(
        self,
        ctx: CallContext,
        status: Optional[WebhookEventStatus] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        _require_admin(ctx)
        _check_page(limit, offset, MAX_EVENT_PAGE_SIZE)
        with self.database.transaction() as session:
            return WebhookEventLog(session).list_events(status, event_type, limit, offset)

    def admin_grant_credits(self, ctx: CallContext, user_id: int, amount: int) -> LedgerEntry:
        _require_admin(ctx)
        with self.database.transaction() as session:
            entry = LedgerStore(session, max_retries=ctx.settings.ledger_max_retries).grant(
                user_id,
                amount,
                reason=f"Admin grant (by admin #{ctx.user_id})",
                reference_type=ReferenceType.ADMIN_GRANT,
            )
            AdminAuditLog(session).log(ctx.user_id, "credits_granted", user_id, {
                "amount": amount,
                "ledger_entry_id": entry.id,
            })
            return entry

    def admin_record_test_run(
        self,
        ctx: CallContext,
        user_id: int,
        reason: str,
        reference_type: ReferenceType = ReferenceType.ADMIN_TEST,
        reference_id: Optional[int] = None,
    ) -> LedgerEntry:
        _require_admin(ctx)
        with self.database.transaction() as session:
            return LedgerStore(session).record_admin_test(user_id, reason, reference_type, reference_id)

    def admin_list_ledger(
        self,
        ctx: CallContext,
        user_id: Optional[int] = None,
        reference_type: Optional[ReferenceType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> LedgerPage:
        _require_admin(ctx)
        _check_page(limit, offset, MAX_LEDGER_PAGE_SIZE)
        with self.database.transaction() as session:
            entries, total = LedgerStore(session).list_all(user_id, reference_type, limit, offset)
            return LedgerPage(entries=entries, total_count=total)

    def admin_list_receipts(
        self, ctx: CallContext, user_id: Optional[int] = None, limit: int = 100, offset: int = 0
    ) -> ReceiptPage:
        _require_admin(ctx)
        _check_page(limit, offset, MAX_LEDGER_PAGE_SIZE)
        with self.database.transaction() as session:
            receipts, total = ReceiptStore(session).list_all(user_id, limit, offset)
            return ReceiptPage(receipts=receipts, total_count=total)

    def admin_audit_logs(self, ctx: CallContext, limit: int = 100) -> list[AdminActionLog]:
        _require_admin(ctx)
        with self.database.transaction() as session:
            return AdminAuditLog(session).list_actions(limit)

    def ops_status(self, ctx: CallContext) -> Optional[OpsStatus]:
        _require_admin(ctx)
        with self.database.transaction() as session:
            return OpsStatusStore(session).get()
