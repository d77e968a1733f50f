"""
Credit ledger and Stripe billing reconciliation

This package provides:
- An append-only credit ledger with per-user compare-and-set appends
- Purchase receipts keyed on the Stripe checkout session
- Idempotent Stripe webhook ingestion
- A refund queue that admins process or ignore
"""

from .models import (
    ReferenceType,
    WebhookEventStatus,
    RefundStatus,
    LedgerEntry,
    PurchaseReceipt,
    RefundQueueItem,
)
from .service import BillingService, CallContext

__all__ = [
    "ReferenceType",
    "WebhookEventStatus",
    "RefundStatus",
    "LedgerEntry",
    "PurchaseReceipt",
    "RefundQueueItem",
    "BillingService",
    "CallContext",
]
