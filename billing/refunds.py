"""
Refund queue and the admin reconciliation workflow.

Stripe refunds and chargebacks never move credits on their own. Ingestion
files each one as a ``pending`` queue item; an admin then either processes
it (one forced ledger debit) or ignores it with a reason. Both transitions
are compare-and-transition updates on ``status = 'pending'``, so repeated
clicks and racing admins produce at most one effect.
"""

import logging
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .audit import AdminAuditLog
from .db import AlreadyExists, Inserted, RefundQueueRow, insert_once, utcnow
from .errors import NoUserMapped, NotFound, ValidationError
from .ledger import DEFAULT_MAX_RETRIES, ReversalLedger
from .models import (
    IgnoreRefundResponse,
    ProcessRefundResponse,
    ReferenceType,
    RefundQueueItem,
    RefundStatus,
)

logger = logging.getLogger(__name__)

REFUND_REVERSAL_REASON = "refund_reversal"
DEFAULT_MAX_REFUND_DEBIT = 1000

RefundInsert = Union[Inserted[RefundQueueRow], AlreadyExists[RefundQueueRow]]


class RefundQueue:
    def __init__(self, session: Session):
        self.session = session

    def enqueue(
        self,
        stripe_charge_id: str,
        stripe_refund_id: str,
        amount_refunded: int,
        currency: str,
        user_id: Optional[int] = None,
        stripe_checkout_session_id: Optional[str] = None,
        pack_id: Optional[str] = None,
        credits_to_reverse: Optional[int] = None,
    ) -> RefundInsert:
        return insert_once(
            self.session,
            RefundQueueRow,
            ["stripe_refund_id"],
            {
                "user_id": user_id,
                "stripe_charge_id": stripe_charge_id,
                "stripe_refund_id": stripe_refund_id,
                "stripe_checkout_session_id": stripe_checkout_session_id,
                "amount_refunded": amount_refunded,
                "currency": currency.lower(),
                "pack_id": pack_id,
                "credits_to_reverse": credits_to_reverse,
                "status": RefundStatus.PENDING.value,
            },
        )

    def get(self, refund_queue_id: int) -> RefundQueueItem:
        row = self.session.get(RefundQueueRow, refund_queue_id, populate_existing=True)
        if row is None:
            raise NotFound(f"Refund queue item {refund_queue_id} not found")
        return RefundQueueItem.model_validate(row)

    def list_items(self, status: Optional[RefundStatus] = None) -> list[RefundQueueItem]:
        query = select(RefundQueueRow)
        if status is not None:
            query = query.where(RefundQueueRow.status == RefundStatus(status).value)
        query = query.order_by(RefundQueueRow.created_at.desc(), RefundQueueRow.id.desc())
        return [RefundQueueItem.model_validate(row) for row in self.session.scalars(query)]

    def transition(self, refund_queue_id: int, **values) -> bool:
        """Move a pending item to a terminal state. False if it was no longer pending."""
        result = self.session.execute(
            update(RefundQueueRow)
            .where(
                RefundQueueRow.id == refund_queue_id,
                RefundQueueRow.status == RefundStatus.PENDING.value,
            )
            .values(**values)
        )
        return result.rowcount == 1


class RefundWorkflow:
    """Admin decisions on refund queue items.

    Every method must run inside a single transaction; the caller owns it.
    """

    def __init__(
        self,
        session: Session,
        max_refund_debit: int = DEFAULT_MAX_REFUND_DEBIT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.session = session
        self.queue = RefundQueue(session)
        self.audit = AdminAuditLog(session)
        self.max_refund_debit = max_refund_debit
        self._reversals = ReversalLedger(session, max_retries=max_retries)

    def process(
        self,
        refund_queue_id: int,
        debit_amount: int,
        admin_user_id: int,
        override_user_id: Optional[int] = None,
    ) -> ProcessRefundResponse:
        if isinstance(debit_amount, bool) or not isinstance(debit_amount, int):
            raise ValidationError("debit_amount must be an integer")
        if not 1 <= debit_amount <= self.max_refund_debit:
            raise ValidationError(f"debit_amount must be between 1 and {self.max_refund_debit}")

        item = self.queue.get(refund_queue_id)
        if not item.is_pending():
            logger.info("Refund queue item %s already %s", refund_queue_id, item.status.value)
            return ProcessRefundResponse(already_processed=True, ledger_entry_id=item.ledger_entry_id)

        effective_user_id = item.user_id if item.user_id is not None else override_user_id
        if effective_user_id is None:
            raise NoUserMapped(
                f"Refund queue item {refund_queue_id} has no user; supply override_user_id"
            )
        if item.user_id is not None and override_user_id not in (None, item.user_id):
            logger.warning(
                "Ignoring override user %s for refund queue item %s already mapped to user %s",
                override_user_id, refund_queue_id, item.user_id,
            )

        claimed = self.queue.transition(
            refund_queue_id,
            status=RefundStatus.PROCESSED.value,
            user_id=effective_user_id,
            admin_user_id=admin_user_id,
            processed_at=utcnow(),
        )
        if not claimed:
            # Another admin finished it between our read and our update.
            winner = self.queue.get(refund_queue_id)
            return ProcessRefundResponse(already_processed=True, ledger_entry_id=winner.ledger_entry_id)

        entry = self._reversals.force_debit(
            effective_user_id,
            debit_amount,
            reason=REFUND_REVERSAL_REASON,
            reference_type=ReferenceType.REFUND_REVERSAL,
            reference_id=refund_queue_id,
        )
        self.session.execute(
            update(RefundQueueRow)
            .where(RefundQueueRow.id == refund_queue_id)
            .values(ledger_entry_id=entry.id)
        )
        self.audit.log(admin_user_id, "refund_processed", effective_user_id, {
            "refund_queue_id": refund_queue_id,
            "debit_amount": debit_amount,
            "stripe_refund_id": item.stripe_refund_id,
            "ledger_entry_id": entry.id,
        })
        logger.info(
            "Refund queue item %s processed: debited %s credits from user %s (ledger entry %s)",
            refund_queue_id, debit_amount, effective_user_id, entry.id,
        )
        return ProcessRefundResponse(already_processed=False, ledger_entry_id=entry.id)

    def ignore(self, refund_queue_id: int, reason: str, admin_user_id: int) -> IgnoreRefundResponse:
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationError("An ignore reason is required")

        item = self.queue.get(refund_queue_id)
        if not item.is_pending():
            return IgnoreRefundResponse(already_processed=True)

        claimed = self.queue.transition(
            refund_queue_id,
            status=RefundStatus.IGNORED.value,
            ignore_reason=cleaned,
            admin_user_id=admin_user_id,
            processed_at=utcnow(),
        )
        if not claimed:
            return IgnoreRefundResponse(already_processed=True)

        self.audit.log(admin_user_id, "refund_ignored", item.user_id, {
            "refund_queue_id": refund_queue_id,
            "reason": cleaned,
            "stripe_refund_id": item.stripe_refund_id,
        })
        logger.info("Refund queue item %s ignored: %s", refund_queue_id, cleaned)
        return IgnoreRefundResponse(already_processed=False)

    def list_items(self, status: Optional[RefundStatus] = None) -> list[RefundQueueItem]:
        return self.queue.list_items(status)
