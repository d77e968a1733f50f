import logging
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db import AlreadyExists, Inserted, PurchaseReceiptRow, insert_once
from .errors import NotFound
from .models import PurchaseReceipt

logger = logging.getLogger(__name__)

ReceiptInsert = Union[Inserted[PurchaseReceiptRow], AlreadyExists[PurchaseReceiptRow]]


class ReceiptStore:
    """Purchase receipts, one per completed checkout session."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        user_id: int,
        stripe_checkout_session_id: str,
        pack_id: str,
        credits_added: int,
        amount_cents: int,
        currency: str,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_receipt_url: Optional[str] = None,
    ) -> ReceiptInsert:
        """Insert the receipt, or report the one already stored for this checkout session."""
        result = insert_once(
            self.session,
            PurchaseReceiptRow,
            ["stripe_checkout_session_id"],
            {
                "user_id": user_id,
                "stripe_checkout_session_id": stripe_checkout_session_id,
                "stripe_payment_intent_id": stripe_payment_intent_id,
                "pack_id": pack_id,
                "credits_added": credits_added,
                "amount_cents": amount_cents,
                "currency": currency.lower(),
                "stripe_receipt_url": stripe_receipt_url,
            },
        )
        if isinstance(result, AlreadyExists):
            logger.info("Receipt for checkout session %s already exists", stripe_checkout_session_id)
        return result

    def list_for_user(self, user_id: int) -> list[PurchaseReceipt]:
        query = (
            select(PurchaseReceiptRow)
            .where(PurchaseReceiptRow.user_id == user_id)
            .order_by(PurchaseReceiptRow.created_at.desc(), PurchaseReceiptRow.id.desc())
        )
        return [PurchaseReceipt.model_validate(row) for row in self.session.scalars(query)]

    def get_by_id(self, receipt_id: int, caller_user_id: int) -> PurchaseReceipt:
        row = self.session.get(PurchaseReceiptRow, receipt_id)
        # Same error either way so receipt ids cannot be enumerated.
        if row is None or row.user_id != caller_user_id:
            raise NotFound(f"Receipt {receipt_id} not found")
        return PurchaseReceipt.model_validate(row)

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[PurchaseReceiptRow]:
        query = (
            select(PurchaseReceiptRow)
            .where(PurchaseReceiptRow.stripe_payment_intent_id == payment_intent_id)
            .order_by(PurchaseReceiptRow.id.desc())
            .limit(1)
        )
        return self.session.scalars(query).first()

    def find_by_checkout_session(self, checkout_session_id: str) -> Optional[PurchaseReceiptRow]:
        query = select(PurchaseReceiptRow).where(
            PurchaseReceiptRow.stripe_checkout_session_id == checkout_session_id
        )
        return self.session.scalars(query).first()

    def list_all(
        self, user_id: Optional[int] = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[PurchaseReceipt], int]:
        conditions = []
        if user_id is not None:
            conditions.append(PurchaseReceiptRow.user_id == user_id)
        query = (
            select(PurchaseReceiptRow)
            .where(*conditions)
            .order_by(PurchaseReceiptRow.created_at.desc(), PurchaseReceiptRow.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total = self.session.scalar(
            select(func.count()).select_from(PurchaseReceiptRow).where(*conditions)
        )
        receipts = [PurchaseReceipt.model_validate(row) for row in self.session.scalars(query)]
        return receipts, int(total or 0)


def resolve_user_id_for_charge(
    session: Session,
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
) -> Optional[int]:
    """
    Find the internal user behind a Stripe charge.

    The payment intent is checked first because it is tied to the charge
    itself; a checkout session id is only a fallback.

    Args:
        session: Open database session
        payment_intent_id: Stripe payment intent id from the charge, if any
        checkout_session_id: Stripe checkout session id, if known

    Returns:
        The user id from the matching purchase receipt, or None
    """
    receipts = ReceiptStore(session)
    if payment_intent_id:
        row = receipts.find_by_payment_intent(payment_intent_id)
        if row is not None:
            return row.user_id
    if checkout_session_id:
        row = receipts.find_by_checkout_session(checkout_session_id)
        if row is not None:
            return row.user_id
    return None
