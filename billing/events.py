from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .db import OpsStatusRow, StripeEventRow, insert_once, utcnow
from .models import OpsStatus, WebhookEvent, WebhookEventStatus

FINAL_STATUSES = (WebhookEventStatus.PROCESSED, WebhookEventStatus.SKIPPED)

OPS_STATUS_ROW_ID = 1


class WebhookEventLog:
    """Idempotency log of inbound Stripe events, keyed on the Stripe event id."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, stripe_event_id: str) -> Optional[WebhookEvent]:
        row = self.session.scalars(
            select(StripeEventRow).where(StripeEventRow.stripe_event_id == stripe_event_id)
        ).first()
        return WebhookEvent.model_validate(row) if row else None

    def claim(self, stripe_event_id: str, event_type: str) -> bool:
        """
        Take ownership of an event for this transaction.

        A fresh event gets a provisional manual_review row, so a crash or an
        unparseable payload still leaves a trace. Returns False when another
        delivery already finished the event.
        """
        result = insert_once(
            self.session,
            StripeEventRow,
            ["stripe_event_id"],
            {
                "stripe_event_id": stripe_event_id,
                "event_type": event_type,
                "status": WebhookEventStatus.MANUAL_REVIEW.value,
            },
        )
        return WebhookEventStatus(result.row.status) not in FINAL_STATUSES

    def finish(
        self,
        stripe_event_id: str,
        status: WebhookEventStatus,
        user_id: Optional[int] = None,
        credits_purchased: Optional[int] = None,
    ) -> None:
        # Only a provisional / manual_review row may move; final rows are never rewritten.
        self.session.execute(
            update(StripeEventRow)
            .where(
                StripeEventRow.stripe_event_id == stripe_event_id,
                StripeEventRow.status == WebhookEventStatus.MANUAL_REVIEW.value,
            )
            .values(status=status.value, user_id=user_id, credits_purchased=credits_purchased)
        )

    def list_events(
        self,
        status: Optional[WebhookEventStatus] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        query = select(StripeEventRow)
        if status is not None:
            query = query.where(StripeEventRow.status == WebhookEventStatus(status).value)
        if event_type:
            query = query.where(StripeEventRow.event_type == event_type)
        query = (
            query.order_by(StripeEventRow.created_at.desc(), StripeEventRow.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [WebhookEvent.model_validate(row) for row in self.session.scalars(query)]


class OpsStatusStore:
    def __init__(self, session: Session):
        self.session = session

    def _row(self) -> OpsStatusRow:
        insert_once(self.session, OpsStatusRow, ["id"], {"id": OPS_STATUS_ROW_ID})
        return self.session.get(OpsStatusRow, OPS_STATUS_ROW_ID, populate_existing=True)

    def record_success(self, stripe_event_id: str, event_type: str) -> None:
        row = self._row()
        row.last_webhook_success_at = utcnow()
        row.last_webhook_event_id = stripe_event_id
        row.last_webhook_event_type = event_type
        self.session.flush()

    def record_failure(self, stripe_event_id: Optional[str] = None, event_type: Optional[str] = None) -> None:
        row = self._row()
        row.last_webhook_failure_at = utcnow()
        if stripe_event_id:
            row.last_webhook_event_id = stripe_event_id
            row.last_webhook_event_type = event_type
        self.session.flush()

    def get(self) -> Optional[OpsStatus]:
        row = self.session.get(OpsStatusRow, OPS_STATUS_ROW_ID)
        return OpsStatus.model_validate(row) if row else None
