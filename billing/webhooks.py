"""
Stripe webhook ingestion.

Stripe delivers events at least once, possibly duplicated and out of order.
Each delivery is handled in one database transaction:

1. Skip the event if the event log already holds a final status for it.
2. Claim the event id (unique index) and parse the payload into one of a
   closed set of event classes.
3. Run the handler registered for that class; every effect it has is an
   idempotent insert keyed on a Stripe id.
4. Store the outcome: processed, skipped, or manual_review.

Payload problems never raise out of ``ingest``; they end up as
``manual_review`` rows for an operator to look at.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

import stripe

from .config import Settings
from .db import AlreadyExists, Database
from .errors import UnparseableWebhookPayload
from .events import OpsStatusStore, WebhookEventLog
from .ledger import LedgerStore
from .models import ReferenceType, WebhookEventStatus
from .receipts import ReceiptStore, resolve_user_id_for_charge
from .refunds import RefundQueue

logger = logging.getLogger(__name__)

TEST_EVENT_PREFIX = "evt_test_"


class StripeEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHARGE_REFUNDED = "charge.refunded"


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    checkout_session_id: str
    user_id: int
    pack_id: str
    credits: int
    amount_cents: int
    currency: str
    payment_intent_id: Optional[str] = None
    receipt_url: Optional[str] = None


@dataclass(frozen=True)
class ChargeRefunded:
    event_id: str
    charge_id: str
    refund_id: str
    amount_refunded: int
    currency: str
    payment_intent_id: Optional[str] = None
    metadata_user_id: Optional[int] = None
    checkout_session_id: Optional[str] = None
    pack_id: Optional[str] = None


@dataclass(frozen=True)
class StripeTestEvent:
    event_id: str
    event_type: str


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


ParsedEvent = Union[CheckoutSessionCompleted, ChargeRefunded, StripeTestEvent, UnhandledEvent]


@dataclass(frozen=True)
class HandlerResult:
    status: WebhookEventStatus
    user_id: Optional[int] = None
    credits_purchased: Optional[int] = None


@dataclass(frozen=True)
class IngestOutcome:
    event_id: str
    event_type: str
    status: WebhookEventStatus
    duplicate: bool = False
    test_event: bool = False


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _object_id(value: Any) -> Optional[str]:
    """Stripe sends related objects either as an id string or, when expanded, as an object."""
    if isinstance(value, dict):
        return _as_str(value.get("id"))
    return _as_str(value)


def _first_refund(charge: dict) -> dict:
    refunds = charge.get("refunds")
    if isinstance(refunds, dict):
        refunds = refunds.get("data")
    if isinstance(refunds, list) and refunds and isinstance(refunds[0], dict):
        return refunds[0]
    return {}


def _parse_checkout(event_id: str, obj: dict, settings: Settings) -> CheckoutSessionCompleted:
    event_type = StripeEventType.CHECKOUT_SESSION_COMPLETED.value
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    session_id = _as_str(obj.get("id"))
    if session_id is None:
        raise UnparseableWebhookPayload(event_type, "missing checkout session id")

    user_id = _as_int(metadata.get("user_id"))
    if user_id is None:
        user_id = _as_int(obj.get("client_reference_id"))
    if user_id is None:
        raise UnparseableWebhookPayload(event_type, "missing user_id / client_reference_id")

    pack_id = _as_str(metadata.get("pack_id"))
    if pack_id is None:
        raise UnparseableWebhookPayload(event_type, "missing metadata.pack_id")

    credits = _as_int(metadata.get("credits"))
    if credits is None:
        pack = settings.get_pack(pack_id)
        credits = pack.credits if pack else None
    if not credits or credits <= 0:
        raise UnparseableWebhookPayload(event_type, f"cannot resolve credits for pack {pack_id!r}")

    amount_cents = _as_int(obj.get("amount_total"))
    if amount_cents is None:
        raise UnparseableWebhookPayload(event_type, "missing amount_total")
    currency = _as_str(obj.get("currency"))
    if currency is None:
        raise UnparseableWebhookPayload(event_type, "missing currency")

    return CheckoutSessionCompleted(
        event_id=event_id,
        checkout_session_id=session_id,
        user_id=user_id,
        pack_id=pack_id,
        credits=credits,
        amount_cents=amount_cents,
        currency=currency.lower(),
        payment_intent_id=_object_id(obj.get("payment_intent")),
        receipt_url=_as_str(obj.get("receipt_url")),
    )


def _parse_refund(event_id: str, obj: dict, settings: Settings) -> ChargeRefunded:
    event_type = StripeEventType.CHARGE_REFUNDED.value
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    refund = _first_refund(obj)

    charge_id = _as_str(obj.get("id"))
    if charge_id is None:
        raise UnparseableWebhookPayload(event_type, "missing charge id")

    amount = _as_int(refund.get("amount"))
    if amount is None:
        amount = _as_int(obj.get("amount_refunded"))
    if amount is None:
        raise UnparseableWebhookPayload(event_type, "missing amount_refunded")

    currency = _as_str(refund.get("currency")) or _as_str(obj.get("currency"))
    if currency is None:
        raise UnparseableWebhookPayload(event_type, "missing currency")

    return ChargeRefunded(
        event_id=event_id,
        charge_id=charge_id,
        # Without a refund object the event id is the only stable key left.
        refund_id=_as_str(refund.get("id")) or f"refund_{event_id}",
        amount_refunded=amount,
        currency=currency.lower(),
        payment_intent_id=_object_id(obj.get("payment_intent")),
        metadata_user_id=_as_int(metadata.get("user_id")),
        checkout_session_id=_as_str(metadata.get("checkout_session_id")),
        pack_id=_as_str(metadata.get("pack_id")),
    )


EVENT_PARSERS: dict[str, Callable[[str, dict, Settings], ParsedEvent]] = {
    StripeEventType.CHECKOUT_SESSION_COMPLETED.value: _parse_checkout,
    StripeEventType.CHARGE_REFUNDED.value: _parse_refund,
}


def parse_event(payload: dict, settings: Settings) -> ParsedEvent:
    """
    Turn a raw Stripe event into one of the known event classes.

    Raises:
        UnparseableWebhookPayload: known event type with a missing or malformed field
    """
    event_id = payload["id"]
    event_type = payload["type"]
    if event_id.startswith(TEST_EVENT_PREFIX):
        return StripeTestEvent(event_id=event_id, event_type=event_type)

    parser = EVENT_PARSERS.get(event_type)
    if parser is None:
        return UnhandledEvent(event_id=event_id, event_type=event_type)

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise UnparseableWebhookPayload(event_type, "missing data.object")
    return parser(event_id, obj, settings)


def verify_and_decode(payload: bytes, signature_header: Optional[str], webhook_secret: str) -> dict:
    """
    Check the Stripe-Signature header over the raw body and decode the event.

    Raises:
        stripe.SignatureVerificationError: signature missing, stale, or wrong
        ValueError: body is not a JSON object
    """
    text = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(text, signature_header or "", webhook_secret)
    event = json.loads(text)
    if not isinstance(event, dict):
        raise ValueError("Webhook body is not a JSON object")
    return event


class WebhookIngestor:
    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings
        self.handlers: dict[type, Callable[[Any, Any], HandlerResult]] = {
            CheckoutSessionCompleted: self._handle_checkout_completed,
            ChargeRefunded: self._handle_charge_refunded,
            StripeTestEvent: self._handle_test_event,
            UnhandledEvent: self._handle_unhandled,
        }

    def ingest(self, payload: dict) -> IngestOutcome:
        """
        Apply one Stripe event exactly once.

        Raises:
            UnparseableWebhookPayload: the envelope has no usable id/type, so
                nothing can be recorded against it
        """
        event_id = _as_str(payload.get("id"))
        event_type = _as_str(payload.get("type"))
        if event_id is None or event_type is None:
            raise UnparseableWebhookPayload(str(event_type), "event envelope missing id or type")

        with self.database.transaction() as session:
            log = WebhookEventLog(session)
            existing = log.get(event_id)
            if existing is not None and existing.status != WebhookEventStatus.MANUAL_REVIEW:
                logger.info("Duplicate Stripe event ignored: %s (%s)", event_id, existing.status.value)
                return IngestOutcome(event_id, event_type, existing.status, duplicate=True)
            if not log.claim(event_id, event_type):
                finished = log.get(event_id)
                logger.info("Stripe event %s finished by a concurrent delivery", event_id)
                return IngestOutcome(event_id, event_type, finished.status, duplicate=True)

            try:
                event = parse_event(payload, self.settings)
            except UnparseableWebhookPayload as exc:
                logger.warning("Stripe event %s needs manual review: %s", event_id, exc)
                result = HandlerResult(status=WebhookEventStatus.MANUAL_REVIEW)
                event = None
            else:
                result = self.handlers[type(event)](session, event)

            log.finish(event_id, result.status, result.user_id, result.credits_purchased)
            OpsStatusStore(session).record_success(event_id, event_type)

        logger.info("Stripe event %s (%s) recorded as %s", event_id, event_type, result.status.value)
        return IngestOutcome(
            event_id,
            event_type,
            result.status,
            test_event=isinstance(event, StripeTestEvent),
        )

    def record_failure(self, event_id: Optional[str] = None, event_type: Optional[str] = None) -> None:
        with self.database.transaction() as session:
            OpsStatusStore(session).record_failure(event_id, event_type)

    def _handle_checkout_completed(self, session, event: CheckoutSessionCompleted) -> HandlerResult:
        receipt = ReceiptStore(session).create(
            user_id=event.user_id,
            stripe_checkout_session_id=event.checkout_session_id,
            pack_id=event.pack_id,
            credits_added=event.credits,
            amount_cents=event.amount_cents,
            currency=event.currency,
            stripe_payment_intent_id=event.payment_intent_id,
            stripe_receipt_url=event.receipt_url,
        )
        if isinstance(receipt, AlreadyExists):
            # The transaction that stored this receipt also granted its credits.
            logger.info(
                "Checkout session %s already credited (receipt %s)",
                event.checkout_session_id, receipt.row.id,
            )
        else:
            LedgerStore(session, max_retries=self.settings.ledger_max_retries).grant(
                event.user_id,
                event.credits,
                reason=f"Purchase: {event.pack_id}",
                reference_type=ReferenceType.PURCHASE,
                reference_id=receipt.row.id,
            )
        return HandlerResult(
            status=WebhookEventStatus.PROCESSED,
            user_id=event.user_id,
            credits_purchased=event.credits,
        )

    def _handle_charge_refunded(self, session, event: ChargeRefunded) -> HandlerResult:
        user_id = event.metadata_user_id
        if user_id is None:
            user_id = resolve_user_id_for_charge(
                session,
                payment_intent_id=event.payment_intent_id,
                checkout_session_id=event.checkout_session_id,
            )

        pack_id = event.pack_id
        checkout_session_id = event.checkout_session_id
        credits_to_reverse = None
        if pack_id is None or checkout_session_id is None:
            receipts = ReceiptStore(session)
            purchase = None
            if event.payment_intent_id:
                purchase = receipts.find_by_payment_intent(event.payment_intent_id)
            if purchase is None and checkout_session_id:
                purchase = receipts.find_by_checkout_session(checkout_session_id)
            if purchase is not None:
                pack_id = pack_id or purchase.pack_id
                checkout_session_id = checkout_session_id or purchase.stripe_checkout_session_id
                if pack_id == purchase.pack_id:
                    credits_to_reverse = purchase.credits_added

        if credits_to_reverse is None:
            pack = self.settings.get_pack(pack_id)
            credits_to_reverse = pack.credits if pack else None
        queued = RefundQueue(session).enqueue(
            stripe_charge_id=event.charge_id,
            stripe_refund_id=event.refund_id,
            amount_refunded=event.amount_refunded,
            currency=event.currency,
            user_id=user_id,
            stripe_checkout_session_id=checkout_session_id,
            pack_id=pack_id,
            credits_to_reverse=credits_to_reverse,
        )
        if isinstance(queued, AlreadyExists):
            logger.info("Refund %s already queued as item %s", event.refund_id, queued.row.id)
            return HandlerResult(status=WebhookEventStatus.SKIPPED, user_id=user_id)

        logger.info(
            "Refund %s queued for admin review as item %s (user %s)",
            event.refund_id, queued.row.id, user_id,
        )
        return HandlerResult(status=WebhookEventStatus.PROCESSED, user_id=user_id)

    def _handle_test_event(self, session, event: StripeTestEvent) -> HandlerResult:
        logger.info("Stripe test event %s acknowledged", event.event_id)
        return HandlerResult(status=WebhookEventStatus.SKIPPED)

    def _handle_unhandled(self, session, event: UnhandledEvent) -> HandlerResult:
        logger.info("Stripe event type %s not handled; recorded as skipped", event.event_type)
        return HandlerResult(status=WebhookEventStatus.SKIPPED)
