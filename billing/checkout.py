"""
Stripe Checkout sessions for credit pack purchases.

The session carries the buyer and pack in ``client_reference_id`` and
``metadata`` so the ``checkout.session.completed`` webhook can grant the
credits without any other lookup.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

import stripe

from .config import CreditPack, Settings
from .errors import CheckoutFailed, PaymentsNotConfigured, ValidationError
from .models import CheckoutResponse

logger = logging.getLogger(__name__)


def normalize_origin(origin: Optional[str], settings: Settings) -> str:
    candidate = (origin or "").strip()
    if not candidate and settings.cors_allow_origins:
        candidate = settings.cors_allow_origins[0]
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid origin {candidate!r}")
    return f"{parsed.scheme}://{parsed.netloc}"


def checkout_metadata(pack: CreditPack, user_id: int) -> dict[str, str]:
    return {
        "user_id": str(user_id),
        "pack_id": pack.pack_id,
        "credits": str(pack.credits),
    }


def create_checkout_session(settings: Settings, pack: CreditPack, user_id: int, origin: str) -> CheckoutResponse:
    """
    Open a hosted Stripe Checkout page for one credit pack.

    Args:
        settings: Configuration snapshot holding the Stripe secret key
        pack: Pack being bought
        user_id: Internal id of the buyer
        origin: Normalized site origin for the success and cancel redirects

    Returns:
        The checkout URL and Stripe session id

    Raises:
        PaymentsNotConfigured: no Stripe secret key
        CheckoutFailed: Stripe refused or returned no URL
    """
    if not settings.stripe_secret_key:
        raise PaymentsNotConfigured("Stripe is not configured")

    try:
        session = stripe.checkout.Session.create(
            api_key=settings.stripe_secret_key,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": pack.currency,
                        "unit_amount": pack.price_cents,
                        "product_data": {
                            "name": f"{pack.label} Pack - {pack.credits} Credits",
                            "description": pack.description,
                        },
                    },
                }
            ],
            client_reference_id=str(user_id),
            metadata=checkout_metadata(pack, user_id),
            allow_promotion_codes=True,
            success_url=f"{origin}/billing?checkout=success",
            cancel_url=f"{origin}/billing?checkout=cancelled",
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout creation failed for user %s pack %s: %s", user_id, pack.pack_id, exc)
        raise CheckoutFailed("Unable to start checkout right now") from exc

    url = getattr(session, "url", None)
    if not url:
        raise CheckoutFailed("Stripe did not return a checkout URL")
    return CheckoutResponse(checkout_url=url, session_id=session.id)
