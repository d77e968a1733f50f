"""
Unit Tests for Purchase Receipts and User Resolution
"""

import pytest

from billing.db import AlreadyExists, Inserted
from billing.errors import NotFound
from billing.receipts import ReceiptStore, resolve_user_id_for_charge


def create_receipt(session, user_id=7, session_id="cs_1", payment_intent="pi_1", pack_id="starter"):
    return ReceiptStore(session).create(
        user_id=user_id,
        stripe_checkout_session_id=session_id,
        pack_id=pack_id,
        credits_added=5,
        amount_cents=499,
        currency="USD",
        stripe_payment_intent_id=payment_intent,
    )


class TestReceiptStore:
    """Tests for idempotent receipt creation and owner-scoped reads."""

    def test_create_is_idempotent_per_checkout_session(self, database):
        """The same checkout session never produces two receipts."""
        with database.transaction() as session:
            first = create_receipt(session)
        with database.transaction() as session:
            second = create_receipt(session, user_id=99)
            receipts = ReceiptStore(session).list_all()[0]

        # Verify the original row is reported back
        assert isinstance(first, Inserted)
        assert isinstance(second, AlreadyExists)
        assert second.row.id == first.row.id
        assert second.row.user_id == 7
        assert len(receipts) == 1

    def test_currency_is_stored_lowercase(self, database):
        """Currency codes are normalized."""
        with database.transaction() as session:
            result = create_receipt(session)

        assert result.row.currency == "usd"

    def test_get_by_id_for_owner(self, database):
        """The owner can read their receipt."""
        with database.transaction() as session:
            receipt_id = create_receipt(session).row.id
            receipt = ReceiptStore(session).get_by_id(receipt_id, caller_user_id=7)

        assert receipt.stripe_checkout_session_id == "cs_1"
        assert receipt.credits_added == 5

    def test_get_by_id_hides_other_users_receipts(self, database):
        """Another user's receipt looks exactly like a missing one."""
        with database.transaction() as session:
            receipt_id = create_receipt(session).row.id

        with database.transaction() as session:
            store = ReceiptStore(session)
            with pytest.raises(NotFound):
                store.get_by_id(receipt_id, caller_user_id=8)
            with pytest.raises(NotFound):
                store.get_by_id(receipt_id + 100, caller_user_id=7)

    def test_list_for_user_only_returns_own(self, database):
        """Receipt lists are scoped to the caller."""
        with database.transaction() as session:
            create_receipt(session, user_id=7, session_id="cs_a", payment_intent="pi_a")
            create_receipt(session, user_id=8, session_id="cs_b", payment_intent="pi_b")
            create_receipt(session, user_id=7, session_id="cs_c", payment_intent="pi_c")
            receipts = ReceiptStore(session).list_for_user(7)

        assert {r.stripe_checkout_session_id for r in receipts} == {"cs_a", "cs_c"}


class TestResolveUserForCharge:
    """Tests for mapping a Stripe charge back to an internal user."""

    @pytest.fixture(autouse=True)
    def receipts(self, database):
        with database.transaction() as session:
            create_receipt(session, user_id=1, session_id="cs_A", payment_intent="pi_1")
            create_receipt(session, user_id=2, session_id="cs_B", payment_intent="pi_2")

    def test_payment_intent_takes_precedence(self, database):
        """A payment intent match wins over a conflicting checkout session."""
        with database.transaction() as session:
            user_id = resolve_user_id_for_charge(session, payment_intent_id="pi_1", checkout_session_id="cs_B")

        assert user_id == 1

    def test_falls_back_to_checkout_session(self, database):
        """An unknown payment intent falls through to the checkout session."""
        with database.transaction() as session:
            assert resolve_user_id_for_charge(session, checkout_session_id="cs_B") == 2
            assert resolve_user_id_for_charge(
                session, payment_intent_id="pi_unknown", checkout_session_id="cs_B"
            ) == 2

    def test_unmapped_charge(self, database):
        """No match on either key gives None."""
        with database.transaction() as session:
            assert resolve_user_id_for_charge(session, payment_intent_id="pi_9") is None
            assert resolve_user_id_for_charge(session) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
