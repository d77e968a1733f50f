import pytest

from billing.config import Settings
from billing.db import init_database, sqlite_url
from billing.service import BillingService

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_ID = 1


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=sqlite_url(tmp_path / "billing.db"),
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def database(settings):
    db = init_database(settings.database_url)
    yield db
    db.dispose()


@pytest.fixture
def service(database, settings):
    return BillingService(database, settings)


@pytest.fixture
def admin(service):
    return service.context(ADMIN_ID, is_admin=True)


@pytest.fixture
def make_checkout_event():
    def _make(
        event_id="evt_checkout_1",
        session_id="cs_test_1",
        user_id="7",
        pack_id="starter",
        credits="50",
        amount_total=999,
        currency="usd",
        payment_intent="pi_1",
        client_reference_id=None,
    ):
        metadata = {"pack_id": pack_id}
        if user_id is not None:
            metadata["user_id"] = user_id
        if credits is not None:
            metadata["credits"] = credits
        obj = {
            "id": session_id,
            "object": "checkout.session",
            "metadata": metadata,
            "amount_total": amount_total,
            "payment_intent": payment_intent,
            "client_reference_id": client_reference_id,
        }
        if currency is not None:
            obj["currency"] = currency
        return {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def make_refund_event():
    def _make(
        event_id="evt_refund_1",
        charge_id="ch_1",
        refund_id="re_1",
        amount=999,
        currency="usd",
        payment_intent="pi_1",
        metadata=None,
        with_refund_object=True,
    ):
        obj = {
            "id": charge_id,
            "object": "charge",
            "amount_refunded": amount,
            "currency": currency,
            "payment_intent": payment_intent,
            "metadata": metadata or {},
        }
        if with_refund_object:
            obj["refunds"] = {"data": [{"id": refund_id, "amount": amount, "currency": currency}]}
        return {
            "id": event_id,
            "type": "charge.refunded",
            "data": {"object": obj},
        }

    return _make
