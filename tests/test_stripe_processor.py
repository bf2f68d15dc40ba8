from decimal import Decimal

import pytest
import stripe

from expertpay_api.core.errors import PaymentDeclined, ProcessorUnavailable
from expertpay_api.services.payments.processors import StripeProcessor


@pytest.fixture
def stripe_processor(monkeypatch) -> StripeProcessor:
    monkeypatch.setattr(stripe, "api_key", None)
    return StripeProcessor("sk_test_123")


@pytest.mark.asyncio
async def test_create_payment_uses_manual_capture_and_cents(stripe_processor, monkeypatch) -> None:
    captured: dict = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_123", "status": "requires_capture", "client_secret": "pi_123_secret"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    payment = await stripe_processor.create_payment(
        amount=Decimal("19.99"),
        currency="USD",
        metadata={"transaction_id": "txn-1"},
        idempotency_key="payment-txn-1",
        payment_method="credit_card",
        customer_email="client@example.com",
    )

    assert payment.id == "pi_123"
    assert payment.status == "requires_capture"
    assert payment.client_secret == "pi_123_secret"
    assert captured["amount"] == 1999
    assert captured["currency"] == "usd"
    assert captured["capture_method"] == "manual"
    assert captured["idempotency_key"] == "payment-txn-1"
    assert captured["receipt_email"] == "client@example.com"
    assert "payment_method" not in captured


@pytest.mark.asyncio
async def test_create_payment_forwards_payment_method_ids(stripe_processor, monkeypatch) -> None:
    captured: dict = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_456", "status": "requires_capture"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    await stripe_processor.create_payment(
        amount=Decimal("5"),
        currency="eur",
        metadata={},
        idempotency_key="payment-txn-2",
        payment_method="pm_card_visa",
    )

    assert captured["payment_method"] == "pm_card_visa"
    assert captured["amount"] == 500


@pytest.mark.asyncio
async def test_capture_reports_latest_charge(stripe_processor, monkeypatch) -> None:
    def fake_capture(payment_id, **kwargs):
        assert kwargs["idempotency_key"] == "capture-txn-1"
        return {"id": payment_id, "status": "succeeded", "latest_charge": "ch_789"}

    monkeypatch.setattr(stripe.PaymentIntent, "capture", fake_capture)

    capture = await stripe_processor.capture("pi_123", idempotency_key="capture-txn-1")

    assert capture.payment_id == "pi_123"
    assert capture.status == "succeeded"
    assert capture.capture_id == "ch_789"
    assert capture.captured_at is not None


@pytest.mark.asyncio
async def test_refund_converts_amounts(stripe_processor, monkeypatch) -> None:
    captured: dict = {}

    def fake_refund(**kwargs):
        captured.update(kwargs)
        return {"id": "re_1", "amount": 1250, "status": "succeeded"}

    monkeypatch.setattr(stripe.Refund, "create", fake_refund)

    refund = await stripe_processor.refund(
        "pi_123",
        Decimal("12.50"),
        idempotency_key="refund-txn-1-12.50",
        reason="Damaged",
    )

    assert refund.refund_id == "re_1"
    assert refund.amount == Decimal("12.50")
    assert captured["payment_intent"] == "pi_123"
    assert captured["amount"] == 1250
    assert captured["metadata"] == {"reason": "Damaged"}


@pytest.mark.asyncio
async def test_card_error_becomes_payment_declined(stripe_processor, monkeypatch) -> None:
    def declined(**kwargs):
        raise stripe.CardError("Your card was declined.", "card", "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)

    with pytest.raises(PaymentDeclined) as excinfo:
        await stripe_processor.create_payment(
            amount=Decimal("10"), currency="usd", metadata={}, idempotency_key="k"
        )

    assert "declined" in excinfo.value.message


@pytest.mark.asyncio
async def test_connection_error_is_transient(stripe_processor, monkeypatch) -> None:
    def unreachable(**kwargs):
        raise stripe.APIConnectionError("Network down")

    monkeypatch.setattr(stripe.PaymentIntent, "create", unreachable)

    with pytest.raises(ProcessorUnavailable) as excinfo:
        await stripe_processor.create_payment(
            amount=Decimal("10"), currency="usd", metadata={}, idempotency_key="k"
        )

    assert excinfo.value.transient is True


@pytest.mark.asyncio
async def test_authentication_error_is_not_retried(stripe_processor, monkeypatch) -> None:
    def bad_key(**kwargs):
        raise stripe.AuthenticationError("Invalid API key")

    monkeypatch.setattr(stripe.PaymentIntent, "create", bad_key)

    with pytest.raises(ProcessorUnavailable) as excinfo:
        await stripe_processor.create_payment(
            amount=Decimal("10"), currency="usd", metadata={}, idempotency_key="k"
        )

    assert excinfo.value.transient is False


def test_missing_secret_key_is_a_configuration_error() -> None:
    with pytest.raises(ProcessorUnavailable) as excinfo:
        StripeProcessor("")

    assert excinfo.value.transient is False
