from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from expertpay_api.core.errors import PaymentDeclined, ProcessorUnavailable
from expertpay_api.models.transaction import (
    DisputeResolutionEnum,
    DisputeStatusEnum,
    PaymentTransaction,
    TransactionStatusEnum,
)
from expertpay_api.services.loyalty import LoyaltyLedger
from expertpay_api.services.payments import PaymentDetails, PaymentOrchestrator


@pytest.fixture
def make_orchestrator(notifier, processors, fast_retry, clock):
    def factory(session) -> PaymentOrchestrator:
        return PaymentOrchestrator(
            session,
            notifier=notifier,
            processors=processors,
            retry_policy=fast_retry,
            clock=clock,
        )

    return factory


def _details(**overrides) -> PaymentDetails:
    values = {
        "payer_id": "client-1",
        "payer_email": "client@example.com",
        "recipient_id": "expert-1",
        "amount": "100.00",
        "payment_method": "credit_card",
        "payment_type": "product",
    }
    values.update(overrides)
    return PaymentDetails(**values)


def _sent_types(email_backend) -> list[str]:
    return [message["X-Notification-Type"] for message in email_backend.sent_messages]


async def _completed_payment(orchestrator: PaymentOrchestrator, **overrides):
    created = await orchestrator.process_payment(_details(**overrides))
    assert created.success, created.message
    completed = await orchestrator.complete_payment(created.transaction_id)
    assert completed.success, completed.message
    return completed


async def _balance(session, owner_id: str) -> int:
    account = await LoyaltyLedger(session)._read_account(owner_id)
    return account.points_balance if account else 0


@pytest.mark.asyncio
async def test_process_payment_prices_and_authorizes(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)

        result = await orchestrator.process_payment(_details(payment_type="service"))

        assert result.success is True
        assert result.status == TransactionStatusEnum.AUTHORIZED
        assert result.processor == "stripe"
        assert result.client_secret == "secret_123"
        assert result.amount == Decimal("100.00")
        assert result.commission_rate == Decimal("0.15")
        assert result.platform_fee == Decimal("15.00")
        assert result.recipient_amount == Decimal("85.00")
        assert result.expected_points == 120
        assert processors["stripe"].operations() == ["create_payment"]
        # points are only awarded on completion
        assert await _balance(session, "client-1") == 0


@pytest.mark.asyncio
async def test_process_payment_rejects_invalid_input(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)

        zero = await orchestrator.process_payment(_details(amount="0"))
        sub_cent = await orchestrator.process_payment(_details(amount="0.004"))
        bad_type = await orchestrator.process_payment(_details(payment_type="gift"))

        assert zero.success is False
        assert zero.error_code == "validation_error"
        assert sub_cent.success is False
        assert sub_cent.error_code == "validation_error"
        assert processors["stripe"].operations() == []
        assert await session.scalar(select(func.count()).select_from(PaymentTransaction)) == 0
        assert bad_type.success is False
        assert bad_type.error_code == "validation_error"


@pytest.mark.asyncio
async def test_recipient_tier_override_sets_commission(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)

        result = await orchestrator.process_payment(
            _details(payment_type="bundle", recipient_tier="platinum", is_subscriber=True)
        )

        assert result.commission_rate == Decimal("0.05")
        assert result.platform_fee == Decimal("5.00")


@pytest.mark.asyncio
async def test_complete_payment_awards_points_exactly_once(
    session_factory, make_orchestrator, email_backend
) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)

        completed = await _completed_payment(orchestrator)

        assert completed.status == TransactionStatusEnum.COMPLETED
        assert completed.loyalty.success is True
        assert completed.loyalty.points_awarded == 100
        assert completed.loyalty.recipient_points == 50

        again = await orchestrator.process_loyalty_after_payment(completed.transaction_id)
        assert again.success is False
        assert again.error_code == "already_processed"

        repeat_complete = await orchestrator.complete_payment(completed.transaction_id)
        assert repeat_complete.success is True
        assert repeat_complete.loyalty.already_processed is True

        assert await _balance(session, "client-1") == 100
        assert await _balance(session, "expert-1") == 50
        assert _sent_types(email_backend) == ["payment_confirmation"]

        transaction = await orchestrator.get_transaction(completed.transaction_id)
        assert transaction.loyalty_processed is True
        assert transaction.loyalty_points_awarded == 100


@pytest.mark.asyncio
async def test_loyalty_not_awarded_before_completion(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        created = await orchestrator.process_payment(_details())

        result = await orchestrator.process_loyalty_after_payment(created.transaction_id)

        assert result.success is False
        assert result.error_code == "not_eligible"


@pytest.mark.asyncio
async def test_referral_code_on_payment_credits_referrer(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        referrer = await LoyaltyLedger(session).get_or_create_account("expert-9")
        orchestrator = make_orchestrator(session)

        completed = await _completed_payment(orchestrator, referral_code=referrer.referral_code)

        assert completed.loyalty.referral is not None
        assert completed.loyalty.referral.referrer_points == 150
        assert await _balance(session, "expert-9") == 150
        assert await _balance(session, "client-1") == 200


@pytest.mark.asyncio
async def test_capture_moves_authorized_payment_to_captured(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        created = await orchestrator.process_payment(_details())

        captured = await orchestrator.capture_payment(created.transaction_id)
        second = await orchestrator.capture_payment(created.transaction_id)

        assert captured.success is True
        assert captured.status == TransactionStatusEnum.CAPTURED
        assert second.success is False
        assert second.error_code == "validation_error"
        assert processors["stripe"].operations() == ["create_payment", "capture"]


@pytest.mark.asyncio
async def test_paypal_refund_targets_capture_id(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        created = await orchestrator.process_payment(_details(payment_method="paypal"))
        assert created.status == TransactionStatusEnum.PENDING

        await orchestrator.capture_payment(created.transaction_id)
        refund = await orchestrator.process_refund(created.transaction_id)

        assert refund.success is True
        paypal = processors["paypal"]
        refund_call = dict(paypal.calls)["refund"]
        assert refund_call["payment_id"].startswith("cap_paypal_")
        assert refund_call["amount"] == Decimal("100.00")


@pytest.mark.asyncio
async def test_partial_refund_reverses_proportional_points(
    session_factory, make_orchestrator, email_backend
) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)

        refund = await orchestrator.process_refund(completed.transaction_id, "50.00", "changed my mind")

        assert refund.success is True
        assert refund.amount == Decimal("50.00")
        assert refund.points_reversed == 50
        assert refund.status == TransactionStatusEnum.REFUNDED
        assert await _balance(session, "client-1") == 50
        # recipient commission points stay
        assert await _balance(session, "expert-1") == 50
        assert _sent_types(email_backend)[-1] == "refund_confirmation"

        transaction = await orchestrator.get_transaction(completed.transaction_id)
        assert transaction.status == TransactionStatusEnum.REFUNDED
        assert transaction.refunded_amount == Decimal("50.00")


@pytest.mark.asyncio
async def test_refund_reversal_is_clamped_to_remaining_balance(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)
        await LoyaltyLedger(session).add_points("client-1", -80, "Spent elsewhere")

        refund = await orchestrator.process_refund(completed.transaction_id)

        assert refund.success is True
        assert refund.points_reversed == 20
        assert await _balance(session, "client-1") == 0


@pytest.mark.asyncio
async def test_refund_rejects_bad_state_and_amount(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        authorized = await orchestrator.process_payment(_details())
        not_refundable = await orchestrator.process_refund(authorized.transaction_id)

        completed = await _completed_payment(orchestrator, payer_id="client-2")
        too_much = await orchestrator.process_refund(completed.transaction_id, "150.00")
        missing = await orchestrator.process_refund("not-a-uuid")

        assert not_refundable.error_code == "invalid_state_for_refund"
        assert too_much.error_code == "validation_error"
        assert missing.error_code == "not_found"

        ok = await orchestrator.process_refund(completed.transaction_id)
        twice = await orchestrator.process_refund(completed.transaction_id)
        assert ok.success is True
        assert twice.error_code == "invalid_state_for_refund"


@pytest.mark.asyncio
async def test_transient_processor_failure_marks_payment_failed(
    session_factory, make_orchestrator, processors
) -> None:
    processors["stripe"].fail_with = ProcessorUnavailable("stripe down")
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)

        result = await orchestrator.process_payment(_details())

        assert result.success is False
        assert result.error_code == "processor_unavailable"
        assert result.status == TransactionStatusEnum.FAILED
        # retried up to the policy limit
        assert processors["stripe"].operations() == ["create_payment", "create_payment"]

        transaction = await orchestrator.get_transaction(result.transaction_id)
        assert transaction.status == TransactionStatusEnum.FAILED
        assert transaction.failure_reason == "stripe down"


@pytest.mark.asyncio
async def test_declined_payment_restores_redeemed_points(session_factory, make_orchestrator, processors) -> None:
    processors["stripe"].fail_with = PaymentDeclined("card declined")
    async with session_factory() as session:
        await LoyaltyLedger(session).add_points("client-1", 1000, "Seed")
        orchestrator = make_orchestrator(session)

        result = await orchestrator.process_payment(_details(redeem_points=500))

        assert result.success is False
        assert result.error_code == "payment_declined"
        assert processors["stripe"].operations() == ["create_payment"]
        assert await _balance(session, "client-1") == 1000

        profile = await LoyaltyLedger(session).get_profile("client-1")
        assert [entry.delta for entry in profile.points_history] == [1000, -500, 500]


@pytest.mark.asyncio
async def test_points_redemption_discounts_the_charge(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        await LoyaltyLedger(session).add_points("client-1", 1000, "Seed")
        orchestrator = make_orchestrator(session)

        result = await orchestrator.process_payment(_details(redeem_points=500))

        assert result.success is True
        assert result.points_redeemed == 500
        assert result.amount == Decimal("95.00")
        assert result.discounts["points"]["redeemed"] == 500
        assert dict(processors["stripe"].calls)["create_payment"]["amount"] == Decimal("95.00")
        assert await _balance(session, "client-1") == 500


async def _backdate(session, transaction_id, created: datetime) -> None:
    await session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id)
        .values(created_at=created)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


@pytest.mark.asyncio
async def test_dispute_window_is_thirty_days(session_factory, make_orchestrator, clock) -> None:
    created = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        inside = await _completed_payment(orchestrator)
        just_over = await _completed_payment(orchestrator, payer_id="client-3")
        outside = await _completed_payment(orchestrator, payer_id="client-2")
        await _backdate(session, inside.transaction_id, created)
        await _backdate(session, outside.transaction_id, created)
        await _backdate(session, just_over.transaction_id, created)

        clock.now = created + timedelta(days=30)
        opened = await orchestrator.create_dispute(inside.transaction_id, "client-1", "Not delivered", {"note": "x"})

        clock.now = created + timedelta(days=30, seconds=1)
        late = await orchestrator.create_dispute(just_over.transaction_id, "client-3", "Not delivered")

        clock.now = created + timedelta(days=31)
        expired = await orchestrator.create_dispute(outside.transaction_id, "client-2", "Not delivered")

        assert opened.success is True
        assert opened.dispute_status == DisputeStatusEnum.PENDING
        assert opened.transaction_status == TransactionStatusEnum.DISPUTED
        assert opened.dispute_id.startswith("dispute_")
        assert expired.success is False
        assert expired.error_code == "dispute_window_expired"
        assert late.success is False
        assert late.error_code == "dispute_window_expired"


@pytest.mark.asyncio
async def test_dispute_requires_owner_and_single_open_dispute(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)

        stranger = await orchestrator.create_dispute(completed.transaction_id, "client-2", "Fraud")
        first = await orchestrator.create_dispute(completed.transaction_id, "client-1", "Fraud")
        duplicate = await orchestrator.create_dispute(completed.transaction_id, "client-1", "Fraud")

        assert stranger.error_code == "ownership_mismatch"
        assert first.success is True
        assert duplicate.error_code == "validation_error"


@pytest.mark.asyncio
async def test_merchant_resolution_restores_completed_and_cannot_repeat(
    session_factory, make_orchestrator, email_backend
) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)
        await orchestrator.create_dispute(completed.transaction_id, "client-1", "Late delivery")

        resolved = await orchestrator.resolve_dispute(completed.transaction_id, "merchant", "Delivered on time")
        again = await orchestrator.resolve_dispute(completed.transaction_id, "customer")

        assert resolved.success is True
        assert resolved.resolution == DisputeResolutionEnum.MERCHANT
        assert resolved.transaction_status == TransactionStatusEnum.COMPLETED
        assert resolved.refund is None
        assert again.success is False
        assert again.error_code == "dispute_already_resolved"
        assert _sent_types(email_backend)[-2:] == ["dispute_opened", "dispute_resolved"]
        assert await _balance(session, "client-1") == 100


@pytest.mark.asyncio
async def test_customer_resolution_refunds_in_full(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)
        await orchestrator.create_dispute(completed.transaction_id, "client-1", "Never arrived")

        resolved = await orchestrator.resolve_dispute(completed.transaction_id, DisputeResolutionEnum.CUSTOMER)

        assert resolved.success is True
        assert resolved.transaction_status == TransactionStatusEnum.REFUNDED
        assert resolved.refund.amount == Decimal("100.00")
        assert resolved.refund.points_reversed == 100
        assert await _balance(session, "client-1") == 0


@pytest.mark.asyncio
async def test_failed_customer_refund_reopens_dispute(session_factory, make_orchestrator, processors) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)
        await orchestrator.create_dispute(completed.transaction_id, "client-1", "Never arrived")
        processors["stripe"].fail_with = ProcessorUnavailable("stripe down")

        resolved = await orchestrator.resolve_dispute(completed.transaction_id, "customer")

        assert resolved.success is False
        assert resolved.error_code == "processor_unavailable"
        transaction = await orchestrator.get_transaction(completed.transaction_id)
        assert transaction.dispute_status == DisputeStatusEnum.PENDING
        assert transaction.status == TransactionStatusEnum.DISPUTED


@pytest.mark.asyncio
async def test_resolve_without_dispute(session_factory, make_orchestrator) -> None:
    async with session_factory() as session:
        orchestrator = make_orchestrator(session)
        completed = await _completed_payment(orchestrator)

        missing = await orchestrator.resolve_dispute(completed.transaction_id, "merchant")
        unknown = await orchestrator.resolve_dispute(completed.transaction_id, "arbiter")

        assert missing.error_code == "dispute_not_found"
        assert unknown.error_code == "validation_error"


@pytest.mark.asyncio
async def test_notifications_are_best_effort(session_factory, processors, fast_retry, clock) -> None:
    class BrokenBackend:
        async def send_email(self, message) -> None:
            raise ConnectionRefusedError("smtp down")

    from expertpay_api.services.notifications import NotificationGateway

    async with session_factory() as session:
        orchestrator = PaymentOrchestrator(
            session,
            notifier=NotificationGateway(backend=BrokenBackend()),
            processors=processors,
            retry_policy=fast_retry,
            clock=clock,
        )

        completed = await _completed_payment(orchestrator)

        assert completed.status == TransactionStatusEnum.COMPLETED
        assert completed.loyalty.points_awarded == 100
