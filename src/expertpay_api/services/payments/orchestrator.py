"""Payment lifecycle: authorization, capture, completion, refunds and disputes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from expertpay_api.core.errors import (
    DisputeAlreadyResolved,
    DisputeNotFound,
    DisputeWindowExpired,
    InvalidStateForRefund,
    NotFound,
    OrchestrationError,
    OwnershipMismatch,
    ValidationError,
)
from expertpay_api.core.logging import operation_context
from expertpay_api.core.settings import settings
from expertpay_api.models.transaction import (
    DisputeResolutionEnum,
    DisputeStatusEnum,
    PaymentTransaction,
    PaymentTypeEnum,
    ProcessorNameEnum,
    TransactionStatusEnum,
)
from expertpay_api.services.loyalty import LoyaltyLedger, ReferralResult
from expertpay_api.services.loyalty.rules import (
    calculate_loyalty_points,
    coerce_payment_type,
    recipient_share,
)
from expertpay_api.services.notifications import NotificationGateway
from expertpay_api.services.payments.commission import calculate_commission_rate, split_amount
from expertpay_api.services.payments.discounts import plan_payment_discounts
from expertpay_api.services.payments.processors import (
    PaymentProcessor,
    RetryPolicy,
    call_processor,
    get_processor,
    get_subscription_processor,
    processor_name_for_method,
)


REFUNDABLE_STATUSES = frozenset(
    {
        TransactionStatusEnum.COMPLETED,
        TransactionStatusEnum.CAPTURED,
        TransactionStatusEnum.PROCESSING,
        TransactionStatusEnum.DELIVERED,
        TransactionStatusEnum.SHIPPED,
    }
)
CAPTURABLE_STATUSES = frozenset({TransactionStatusEnum.PENDING, TransactionStatusEnum.AUTHORIZED})
COMPLETABLE_STATUSES = frozenset(
    {
        TransactionStatusEnum.AUTHORIZED,
        TransactionStatusEnum.CAPTURED,
        TransactionStatusEnum.PROCESSING,
        TransactionStatusEnum.SHIPPED,
        TransactionStatusEnum.DELIVERED,
    }
)

_CENT = Decimal("0.01")


_PROCESSOR_STATUS_MAP: Mapping[str, TransactionStatusEnum] = {
    "authorized": TransactionStatusEnum.AUTHORIZED,
    "requires_capture": TransactionStatusEnum.AUTHORIZED,
    "approved": TransactionStatusEnum.AUTHORIZED,
    "succeeded": TransactionStatusEnum.CAPTURED,
    "captured": TransactionStatusEnum.CAPTURED,
    "completed": TransactionStatusEnum.CAPTURED,
    "processing": TransactionStatusEnum.PROCESSING,
}


@dataclass(slots=True)
class PaymentDetails:
    """Caller input for ``process_payment``."""

    payer_id: str
    amount: Decimal | float | int | str
    payment_method: str
    recipient_id: str | None = None
    payer_email: str | None = None
    currency: str = "USD"
    payment_type: PaymentTypeEnum | str = PaymentTypeEnum.PRODUCT
    is_subscriber: bool = False
    # Explicit expert tier (e.g. "new"); otherwise the recipient's loyalty tier is used.
    recipient_tier: str | None = None
    redeem_points: int = 0
    apply_tier_discount: bool = False
    referral_code: str | None = None
    description: str | None = None
    subscription_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LoyaltyAwardResult:
    success: bool
    message: str | None = None
    error_code: str | None = None
    points_awarded: int = 0
    recipient_points: int = 0
    tier_upgraded: bool = False
    new_tier: str | None = None
    already_processed: bool = False
    referral: ReferralResult | None = None


@dataclass(slots=True)
class PaymentResult:
    """Uniform result shape regardless of processor."""

    success: bool
    message: str | None = None
    error_code: str | None = None
    transaction_id: UUID | None = None
    status: TransactionStatusEnum | None = None
    amount: Decimal | None = None
    platform_fee: Decimal | None = None
    recipient_amount: Decimal | None = None
    commission_rate: Decimal | None = None
    processor: str | None = None
    processor_reference: str | None = None
    client_secret: str | None = None
    approval_url: str | None = None
    expected_points: int | None = None
    points_redeemed: int = 0
    discounts: dict[str, Any] = field(default_factory=dict)
    loyalty: LoyaltyAwardResult | None = None


@dataclass(slots=True)
class RefundResult:
    success: bool
    message: str | None = None
    error_code: str | None = None
    transaction_id: UUID | None = None
    refund_id: str | None = None
    amount: Decimal | None = None
    points_reversed: int = 0
    status: TransactionStatusEnum | None = None


@dataclass(slots=True)
class DisputeResult:
    success: bool
    message: str | None = None
    error_code: str | None = None
    transaction_id: UUID | None = None
    dispute_id: str | None = None
    dispute_status: DisputeStatusEnum | None = None
    resolution: DisputeResolutionEnum | None = None
    transaction_status: TransactionStatusEnum | None = None
    refund: RefundResult | None = None


def _coerce_uuid(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise NotFound(f"Transaction {value} not found") from exc


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class PaymentOrchestrator:
    """Coordinates processors, the loyalty ledger and notifications for one-off payments.

    Validation and business-rule failures come back as ``success=False``
    results carrying the error code; they are never raised to the caller.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LoyaltyLedger | None = None,
        notifier: NotificationGateway | None = None,
        processors: Mapping[str, PaymentProcessor] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LoyaltyLedger(db_session)
        self._notifier = notifier or NotificationGateway()
        self._processors = processors
        self._retry_policy = retry_policy
        self._now = clock or (lambda: datetime.now(timezone.utc))

    async def get_transaction(self, transaction_id: UUID | str) -> PaymentTransaction | None:
        try:
            key = _coerce_uuid(transaction_id)
        except NotFound:
            return None
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.id == key)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def process_payment(self, details: PaymentDetails) -> PaymentResult:
        """Price, record and authorize a payment through the matching processor.

        Loyalty points are only estimated here (``expected_points``); they are
        awarded when the payment completes.
        """

        with operation_context("process_payment", payer_id=details.payer_id, method=details.payment_method):
            try:
                return await self._process_payment(details)
            except OrchestrationError as exc:
                logger.warning("Payment rejected", error_code=exc.code, error=exc.message)
                return PaymentResult(success=False, message=exc.message, error_code=exc.code)

    async def capture_payment(self, transaction_id: UUID | str) -> PaymentResult:
        with operation_context("capture_payment", transaction_id=transaction_id):
            try:
                return await self._capture_payment(transaction_id)
            except OrchestrationError as exc:
                logger.warning("Capture rejected", error_code=exc.code, error=exc.message)
                return PaymentResult(success=False, message=exc.message, error_code=exc.code)

    async def complete_payment(self, transaction_id: UUID | str) -> PaymentResult:
        """Mark a payment completed, award loyalty points and confirm to the payer."""

        with operation_context("complete_payment", transaction_id=transaction_id):
            try:
                transaction = await self._require_transaction(transaction_id)
                if transaction.status != TransactionStatusEnum.COMPLETED:
                    if transaction.status not in COMPLETABLE_STATUSES:
                        raise ValidationError(
                            f"Cannot complete transaction with status: {transaction.status.value}"
                        )
                    transaction.status = TransactionStatusEnum.COMPLETED
                    transaction.completed_at = self._now()
                    await self._db.commit()
                    logger.info("Completed payment", transaction_id=str(transaction.id))

                    await self._notifier.send(
                        transaction.payer_email,
                        "payment_confirmation",
                        {
                            "transaction_id": str(transaction.id),
                            "amount": f"{transaction.gross_amount} {transaction.currency}",
                            "expected_points": transaction.expected_loyalty_points,
                        },
                    )
            except OrchestrationError as exc:
                logger.warning("Completion rejected", error_code=exc.code, error=exc.message)
                return PaymentResult(success=False, message=exc.message, error_code=exc.code)

            transaction_key = transaction.id
            loyalty = await self.process_loyalty_after_payment(transaction_key)
            transaction = await self._require_transaction(transaction_key)
            result = self._result_for(transaction)
            result.loyalty = loyalty
            return result

    async def process_loyalty_after_payment(self, transaction_id: UUID | str) -> LoyaltyAwardResult:
        """Award the payer's points for a completed payment exactly once.

        The ``loyalty_processed`` flag is claimed with a conditional update in
        the same database transaction as the balance change, so concurrent or
        repeated calls cannot award twice.
        """

        with operation_context("process_loyalty_after_payment", transaction_id=transaction_id):
            try:
                return await self._process_loyalty(transaction_id)
            except OrchestrationError as exc:
                await self._db.rollback()
                logger.warning("Loyalty processing failed", error_code=exc.code, error=exc.message)
                return LoyaltyAwardResult(success=False, message=exc.message, error_code=exc.code)

    async def process_refund(
        self,
        transaction_id: UUID | str,
        amount: Decimal | float | str | None = None,
        reason: str | None = None,
    ) -> RefundResult:
        """Refund all or part of a payment and reverse the matching share of points.

        The transaction always ends ``refunded``, even for partial amounts. A
        failed point reversal is logged and does not fail the refund.
        """

        with operation_context("process_refund", transaction_id=transaction_id):
            try:
                return await self._process_refund(transaction_id, amount, reason)
            except OrchestrationError as exc:
                logger.warning("Refund rejected", error_code=exc.code, error=exc.message)
                return RefundResult(success=False, message=exc.message, error_code=exc.code)

    async def create_dispute(
        self,
        transaction_id: UUID | str,
        owner_id: str,
        reason: str,
        evidence: Mapping[str, Any] | None = None,
    ) -> DisputeResult:
        with operation_context("create_dispute", transaction_id=transaction_id, owner_id=owner_id):
            try:
                return await self._create_dispute(transaction_id, owner_id, reason, evidence)
            except OrchestrationError as exc:
                logger.warning("Dispute rejected", error_code=exc.code, error=exc.message)
                return DisputeResult(success=False, message=exc.message, error_code=exc.code)

    async def resolve_dispute(
        self,
        transaction_id: UUID | str,
        resolution: DisputeResolutionEnum | str,
        notes: str | None = None,
    ) -> DisputeResult:
        """Settle an open dispute; a customer resolution refunds the full amount."""

        with operation_context("resolve_dispute", transaction_id=transaction_id, resolution=resolution):
            try:
                return await self._resolve_dispute(transaction_id, resolution, notes)
            except OrchestrationError as exc:
                logger.warning("Dispute resolution rejected", error_code=exc.code, error=exc.message)
                return DisputeResult(success=False, message=exc.message, error_code=exc.code)

    async def _process_payment(self, details: PaymentDetails) -> PaymentResult:
        amount = self._parse_amount(details.amount)
        if amount.quantize(_CENT, rounding=ROUND_HALF_UP) <= 0:
            raise ValidationError("Payment amount must be at least 0.01")
        if not details.payer_id:
            raise ValidationError("payer_id is required")
        payment_type = coerce_payment_type(details.payment_type)
        if payment_type is None:
            raise ValidationError(f"Unsupported payment type: {details.payment_type}")

        processor_name = processor_name_for_method(details.payment_method)
        processor = get_processor(details.payment_method, self._processors)

        payer = await self._ledger.get_or_create_account(details.payer_id, identifier=details.payer_email)
        payer_tier = payer.tier
        recipient_tier = details.recipient_tier
        if recipient_tier is None and details.recipient_id:
            recipient = await self._ledger.get_account(details.recipient_id)
            if recipient is not None:
                recipient_tier = recipient.tier.value

        plan = plan_payment_discounts(
            amount,
            available_points=payer.points_balance,
            tier=payer_tier,
            redeem_points=details.redeem_points,
            apply_tier_discount=details.apply_tier_discount,
        )
        rate = calculate_commission_rate(payment_type, recipient_tier, details.is_subscriber)
        split = split_amount(plan.final_amount, rate)
        expected_points = calculate_loyalty_points(plan.final_amount, payment_type, payer_tier)

        transaction = PaymentTransaction(
            payer_id=details.payer_id,
            payer_email=details.payer_email,
            recipient_id=details.recipient_id,
            gross_amount=plan.final_amount,
            list_amount=plan.list_amount,
            currency=details.currency.upper(),
            payment_type=payment_type,
            commission_rate=rate,
            platform_fee=split.platform_fee,
            net_amount=split.net_amount,
            status=TransactionStatusEnum.PENDING,
            processor=ProcessorNameEnum(processor_name),
            payment_method=details.payment_method,
            subscription_id=details.subscription_id,
            discounts_json=plan.as_dict() or None,
            points_redeemed=0,
            expected_loyalty_points=expected_points,
            loyalty_processed=False,
            referral_code=details.referral_code,
            metadata_json=dict(details.metadata) or None,
        )
        self._db.add(transaction)
        await self._db.commit()
        transaction_key = transaction.id

        redeemed = 0
        try:
            if plan.points_to_redeem:
                await self._ledger.add_points(
                    details.payer_id,
                    -plan.points_to_redeem,
                    "Points redemption for purchase",
                    str(transaction_key),
                )
                redeemed = plan.points_to_redeem

            payment = await call_processor(
                "create_payment",
                lambda: processor.create_payment(
                    amount=plan.final_amount,
                    currency=details.currency,
                    metadata={
                        "transaction_id": str(transaction_key),
                        "payer_id": details.payer_id,
                        "description": details.description or "Order payment",
                    },
                    idempotency_key=f"payment-{transaction_key}",
                    payment_method=details.payment_method,
                    customer_email=details.payer_email,
                ),
                processor=processor_name,
                policy=self._retry_policy,
            )
        except OrchestrationError as exc:
            if redeemed:
                await self._ledger.add_points(
                    details.payer_id,
                    redeemed,
                    "Points restored after failed payment",
                    str(transaction_key),
                )
            transaction = await self._require_transaction(transaction_key)
            transaction.status = TransactionStatusEnum.FAILED
            transaction.failure_reason = exc.message
            await self._db.commit()
            logger.warning(
                "Payment processor call failed",
                transaction_id=str(transaction_key),
                error_code=exc.code,
                error=exc.message,
            )
            return PaymentResult(
                success=False,
                message=exc.message,
                error_code=exc.code,
                transaction_id=transaction_key,
                status=TransactionStatusEnum.FAILED,
            )

        transaction = await self._require_transaction(transaction_key)
        transaction.processor_reference = payment.id
        transaction.points_redeemed = redeemed
        transaction.status = _PROCESSOR_STATUS_MAP.get(payment.status.lower(), TransactionStatusEnum.PENDING)
        await self._db.commit()
        logger.info(
            "Processed payment",
            transaction_id=str(transaction_key),
            processor=processor_name,
            status=transaction.status.value,
            amount=str(transaction.gross_amount),
            platform_fee=str(transaction.platform_fee),
        )

        result = self._result_for(transaction)
        result.client_secret = payment.client_secret
        result.approval_url = payment.approval_url
        return result

    async def _capture_payment(self, transaction_id: UUID | str) -> PaymentResult:
        transaction = await self._require_transaction(transaction_id)
        if transaction.status not in CAPTURABLE_STATUSES:
            raise ValidationError(f"Cannot capture transaction with status: {transaction.status.value}")
        if not transaction.processor_reference:
            raise ValidationError("Transaction has no processor reference to capture")

        processor = get_subscription_processor(transaction.processor.value, self._processors)
        transaction_key = transaction.id
        reference = transaction.processor_reference
        capture = await call_processor(
            "capture",
            lambda: processor.capture(reference, idempotency_key=f"capture-{transaction_key}"),
            processor=processor.name,
            policy=self._retry_policy,
        )

        transaction.status = TransactionStatusEnum.CAPTURED
        transaction.processor_capture_id = capture.capture_id
        await self._db.commit()
        logger.info("Captured payment", transaction_id=str(transaction_key), capture_id=capture.capture_id)
        return self._result_for(transaction)

    async def _process_loyalty(self, transaction_id: UUID | str) -> LoyaltyAwardResult:
        transaction = await self._require_transaction(transaction_id)
        if transaction.status != TransactionStatusEnum.COMPLETED:
            return LoyaltyAwardResult(
                success=False,
                message="Order not eligible for loyalty processing",
                error_code="not_eligible",
            )
        if transaction.loyalty_processed:
            return LoyaltyAwardResult(
                success=False,
                message="Loyalty already processed for this order",
                error_code="already_processed",
                already_processed=True,
            )

        transaction_key = transaction.id
        payer_id = transaction.payer_id
        recipient_id = transaction.recipient_id
        referral_code = transaction.referral_code
        payer = await self._ledger.get_or_create_account(payer_id, identifier=transaction.payer_email)
        points = transaction.expected_loyalty_points
        if points is None:
            points = calculate_loyalty_points(transaction.gross_amount, transaction.payment_type, payer.tier)

        claim = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_key,
                PaymentTransaction.loyalty_processed.is_(False),
            )
            .values(loyalty_processed=True, loyalty_points_awarded=points)
            .execution_options(synchronize_session=False)
        )
        claimed = await self._db.execute(claim)
        if claimed.rowcount != 1:
            await self._db.rollback()
            return LoyaltyAwardResult(
                success=False,
                message="Loyalty already processed for this order",
                error_code="already_processed",
                already_processed=True,
            )

        result = LoyaltyAwardResult(success=True, points_awarded=points)
        if points > 0:
            mutation = await self._ledger.add_points(payer_id, points, "Purchase reward", str(transaction_key))
            result.tier_upgraded = mutation.tier_upgraded
            result.new_tier = mutation.new_tier.value
        else:
            await self._db.commit()
        logger.info("Awarded purchase points", transaction_id=str(transaction_key), points=points)

        share = recipient_share(points)
        if recipient_id and share > 0:
            try:
                await self._ledger.add_points(recipient_id, share, "Commission points", str(transaction_key))
                result.recipient_points = share
            except OrchestrationError as exc:
                logger.error(
                    "Failed to credit recipient points",
                    transaction_id=str(transaction_key),
                    error_code=exc.code,
                )

        if referral_code:
            try:
                result.referral = await self._ledger.process_referral(
                    referral_code, payer_id, reference=str(transaction_key)
                )
            except OrchestrationError as exc:
                logger.warning(
                    "Referral on payment not applied",
                    transaction_id=str(transaction_key),
                    error_code=exc.code,
                )

        return result

    async def _process_refund(
        self,
        transaction_id: UUID | str,
        amount: Decimal | float | str | None,
        reason: str | None,
        *,
        allow_disputed: bool = False,
    ) -> RefundResult:
        transaction = await self._require_transaction(transaction_id)
        allowed = transaction.status in REFUNDABLE_STATUSES or (
            allow_disputed and transaction.status == TransactionStatusEnum.DISPUTED
        )
        if not allowed:
            raise InvalidStateForRefund(f"Cannot refund transaction with status: {transaction.status.value}")

        gross = Decimal(transaction.gross_amount)
        refund_amount = gross if amount is None else self._parse_amount(amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if refund_amount > gross:
            raise ValidationError("Refund amount exceeds the original payment")

        processor = get_subscription_processor(transaction.processor.value, self._processors)
        reference = transaction.processor_reference or ""
        if transaction.processor == ProcessorNameEnum.PAYPAL and transaction.processor_capture_id:
            reference = transaction.processor_capture_id
        transaction_key = transaction.id
        currency = transaction.currency
        refund = await call_processor(
            "refund",
            lambda: processor.refund(
                reference,
                refund_amount,
                idempotency_key=f"refund-{transaction_key}-{refund_amount}",
                currency=currency,
                reason=reason,
            ),
            processor=processor.name,
            policy=self._retry_policy,
        )

        payer_id = transaction.payer_id
        payer_email = transaction.payer_email
        awarded = transaction.loyalty_points_awarded if transaction.loyalty_processed else 0
        transaction.status = TransactionStatusEnum.REFUNDED
        transaction.refund_id = refund.refund_id
        transaction.refunded_amount = refund_amount
        transaction.refunded_at = self._now()
        transaction.notes = reason
        await self._db.commit()
        logger.info(
            "Refunded payment",
            transaction_id=str(transaction_key),
            refund_id=refund.refund_id,
            amount=str(refund_amount),
        )

        points_reversed = 0
        fraction = min(Decimal("1"), refund_amount / gross)
        to_reverse = int((Decimal(awarded or 0) * fraction).to_integral_value(rounding=ROUND_FLOOR))
        if to_reverse > 0:
            try:
                mutation = await self._ledger.add_points(
                    payer_id,
                    -to_reverse,
                    "Points reversed for refund",
                    str(transaction_key),
                    clamp=True,
                )
                points_reversed = -mutation.applied_delta
            except OrchestrationError as exc:
                logger.error(
                    "Failed to reverse loyalty points for refund",
                    transaction_id=str(transaction_key),
                    error_code=exc.code,
                    error=exc.message,
                )

        await self._notifier.send(
            payer_email,
            "refund_confirmation",
            {
                "transaction_id": str(transaction_key),
                "refund_id": refund.refund_id,
                "amount": f"{refund_amount} {currency}",
                "reason": reason,
                "points_reversed": points_reversed or None,
            },
        )
        return RefundResult(
            success=True,
            transaction_id=transaction_key,
            refund_id=refund.refund_id,
            amount=refund_amount,
            points_reversed=points_reversed,
            status=TransactionStatusEnum.REFUNDED,
        )

    async def _create_dispute(
        self,
        transaction_id: UUID | str,
        owner_id: str,
        reason: str,
        evidence: Mapping[str, Any] | None,
    ) -> DisputeResult:
        transaction = await self._require_transaction(transaction_id)
        if transaction.payer_id != owner_id:
            raise OwnershipMismatch("Not authorized to dispute this transaction")
        if transaction.dispute_status is not None:
            raise ValidationError("A dispute already exists for this transaction")
        if transaction.status not in REFUNDABLE_STATUSES:
            raise ValidationError(f"Cannot dispute transaction with status: {transaction.status.value}")

        now = self._now()
        if now - _as_aware(transaction.created_at) > timedelta(days=settings.dispute_window_days):
            raise DisputeWindowExpired(
                f"Dispute window of {settings.dispute_window_days} days has expired"
            )

        dispute_id = f"dispute_{int(time.time() * 1000)}_{uuid4().hex[:9]}"
        transaction.previous_status = transaction.status
        transaction.status = TransactionStatusEnum.DISPUTED
        transaction.dispute_id = dispute_id
        transaction.dispute_reason = reason
        transaction.dispute_evidence = dict(evidence) if evidence else None
        transaction.dispute_status = DisputeStatusEnum.PENDING
        transaction.dispute_opened_at = now
        await self._db.commit()
        logger.info("Opened dispute", transaction_id=str(transaction.id), dispute_id=dispute_id)

        await self._notifier.send(
            transaction.payer_email,
            "dispute_opened",
            {"transaction_id": str(transaction.id), "dispute_id": dispute_id, "reason": reason},
        )
        return DisputeResult(
            success=True,
            transaction_id=transaction.id,
            dispute_id=dispute_id,
            dispute_status=DisputeStatusEnum.PENDING,
            transaction_status=TransactionStatusEnum.DISPUTED,
        )

    async def _resolve_dispute(
        self,
        transaction_id: UUID | str,
        resolution: DisputeResolutionEnum | str,
        notes: str | None,
    ) -> DisputeResult:
        try:
            outcome = DisputeResolutionEnum(getattr(resolution, "value", resolution))
        except ValueError as exc:
            raise ValidationError(f"Unknown dispute resolution: {resolution}") from exc

        transaction = await self._require_transaction(transaction_id)
        if transaction.dispute_status is None:
            raise DisputeNotFound("No dispute found for this transaction")
        if transaction.dispute_status == DisputeStatusEnum.RESOLVED:
            raise DisputeAlreadyResolved()

        transaction_key = transaction.id
        dispute_id = transaction.dispute_id
        claim = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_key,
                PaymentTransaction.dispute_status == DisputeStatusEnum.PENDING,
            )
            .values(
                dispute_status=DisputeStatusEnum.RESOLVED,
                dispute_resolution=outcome,
                dispute_resolution_notes=notes,
                dispute_resolved_at=self._now(),
            )
            .execution_options(synchronize_session=False)
        )
        claimed = await self._db.execute(claim)
        if claimed.rowcount != 1:
            await self._db.rollback()
            raise DisputeAlreadyResolved()
        await self._db.commit()

        refund: RefundResult | None = None
        if outcome == DisputeResolutionEnum.CUSTOMER:
            try:
                refund = await self._process_refund(
                    transaction_key,
                    None,
                    f"Dispute {dispute_id} resolved in favor of customer",
                    allow_disputed=True,
                )
            except OrchestrationError:
                await self._reopen_dispute(transaction_key)
                raise
        else:
            transaction = await self._require_transaction(transaction_key)
            transaction.status = TransactionStatusEnum.COMPLETED
            await self._db.commit()

        transaction = await self._require_transaction(transaction_key)
        logger.info(
            "Resolved dispute",
            transaction_id=str(transaction_key),
            dispute_id=dispute_id,
            resolution=outcome.value,
        )
        await self._notifier.send(
            transaction.payer_email,
            "dispute_resolved",
            {
                "transaction_id": str(transaction_key),
                "dispute_id": dispute_id,
                "resolution": outcome.value,
                "notes": notes,
            },
        )
        return DisputeResult(
            success=True,
            transaction_id=transaction_key,
            dispute_id=dispute_id,
            dispute_status=DisputeStatusEnum.RESOLVED,
            resolution=outcome,
            transaction_status=transaction.status,
            refund=refund,
        )

    async def _reopen_dispute(self, transaction_key: UUID) -> None:
        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_key)
            .values(
                dispute_status=DisputeStatusEnum.PENDING,
                dispute_resolution=None,
                dispute_resolution_notes=None,
                dispute_resolved_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        await self._db.commit()

    async def _require_transaction(self, transaction_id: UUID | str) -> PaymentTransaction:
        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        return transaction

    @staticmethod
    def _parse_amount(value: Decimal | float | int | str) -> Decimal:
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {value}") from exc

    @staticmethod
    def _result_for(transaction: PaymentTransaction) -> PaymentResult:
        return PaymentResult(
            success=True,
            transaction_id=transaction.id,
            status=transaction.status,
            amount=Decimal(transaction.gross_amount),
            platform_fee=Decimal(transaction.platform_fee),
            recipient_amount=Decimal(transaction.net_amount),
            commission_rate=Decimal(transaction.commission_rate),
            processor=transaction.processor.value,
            processor_reference=transaction.processor_reference,
            expected_points=transaction.expected_loyalty_points,
            points_redeemed=transaction.points_redeemed or 0,
            discounts=dict(transaction.discounts_json or {}),
        )


__all__ = [
    "DisputeResult",
    "LoyaltyAwardResult",
    "PaymentDetails",
    "PaymentOrchestrator",
    "PaymentResult",
    "RefundResult",
]
