"""Recurring billing lifecycle: trial, active, past due and canceled subscriptions."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from expertpay_api.core.errors import (
    ConcurrentModification,
    MissingParameters,
    NotFound,
    OrchestrationError,
    ValidationError,
)
from expertpay_api.core.logging import operation_context
from expertpay_api.models.loyalty import LoyaltyTierEnum
from expertpay_api.models.subscription import (
    BillingIntervalEnum,
    InvoiceStatusEnum,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatusEnum,
)
from expertpay_api.models.transaction import (
    PaymentTransaction,
    PaymentTypeEnum,
    ProcessorNameEnum,
    TransactionStatusEnum,
)
from expertpay_api.services.loyalty import LoyaltyLedger
from expertpay_api.services.loyalty.rules import calculate_loyalty_points
from expertpay_api.services.notifications import NotificationGateway
from expertpay_api.services.payments.commission import calculate_commission_rate, split_amount
from expertpay_api.services.payments.discounts import plan_subscription_discount
from expertpay_api.services.payments.orchestrator import PaymentOrchestrator
from expertpay_api.services.payments.processors import (
    PaymentProcessor,
    RetryPolicy,
    call_processor,
    get_subscription_processor,
)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def coerce_interval(interval: BillingIntervalEnum | str | None) -> BillingIntervalEnum:
    """Normalise an interval name; anything unrecognised bills monthly."""

    if isinstance(interval, BillingIntervalEnum):
        return interval
    try:
        return BillingIntervalEnum(str(interval or "").strip().lower())
    except ValueError:
        return BillingIntervalEnum.MONTH


def calculate_next_billing_date(current: datetime, interval: BillingIntervalEnum | str | None) -> datetime:
    """Advance ``current`` by one billing interval using calendar arithmetic.

    Month and year steps keep the day of month, clamped to the last day of the
    target month: 2024-01-31 + month is 2024-02-29 and 2024-02-29 + year is
    2025-02-28.
    """

    step = coerce_interval(interval)
    if step == BillingIntervalEnum.DAY:
        return current + timedelta(days=1)
    if step == BillingIntervalEnum.WEEK:
        return current + timedelta(days=7)
    if step == BillingIntervalEnum.YEAR:
        return _add_months(current, 12)
    return _add_months(current, 1)


@dataclass(slots=True)
class SubscriptionRequest:
    owner_id: str | None
    plan_id: str | None
    plan_name: str | None
    amount: Decimal | float | str | None
    processor_name: str | None
    payment_method_id: str | None
    currency: str = "USD"
    interval: str = "month"
    trial_days: int = 0
    owner_email: str | None = None
    apply_loyalty_discount: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SubscriptionPaymentEvent:
    """Billing outcome reported by a processor webhook, keyed by its subscription id."""

    processor_subscription_id: str
    invoice_id: str
    amount: Decimal | float | str
    status: str
    processor_name: str | None = None
    payment_date: datetime | None = None
    failure_reason: str | None = None


@dataclass(slots=True)
class SubscriptionResult:
    success: bool
    message: str | None = None
    error_code: str | None = None
    subscription_id: UUID | None = None
    status: SubscriptionStatusEnum | None = None
    amount: Decimal | None = None
    interval: BillingIntervalEnum | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    next_billing_date: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    client_secret: str | None = None
    tier_discount_rate: Decimal | None = None


@dataclass(slots=True)
class SubscriptionPaymentResult:
    success: bool
    status: str | None = None
    message: str | None = None
    error_code: str | None = None
    subscription_id: UUID | None = None
    invoice_id: str | None = None
    transaction_id: UUID | None = None
    points_awarded: int = 0


class SubscriptionLifecycleManager:
    """Drives subscriptions through trialing, active, past_due and canceled.

    Business-rule failures are returned as ``success=False`` results. Deferred
    cancellations only set ``cancel_at_period_end``; the billing job applies
    them when the period ends.
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
        payments: PaymentOrchestrator | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LoyaltyLedger(db_session)
        self._notifier = notifier or NotificationGateway()
        self._processors = processors
        self._retry_policy = retry_policy
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._payments = payments or PaymentOrchestrator(
            db_session,
            ledger=self._ledger,
            notifier=self._notifier,
            processors=processors,
            retry_policy=retry_policy,
            clock=clock,
        )

    async def get_subscription(self, subscription_id: UUID | str, owner_id: str | None = None) -> Subscription | None:
        try:
            key = subscription_id if isinstance(subscription_id, UUID) else UUID(str(subscription_id))
        except ValueError:
            return None
        stmt = (
            select(Subscription)
            .where(Subscription.id == key)
            .execution_options(populate_existing=True)
        )
        if owner_id is not None:
            stmt = stmt.where(Subscription.owner_id == owner_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_owner_subscriptions(self, owner_id: str) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.owner_id == owner_id)
            .order_by(Subscription.created_at.desc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def create_subscription(self, request: SubscriptionRequest) -> SubscriptionResult:
        with operation_context("create_subscription", owner_id=request.owner_id, plan_id=request.plan_id):
            try:
                return await self._create_subscription(request)
            except OrchestrationError as exc:
                logger.warning("Subscription rejected", error_code=exc.code, error=exc.message)
                return SubscriptionResult(success=False, message=exc.message, error_code=exc.code)

    async def update_subscription(
        self,
        subscription_id: UUID | str,
        owner_id: str,
        *,
        plan_id: str | None = None,
        plan_name: str | None = None,
        amount: Decimal | float | str | None = None,
        currency: str | None = None,
        interval: str | None = None,
    ) -> SubscriptionResult:
        """Change plan, price or interval.

        ``next_billing_date`` is recalculated from the current period end only
        when the interval actually changes.
        """

        with operation_context("update_subscription", subscription_id=subscription_id, owner_id=owner_id):
            try:
                subscription = await self._require(subscription_id, owner_id)
                if subscription.status == SubscriptionStatusEnum.CANCELED:
                    raise ValidationError("Cannot update a canceled subscription")

                new_amount = self._parse_amount(amount) if amount is not None else None
                if new_amount is not None and new_amount <= 0:
                    raise ValidationError("Subscription amount must be greater than zero")
                new_interval = coerce_interval(interval) if interval else None
                interval_changed = new_interval is not None and new_interval != subscription.interval

                processor = get_subscription_processor(subscription.processor, self._processors)
                reference = subscription.processor_subscription_id
                await call_processor(
                    "update_subscription",
                    lambda: processor.update_subscription(
                        reference,
                        plan_id=plan_id,
                        amount=new_amount,
                        interval=new_interval.value if interval_changed else None,
                    ),
                    processor=processor.name,
                    policy=self._retry_policy,
                )

                changes: list[str] = []
                if plan_id and plan_id != subscription.plan_id:
                    subscription.plan_id = plan_id
                    changes.append("plan_id")
                if plan_name and plan_name != subscription.plan_name:
                    subscription.plan_name = plan_name
                    changes.append("plan_name")
                if new_amount is not None and new_amount != subscription.amount:
                    subscription.amount = new_amount
                    changes.append("amount")
                if currency and currency.upper() != subscription.currency:
                    subscription.currency = currency.upper()
                    changes.append("currency")
                if interval_changed:
                    subscription.interval = new_interval
                    subscription.next_billing_date = calculate_next_billing_date(
                        subscription.current_period_end, new_interval
                    )
                    changes.append("interval")

                await self._commit()
                logger.info("Updated subscription", subscription_id=str(subscription.id), changes=changes)
                await self._notifier.send(
                    subscription.owner_email,
                    "subscription_updated",
                    {
                        "plan_name": subscription.plan_name,
                        "amount": f"{subscription.amount} {subscription.currency}",
                        "interval": subscription.interval.value,
                        "next_billing_date": subscription.next_billing_date.isoformat(),
                        "changes": ", ".join(changes) or None,
                    },
                )
                return self._result_for(subscription)
            except OrchestrationError as exc:
                logger.warning("Subscription update rejected", error_code=exc.code, error=exc.message)
                return SubscriptionResult(success=False, message=exc.message, error_code=exc.code)

    async def cancel_subscription(
        self,
        subscription_id: UUID | str,
        owner_id: str,
        *,
        immediate: bool = False,
        reason: str | None = None,
    ) -> SubscriptionResult:
        with operation_context("cancel_subscription", subscription_id=subscription_id, owner_id=owner_id):
            try:
                subscription = await self._require(subscription_id, owner_id)
                if subscription.status == SubscriptionStatusEnum.CANCELED:
                    result = self._result_for(subscription)
                    result.message = "Subscription already canceled"
                    return result

                processor = get_subscription_processor(subscription.processor, self._processors)
                reference = subscription.processor_subscription_id
                await call_processor(
                    "cancel_subscription",
                    lambda: processor.cancel_subscription(reference, immediate=immediate),
                    processor=processor.name,
                    policy=self._retry_policy,
                )

                now = self._now()
                subscription.cancel_reason = reason
                if immediate:
                    subscription.status = SubscriptionStatusEnum.CANCELED
                    subscription.canceled_at = now
                    end_date = now
                    message = "Subscription canceled immediately"
                else:
                    subscription.cancel_at_period_end = True
                    end_date = subscription.current_period_end
                    message = "Subscription will be canceled at the end of the billing period"
                await self._commit()
                logger.info(
                    "Canceled subscription",
                    subscription_id=str(subscription.id),
                    immediate=immediate,
                )

                await self._notifier.send(
                    subscription.owner_email,
                    "subscription_canceled",
                    {
                        "plan_name": subscription.plan_name,
                        "end_date": end_date.isoformat(),
                        "immediate": immediate,
                        "reason": reason,
                    },
                )
                result = self._result_for(subscription)
                result.message = message
                return result
            except OrchestrationError as exc:
                logger.warning("Subscription cancel rejected", error_code=exc.code, error=exc.message)
                return SubscriptionResult(success=False, message=exc.message, error_code=exc.code)

    async def process_subscription_payment(self, event: SubscriptionPaymentEvent) -> SubscriptionPaymentResult:
        """Apply one billing event; an invoice id seen before is a no-op.

        A paid invoice reactivates the subscription, advances the period and
        records a completed transaction that earns loyalty points. A failed
        invoice marks the subscription past due without moving the period.
        """

        with operation_context(
            "process_subscription_payment",
            processor_subscription_id=event.processor_subscription_id,
            invoice_id=event.invoice_id,
        ):
            try:
                return await self._process_subscription_payment(event)
            except OrchestrationError as exc:
                logger.warning("Subscription payment rejected", error_code=exc.code, error=exc.message)
                return SubscriptionPaymentResult(
                    success=False,
                    message=exc.message,
                    error_code=exc.code,
                    invoice_id=event.invoice_id,
                )

    async def _create_subscription(self, request: SubscriptionRequest) -> SubscriptionResult:
        required = (
            request.owner_id,
            request.plan_id,
            request.plan_name,
            request.amount,
            request.processor_name,
            request.payment_method_id,
        )
        if any(value in (None, "") for value in required):
            raise MissingParameters()
        amount = self._parse_amount(request.amount)
        if amount <= 0:
            raise ValidationError("Subscription amount must be greater than zero")
        if request.trial_days < 0:
            raise ValidationError("trial_days cannot be negative")

        processor = get_subscription_processor(request.processor_name, self._processors)
        interval = coerce_interval(request.interval)

        tier_discount_rate: Decimal | None = None
        if request.apply_loyalty_discount:
            account = await self._ledger.get_or_create_account(request.owner_id, identifier=request.owner_email)
            plan = plan_subscription_discount(amount, account.tier)
            amount = plan.final_amount
            tier_discount_rate = plan.tier_discount_rate or None

        now = self._now()
        trial_start = trial_end = None
        if request.trial_days > 0:
            trial_start = now
            trial_end = now + timedelta(days=request.trial_days)
            period_start, period_end = trial_start, trial_end
            status = SubscriptionStatusEnum.TRIALING
        else:
            period_start = now
            period_end = calculate_next_billing_date(now, interval)
            status = SubscriptionStatusEnum.ACTIVE

        processor_subscription = await call_processor(
            "create_subscription",
            lambda: processor.create_subscription(
                customer_email=request.owner_email,
                plan_id=request.plan_id,
                plan_name=request.plan_name,
                amount=amount,
                currency=request.currency,
                interval=interval.value,
                payment_method_id=request.payment_method_id,
                trial_days=request.trial_days,
                metadata={"owner_id": request.owner_id, "plan_name": request.plan_name},
            ),
            processor=processor.name,
            policy=self._retry_policy,
        )

        subscription = Subscription(
            owner_id=request.owner_id,
            owner_email=request.owner_email,
            plan_id=request.plan_id,
            plan_name=request.plan_name,
            amount=amount,
            currency=request.currency.upper(),
            interval=interval,
            status=status,
            processor=processor.name,
            processor_subscription_id=processor_subscription.id,
            processor_customer_id=processor_subscription.customer_id,
            payment_method_id=request.payment_method_id,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            next_billing_date=calculate_next_billing_date(period_end, interval),
            cancel_at_period_end=False,
            metadata_json=dict(request.metadata) or None,
            invoices=[],
        )
        self._db.add(subscription)
        await self._commit()
        logger.info(
            "Created subscription",
            subscription_id=str(subscription.id),
            status=status.value,
            processor=processor.name,
        )

        await self._notifier.send(
            request.owner_email,
            "subscription_confirmation",
            {
                "plan_name": request.plan_name,
                "amount": f"{amount} {subscription.currency}",
                "interval": interval.value,
                "start_date": now.isoformat(),
                "trial_end": trial_end.isoformat() if trial_end else None,
                "next_billing_date": subscription.next_billing_date.isoformat(),
            },
        )
        result = self._result_for(subscription)
        result.client_secret = processor_subscription.client_secret
        result.tier_discount_rate = tier_discount_rate
        return result

    async def _process_subscription_payment(self, event: SubscriptionPaymentEvent) -> SubscriptionPaymentResult:
        if not event.processor_subscription_id or not event.invoice_id:
            raise ValidationError("processor_subscription_id and invoice_id are required")

        stmt = (
            select(Subscription)
            .where(Subscription.processor_subscription_id == event.processor_subscription_id)
            .execution_options(populate_existing=True)
        )
        subscription = (await self._db.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            raise NotFound(f"Subscription not found: {event.processor_subscription_id}")

        subscription_key = subscription.id
        if await self._invoice_exists(subscription_key, event.invoice_id):
            return self._already_processed(subscription_key, event.invoice_id)

        amount = self._parse_amount(event.amount)
        paid = event.status.strip().lower() == InvoiceStatusEnum.PAID.value
        if paid and amount <= 0:
            raise ValidationError("Invoice amount must be greater than zero")
        payment_date = event.payment_date or self._now()

        tier = None
        if paid:
            account = await self._ledger.get_or_create_account(subscription.owner_id, identifier=subscription.owner_email)
            tier = account.tier

        try:
            transaction = await self._record_invoice(subscription, event, amount, paid, payment_date, tier)
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            logger.info("Invoice recorded concurrently", invoice_id=event.invoice_id)
            return self._already_processed(subscription_key, event.invoice_id)
        except StaleDataError as exc:
            await self._db.rollback()
            raise ConcurrentModification("Subscription was modified concurrently") from exc

        logger.info(
            "Processed subscription payment",
            subscription_id=str(subscription_key),
            invoice_id=event.invoice_id,
            paid=paid,
        )

        points_awarded = 0
        if transaction is not None:
            loyalty = await self._payments.process_loyalty_after_payment(transaction.id)
            points_awarded = loyalty.points_awarded if loyalty.success else 0

        subscription = await self._require(subscription_key)
        if paid:
            await self._notifier.send(
                subscription.owner_email,
                "subscription_payment_success",
                {
                    "plan_name": subscription.plan_name,
                    "amount": f"{amount} {subscription.currency}",
                    "date": payment_date.isoformat(),
                    "next_billing_date": subscription.next_billing_date.isoformat(),
                    "points_awarded": points_awarded or None,
                },
            )
        else:
            await self._notifier.send(
                subscription.owner_email,
                "subscription_payment_failed",
                {
                    "plan_name": subscription.plan_name,
                    "amount": f"{amount} {subscription.currency}",
                    "date": payment_date.isoformat(),
                    "reason": event.failure_reason or "Payment failed",
                },
            )

        return SubscriptionPaymentResult(
            success=True,
            status="payment_succeeded" if paid else "payment_failed",
            subscription_id=subscription_key,
            invoice_id=event.invoice_id,
            transaction_id=transaction.id if transaction is not None else None,
            points_awarded=points_awarded,
        )

    async def _record_invoice(
        self,
        subscription: Subscription,
        event: SubscriptionPaymentEvent,
        amount: Decimal,
        paid: bool,
        payment_date: datetime,
        tier: LoyaltyTierEnum | None,
    ) -> PaymentTransaction | None:
        """Stage the invoice, its completed transaction and the status change.

        Invoice ids are only unique per subscription, so the transaction's
        processor reference is scoped by the processor subscription id.
        """

        transaction: PaymentTransaction | None = None
        if paid:
            rate = calculate_commission_rate(PaymentTypeEnum.SUBSCRIPTION)
            split = split_amount(amount, rate)
            transaction = PaymentTransaction(
                payer_id=subscription.owner_id,
                payer_email=subscription.owner_email,
                gross_amount=amount,
                list_amount=amount,
                currency=subscription.currency,
                payment_type=PaymentTypeEnum.SUBSCRIPTION,
                commission_rate=rate,
                platform_fee=split.platform_fee,
                net_amount=split.net_amount,
                status=TransactionStatusEnum.COMPLETED,
                processor=self._processor_enum(event.processor_name or subscription.processor),
                payment_method=event.processor_name or subscription.processor,
                processor_reference=f"{event.processor_subscription_id}:{event.invoice_id}",
                subscription_id=subscription.id,
                expected_loyalty_points=calculate_loyalty_points(amount, PaymentTypeEnum.SUBSCRIPTION, tier),
                loyalty_processed=False,
                completed_at=payment_date,
                metadata_json={
                    "processor_subscription_id": event.processor_subscription_id,
                    "invoice_id": event.invoice_id,
                },
                notes=f"Subscription payment for {subscription.plan_name}",
            )
            self._db.add(transaction)
            await self._db.flush()

        invoice = SubscriptionInvoice(
            invoice_id=event.invoice_id,
            amount=amount,
            status=InvoiceStatusEnum.PAID if paid else InvoiceStatusEnum.FAILED,
            paid_at=payment_date,
            failure_reason=None if paid else (event.failure_reason or "Payment failed"),
            transaction_id=transaction.id if transaction is not None else None,
        )
        subscription.invoices.append(invoice)

        if subscription.status != SubscriptionStatusEnum.CANCELED:
            if paid:
                subscription.status = SubscriptionStatusEnum.ACTIVE
                subscription.last_payment_date = payment_date
                subscription.current_period_start = payment_date
                subscription.current_period_end = calculate_next_billing_date(payment_date, subscription.interval)
                subscription.next_billing_date = calculate_next_billing_date(
                    subscription.current_period_end, subscription.interval
                )
            else:
                subscription.status = SubscriptionStatusEnum.PAST_DUE

        return transaction

    async def _invoice_exists(self, subscription_key: UUID, invoice_id: str) -> bool:
        stmt = select(SubscriptionInvoice.id).where(
            SubscriptionInvoice.subscription_id == subscription_key,
            SubscriptionInvoice.invoice_id == invoice_id,
        )
        return (await self._db.execute(stmt)).first() is not None

    @staticmethod
    def _already_processed(subscription_key: UUID, invoice_id: str) -> SubscriptionPaymentResult:
        logger.info("Invoice already processed", subscription_id=str(subscription_key), invoice_id=invoice_id)
        return SubscriptionPaymentResult(
            success=True,
            status="already_processed",
            subscription_id=subscription_key,
            invoice_id=invoice_id,
        )

    async def _require(self, subscription_id: UUID | str, owner_id: str | None = None) -> Subscription:
        subscription = await self.get_subscription(subscription_id, owner_id)
        if subscription is None:
            raise NotFound("Subscription not found")
        return subscription

    async def _commit(self) -> None:
        try:
            await self._db.commit()
        except StaleDataError as exc:
            await self._db.rollback()
            raise ConcurrentModification("Subscription was modified concurrently") from exc

    @staticmethod
    def _processor_enum(name: str) -> ProcessorNameEnum:
        normalized = (name or "").strip().lower()
        if normalized == "credit_card":
            normalized = "stripe"
        try:
            return ProcessorNameEnum(normalized)
        except ValueError:
            return ProcessorNameEnum.MANUAL

    @staticmethod
    def _parse_amount(value: Decimal | float | str | None) -> Decimal:
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {value}") from exc

    @staticmethod
    def _result_for(subscription: Subscription) -> SubscriptionResult:
        return SubscriptionResult(
            success=True,
            subscription_id=subscription.id,
            status=subscription.status,
            amount=Decimal(subscription.amount),
            interval=subscription.interval,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_billing_date=subscription.next_billing_date,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
            canceled_at=subscription.canceled_at,
        )


__all__ = [
    "SubscriptionLifecycleManager",
    "SubscriptionPaymentEvent",
    "SubscriptionPaymentResult",
    "SubscriptionRequest",
    "SubscriptionResult",
    "calculate_next_billing_date",
    "coerce_interval",
]
