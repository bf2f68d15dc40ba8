from .loyalty import (
    LoyaltyAccount,
    LoyaltyPointEntry,
    LoyaltyRedemption,
    LoyaltyReferral,
    LoyaltyTierEnum,
)
from .subscription import (
    BillingIntervalEnum,
    InvoiceStatusEnum,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatusEnum,
)
from .transaction import (
    DisputeResolutionEnum,
    DisputeStatusEnum,
    PaymentTransaction,
    PaymentTypeEnum,
    ProcessorNameEnum,
    TransactionStatusEnum,
)

__all__ = [
    "LoyaltyAccount",
    "LoyaltyPointEntry",
    "LoyaltyRedemption",
    "LoyaltyReferral",
    "LoyaltyTierEnum",
    "BillingIntervalEnum",
    "InvoiceStatusEnum",
    "Subscription",
    "SubscriptionInvoice",
    "SubscriptionStatusEnum",
    "DisputeResolutionEnum",
    "DisputeStatusEnum",
    "PaymentTransaction",
    "PaymentTypeEnum",
    "ProcessorNameEnum",
    "TransactionStatusEnum",
]
