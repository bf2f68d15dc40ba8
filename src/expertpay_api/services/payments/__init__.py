"""Payment services."""

from .commission import calculate_commission_rate, split_amount  # noqa: F401
from .orchestrator import (  # noqa: F401
    DisputeResult,
    LoyaltyAwardResult,
    PaymentDetails,
    PaymentOrchestrator,
    PaymentResult,
    RefundResult,
)
