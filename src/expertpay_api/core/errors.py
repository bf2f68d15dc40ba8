"""Error taxonomy shared by the loyalty, payment and subscription services."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for business-rule and integration failures."""

    code = "orchestration_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ").capitalize()


class ValidationError(OrchestrationError):
    code = "validation_error"


class MissingParameters(ValidationError):
    code = "missing_parameters"

    @classmethod
    def default_message(cls) -> str:
        return "Missing required subscription parameters"


class OwnershipMismatch(ValidationError):
    code = "ownership_mismatch"


class NotFound(OrchestrationError):
    code = "not_found"


class InsufficientPoints(OrchestrationError):
    code = "insufficient_points"


class RewardNotFound(OrchestrationError):
    code = "reward_not_found"


class InvalidReferralCode(OrchestrationError):
    code = "invalid_referral_code"


class SelfReferral(OrchestrationError):
    code = "self_referral"

    @classmethod
    def default_message(cls) -> str:
        return "Cannot refer yourself"


class PaymentDeclined(OrchestrationError):
    code = "payment_declined"


class InvalidStateForRefund(OrchestrationError):
    code = "invalid_state_for_refund"


class DisputeWindowExpired(OrchestrationError):
    code = "dispute_window_expired"


class DisputeNotFound(OrchestrationError):
    code = "dispute_not_found"


class DisputeAlreadyResolved(OrchestrationError):
    code = "dispute_already_resolved"

    @classmethod
    def default_message(cls) -> str:
        return "Dispute has already been resolved"


class ProcessorUnavailable(OrchestrationError):
    """Downstream processor or network failure.

    ``transient`` marks failures worth retrying (timeouts, rate limits,
    connection resets); configuration and request errors are not.
    """

    code = "processor_unavailable"

    def __init__(self, message: str | None = None, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class UnsupportedProcessor(ValidationError):
    code = "unsupported_processor"


class ConcurrentModification(OrchestrationError):
    code = "concurrent_modification"


__all__ = [
    "OrchestrationError",
    "ValidationError",
    "MissingParameters",
    "OwnershipMismatch",
    "NotFound",
    "InsufficientPoints",
    "RewardNotFound",
    "InvalidReferralCode",
    "SelfReferral",
    "PaymentDeclined",
    "InvalidStateForRefund",
    "DisputeWindowExpired",
    "DisputeNotFound",
    "DisputeAlreadyResolved",
    "ProcessorUnavailable",
    "UnsupportedProcessor",
    "ConcurrentModification",
]
