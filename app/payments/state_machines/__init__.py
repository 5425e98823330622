"""
State machine enums for payment models.

PaymentRecord transitions themselves live on the model (django-fsm
@transition methods) and are driven through services.escrow_ledger.
"""

from payments.state_machines.states import (
    OnboardingStatus,
    PaymentRecordStatus,
    PremiumEventType,
    PremiumPlacementStatus,
    RefundReason,
    RefundTransactionStatus,
    TransferParty,
    TransferStatus,
    WebhookEventStatus,
)

__all__ = [
    "OnboardingStatus",
    "PaymentRecordStatus",
    "PremiumEventType",
    "PremiumPlacementStatus",
    "RefundReason",
    "RefundTransactionStatus",
    "TransferParty",
    "TransferStatus",
    "WebhookEventStatus",
]
