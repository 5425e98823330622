"""
Payment domain models.

- PaymentRecord: Escrow ledger row, one per booking
- EscrowTransfer: One priest/temple leg of an escrow release
- PaymentAuditEntry: Append-only history of ledger changes
- RefundTransaction: Immutable cancellation refund
- ConnectedAccount: Stripe Connect payout destination
- PremiumPlacement / PremiumEvent: Paid search ranking boosts
- WebhookEvent: Stripe webhook event tracking for idempotent processing
"""

from payments.models.connected_account import ConnectedAccount
from payments.models.payment_record import (
    EscrowTransfer,
    PaymentAuditEntry,
    PaymentRecord,
)
from payments.models.premium import PremiumEvent, PremiumPlacement
from payments.models.refund_transaction import RefundTransaction
from payments.models.webhook_event import WebhookEvent

__all__ = [
    "ConnectedAccount",
    "EscrowTransfer",
    "PaymentAuditEntry",
    "PaymentRecord",
    "PremiumEvent",
    "PremiumPlacement",
    "RefundTransaction",
    "WebhookEvent",
]
