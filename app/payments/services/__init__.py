"""
Payment services.

- EscrowLedger: The only writer of PaymentRecord; transitions and audit history
- PaymentOrchestrator: Processor calls coordinated with ledger transitions
- PremiumPlacementScheduler: Premium placement expiry, reminders and extension

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    record = orchestrator.create_advance_payment(booking)
    orchestrator.release_escrow_funds(booking.id, actor=f"user:{staff.id}")
"""

from payments.services.escrow_ledger import LEDGER_EVENTS, EscrowLedger
from payments.services.payment_orchestrator import (
    PaymentOrchestrator,
    escrow_release_time,
    stripe_refund_reason,
)
from payments.services.premium_scheduler import PremiumPlacementScheduler

__all__ = [
    "LEDGER_EVENTS",
    "EscrowLedger",
    "PaymentOrchestrator",
    "PremiumPlacementScheduler",
    "escrow_release_time",
    "stripe_refund_reason",
]
