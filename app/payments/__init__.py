"""
Payments app: escrow engine for priest bookings.

This app handles:
- Advance and remaining-balance collection through Stripe PaymentIntents
- The escrow ledger (PaymentRecord) and its audit history
- Escrow release to priest and temple Connect accounts
- Cancellation and emergency refunds
- Premium search placement expiry and extension
- Stripe webhook intake

Related apps:
    - marketplace: Bookings, priests, temples and cancellation policies
    - notifications: Devotee and priest notifications

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    record = orchestrator.create_advance_payment(booking)
    orchestrator.release_escrow_funds(booking.id, actor=f"staff:{user.pk}")
"""
