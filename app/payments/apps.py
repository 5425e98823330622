"""
Payments app configuration.

The escrow payment engine: split pricing, cancellation refunds, the escrow
ledger, Stripe integration and premium placements.
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"
