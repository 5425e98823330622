"""
URL configuration for the payments app.

Routes:
    - GET  /escrow/<booking_id>/          - Escrow status
    - POST /escrow/<booking_id>/release/  - Release escrowed funds (staff)
    - POST /escrow/<booking_id>/hold/     - Place or lift a dispute hold (staff)
    - POST /escrow/<booking_id>/refund/   - Cancellation refund
    - POST /webhooks/stripe/              - Stripe webhook endpoint

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
"""

from django.urls import path

from payments.views import (
    CancellationRefundView,
    EscrowHoldView,
    EscrowReleaseView,
    EscrowStatusView,
)
from payments.webhooks.views import stripe_webhook

app_name = "payments"

urlpatterns = [
    path("escrow/<uuid:booking_id>/", EscrowStatusView.as_view(), name="escrow_status"),
    path("escrow/<uuid:booking_id>/release/", EscrowReleaseView.as_view(), name="escrow_release"),
    path("escrow/<uuid:booking_id>/hold/", EscrowHoldView.as_view(), name="escrow_hold"),
    path(
        "escrow/<uuid:booking_id>/refund/",
        CancellationRefundView.as_view(),
        name="cancellation_refund",
    ),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]
