"""
Root URL configuration.

URL Structure:
    /                                        - ReDoc API documentation
    /schema/                                 - OpenAPI schema (YAML)
    /admin/                                  - Django admin interface
    /health/                                 - Health check (load balancers, Docker)
    /api/v1/payments/                        - Payment endpoints
        escrow/{booking_id}/                 - Escrow status (GET)
        escrow/{booking_id}/release/         - Release escrowed funds (POST)
        escrow/{booking_id}/hold/            - Place or lift a dispute hold (POST)
        escrow/{booking_id}/refund/          - Cancellation refund (POST)
        webhooks/stripe/                     - Stripe webhook endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("payments/", include("payments.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

admin.site.site_header = "Escrow Engine Admin"
admin.site.site_title = "Escrow Engine"
admin.site.index_title = "Payments, escrow and refunds"
