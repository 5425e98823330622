"""
ConnectedAccount model for Stripe Connect payout destinations.

Priests and temples each point at a ConnectedAccount; escrow release
transfers their shares to ``stripe_account_id``. Flags are kept in sync by
the ``account.updated`` webhook.

Usage:
    from payments.models import ConnectedAccount

    account = ConnectedAccount.objects.create(
        stripe_account_id="acct_1234567890",
        onboarding_status=OnboardingStatus.COMPLETE,
        payouts_enabled=True,
    )

    if account.is_ready_for_payouts:
        ...
"""

from __future__ import annotations

from django.db import models
from django.db.models import F

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import OnboardingStatus


class ConnectedAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    A Stripe Connect account that can receive escrow transfers.

    Fields:
        stripe_account_id: Unique Stripe Account ID (acct_xxx)
        onboarding_status: Current state of Stripe Connect onboarding
        payouts_enabled: Whether Stripe has enabled payouts
        charges_enabled: Whether Stripe has enabled charges
        version: Optimistic locking version field
        metadata: Flexible JSON storage for additional data
    """

    stripe_account_id = models.CharField(
        max_length=255,
        unique=True,
        db_index=True,
        help_text="Stripe Account ID (acct_xxx)",
    )

    onboarding_status = models.CharField(
        max_length=20,
        choices=OnboardingStatus.choices,
        default=OnboardingStatus.NOT_STARTED,
        db_index=True,
        help_text="Current Stripe Connect onboarding status",
    )

    payouts_enabled = models.BooleanField(
        default=False,
        help_text="Whether Stripe has enabled payouts for this account",
    )

    charges_enabled = models.BooleanField(
        default=False,
        help_text="Whether Stripe has enabled charges for this account",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata (e.g., business type, country)",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Connected Account"
        verbose_name_plural = "Connected Accounts"

    def __str__(self) -> str:
        return f"ConnectedAccount({self.stripe_account_id}, {self.onboarding_status})"

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = not self._state.adding
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            # Replace the F() expression with the stored value
            self.refresh_from_db(fields=["version"])

    @property
    def is_ready_for_payouts(self) -> bool:
        """True once onboarding is complete and Stripe allows payouts."""
        return (
            self.onboarding_status == OnboardingStatus.COMPLETE and self.payouts_enabled
        )

    def sync_from_stripe(self, account_data: dict) -> None:
        """
        Copy capability flags from a Stripe Account object.

        Note: Does not save - caller must save after calling.
        """
        self.payouts_enabled = bool(account_data.get("payouts_enabled"))
        self.charges_enabled = bool(account_data.get("charges_enabled"))
        requirements = account_data.get("requirements") or {}
        if account_data.get("details_submitted") and self.payouts_enabled:
            self.onboarding_status = OnboardingStatus.COMPLETE
        elif (requirements.get("disabled_reason") or "").startswith("rejected"):
            self.onboarding_status = OnboardingStatus.REJECTED
        elif account_data.get("details_submitted"):
            self.onboarding_status = OnboardingStatus.IN_PROGRESS
