"""
Cancellation refund evaluation.

Given a cancellation policy and the notice the devotee gave, decide what
percentage of the captured advance goes back. Rules, first match wins:

    1. reason_code is one of the policy's emergency exceptions -> 100%
    2. hours_until_service >= free_cancellation_hours          -> 100%
    3. hours_until_service <  no_refund_hours                  -> 0%
    4. the tier with the largest hours_before_service that is
       <= hours_until_service                                  -> 100 - fee
    5. no tier matches (gap in the policy)                     -> 0%, with
       configuration_warning set

Every result carries a plain-language explanation; refund amounts are
financial decisions users dispute, so "refund failed" is never enough.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from payments.money import Money

if TYPE_CHECKING:
    from marketplace.models import CancellationPolicy

logger = logging.getLogger(__name__)


class RefundRule:
    EMERGENCY = "emergency_exception"
    FREE_WINDOW = "free_cancellation"
    NO_REFUND = "no_refund_window"
    TIER = "tier"
    NO_MATCHING_TIER = "no_matching_tier"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class CancellationEvaluation:
    """
    Outcome of evaluating a cancellation.

    Attributes:
        refund_percentage: 0-100, percent of the advance returned
        applied_tier: The tier dict that decided the percentage, if any
        rule: Which RefundRule decided it
        explanation: User-facing reason for the amount
        configuration_warning: The policy has a gap that fell through to 0%
    """

    refund_percentage: int
    applied_tier: dict[str, Any] | None
    rule: str
    explanation: str
    configuration_warning: bool = False

    @property
    def is_full_refund(self) -> bool:
        return self.refund_percentage == 100


def hours_until_service(scheduled_at: datetime, now: datetime) -> int:
    """Whole hours of notice, floored and never negative."""
    seconds = (scheduled_at - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.floor(seconds / 3600)


def _is_emergency(policy: CancellationPolicy, reason_code: str | None) -> bool:
    if not reason_code:
        return False
    code = reason_code.strip().lower()
    return any(code == str(exc).strip().lower() for exc in policy.emergency_exceptions or [])


def evaluate(
    policy: CancellationPolicy,
    hours_until_service: int,
    reason_code: str | None = None,
) -> CancellationEvaluation:
    """
    Work out the refund percentage for a cancellation.

    Args:
        policy: The booking's cancellation policy
        hours_until_service: Whole hours of notice (see hours_until_service())
        reason_code: Optional cancellation reason, matched case-insensitively
            against the policy's emergency exceptions

    Returns:
        CancellationEvaluation
    """
    hours = max(0, int(hours_until_service))

    if _is_emergency(policy, reason_code):
        return CancellationEvaluation(
            refund_percentage=100,
            applied_tier=None,
            rule=RefundRule.EMERGENCY,
            explanation=(
                f"Full refund: '{reason_code}' is an emergency exception "
                "under this cancellation policy."
            ),
        )

    if hours >= policy.free_cancellation_hours:
        return CancellationEvaluation(
            refund_percentage=100,
            applied_tier=None,
            rule=RefundRule.FREE_WINDOW,
            explanation=(
                f"Full refund: cancelled {hours} hours before the ceremony, within "
                f"the free cancellation window of {policy.free_cancellation_hours} hours."
            ),
        )

    if hours < policy.no_refund_hours:
        return CancellationEvaluation(
            refund_percentage=0,
            applied_tier=None,
            rule=RefundRule.NO_REFUND,
            explanation=(
                f"No refund: cancelled {hours} hours before the ceremony, inside the "
                f"{policy.no_refund_hours}-hour no-refund window."
            ),
        )

    matching = [
        tier
        for tier in policy.tiers or []
        if int(tier["hours_before_service"]) <= hours
    ]
    if not matching:
        logger.warning(
            "Cancellation policy has no tier covering the notice given",
            extra={
                "policy_id": str(getattr(policy, "pk", "")),
                "hours_until_service": hours,
            },
        )
        return CancellationEvaluation(
            refund_percentage=0,
            applied_tier=None,
            rule=RefundRule.NO_MATCHING_TIER,
            explanation=(
                f"No refund: no cancellation tier covers {hours} hours of notice. "
                "Contact support if you believe this is wrong."
            ),
            configuration_warning=True,
        )

    # Largest threshold wins, and among equal thresholds the smallest fee
    tier = max(
        matching,
        key=lambda t: (int(t["hours_before_service"]), -int(t["fee_percentage"])),
    )
    fee_percentage = min(100, max(0, int(tier["fee_percentage"])))
    refund_percentage = 100 - fee_percentage
    return CancellationEvaluation(
        refund_percentage=refund_percentage,
        applied_tier=dict(tier),
        rule=RefundRule.TIER,
        explanation=(
            f"{refund_percentage}% refund: cancelled {hours} hours before the "
            f"ceremony, so the {tier['hours_before_service']}-hour tier applies "
            f"with a {fee_percentage}% cancellation fee."
        ),
    )


def refund_amount(advance: Money, evaluation: CancellationEvaluation) -> tuple[Money, Money]:
    """
    Split the captured advance into (refund, cancellation fee).

    The refund is rounded half-up; the fee is the exact remainder, so the
    two always add back to the advance.
    """
    refund = advance.percent_of(Decimal(evaluation.refund_percentage))
    return refund, advance - refund
