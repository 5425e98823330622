"""
Pricing split calculation.

Divides a booking total between priest, temple and platform, and between
the advance charged up front and the remainder due on completion.

Rules:
    platform_fee = round_half_up(total * platform_fee_percentage / 100)
    temple_share = round_half_up(total * temple_share_percentage / 100)
                   for temple employees, 0 for everyone else
    priest_share = total - platform_fee - temple_share
    advance      = round_half_up(total * advance_percentage / 100)
    remaining    = total - advance

Retention (the devotee's loyalty credit) is carried alongside the split as a
separate liability; it never reduces priest_share, so
``priest_share + temple_share + platform_fee == total`` always holds.

Usage:
    from payments.money import Money
    from payments.pricing import compute_split

    split = compute_split(
        Money(20000),
        advance_percentage=50,
        priest_type="independent",
        platform_fee_percentage=5,
        retention=Money(0),
    )
    split.priest_share  # Money(cents=19000, currency='usd')
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings

from marketplace.models import PriestType
from payments.exceptions import InvalidSplitError
from payments.money import Money

if TYPE_CHECKING:
    from marketplace.models import Booking, PriestProfile

ALLOWED_ADVANCE_PERCENTAGES = (25, 50, 75, 100)


@dataclass(frozen=True)
class PaymentSplit:
    """
    How a booking total divides up. All components are Money in one currency.

    Invariants:
        priest_share + temple_share + platform_fee == total
        advance + remaining == total
        no component is negative
    """

    total: Money
    advance: Money
    remaining: Money
    priest_share: Money
    temple_share: Money
    platform_fee: Money
    retention: Money

    @classmethod
    def from_cents(cls, currency: str = "usd", **cents: int) -> PaymentSplit:
        return cls(**{name: Money(value, currency) for name, value in cents.items()})

    @property
    def priest_net(self) -> Money:
        """Priest share after the loyalty credit is set aside."""
        return self.priest_share - self.retention

    def as_cents(self) -> dict[str, int]:
        return {
            "total_cents": self.total.cents,
            "advance_cents": self.advance.cents,
            "remaining_cents": self.remaining.cents,
            "priest_share_cents": self.priest_share.cents,
            "temple_share_cents": self.temple_share.cents,
            "platform_fee_cents": self.platform_fee.cents,
            "retention_cents": self.retention.cents,
        }


def _check_percentage(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
        raise InvalidSplitError(
            f"{name} must be a whole or decimal percentage",
            details={name: repr(value)},
        )
    if not 0 <= value <= 100:
        raise InvalidSplitError(
            f"{name} must be between 0 and 100",
            details={name: str(value)},
        )


def compute_split(
    total: Money,
    advance_percentage: int,
    priest_type: str,
    *,
    platform_fee_percentage: int | Decimal,
    temple_share_percentage: int | Decimal | None = None,
    retention: Money | None = None,
) -> PaymentSplit:
    """
    Compute the payment split for a booking total.

    Args:
        total: Booking total
        advance_percentage: One of 25, 50, 75, 100
        priest_type: "independent" or "temple_employee"; any type other than
            temple_employee gets a temple share of 0 whatever percentage is
            supplied
        platform_fee_percentage: Platform cut, 0-100
        temple_share_percentage: Temple cut for temple employees, 0-100
        retention: Loyalty credit held back for the devotee

    Raises:
        InvalidSplitError: Bad percentages, negative amounts, or a split
            that would leave any party with a negative amount.
    """
    retention = retention if retention is not None else Money.zero(total.currency)

    if total.is_negative:
        raise InvalidSplitError(
            "Booking total cannot be negative",
            details={"total_cents": total.cents},
        )
    if retention.is_negative:
        raise InvalidSplitError(
            "Retention amount cannot be negative",
            details={"retention_cents": retention.cents},
        )
    if retention.currency != total.currency:
        raise InvalidSplitError(
            "Retention currency must match the booking currency",
            details={"total_currency": total.currency, "retention_currency": retention.currency},
        )
    if (
        isinstance(advance_percentage, bool)
        or advance_percentage not in ALLOWED_ADVANCE_PERCENTAGES
    ):
        raise InvalidSplitError(
            "Advance percentage must be one of 25, 50, 75, 100",
            details={"advance_percentage": advance_percentage},
        )
    _check_percentage("platform_fee_percentage", platform_fee_percentage)
    if temple_share_percentage is not None:
        _check_percentage("temple_share_percentage", temple_share_percentage)

    is_temple_employee = priest_type == PriestType.TEMPLE_EMPLOYEE
    if is_temple_employee:
        if temple_share_percentage is None:
            raise InvalidSplitError(
                "Temple employees need a temple share percentage",
                details={"priest_type": priest_type},
            )
        if platform_fee_percentage + temple_share_percentage > 100:
            raise InvalidSplitError(
                "Platform fee and temple share exceed 100 percent",
                details={
                    "platform_fee_percentage": str(platform_fee_percentage),
                    "temple_share_percentage": str(temple_share_percentage),
                },
            )

    platform_fee = total.percent_of(platform_fee_percentage)
    if is_temple_employee:
        temple_share = total.percent_of(temple_share_percentage)
    else:
        temple_share = Money.zero(total.currency)
    priest_share = total - platform_fee - temple_share

    advance = total.percent_of(advance_percentage)
    remaining = total - advance

    split = PaymentSplit(
        total=total,
        advance=advance,
        remaining=remaining,
        priest_share=priest_share,
        temple_share=temple_share,
        platform_fee=platform_fee,
        retention=retention,
    )

    negative = [
        name
        for name in ("advance", "remaining", "priest_share", "temple_share", "platform_fee")
        if getattr(split, name).is_negative
    ]
    if negative:
        raise InvalidSplitError(
            "Split would produce a negative share",
            details={"negative_components": negative},
        )
    if split.priest_net.is_negative:
        raise InvalidSplitError(
            "Retention exceeds the priest share",
            details={
                "priest_share_cents": priest_share.cents,
                "retention_cents": retention.cents,
            },
        )

    return split


def split_for_booking(booking: Booking, priest: PriestProfile | None = None) -> PaymentSplit:
    """
    Compute the split for a booking using configured fees.

    The loyalty credit is capped at the priest share, so small bookings
    carry a smaller credit instead of failing.
    """
    priest = priest or booking.priest
    total = Money(int(booking.total_price_cents), booking.currency)
    kwargs = {
        "platform_fee_percentage": settings.PLATFORM_FEE_PERCENT,
        "temple_share_percentage": (
            priest.temple_share_percentage if priest.is_temple_employee else None
        ),
    }

    base = compute_split(total, booking.advance_percentage, priest.priest_type, **kwargs)
    configured = Money(settings.LOYALTY_RETENTION_CENTS, total.currency)
    retention = configured if configured <= base.priest_share else base.priest_share

    return compute_split(
        total,
        booking.advance_percentage,
        priest.priest_type,
        retention=retention,
        **kwargs,
    )
