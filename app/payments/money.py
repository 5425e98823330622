"""
Integer-cents money type.

All engine arithmetic (splits, advances, refunds) goes through Money so no
code path ever touches floating point dollars. Percentages are applied with
Decimal and ROUND_HALF_UP, then converted back to whole cents.

Usage:
    from payments.money import Money

    total = Money(cents=20000)
    fee = total.percent_of(5)          # Money(cents=1000, currency='usd')
    print(total - fee)                 # "$190.00 USD"
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Money:
    """
    A monetary amount in the smallest currency unit.

    Attributes:
        cents: Amount in cents (must be an int, never a float)
        currency: ISO 4217 currency code, lowercase (default: 'usd')

    Example:
        amount = Money(cents=5000, currency='usd')
        print(amount)  # "$50.00 USD"
    """

    cents: int
    currency: str = "usd"

    def __post_init__(self) -> None:
        # bool is an int subclass; True cents is always a bug
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(
                f"Money cents must be an int, got {type(self.cents).__name__}"
            )
        object.__setattr__(self, "currency", self.currency.lower())

    @classmethod
    def zero(cls, currency: str = "usd") -> Money:
        return cls(cents=0, currency=currency)

    def __str__(self) -> str:
        """Format as currency string (e.g., '$50.00 USD')."""
        sign = "-" if self.cents < 0 else ""
        whole, frac = divmod(abs(self.cents), 100)
        return f"{sign}${whole}.{frac:02d} {self.currency.upper()}"

    def __repr__(self) -> str:
        return f"Money(cents={self.cents}, currency={self.currency!r})"

    def _check_currency(self, other: Money, verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {verb} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        """Add two Money objects (must have same currency)."""
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        """Subtract two Money objects (must have same currency)."""
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(cents=self.cents - other.cents, currency=self.currency)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.cents < other.cents

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.cents <= other.cents

    def percent_of(self, percentage: int | Decimal) -> Money:
        """
        Return ``percentage`` percent of this amount, rounded half-up.

        Args:
            percentage: Whole or Decimal percentage (0-100). Floats are
                rejected to keep the calculation exact.
        """
        if isinstance(percentage, float):
            raise TypeError("percentage must be an int or Decimal, not float")
        value = Decimal(self.cents) * Decimal(percentage) / Decimal(100)
        return Money(cents=round_half_up(value), currency=self.currency)

    @property
    def is_negative(self) -> bool:
        return self.cents < 0

    @property
    def is_zero(self) -> bool:
        return self.cents == 0
