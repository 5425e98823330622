"""
Pytest fixtures for Stripe adapter tests.

Stripe's resource classes are patched so no request leaves the process;
responses are plain objects with attribute access and ``to_dict`` like the
SDK's StripeObject.

Sections:
    - Stripe Response Objects
    - Stripe Error Fixtures
    - Patched Stripe Resources
"""

from dataclasses import dataclass, field
from typing import Any
from unittest.mock import patch

import pytest
import stripe

# =============================================================================
# Stripe Response Objects
# =============================================================================


@dataclass
class FakeStripeObject:
    """Attribute access over a response dict, plus ``to_dict``."""

    values: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "values":
            raise AttributeError(name)
        return self.values.get(name)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.values)


@dataclass
class FakeStripeList:
    data: list[FakeStripeObject] = field(default_factory=list)
    has_more: bool = False


def payment_intent(**overrides) -> FakeStripeObject:
    return FakeStripeObject(
        {
            "id": "pi_adapter_1",
            "object": "payment_intent",
            "status": "requires_payment_method",
            "amount": 10000,
            "currency": "usd",
            "client_secret": "pi_adapter_1_secret_xyz",
            "amount_received": 0,
            "transfer_group": "booking_1",
            "metadata": {"booking_id": "1"},
            **overrides,
        }
    )


def transfer(**overrides) -> FakeStripeObject:
    return FakeStripeObject(
        {
            "id": "tr_adapter_1",
            "object": "transfer",
            "amount": 19000,
            "currency": "usd",
            "destination": "acct_priest_1",
            "transfer_group": "booking_1",
            "reversed": False,
            "metadata": {"party": "priest"},
            **overrides,
        }
    )


def refund(**overrides) -> FakeStripeObject:
    return FakeStripeObject(
        {
            "id": "re_adapter_1",
            "object": "refund",
            "amount": 7500,
            "currency": "usd",
            "status": "succeeded",
            "payment_intent": "pi_adapter_1",
            "metadata": {},
            **overrides,
        }
    )


# =============================================================================
# Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def card_error():
    """Build a CardError with the given decline code."""

    def _create(decline_code: str | None = "generic_decline") -> stripe.CardError:
        error = stripe.CardError(
            message="Your card was declined.",
            param=None,
            code="card_declined",
        )
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    def _create(
        message: str = "No such payment_intent: 'pi_missing'",
        code: str = "resource_missing",
    ) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message=message, param=None, code=code)

    return _create


# =============================================================================
# Patched Stripe Resources
# =============================================================================


@pytest.fixture(autouse=True)
def http_client():
    """Keep the adapter's client configuration away from the real SDK state."""
    with patch("stripe.RequestsClient") as mock_client, patch("stripe.default_http_client"):
        yield mock_client


@pytest.fixture
def stripe_payment_intent():
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = payment_intent()
        mock.retrieve.return_value = payment_intent(status="succeeded", amount_received=10000)
        mock.confirm.return_value = payment_intent(status="succeeded", amount_received=10000)
        yield mock


@pytest.fixture
def stripe_transfer():
    with patch("stripe.Transfer") as mock:
        mock.create.return_value = transfer()
        mock.retrieve.return_value = transfer()
        mock.list.return_value = FakeStripeList([transfer()])
        yield mock


@pytest.fixture
def stripe_refund():
    with patch("stripe.Refund") as mock:
        mock.create.return_value = refund()
        mock.list.return_value = FakeStripeList([refund()])
        yield mock


@pytest.fixture
def stripe_webhook():
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = FakeStripeObject(
            {
                "id": "evt_adapter_1",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_adapter_1", "object": "payment_intent"}},
            }
        )
        yield mock
