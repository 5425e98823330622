"""
Webhook event handlers for Stripe events.

Handlers are registered per event type and return a ServiceResult. A
failure result marks the WebhookEvent FAILED so retry_failed_webhooks picks
it up; an unknown event type is acknowledged and ignored.

Handled events:
    payment_intent.succeeded        -> PaymentOrchestrator.confirm_payment
    payment_intent.payment_failed   -> notify the devotee
    transfer.created / transfer.paid -> PaymentOrchestrator.confirm_transfer
    charge.dispute.created          -> PaymentOrchestrator.hold_escrow
    charge.refund.updated / refund.updated -> compared with the refund row
    account.updated                 -> ConnectedAccount status sync

Usage:
    from payments.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("custom.event")
    def handle_custom_event(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult

from notifications.models import NotificationType
from notifications.services import NotificationService
from payments.exceptions import InconsistentStateError, PaymentNotFoundError
from payments.models import ConnectedAccount, PaymentRecord, RefundTransaction, WebhookEvent
from payments.services import PaymentOrchestrator
from payments.state_machines import RefundTransactionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(*event_types: str) -> Callable:
    """
    Register a handler for one or more Stripe event types.

    Usage:
        @register_handler("transfer.created", "transfer.paid")
        def handle_transfer(webhook_event: WebhookEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        for event_type in event_types:
            WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """Route a stored event to its handler; unknown types succeed with no data."""
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )
    return handler(webhook_event)


def get_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator()


def _actor(webhook_event: WebhookEvent) -> str:
    return f"webhook:{webhook_event.stripe_event_id}"


def _missing_id(webhook_event: WebhookEvent, what: str) -> ServiceResult:
    logger.error(
        f"{webhook_event.event_type}: Could not extract {what}",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )
    return ServiceResult.failure(
        f"Could not extract {what} from webhook",
        error_code="INVALID_WEBHOOK_PAYLOAD",
    )


# =============================================================================
# Payment Intent Handlers
# =============================================================================


@register_handler("payment_intent.succeeded")
def handle_payment_intent_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Confirm the payment and move the escrow ledger.

    The orchestrator verifies the intent with Stripe again rather than
    trusting the payload, and confirming an already-held record is a no-op,
    so redeliveries are harmless.
    """
    payment_intent_id = webhook_event.get_object_id()
    if not payment_intent_id:
        return _missing_id(webhook_event, "payment_intent_id")

    try:
        record = get_orchestrator().confirm_payment(payment_intent_id, actor=_actor(webhook_event))
    except PaymentNotFoundError:
        # Intents created outside the escrow flow have no record
        logger.warning(
            "payment_intent.succeeded for unknown intent",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "payment_intent_id": payment_intent_id,
            },
        )
        return ServiceResult.success(None)
    except InconsistentStateError as e:
        return ServiceResult.failure(e.message, error_code=e.error_code)

    return ServiceResult.success(record)


@register_handler("payment_intent.payment_failed")
def handle_payment_intent_failed(webhook_event: WebhookEvent) -> ServiceResult:
    """The ledger stays in requires_payment; the devotee is told to retry."""
    data_object = webhook_event.get_object()
    payment_intent_id = data_object.get("id")
    if not payment_intent_id:
        return _missing_id(webhook_event, "payment_intent_id")

    record = (
        PaymentRecord.objects.filter(stripe_payment_intent_id=payment_intent_id).first()
        or PaymentRecord.objects.filter(remaining_payment_intent_id=payment_intent_id).first()
    )
    if record is None:
        return ServiceResult.success(None)

    last_error = data_object.get("last_payment_error") or {}
    failure_message = last_error.get("message") or "Your payment could not be completed."

    logger.warning(
        "Payment failed",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "booking_id": str(record.booking_id),
            "payment_intent_id": payment_intent_id,
            "failure_code": last_error.get("code"),
        },
    )

    NotificationService.send(
        record.devotee_id,
        "Payment Failed",
        f"{failure_message} Please try again to keep your booking.",
        {
            "type": NotificationType.PAYMENT_FAILED,
            "booking_id": str(record.booking_id),
            "idempotency_key": f"payment_failed:{webhook_event.stripe_event_id}",
        },
    )
    return ServiceResult.success(record)


# =============================================================================
# Transfer Handlers
# =============================================================================


@register_handler("transfer.created", "transfer.paid")
def handle_transfer_confirmed(webhook_event: WebhookEvent) -> ServiceResult:
    transfer_id = webhook_event.get_object_id()
    if not transfer_id:
        return _missing_id(webhook_event, "transfer_id")

    record = get_orchestrator().confirm_transfer(transfer_id, actor=_actor(webhook_event))
    return ServiceResult.success(record)


# =============================================================================
# Dispute and Refund Handlers
# =============================================================================


@register_handler("charge.dispute.created")
def handle_dispute_created(webhook_event: WebhookEvent) -> ServiceResult:
    """Hold the escrow so no transfer leaves while the dispute is open."""
    dispute = webhook_event.get_object()
    payment_intent_id = dispute.get("payment_intent")
    if not payment_intent_id:
        return _missing_id(webhook_event, "payment_intent")

    record = PaymentRecord.objects.filter(stripe_payment_intent_id=payment_intent_id).first()
    if record is None:
        logger.warning(
            "Dispute for unknown payment intent",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "payment_intent_id": payment_intent_id,
            },
        )
        return ServiceResult.success(None)

    reason = dispute.get("reason") or "unspecified"
    record = get_orchestrator().hold_escrow(
        record.booking_id,
        reason=f"Charge disputed: {reason}",
        actor=_actor(webhook_event),
    )
    return ServiceResult.success(record)


@register_handler("charge.refund.updated", "refund.updated")
def handle_refund_updated(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Refund rows are immutable, so a later processor failure is only logged
    for manual follow-up.
    """
    refund = webhook_event.get_object()
    refund_id = refund.get("id")
    if not refund_id:
        return _missing_id(webhook_event, "refund_id")

    row = RefundTransaction.objects.filter(stripe_refund_id=refund_id).first()
    stripe_status = refund.get("status")
    if row is None:
        logger.info(
            "Refund update for unrecorded refund",
            extra={"stripe_refund_id": refund_id, "status": stripe_status},
        )
        return ServiceResult.success(None)

    if stripe_status in ("failed", "canceled") and row.status != RefundTransactionStatus.FAILED:
        logger.error(
            "Recorded refund failed at the processor",
            extra={
                "booking_id": str(row.booking_id),
                "stripe_refund_id": refund_id,
                "recorded_status": row.status,
                "failure_reason": refund.get("failure_reason"),
            },
        )
    else:
        logger.info(
            "Refund status update",
            extra={"stripe_refund_id": refund_id, "status": stripe_status},
        )
    return ServiceResult.success(row)


# =============================================================================
# Connected Account Handlers
# =============================================================================


@register_handler("account.updated")
def handle_account_updated(webhook_event: WebhookEvent) -> ServiceResult:
    """Sync payout capability and onboarding status for a Connect account."""
    data_object = webhook_event.get_object()
    account_id = data_object.get("id")
    if not account_id:
        return _missing_id(webhook_event, "account_id")

    connected_account = ConnectedAccount.objects.filter(stripe_account_id=account_id).first()
    if connected_account is None:
        logger.info(
            "ConnectedAccount not found, may be external account",
            extra={"account_id": account_id, "stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    connected_account.sync_from_stripe(data_object)
    connected_account.save()

    logger.info(
        "ConnectedAccount updated",
        extra={
            "connected_account_id": str(connected_account.id),
            "onboarding_status": connected_account.onboarding_status,
            "payouts_enabled": connected_account.payouts_enabled,
        },
    )
    return ServiceResult.success(connected_account)
