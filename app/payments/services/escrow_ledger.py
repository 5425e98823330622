"""
Escrow ledger service.

The only writer of PaymentRecord. Every status change and every flag change
goes through here so that each one is:

- checked against the django-fsm transition table on PaymentRecord
- made on a row locked with select_for_update and compared against the
  version the caller read (optimistic concurrency)
- followed by an append-only PaymentAuditEntry in the same transaction

Events:
    begin_processing    requires_payment                               -> processing
    hold_in_escrow      processing                                     -> held_in_escrow
    release             held_in_escrow, partially_released             -> released
    release_partially   held_in_escrow                                 -> partially_released
    complete            released                                       -> completed
    refund              processing, held_in_escrow, partially_released -> refunded
    refund_partially    processing, held_in_escrow, partially_released -> partially_refunded

Usage:
    from payments.services.escrow_ledger import EscrowLedger

    ledger = EscrowLedger()
    record = ledger.transition(
        record,
        "hold_in_escrow",
        actor="webhook:evt_123",
        escrow_release_at=release_at,
    )

Methods return the freshly saved row; the instance passed in is never
modified, so a failed call leaves the caller's copy exactly as it was.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import F
from django_fsm import can_proceed

from core.exceptions import NotFoundError
from core.services import BaseService

from payments.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.locks import check_version
from payments.models import PaymentAuditEntry, PaymentRecord

if TYPE_CHECKING:
    import uuid
    from typing import Any

    from payments.pricing import PaymentSplit

logger = logging.getLogger(__name__)

LEDGER_EVENTS = (
    "begin_processing",
    "hold_in_escrow",
    "release",
    "release_partially",
    "complete",
    "refund",
    "refund_partially",
)


class EscrowLedger(BaseService):
    """
    Lifecycle and audit history for PaymentRecord.

    Stateless; one instance can be shared. Injected into PaymentOrchestrator
    so tests can substitute a failing ledger.
    """

    # =========================================================================
    # Creation
    # =========================================================================

    def open_record(
        self,
        booking_id: uuid.UUID,
        split: PaymentSplit,
        actor: str,
        **fields: Any,
    ) -> PaymentRecord:
        """
        Create the booking's PaymentRecord in REQUIRES_PAYMENT.

        Returns the existing record when one is already there, so concurrent
        callers converge on a single row.
        """
        with transaction.atomic():
            record, created = PaymentRecord.objects.get_or_create(
                booking_id=booking_id,
                defaults={
                    "currency": split.total.currency,
                    "transfer_group": f"booking_{booking_id}",
                    **split.as_cents(),
                    **fields,
                },
            )
            if created:
                self._audit(
                    record,
                    event="created",
                    from_status="",
                    actor=actor,
                    metadata={"split": split.as_cents()},
                )

        if created:
            self.get_logger().info(
                "Payment record opened",
                extra={
                    "booking_id": str(booking_id),
                    "payment_record_id": str(record.id),
                    "advance_cents": record.advance_cents,
                },
            )
        return record

    # =========================================================================
    # Status Transitions
    # =========================================================================

    def transition(
        self,
        record: PaymentRecord,
        event: str,
        actor: str,
        expected_version: int | None = None,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> PaymentRecord:
        """
        Apply a lifecycle event to a record.

        Args:
            record: The record as the caller last read it
            event: One of LEDGER_EVENTS
            actor: Who triggered the change, stored on the audit entry
            expected_version: Version the caller read (default: record.version)
            metadata: Extra context for the audit entry
            **fields: Additional columns to set in the same save

        Raises:
            InvalidStateTransitionError: Event not legal from the current status
            ConcurrentModificationError: Record changed since the caller read it
            PaymentNotFoundError: Record no longer exists
        """
        if event not in LEDGER_EVENTS:
            raise InvalidStateTransitionError(
                f"Unknown ledger event '{event}'",
                details={"event": event, "current_status": record.status},
            )
        if "status" in fields:
            raise PaymentValidationError("Status can only change through a ledger event")

        expected = record.version if expected_version is None else expected_version

        with transaction.atomic():
            locked = self._lock(record, expected)
            method = getattr(locked, event)
            if not can_proceed(method):
                raise InvalidStateTransitionError(
                    f"Cannot {event} a payment in '{locked.status}'",
                    details={
                        "booking_id": str(locked.booking_id),
                        "current_status": locked.status,
                        "event": event,
                    },
                )

            from_status = locked.status
            method()
            for name, value in fields.items():
                setattr(locked, name, value)
            locked.save()

            self._audit(
                locked,
                event=event,
                from_status=from_status,
                actor=actor,
                metadata={**(metadata or {}), **fields},
            )

        self.get_logger().info(
            "Ledger transition",
            extra={
                "booking_id": str(locked.booking_id),
                "event": event,
                "from_status": from_status,
                "to_status": locked.status,
                "actor": actor,
                "version": locked.version,
            },
        )
        return locked

    def force_status(
        self,
        record: PaymentRecord,
        status: str,
        actor: str,
        event: str,
        reason: str = "",
        inconsistent: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentRecord:
        """
        Set a status outside the transition table.

        Only for recovery: rolling a record back to PROCESSING after a ledger
        write failed behind a processor success, and applying the status
        reconciliation read from the processor. Always audited.

        Args:
            inconsistent: True sets the inconsistency flag with ``reason``,
                False clears it, None leaves it alone
        """
        updates: dict[str, Any] = {"status": status, "version": F("version") + 1}
        if inconsistent is True:
            updates["inconsistent_external_state"] = True
            updates["inconsistency_reason"] = reason
        elif inconsistent is False:
            updates["inconsistent_external_state"] = False
            updates["inconsistency_reason"] = ""

        with transaction.atomic():
            current = self._get(record.pk, lock=True)
            from_status = current.status
            PaymentRecord.objects.filter(pk=record.pk).update(**updates)
            forced = PaymentRecord.objects.get(pk=record.pk)
            self._audit(
                forced,
                event=event,
                from_status=from_status,
                actor=actor,
                metadata={**(metadata or {}), "reason": reason, "forced": True},
            )

        self.get_logger().warning(
            "Ledger status forced",
            extra={
                "booking_id": str(forced.booking_id),
                "event": event,
                "from_status": from_status,
                "to_status": status,
                "reason": reason,
                "actor": actor,
            },
        )
        return forced

    # =========================================================================
    # Non-status Changes
    # =========================================================================

    def record_change(
        self,
        record: PaymentRecord,
        event: str,
        actor: str,
        expected_version: int | None = None,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> PaymentRecord:
        """
        Update non-status columns under the version check, with an audit entry.

        Raises:
            ConcurrentModificationError: Record changed since the caller read it
        """
        if "status" in fields:
            raise PaymentValidationError("Status can only change through a ledger event")

        expected = record.version if expected_version is None else expected_version

        with transaction.atomic():
            locked = self._lock(record, expected)
            for name, value in fields.items():
                setattr(locked, name, value)
            locked.save(update_fields=[*fields, "version", "updated_at"])
            self._audit(
                locked,
                event=event,
                from_status=locked.status,
                actor=actor,
                metadata={**(metadata or {}), **fields},
            )
        return locked

    def mark_inconsistent(self, record: PaymentRecord, reason: str, actor: str) -> PaymentRecord:
        """Flag a record whose processor state is unknown. Status is left alone."""
        with transaction.atomic():
            current = self._get(record.pk, lock=True)
            flagged = self.record_change(
                current,
                event="marked_inconsistent",
                actor=actor,
                inconsistent_external_state=True,
                inconsistency_reason=reason,
            )

        self.get_logger().error(
            "Payment record marked inconsistent",
            extra={
                "booking_id": str(flagged.booking_id),
                "status": flagged.status,
                "reason": reason,
                "actor": actor,
            },
        )
        return flagged

    def clear_inconsistency(
        self,
        record: PaymentRecord,
        actor: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentRecord:
        with transaction.atomic():
            current = self._get(record.pk, lock=True)
            if not current.inconsistent_external_state:
                return current
            return self.record_change(
                current,
                event="inconsistency_cleared",
                actor=actor,
                metadata=metadata,
                inconsistent_external_state=False,
                inconsistency_reason="",
            )

    def set_hold(self, record: PaymentRecord, on_hold: bool, reason: str, actor: str) -> PaymentRecord:
        """Place or lift a dispute hold. Repeating the current state is a no-op."""
        with transaction.atomic():
            current = self._get(record.pk, lock=True)
            if current.is_on_hold == on_hold:
                return current
            return self.record_change(
                current,
                event="hold_placed" if on_hold else "hold_lifted",
                actor=actor,
                metadata={"reason": reason},
                is_on_hold=on_hold,
                hold_reason=reason if on_hold else "",
            )

    # =========================================================================
    # History
    # =========================================================================

    def history(self, booking_id: uuid.UUID) -> list[PaymentAuditEntry]:
        """Every audit entry for a booking, oldest first."""
        return list(
            PaymentAuditEntry.objects.filter(booking_id=booking_id).order_by(
                "created_at", "record_version"
            )
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _get(pk, lock: bool = False) -> PaymentRecord:
        queryset = PaymentRecord.objects.select_for_update() if lock else PaymentRecord.objects
        record = queryset.filter(pk=pk).first()
        if record is None:
            raise PaymentNotFoundError(
                f"Payment record {pk} not found",
                details={"payment_record_id": str(pk)},
            )
        return record

    @staticmethod
    def _lock(record: PaymentRecord, expected_version: int) -> PaymentRecord:
        try:
            return check_version(PaymentRecord, record.pk, expected_version)
        except NotFoundError as e:
            raise PaymentNotFoundError(
                f"Payment record {record.pk} not found",
                details={"payment_record_id": str(record.pk)},
            ) from e

    @staticmethod
    def _audit(
        record: PaymentRecord,
        event: str,
        from_status: str,
        actor: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentAuditEntry:
        return PaymentAuditEntry.objects.create(
            booking_id=record.booking_id,
            payment_record_id=record.id,
            event=event,
            from_status=from_status,
            to_status=record.status,
            actor=actor,
            record_version=record.version,
            metadata=metadata or {},
        )
