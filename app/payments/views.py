"""
API views for booking escrow.

Provides:
- EscrowStatusView: Payment record, split and transfer legs for a booking
- EscrowReleaseView: Staff release of escrowed funds
- EscrowHoldView: Staff dispute hold / lift
- CancellationRefundView: Cancellation or emergency refund

Domain errors are returned as ``BaseApplicationError.to_dict()`` with the
HTTP status matching the error class.
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

from marketplace.models import Booking
from payments.exceptions import InconsistentStateError, PaymentNotFoundError
from payments.models import PaymentRecord
from payments.serializers import (
    CancellationRefundSerializer,
    EscrowTransferSerializer,
    HoldEscrowSerializer,
    PaymentRecordSerializer,
    RefundTransactionSerializer,
    ReleaseEscrowSerializer,
)
from payments.services import PaymentOrchestrator

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = (
    (InconsistentStateError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
)


def error_response(error: BaseApplicationError) -> Response:
    """Render a domain error with the status for its class (default 400)."""
    http_status = next(
        (code for cls, code in ERROR_STATUS if isinstance(error, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    if http_status >= 500:
        logger.error("Payment processor error", extra=error.to_dict())
    return Response(error.to_dict(), status=http_status)


def get_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator()


def _actor(request) -> str:
    prefix = "staff" if request.user.is_staff else "user"
    return f"{prefix}:{request.user.pk}"


def _get_booking(booking_id) -> Booking:
    booking = Booking.objects.select_related("priest").filter(id=booking_id).first()
    if booking is None:
        raise NotFoundError(
            f"Booking {booking_id} not found",
            error_code="BOOKING_NOT_FOUND",
            details={"booking_id": str(booking_id)},
        )
    return booking


def _can_view(user, booking: Booking | None) -> bool:
    if user.is_staff:
        return True
    if booking is None:
        return False
    return booking.devotee_id == user.pk or booking.priest.user_id == user.pk


class EscrowStatusView(APIView):
    """
    GET /api/v1/payments/escrow/{booking_id}/

    Visible to staff, the booking's devotee and its priest.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_escrow_status",
        summary="Get escrow status",
        responses={
            200: PaymentRecordSerializer,
            403: OpenApiResponse(description="Not a party to the booking"),
            404: OpenApiResponse(description="No payment record for the booking"),
        },
        tags=["Payments - Escrow"],
    )
    def get(self, request, booking_id):
        record = (
            PaymentRecord.objects.prefetch_related("transfers")
            .filter(booking_id=booking_id)
            .first()
        )
        booking = Booking.objects.select_related("priest").filter(id=booking_id).first()

        if not _can_view(request.user, booking):
            return Response(
                {"error": "You don't have access to this booking"},
                status=status.HTTP_403_FORBIDDEN,
            )
        if record is None:
            return error_response(
                PaymentNotFoundError(
                    f"No payment record for booking {booking_id}",
                    details={"booking_id": str(booking_id)},
                )
            )
        return Response(PaymentRecordSerializer(record).data)


class EscrowReleaseView(APIView):
    """
    POST /api/v1/payments/escrow/{booking_id}/release/

    Staff only. Retrying a partially released booking sends only the legs
    still outstanding.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="release_escrow",
        summary="Release escrowed funds",
        request=ReleaseEscrowSerializer,
        responses={
            200: EscrowTransferSerializer(many=True),
            400: OpenApiResponse(description="Payout account missing"),
            404: OpenApiResponse(description="No payment record for the booking"),
            409: OpenApiResponse(
                description="On hold, not releasable, release in progress or needs reconciliation"
            ),
            502: OpenApiResponse(description="Payment processor rejected the transfers"),
        },
        tags=["Payments - Escrow"],
    )
    def post(self, request, booking_id):
        serializer = ReleaseEscrowSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            legs = get_orchestrator().release_escrow_funds(
                booking_id,
                actor=_actor(request),
                reason=serializer.validated_data["reason"],
            )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(EscrowTransferSerializer(legs, many=True).data)


class EscrowHoldView(APIView):
    """POST /api/v1/payments/escrow/{booking_id}/hold/ (staff only)."""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="hold_escrow",
        summary="Place or lift a dispute hold",
        request=HoldEscrowSerializer,
        responses={200: PaymentRecordSerializer, 404: OpenApiResponse(description="Not found")},
        tags=["Payments - Escrow"],
    )
    def post(self, request, booking_id):
        serializer = HoldEscrowSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        orchestrator = get_orchestrator()

        try:
            if data["on_hold"]:
                record = orchestrator.hold_escrow(booking_id, reason=data["reason"], actor=_actor(request))
            else:
                record = orchestrator.lift_hold(booking_id, actor=_actor(request), reason=data["reason"])
        except BaseApplicationError as e:
            return error_response(e)

        return Response(PaymentRecordSerializer(record).data)


class CancellationRefundView(APIView):
    """
    POST /api/v1/payments/escrow/{booking_id}/refund/

    The devotee (or staff) cancels and receives the refund the booking's
    cancellation policy allows. Emergency refunds are staff only.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancellation_refund",
        summary="Refund a cancelled booking",
        request=CancellationRefundSerializer,
        responses={
            200: RefundTransactionSerializer,
            403: OpenApiResponse(description="Not the booking's devotee"),
            404: OpenApiResponse(description="Booking or payment record not found"),
            409: OpenApiResponse(description="Payment already released or refunded"),
            502: OpenApiResponse(description="Payment processor rejected the refund"),
        },
        tags=["Payments - Refunds"],
    )
    def post(self, request, booking_id):
        serializer = CancellationRefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        orchestrator = get_orchestrator()

        try:
            booking = _get_booking(booking_id)
            if not request.user.is_staff and booking.devotee_id != request.user.pk:
                raise PermissionDeniedError(
                    "Only the devotee can cancel this booking",
                    details={"booking_id": str(booking_id)},
                )

            if data.get("emergency_type"):
                if not request.user.is_staff:
                    raise PermissionDeniedError(
                        "Emergency refunds must be approved by staff",
                        error_code="APPROVER_REQUIRED",
                    )
                refund = orchestrator.process_emergency_refund(
                    booking,
                    emergency_type=data["emergency_type"],
                    approved_by=str(request.user.pk),
                    actor=_actor(request),
                )
            else:
                refund = orchestrator.process_cancellation_refund(
                    booking,
                    reason_code=data.get("reason_code") or None,
                    actor=_actor(request),
                )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(RefundTransactionSerializer(refund).data)
