# marketplace/application/booking_operations.py

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from marketplace.domain.constants import (
    GAMIFICATION_ACTIONS,
    MODULE_MTABLES,
    NotificationType,
    Role,
    SocketEvent,
)
from marketplace.domain.exceptions import DomainRuleViolation, ValidationError
from marketplace.domain.operations import DomainOperation, OperationResult, UnitOfWork
from marketplace.domain.side_effects import SideEffectDescriptor
from marketplace.domain.state_machine import BookingStateMachine, BookingStatus
from marketplace.infrastructure.db.models import Booking
from marketplace.infrastructure.repositories.booking_repository import BookingRepository
from marketplace.infrastructure.repositories.user_repository import UserRepository


MAX_CANCELLATION_REASON_LENGTH = 500


@dataclass(frozen=True)
class CheckInRequest:
    booking_id: int
    staff_id: int


@dataclass(frozen=True)
class BookingStatusRequest:
    booking_id: int
    staff_id: int
    status: str


@dataclass(frozen=True)
class CancelBookingRequest:
    booking_id: int
    customer_id: int
    reason: str | None = None


def _isoformat(value: datetime | None) -> str | None:
    # SQLite hands back naive values, Postgres uses the session time zone.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def booking_snapshot(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "reference": booking.reference,
        "customer_id": booking.customer_id,
        "merchant_id": booking.merchant_id,
        "assigned_staff_id": booking.assigned_staff_id,
        "guest_count": booking.guest_count,
        "status": booking.status.value,
        "checked_in_at": _isoformat(booking.checked_in_at),
        "cancelled_at": _isoformat(booking.cancelled_at),
        "cancellation_reason": booking.cancellation_reason,
    }


def _require_positive_ids(**identifiers: int) -> None:
    for field_name, value in identifiers.items():
        if not isinstance(value, int) or value <= 0:
            raise ValidationError(
                f"{field_name} must be a positive integer",
                details={field_name: value},
            )


def _transition(
    repository: BookingRepository,
    booking: Booking,
    to_status: BookingStatus,
) -> None:
    BookingStateMachine.validate_transition(booking.status, to_status)
    repository.update_status(booking, to_status)

    now = datetime.now(timezone.utc)
    if to_status == BookingStatus.CHECKED_IN:
        booking.checked_in_at = now
    elif to_status == BookingStatus.CANCELLED:
        booking.cancelled_at = now


class CheckInBooking(DomainOperation[CheckInRequest]):
    """Staff checks a guest in; the staff member is assigned to the booking."""

    name = "booking_check_in"

    def validate(self, request: CheckInRequest) -> None:
        _require_positive_ids(booking_id=request.booking_id, staff_id=request.staff_id)

    def execute(self, uow: UnitOfWork, request: CheckInRequest) -> OperationResult:
        bookings = BookingRepository(uow.session)
        booking = bookings.lock_by_id(request.booking_id)
        staff = UserRepository(uow.session).get_with_role(request.staff_id, Role.STAFF)

        _transition(bookings, booking, BookingStatus.CHECKED_IN)
        booking.assigned_staff_id = staff.id

        return OperationResult(
            entity_name="booking",
            entity=booking_snapshot(booking),
            message="Booking checked in",
            side_effects=(
                SideEffectDescriptor.notify(
                    user_id=booking.customer_id,
                    notification_type=NotificationType.CHECK_IN_PROCESSED,
                    message_key="mtables.checked_in",
                    message_params={"reference": booking.reference},
                    role=Role.CUSTOMER.value,
                    module=MODULE_MTABLES,
                ),
                SideEffectDescriptor.award_points(
                    user_id=staff.id,
                    action="booking_checked_in",
                    points=GAMIFICATION_ACTIONS[Role.STAFF]["booking_checked_in"],
                    metadata={"booking_id": booking.id},
                ),
            ),
        )


class UpdateBookingStatus(DomainOperation[BookingStatusRequest]):
    """
    "Set status to X". Repeating the call once the booking is already in X
    changes nothing and describes no side effects.
    """

    name = "booking_status_update"

    def validate(self, request: BookingStatusRequest) -> None:
        _require_positive_ids(booking_id=request.booking_id, staff_id=request.staff_id)
        try:
            BookingStatus(request.status)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid booking status: {request.status}",
                details={
                    "status": request.status,
                    "allowed": [status.value for status in BookingStatus],
                },
            ) from exc

    def execute(self, uow: UnitOfWork, request: BookingStatusRequest) -> OperationResult:
        target = BookingStatus(request.status)
        bookings = BookingRepository(uow.session)
        booking = bookings.lock_by_id(request.booking_id)
        staff = UserRepository(uow.session).get_with_role(request.staff_id, Role.STAFF)

        if booking.status == target:
            return OperationResult(
                entity_name="booking",
                entity=booking_snapshot(booking),
                message=f"Booking already {target.value}",
            )

        previous = booking.status
        _transition(bookings, booking, target)

        return OperationResult(
            entity_name="booking",
            entity=booking_snapshot(booking),
            message="Booking status updated",
            side_effects=(
                SideEffectDescriptor.audit(
                    user_id=staff.id,
                    role=Role.STAFF.value,
                    action="booking_status_update",
                    details={
                        "booking_id": booking.id,
                        "from": previous.value,
                        "to": target.value,
                    },
                ),
                SideEffectDescriptor.notify(
                    user_id=booking.customer_id,
                    notification_type=NotificationType.BOOKING_STATUS_UPDATED,
                    message_key=f"mtables.{target.value}",
                    message_params={"reference": booking.reference},
                    role=Role.CUSTOMER.value,
                    module=MODULE_MTABLES,
                ),
                SideEffectDescriptor.broadcast(
                    channel=f"customer:{booking.customer_id}",
                    event_name=SocketEvent.BOOKING_STATUS_UPDATED,
                    payload={"booking_id": booking.id, "status": target.value},
                ),
                SideEffectDescriptor.award_points(
                    user_id=staff.id,
                    action="booking_status_updated",
                    points=GAMIFICATION_ACTIONS[Role.STAFF]["booking_status_updated"],
                    metadata={"booking_id": booking.id, "status": target.value},
                ),
            ),
        )


class CancelBooking(DomainOperation[CancelBookingRequest]):
    name = "booking_cancel"

    def validate(self, request: CancelBookingRequest) -> None:
        _require_positive_ids(booking_id=request.booking_id, customer_id=request.customer_id)
        if request.reason and len(request.reason) > MAX_CANCELLATION_REASON_LENGTH:
            raise ValidationError(
                "Cancellation reason is too long",
                details={"max_length": MAX_CANCELLATION_REASON_LENGTH},
            )

    def execute(self, uow: UnitOfWork, request: CancelBookingRequest) -> OperationResult:
        bookings = BookingRepository(uow.session)
        booking = bookings.lock_by_id(request.booking_id)

        if booking.customer_id != request.customer_id:
            raise DomainRuleViolation(
                "Booking does not belong to this customer",
                details={"booking_id": booking.id, "customer_id": request.customer_id},
            )

        _transition(bookings, booking, BookingStatus.CANCELLED)
        booking.cancellation_reason = request.reason

        return OperationResult(
            entity_name="booking",
            entity=booking_snapshot(booking),
            message="Booking cancelled",
            side_effects=(
                SideEffectDescriptor.audit(
                    user_id=booking.customer_id,
                    role=Role.CUSTOMER.value,
                    action="booking_cancel",
                    details={"booking_id": booking.id, "reason": request.reason},
                ),
                SideEffectDescriptor.notify(
                    user_id=booking.customer_id,
                    notification_type=NotificationType.BOOKING_CANCELLED,
                    message_key="mtables.cancelled",
                    message_params={"reference": booking.reference},
                    role=Role.CUSTOMER.value,
                    module=MODULE_MTABLES,
                ),
                SideEffectDescriptor.broadcast(
                    channel=f"merchant:{booking.merchant_id}",
                    event_name=SocketEvent.BOOKING_CANCELLED,
                    payload={"booking_id": booking.id, "reference": booking.reference},
                ),
            ),
        )
