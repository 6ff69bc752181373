# marketplace/infrastructure/repositories/booking_repository.py

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy import select, update

from marketplace.infrastructure.db.models import Booking
from marketplace.domain.exceptions import InvalidStateTransitionError, NotFoundError
from marketplace.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: int,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_id(self, booking_id: int) -> Booking:
        """
        SELECT ... FOR UPDATE
        Concurrent writers on the same booking queue behind this lock.
        """

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
        )

        booking = self.db.execute(stmt).scalar_one_or_none()

        if not booking:
            raise NotFoundError("Booking", booking_id)

        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:
        """
        Compare-and-set on the status column.
        Databases without row locks (SQLite) let two writers read the same
        status; the one that updates second matches no row.
        """

        stmt = (
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == booking.status)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            self.db.refresh(booking)
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=new_status.value,
            )

        set_committed_value(booking, "status", new_status)
