from decimal import Decimal

from sqlalchemy import select

from marketplace.domain.constants import Role
from marketplace.domain.state_machine import BookingStatus
from marketplace.infrastructure.db.models import Base, Booking, User, Wallet
from marketplace.infrastructure.db.session import SessionLocal, engine


USERS = [
    {"id": 1, "role": Role.MERCHANT, "display_name": "Hotel Star", "preferred_language": "en"},
    {"id": 2, "role": Role.STAFF, "display_name": "Asha (floor staff)", "preferred_language": "en"},
    {"id": 3, "role": Role.CUSTOMER, "display_name": "Rahul", "preferred_language": "en"},
    {"id": 4, "role": Role.CUSTOMER, "display_name": "Camille", "preferred_language": "fr"},
]

WALLET_BALANCES = {
    1: Decimal("2500.00"),
    2: Decimal("0.00"),
    3: Decimal("300.00"),
    4: Decimal("150.00"),
}

BOOKINGS = [
    {"id": 42, "reference": "MT-0042", "customer_id": 3, "guest_count": 2},
    {"id": 43, "reference": "MT-0043", "customer_id": 4, "guest_count": 4},
]


def seed_users(db) -> None:
    for item in USERS:
        user = db.get(User, item["id"])
        if user:
            user.role = item["role"]
            user.display_name = item["display_name"]
            user.preferred_language = item["preferred_language"]
            continue
        db.add(User(**item))
    db.flush()

    for user_id, balance in WALLET_BALANCES.items():
        wallet = db.execute(
            select(Wallet).where(Wallet.user_id == user_id)
        ).scalar_one_or_none()
        if wallet:
            wallet.balance = balance
            continue
        db.add(Wallet(user_id=user_id, balance=balance))


def seed_bookings(db) -> None:
    for item in BOOKINGS:
        booking = db.get(Booking, item["id"])
        if booking:
            # Reset so the demo check-in can be replayed.
            booking.status = BookingStatus.PENDING
            booking.checked_in_at = None
            booking.cancelled_at = None
            booking.cancellation_reason = None
            booking.assigned_staff_id = None
            continue

        db.add(
            Booking(
                id=item["id"],
                reference=item["reference"],
                customer_id=item["customer_id"],
                merchant_id=1,
                guest_count=item["guest_count"],
                status=BookingStatus.PENDING,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_users(db)
        seed_bookings(db)
        db.commit()
        print("Seed complete: Hotel Star merchant, staff, two customers, bookings 42 and 43.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
