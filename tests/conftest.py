import os

os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.api.routes.routes import get_db, get_gateway, get_payment_verifier
from marketplace.application.fan_out import SideEffectFanOut
from marketplace.domain.constants import Role
from marketplace.domain.exceptions import PaymentVerificationError
from marketplace.domain.state_machine import BookingStatus
from marketplace.infrastructure.db.models import Base, Booking, User, Wallet
from marketplace.infrastructure.db.unit_of_work import PersistenceGateway, SqlAlchemyUnitOfWork
from marketplace.main import app


MERCHANT_ID = 1
STAFF_ID = 2
CUSTOMER_ID = 3
FRENCH_CUSTOMER_ID = 4
OTHER_STAFF_ID = 5


# ---------------------
# DATABASE
# ---------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def _seed(session_factory):
    session = session_factory()
    session.add_all(
        [
            User(id=MERCHANT_ID, role=Role.MERCHANT, display_name="Hotel Star"),
            User(id=STAFF_ID, role=Role.STAFF, display_name="Asha"),
            User(id=CUSTOMER_ID, role=Role.CUSTOMER, display_name="Rahul"),
            User(
                id=FRENCH_CUSTOMER_ID,
                role=Role.CUSTOMER,
                display_name="Camille",
                preferred_language="fr",
            ),
            User(id=OTHER_STAFF_ID, role=Role.STAFF, display_name="Vikram"),
        ]
    )
    session.flush()
    session.add_all(
        [
            Wallet(user_id=MERCHANT_ID, balance=Decimal("5.00"), currency="INR"),
            Wallet(user_id=STAFF_ID, balance=Decimal("0.00"), currency="INR"),
            Wallet(user_id=CUSTOMER_ID, balance=Decimal("100.00"), currency="INR"),
            Wallet(user_id=FRENCH_CUSTOMER_ID, balance=Decimal("50.00"), currency="INR"),
            Wallet(user_id=OTHER_STAFF_ID, balance=Decimal("0.00"), currency="INR"),
            Booking(
                id=42,
                reference="MT-0042",
                customer_id=CUSTOMER_ID,
                merchant_id=MERCHANT_ID,
                guest_count=2,
                status=BookingStatus.PENDING,
            ),
            Booking(
                id=43,
                reference="MT-0043",
                customer_id=FRENCH_CUSTOMER_ID,
                merchant_id=MERCHANT_ID,
                guest_count=4,
                status=BookingStatus.CONFIRMED,
            ),
            Booking(
                id=44,
                reference="MT-0044",
                customer_id=CUSTOMER_ID,
                merchant_id=MERCHANT_ID,
                guest_count=1,
                status=BookingStatus.COMPLETED,
            ),
        ]
    )
    session.commit()
    session.close()


@pytest.fixture
def seeded(session_factory):
    _seed(session_factory)


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File-backed SQLite, one connection per session, for tests that run
    sessions from several threads at once.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    _seed(factory)
    yield factory
    engine.dispose()


# ---------------------
# FAKES
# ---------------------

class RecordingCollaborators:
    """
    Stands in for all four fan-out collaborators and records each call in
    order. Kinds listed in ``fail`` raise; ``raise_with`` overrides the
    exception raised.
    """

    def __init__(self, events: list | None = None, fail=(), raise_with=None):
        self.events = events if events is not None else []
        self.fail = set(fail)
        self.raise_with = raise_with

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events if kind != "commit"]

    async def log_action(self, **kwargs):
        return self._record("audit", kwargs)

    async def send_notification(self, **kwargs):
        return self._record("notify", kwargs)

    async def emit(self, channel, event_name, payload):
        return self._record(
            "broadcast",
            {"channel": channel, "event_name": event_name, "payload": payload},
        )

    async def award_points(self, **kwargs):
        return self._record("award_points", kwargs)

    def _record(self, kind, kwargs):
        self.events.append((kind, kwargs))
        if kind in self.fail:
            if self.raise_with is not None:
                raise self.raise_with
            raise RuntimeError(f"{kind} collaborator down")
        return {"kind": kind}

    def fan_out_factory(self, session):
        return SideEffectFanOut(
            audit=self,
            notifications=self,
            broadcast=self,
            points=self,
        )


class TrackingUnitOfWork(SqlAlchemyUnitOfWork):

    def __init__(self, session, events):
        super().__init__(session)
        self.events = events

    def commit(self) -> None:
        super().commit()
        self.events.append(("commit", {}))


class TrackingGateway(PersistenceGateway):

    def __init__(self, session_factory, events):
        super().__init__(session_factory)
        self.events = events
        self.opened = 0

    def begin_unit_of_work(self):
        self.opened += 1
        return TrackingUnitOfWork(self._session_factory(), self.events)


class FakePaymentVerifier:

    def __init__(self, order_amount=Decimal("100.00"), valid=True):
        self._order_amount = order_amount
        self.valid = valid
        self.verified = []

    def verify(self, order_id, payment_id, signature):
        self.verified.append(payment_id)
        if not self.valid:
            raise PaymentVerificationError(
                "Invalid payment signature",
                details={"payment_id": payment_id},
            )

    def order_amount(self, order_id):
        return self._order_amount


@pytest.fixture
def events():
    return []


@pytest.fixture
def recorder(events):
    return RecordingCollaborators(events=events)


@pytest.fixture
def gateway(session_factory, events):
    return TrackingGateway(session_factory, events)


@pytest.fixture
def make_recorder(events):
    def _make(**kwargs):
        return RecordingCollaborators(events=events, **kwargs)
    return _make


@pytest.fixture
def payment_verifier():
    return FakePaymentVerifier()


# ---------------------
# HTTP
# ---------------------

@pytest.fixture
def client(session_factory, seeded, payment_verifier):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: PersistenceGateway(session_factory)
    app.dependency_overrides[get_payment_verifier] = lambda: payment_verifier
    yield TestClient(app)
    app.dependency_overrides.clear()
