# tests/unit/test_orchestrator.py

import asyncio
import logging
import threading

import pytest
from sqlalchemy.exc import OperationalError

from marketplace.application.booking_operations import (
    BookingStatusRequest,
    CheckInBooking,
    CheckInRequest,
    UpdateBookingStatus,
)
from marketplace.application.orchestrator import Orchestrator
from marketplace.domain.exceptions import ValidationError
from marketplace.domain.operations import DomainOperation, OperationResult
from marketplace.domain.side_effects import SideEffectDescriptor
from marketplace.domain.state_machine import BookingStatus, OrchestrationState
from marketplace.infrastructure.db.models import Booking, IdempotencyRecord
from marketplace.infrastructure.db.unit_of_work import PersistenceGateway
from marketplace.infrastructure.repositories.booking_repository import BookingRepository


class RejectingOperation(DomainOperation):
    name = "rejecting"

    def validate(self, request):
        raise ValidationError("amount must be positive", details={"amount": "-1"})

    def execute(self, uow, request):
        raise AssertionError("execute must not run")


class RaisingOperation(DomainOperation):
    name = "raising"

    def __init__(self, exc):
        self.exc = exc

    def execute(self, uow, request):
        raise self.exc


class MutateThenFailOperation(DomainOperation):
    """Writes to the booking, then fails before returning."""

    name = "mutate_then_fail"

    def execute(self, uow, request):
        booking = uow.session.get(Booking, 42)
        booking.status = BookingStatus.CANCELLED
        uow.session.flush()
        raise RuntimeError("boom")


class CompetingKeyOperation(DomainOperation):
    """Simulates another request committing the same idempotency key first."""

    name = "competing_key"

    def __init__(self, session_factory, key):
        self.session_factory = session_factory
        self.key = key

    def execute(self, uow, request):
        other = self.session_factory()
        other.add(
            IdempotencyRecord(key=self.key, operation=self.name, status_code=200, response={})
        )
        other.commit()
        other.close()
        return OperationResult(
            entity_name="noop",
            entity={},
            side_effects=(SideEffectDescriptor.broadcast("merchant:1", "noop", {}),),
        )


class WaitsForLoopOperation(DomainOperation):
    """Blocks until the event loop releases it."""

    name = "waits_for_loop"

    def __init__(self):
        self.released = threading.Event()

    def execute(self, uow, request):
        if not self.released.wait(timeout=5):
            raise RuntimeError("event loop never released the operation")
        return OperationResult(entity_name="noop", entity={})


def _booking_status(session_factory, booking_id=42):
    session = session_factory()
    try:
        return session.get(Booking, booking_id).status
    finally:
        session.close()


# ---------------------
# COMMIT THEN FAN-OUT
# ---------------------

@pytest.mark.asyncio
async def test_commits_once_before_any_side_effect(seeded, gateway, recorder, events):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(
        UpdateBookingStatus(),
        BookingStatusRequest(booking_id=42, staff_id=2, status="confirmed"),
    )

    assert response.status_code == 200
    assert response.state == OrchestrationState.DONE
    assert [kind for kind, _ in events] == [
        "commit",
        "audit",
        "notify",
        "broadcast",
        "award_points",
    ]
    assert response.body["status"] == "success"
    assert response.body["data"]["booking"]["status"] == "confirmed"
    assert response.body["data"]["gamificationError"] is None
    assert "warnings" not in response.body


@pytest.mark.asyncio
async def test_check_in_with_failing_points(seeded, gateway, make_recorder, session_factory):
    recorder = make_recorder(fail={"award_points"})
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(CheckInBooking(), CheckInRequest(booking_id=42, staff_id=2))

    assert response.status_code == 200
    assert response.body["data"]["booking"]["status"] == "checked_in"
    assert response.body["data"]["gamificationError"] is not None
    assert response.body["warnings"][0]["kind"] == "award_points"
    assert recorder.kinds == ["notify", "award_points"]
    assert _booking_status(session_factory) == BookingStatus.CHECKED_IN


# ---------------------
# FAILURES BEFORE COMMIT
# ---------------------

@pytest.mark.asyncio
async def test_validation_error_never_opens_unit_of_work(gateway, recorder, events):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(RejectingOperation(), object())

    assert response.status_code == 400
    assert response.state == OrchestrationState.FAILED
    assert response.body == {
        "status": "error",
        "data": {"code": "VALIDATION_ERROR", "details": {"amount": "-1"}},
        "message": "amount must be positive",
    }
    assert gateway.opened == 0
    assert events == []


@pytest.mark.asyncio
async def test_not_found_rolls_back_without_side_effects(seeded, gateway, recorder, events):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(CheckInBooking(), CheckInRequest(booking_id=999, staff_id=2))

    assert response.status_code == 404
    assert response.body["data"]["code"] == "NOT_FOUND"
    assert response.state == OrchestrationState.FAILED
    assert events == []


@pytest.mark.asyncio
async def test_invalid_transition_maps_to_409(seeded, gateway, recorder, events):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(CheckInBooking(), CheckInRequest(booking_id=44, staff_id=2))

    assert response.status_code == 409
    assert response.body["data"]["code"] == "INVALID_STATE_TRANSITION"
    assert response.body["data"]["details"] == {"from": "completed", "to": "checked_in"}
    assert events == []


@pytest.mark.asyncio
async def test_unhandled_error_rolls_back_partial_writes(seeded, gateway, recorder, session_factory):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(MutateThenFailOperation(), None)

    assert response.status_code == 500
    assert response.body["data"]["code"] == "INTERNAL_ERROR"
    assert response.state == OrchestrationState.FAILED
    assert _booking_status(session_factory) == BookingStatus.PENDING
    assert recorder.kinds == []


@pytest.mark.asyncio
async def test_database_error_maps_to_persistence_failure(seeded, gateway, recorder):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    exc = OperationalError("SELECT 1", {}, Exception("connection lost"))

    response = await orchestrator.run(RaisingOperation(exc), None)

    assert response.status_code == 500
    assert response.body["data"]["code"] == "PERSISTENCE_FAILURE"
    assert recorder.kinds == []


# ---------------------
# FAILURES AFTER COMMIT
# ---------------------

@pytest.mark.asyncio
async def test_audit_failure_reports_error_but_keeps_write(
    seeded, gateway, make_recorder, session_factory
):
    recorder = make_recorder(fail={"audit"})
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(
        UpdateBookingStatus(),
        BookingStatusRequest(booking_id=42, staff_id=2, status="confirmed"),
    )

    assert response.status_code == 500
    assert response.state == OrchestrationState.FAILED
    assert response.body["data"]["code"] == "AUDIT_FAILURE"
    assert response.body["data"]["details"]["committed"] is True
    assert recorder.kinds == ["audit"]
    assert _booking_status(session_factory) == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancellation_after_commit_abandons_fan_out(
    seeded, gateway, make_recorder, session_factory, caplog
):
    recorder = make_recorder(fail={"notify"}, raise_with=asyncio.CancelledError())
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    with caplog.at_level(logging.WARNING, logger="marketplace.application.orchestrator"):
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.run(
                UpdateBookingStatus(),
                BookingStatusRequest(booking_id=42, staff_id=2, status="confirmed"),
            )

    assert recorder.kinds == ["audit", "notify"]
    assert _booking_status(session_factory) == BookingStatus.CONFIRMED
    assert "fan-out incomplete" in caplog.text


# ---------------------
# IDEMPOTENCY
# ---------------------

@pytest.mark.asyncio
async def test_repeat_status_update_is_a_no_op(seeded, gateway, recorder):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    request = BookingStatusRequest(booking_id=42, staff_id=2, status="confirmed")

    first = await orchestrator.run(UpdateBookingStatus(), request)
    side_effects_after_first = list(recorder.kinds)
    second = await orchestrator.run(UpdateBookingStatus(), request)

    assert first.status_code == second.status_code == 200
    assert second.body["data"]["booking"] == first.body["data"]["booking"]
    assert recorder.kinds == side_effects_after_first


@pytest.mark.asyncio
async def test_idempotency_key_replays_stored_response(seeded, gateway, recorder, session_factory):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    request = CheckInRequest(booking_id=42, staff_id=2)

    first = await orchestrator.run(CheckInBooking(), request, idempotency_key="check-in-42")
    second = await orchestrator.run(CheckInBooking(), request, idempotency_key="check-in-42")

    assert first.status_code == second.status_code == 200
    assert second.body == first.body
    assert recorder.kinds == ["notify", "award_points"]


@pytest.mark.asyncio
async def test_idempotency_key_replays_fan_out_warnings(seeded, gateway, make_recorder):
    recorder = make_recorder(fail={"award_points"})
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    request = CheckInRequest(booking_id=42, staff_id=2)

    first = await orchestrator.run(CheckInBooking(), request, idempotency_key="check-in-42")
    second = await orchestrator.run(CheckInBooking(), request, idempotency_key="check-in-42")

    assert first.body["data"]["gamificationError"] == "award_points collaborator down"
    assert second.status_code == 200
    assert second.body == first.body
    assert second.body["warnings"][0]["kind"] == "award_points"
    assert recorder.kinds == ["notify", "award_points"]


@pytest.mark.asyncio
async def test_idempotency_key_replays_audit_failure(seeded, gateway, make_recorder, session_factory):
    recorder = make_recorder(fail={"audit"})
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    request = BookingStatusRequest(booking_id=42, staff_id=2, status="confirmed")

    first = await orchestrator.run(UpdateBookingStatus(), request, idempotency_key="status-42")
    second = await orchestrator.run(UpdateBookingStatus(), request, idempotency_key="status-42")

    assert first.status_code == second.status_code == 500
    assert second.body == first.body
    assert second.body["data"]["code"] == "AUDIT_FAILURE"
    assert recorder.kinds == ["audit"]
    assert _booking_status(session_factory) == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_idempotency_key_reused_for_other_operation(seeded, gateway, recorder, session_factory):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    await orchestrator.run(
        CheckInBooking(),
        CheckInRequest(booking_id=42, staff_id=2),
        idempotency_key="shared-key",
    )
    response = await orchestrator.run(
        UpdateBookingStatus(),
        BookingStatusRequest(booking_id=42, staff_id=2, status="completed"),
        idempotency_key="shared-key",
    )

    assert response.status_code == 409
    assert response.body["data"]["code"] == "IDEMPOTENCY_CONFLICT"
    assert _booking_status(session_factory) == BookingStatus.CHECKED_IN


@pytest.mark.asyncio
async def test_losing_idempotency_race_maps_to_conflict(seeded, gateway, recorder, session_factory):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)

    response = await orchestrator.run(
        CompetingKeyOperation(session_factory, "race-key"),
        None,
        idempotency_key="race-key",
    )

    assert response.status_code == 409
    assert response.body["data"]["code"] == "IDEMPOTENCY_CONFLICT"
    assert recorder.kinds == []


# ---------------------
# CONCURRENCY
# ---------------------

@pytest.mark.asyncio
async def test_concurrent_check_ins_only_one_wins(file_session_factory, recorder, monkeypatch):
    # Both requests read the pending booking before either one writes.
    barrier = threading.Barrier(2, timeout=5)
    lock_by_id = BookingRepository.lock_by_id

    def lock_then_wait(self, booking_id):
        booking = lock_by_id(self, booking_id)
        barrier.wait()
        return booking

    monkeypatch.setattr(BookingRepository, "lock_by_id", lock_then_wait)
    orchestrator = Orchestrator(PersistenceGateway(file_session_factory), recorder.fan_out_factory)
    request = CheckInRequest(booking_id=42, staff_id=2)

    responses = await asyncio.gather(
        orchestrator.run(CheckInBooking(), request),
        orchestrator.run(CheckInBooking(), request),
    )

    codes = sorted(response.status_code for response in responses)
    assert codes == [200, 409]
    loser = next(response for response in responses if response.status_code == 409)
    assert loser.body["data"]["code"] == "INVALID_STATE_TRANSITION"
    assert loser.body["data"]["details"] == {"from": "checked_in", "to": "checked_in"}
    assert recorder.kinds == ["notify", "award_points"]
    assert _booking_status(file_session_factory) == BookingStatus.CHECKED_IN


@pytest.mark.asyncio
async def test_unit_of_work_runs_off_the_event_loop(seeded, gateway, recorder):
    orchestrator = Orchestrator(gateway, recorder.fan_out_factory)
    operation = WaitsForLoopOperation()

    task = asyncio.ensure_future(orchestrator.run(operation, None))
    await asyncio.sleep(0.05)
    operation.released.set()
    response = await task

    assert response.status_code == 200
    assert response.state == OrchestrationState.DONE


def test_unit_of_work_commits_at_most_once(seeded, gateway):
    uow = gateway.begin_unit_of_work()
    try:
        uow.commit()
        with pytest.raises(RuntimeError):
            uow.commit()
    finally:
        uow.close()
