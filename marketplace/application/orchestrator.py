# marketplace/application/orchestrator.py

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.application.fan_out import FanOutPartialFailure, SideEffectFanOut
from marketplace.domain.exceptions import (
    AuditFailure,
    IdempotencyConflictError,
    MarketplaceError,
    PersistenceFailure,
)
from marketplace.domain.operations import DomainOperation, OperationResult
from marketplace.domain.state_machine import OrchestrationState, OrchestrationStateMachine
from marketplace.infrastructure.db.unit_of_work import PersistenceGateway, SqlAlchemyUnitOfWork
from marketplace.infrastructure.repositories.idempotency_repository import IdempotencyRepository


logger = logging.getLogger(__name__)

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


def success_envelope(result: OperationResult, default_message: str) -> dict[str, Any]:
    return {
        "status": "success",
        "data": {result.entity_name: result.entity, "gamificationError": None},
        "message": result.message or default_message,
    }


def error_envelope(code: str, message: str, details: dict | None = None) -> dict[str, Any]:
    return {
        "status": "error",
        "data": {"code": code, "details": details or {}},
        "message": message,
    }


@dataclass(frozen=True)
class OrchestratorResponse:
    status_code: int
    body: dict[str, Any]
    state: OrchestrationState


@dataclass(frozen=True)
class _Committed:
    body: dict[str, Any]
    status_code: int
    side_effects: tuple
    replayed: bool = False


class _CallState:
    """Per-call lifecycle tracker; illegal moves are programming errors."""

    def __init__(self, operation: str):
        self.operation = operation
        self.current = OrchestrationState.IDLE

    def advance(self, to_state: OrchestrationState) -> None:
        OrchestrationStateMachine.validate_transition(self.current, to_state)
        logger.debug(
            "Orchestration state change. operation=%s from=%s to=%s",
            self.operation,
            self.current.value,
            to_state.value,
        )
        self.current = to_state


class Orchestrator:
    """
    Runs one domain operation inside one unit of work, then fans out its
    side effects.

    The unit of work commits before any side effect is applied. Failures
    before commit roll back and no side effect runs. After commit the write
    stands: non-fatal side-effect failures come back as warnings and only an
    audit failure turns the response into an error.

    Database work runs in worker threads; the event loop only awaits it.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        fan_out_factory: Callable[[Session], SideEffectFanOut],
    ):
        self.gateway = gateway
        self.fan_out_factory = fan_out_factory

    async def run(
        self,
        operation: DomainOperation,
        request: Any,
        *,
        ip_address: str | None = None,
        idempotency_key: str | None = None,
    ) -> OrchestratorResponse:
        state = _CallState(operation.name)

        try:
            operation.validate(request)
        except MarketplaceError as exc:
            state.advance(OrchestrationState.FAILED)
            logger.info(
                "Request rejected before execution. operation=%s code=%s error=%s",
                operation.name,
                exc.code,
                exc.message,
            )
            return self._error(exc, state)

        uow = self.gateway.begin_unit_of_work()
        state.advance(OrchestrationState.IN_PROGRESS)

        worker = asyncio.ensure_future(
            asyncio.to_thread(
                self._execute_and_commit, uow, state, operation, request, idempotency_key
            )
        )
        try:
            outcome = await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The worker thread still owns the session until it returns.
            worker.add_done_callback(lambda _: uow.close())
            logger.warning(
                "Cancelled while the unit of work was running. operation=%s",
                operation.name,
            )
            raise

        if isinstance(outcome, OrchestratorResponse):
            return outcome

        try:
            state.advance(OrchestrationState.COMMITTED)
            logger.info(
                "Unit of work committed. operation=%s side_effects=%s idempotency_key=%s",
                operation.name,
                len(outcome.side_effects),
                idempotency_key,
            )

            state.advance(OrchestrationState.FANNING_OUT)
            fan_out = self.fan_out_factory(uow.session)
            try:
                outcomes = await fan_out.apply(outcome.side_effects, ip_address=ip_address)
            except AuditFailure as exc:
                state.advance(OrchestrationState.FAILED)
                response = self._error(exc, state)
            except asyncio.CancelledError:
                logger.warning(
                    "Cancelled after commit, fan-out incomplete. operation=%s",
                    operation.name,
                )
                raise
            else:
                state.advance(OrchestrationState.DONE)
                response = OrchestratorResponse(
                    status_code=outcome.status_code,
                    body=self._with_warnings(
                        outcome.body, FanOutPartialFailure.from_outcomes(outcomes)
                    ),
                    state=state.current,
                )

            if idempotency_key and not outcome.replayed:
                await asyncio.to_thread(
                    self._store_final_response, uow, idempotency_key, response
                )
            return response
        finally:
            await asyncio.to_thread(uow.close)

    def _execute_and_commit(
        self,
        uow: SqlAlchemyUnitOfWork,
        state: _CallState,
        operation: DomainOperation,
        request: Any,
        idempotency_key: str | None,
    ) -> _Committed | OrchestratorResponse:
        """
        Runs in a worker thread. Returns the committed result, or the error
        response after rolling back and closing the unit of work.
        """
        try:
            committed = self._execute(uow, operation, request, idempotency_key)
            uow.commit()
            return committed
        except MarketplaceError as exc:
            failure = self._roll_back(uow, state, exc)
        except IntegrityError as exc:
            failure = self._roll_back(
                uow, state, self._integrity_failure(uow, idempotency_key, exc)
            )
        except SQLAlchemyError as exc:
            logger.exception(
                "Persistence failure. operation=%s", operation.name
            )
            failure = self._roll_back(
                uow, state, PersistenceFailure(f"Database error: {exc.__class__.__name__}")
            )
        except Exception:
            logger.exception("Unhandled error. operation=%s", operation.name)
            uow.rollback()
            state.advance(OrchestrationState.ROLLED_BACK)
            state.advance(OrchestrationState.FAILED)
            failure = OrchestratorResponse(
                status_code=500,
                body=error_envelope(INTERNAL_ERROR_CODE, "Internal server error"),
                state=state.current,
            )

        uow.close()
        return failure

    def _execute(
        self,
        uow: SqlAlchemyUnitOfWork,
        operation: DomainOperation,
        request: Any,
        idempotency_key: str | None,
    ) -> _Committed:
        idempotency = IdempotencyRepository(uow.session)

        if idempotency_key:
            existing = idempotency.get_by_key(idempotency_key)
            if existing:
                if existing.operation != operation.name:
                    raise IdempotencyConflictError(
                        "Idempotency key already used for a different operation",
                        details={
                            "idempotency_key": idempotency_key,
                            "operation": existing.operation,
                        },
                    )
                logger.info(
                    "Idempotent replay. operation=%s idempotency_key=%s",
                    operation.name,
                    idempotency_key,
                )
                return _Committed(
                    body=existing.response,
                    status_code=existing.status_code,
                    side_effects=(),
                    replayed=True,
                )

        result = operation.execute(uow, request)
        body = success_envelope(result, f"{operation.name} completed")

        if idempotency_key:
            # Claims the key with the write; the final response replaces it after fan-out.
            idempotency.record(idempotency_key, operation.name, 200, body)

        return _Committed(body=body, status_code=200, side_effects=result.side_effects)

    @staticmethod
    def _store_final_response(
        uow: SqlAlchemyUnitOfWork,
        idempotency_key: str,
        response: OrchestratorResponse,
    ) -> None:
        session = uow.session
        try:
            IdempotencyRepository(session).store_response(
                idempotency_key, response.status_code, response.body
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "Final response not stored, replays return the committed result. "
                "idempotency_key=%s",
                idempotency_key,
            )

    def _integrity_failure(
        self,
        uow: SqlAlchemyUnitOfWork,
        idempotency_key: str | None,
        exc: IntegrityError,
    ) -> MarketplaceError:
        uow.rollback()
        if idempotency_key and IdempotencyRepository(uow.session).get_by_key(idempotency_key):
            return IdempotencyConflictError(
                "Request with this idempotency key is already being processed",
                details={"idempotency_key": idempotency_key},
            )
        logger.warning("Integrity error on commit. error=%s", exc.orig)
        return PersistenceFailure("Database constraint violated")

    def _roll_back(
        self,
        uow: SqlAlchemyUnitOfWork,
        state: _CallState,
        exc: MarketplaceError,
    ) -> OrchestratorResponse:
        uow.rollback()
        state.advance(OrchestrationState.ROLLED_BACK)
        logger.warning(
            "Unit of work rolled back. operation=%s code=%s error=%s",
            state.operation,
            exc.code,
            exc.message,
        )
        state.advance(OrchestrationState.FAILED)
        return self._error(exc, state)

    @staticmethod
    def _error(exc: MarketplaceError, state: _CallState) -> OrchestratorResponse:
        return OrchestratorResponse(
            status_code=exc.status_code,
            body=error_envelope(exc.code, exc.message, exc.details),
            state=state.current,
        )

    @staticmethod
    def _with_warnings(
        body: dict[str, Any],
        partial: FanOutPartialFailure | None,
    ) -> dict[str, Any]:
        if partial is None:
            return body
        data = dict(body["data"])
        data["gamificationError"] = partial.gamification_error
        return {**body, "data": data, "warnings": partial.as_warnings()}
