# marketplace/domain/operations.py

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from sqlalchemy.orm import Session

from marketplace.domain.side_effects import SideEffectDescriptor


RequestT = TypeVar("RequestT")


class UnitOfWork(Protocol):
    """Transactional scope owned by exactly one orchestrated call."""

    session: Session

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of a successful domain operation.

    ``entity`` is a JSON-safe snapshot taken before commit and is returned
    under ``entity_name`` in the response data.
    """

    entity_name: str
    entity: dict[str, Any]
    side_effects: tuple[SideEffectDescriptor, ...] = ()
    message: str = ""


class DomainOperation(ABC, Generic[RequestT]):
    """
    One business state transition.

    ``validate`` runs before any unit of work is opened and may only raise
    ValidationError. ``execute`` enforces state legality against the
    persistence layer and describes, but never performs, its side effects.
    """

    name: str = "operation"

    def validate(self, request: RequestT) -> None:
        return None

    @abstractmethod
    def execute(self, uow: UnitOfWork, request: RequestT) -> OperationResult:
        raise NotImplementedError
