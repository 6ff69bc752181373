# marketplace/infrastructure/repositories/idempotency_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from marketplace.infrastructure.db.models import IdempotencyRecord


class IdempotencyRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, key: str) -> IdempotencyRecord | None:
        stmt = select(IdempotencyRecord).where(IdempotencyRecord.key == key)
        return self.db.execute(stmt).scalar_one_or_none()

    def record(
        self,
        key: str,
        operation: str,
        status_code: int,
        response: dict,
    ) -> IdempotencyRecord:
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            status_code=status_code,
            response=response,
        )
        self.db.add(record)
        return record

    def store_response(
        self,
        key: str,
        status_code: int,
        response: dict,
    ) -> None:
        record = self.get_by_key(key)
        if record is None:
            return
        record.status_code = status_code
        record.response = response
