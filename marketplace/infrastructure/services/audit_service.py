# marketplace/infrastructure/services/audit_service.py

import asyncio
import ipaddress
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.domain.constants import AUDIT_ACTIONS, Role
from marketplace.domain.exceptions import PersistenceFailure, ValidationError
from marketplace.infrastructure.db.models import AuditLog


logger = logging.getLogger(__name__)


def is_valid_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


class AuditLogService:
    """Writes and reads the compliance audit trail."""

    def __init__(self, db: Session):
        self.db = db

    async def log_action(
        self,
        *,
        user_id: int,
        role: str,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
    ) -> AuditLog:
        try:
            role_enum = Role(role)
        except ValueError as exc:
            raise ValidationError("Invalid role", details={"role": role}) from exc

        if action not in AUDIT_ACTIONS.get(role_enum, frozenset()):
            raise ValidationError(
                "Invalid audit action",
                details={"role": role, "action": action},
            )
        if ip_address is not None and not is_valid_ip_address(ip_address):
            raise ValidationError("Invalid IP address", details={"ip_address": ip_address})

        record = AuditLog(
            user_id=user_id,
            role=role_enum.value,
            action=action,
            details=details or {},
            ip_address=ip_address,
        )
        return await asyncio.to_thread(self._store, record)

    def _store(self, record: AuditLog) -> AuditLog:
        self.db.add(record)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure("Audit log write failed") from exc

        logger.info(
            "Audit log created. audit_id=%s user_id=%s role=%s action=%s",
            record.id,
            record.user_id,
            record.role,
            record.action,
        )
        return record

    def list_logs(
        self,
        user_id: int | None = None,
        action: str | None = None,
        limit: int = 50,
    ) -> list[AuditLog]:
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(AuditLog.user_id == user_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        return list(self.db.execute(stmt).scalars().all())
