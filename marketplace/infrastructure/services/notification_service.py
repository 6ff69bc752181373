# marketplace/infrastructure/services/notification_service.py

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.domain.exceptions import NotFoundError, PersistenceFailure
from marketplace.infrastructure.db.models import Notification, User
from marketplace.infrastructure.services.message_catalog import MessageCatalog, message_catalog


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationOutcome:
    notification_id: str
    language_code: str
    message: str


class NotificationService:
    """
    Renders a localized message and stores it in the user's inbox.
    """

    def __init__(self, db: Session, catalog: MessageCatalog = message_catalog):
        self.db = db
        self.catalog = catalog

    async def send_notification(
        self,
        *,
        user_id: int,
        notification_type: str,
        message_key: str,
        message_params: dict | None = None,
        role: str,
        module: str,
        language_code: str | None = None,
    ) -> NotificationOutcome:
        return await asyncio.to_thread(
            self._send,
            user_id=user_id,
            notification_type=notification_type,
            message_key=message_key,
            message_params=message_params,
            role=role,
            module=module,
            language_code=language_code,
        )

    def _send(
        self,
        *,
        user_id: int,
        notification_type: str,
        message_key: str,
        message_params: dict | None,
        role: str,
        module: str,
        language_code: str | None,
    ) -> NotificationOutcome:
        user = self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User", user_id)

        requested_language = language_code or user.preferred_language
        language = self.catalog.resolve_language(message_key, requested_language)
        message = self.catalog.render(message_key, message_params, language)

        notification = Notification(
            user_id=user_id,
            notification_type=notification_type,
            message_key=message_key,
            message=message,
            role=role,
            module=module,
            language_code=language,
        )
        self.db.add(notification)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure("Notification write failed") from exc

        logger.info(
            "Notification sent. notification_id=%s user_id=%s type=%s language=%s",
            notification.id,
            user_id,
            notification_type,
            language,
        )
        return NotificationOutcome(
            notification_id=notification.id,
            language_code=language,
            message=message,
        )

    def list_for_user(self, user_id: int, limit: int = 50) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
