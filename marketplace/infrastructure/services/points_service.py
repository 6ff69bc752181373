# marketplace/infrastructure/services/points_service.py

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.domain.constants import GAMIFICATION_ACTIONS, MAX_POINTS_PER_DAY, POINT_EXPIRY_DAYS
from marketplace.domain.exceptions import NotFoundError, PersistenceFailure, PointsAwardError
from marketplace.infrastructure.db.models import PointsRecord, User


logger = logging.getLogger(__name__)


class PointsService:
    """
    Awards gamification points.

    An action must be configured for the user's role, and a user can earn at
    most ``max_points_per_day`` points per UTC day.
    """

    def __init__(
        self,
        db: Session,
        max_points_per_day: int = MAX_POINTS_PER_DAY,
        expiry_days: int = POINT_EXPIRY_DAYS,
    ):
        self.db = db
        self.max_points_per_day = max_points_per_day
        self.expiry_days = expiry_days

    async def award_points(
        self,
        *,
        user_id: int,
        action: str,
        points: int,
        metadata: dict | None = None,
    ) -> PointsRecord:
        return await asyncio.to_thread(
            self._award,
            user_id=user_id,
            action=action,
            points=points,
            metadata=metadata,
        )

    def _award(
        self,
        *,
        user_id: int,
        action: str,
        points: int,
        metadata: dict | None,
    ) -> PointsRecord:
        user = self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User", user_id)

        if action not in GAMIFICATION_ACTIONS.get(user.role, {}):
            raise PointsAwardError(
                f"Invalid action for role {user.role.value}: {action}",
                details={"action": action, "role": user.role.value},
            )
        if points < 0:
            raise PointsAwardError("Points must be non-negative", details={"points": points})

        now = datetime.now(timezone.utc)
        earned_today = self.points_since(user_id, now.replace(hour=0, minute=0, second=0, microsecond=0))
        if earned_today + points > self.max_points_per_day:
            raise PointsAwardError(
                f"Points exceed daily limit: {self.max_points_per_day}",
                details={"earned_today": earned_today, "points": points},
            )

        record = PointsRecord(
            user_id=user_id,
            role=user.role.value,
            action=action,
            points=points,
            details=metadata or {},
            awarded_at=now,
            expires_at=now + timedelta(days=self.expiry_days),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceFailure("Points award write failed") from exc

        logger.info(
            "Points awarded. user_id=%s action=%s points=%s",
            user_id,
            action,
            points,
        )
        return record

    def points_since(self, user_id: int, since: datetime) -> int:
        stmt = (
            select(func.coalesce(func.sum(PointsRecord.points), 0))
            .where(PointsRecord.user_id == user_id)
            .where(PointsRecord.awarded_at >= since)
        )
        return int(self.db.execute(stmt).scalar_one())

    def active_total(self, user_id: int) -> int:
        stmt = (
            select(func.coalesce(func.sum(PointsRecord.points), 0))
            .where(PointsRecord.user_id == user_id)
            .where(PointsRecord.expires_at > datetime.now(timezone.utc))
        )
        return int(self.db.execute(stmt).scalar_one())
