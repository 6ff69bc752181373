# marketplace/infrastructure/repositories/user_repository.py

from sqlalchemy.orm import Session

from marketplace.infrastructure.db.models import User
from marketplace.domain.constants import Role
from marketplace.domain.exceptions import NotFoundError


class UserRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> User | None:
        return self.db.get(User, user_id)

    def get_with_role(self, user_id: int, role: Role) -> User:
        user = self.get_by_id(user_id)
        if not user or user.role != role:
            raise NotFoundError(role.value.capitalize(), user_id)
        return user
