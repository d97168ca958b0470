"""User lookups needed by fraud scoring."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models.guide import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_created_at(self, user_id: int) -> Optional[datetime]:
        return self._execute_scalar(self.db.query(User.created_at).filter(User.id == user_id))
