# affiliate_engine/repositories/users.py
from typing import Optional, Dict, Iterable
from sqlalchemy.orm import Session

from ..models.user import User


class UserRepository:
    """Read-only lookups against the user directory"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_email(self, user_id: int) -> Optional[str]:
        row = self.db.query(User.email).filter(User.id == user_id).first()
        return row[0] if row else None

    def get_many(self, user_ids: Iterable[int]) -> Dict[int, User]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        users = self.db.query(User).filter(User.id.in_(ids)).all()
        return {user.id: user for user in users}
