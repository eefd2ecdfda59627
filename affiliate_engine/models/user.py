# affiliate_engine/models/user.py
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from ..db.base_class import Base

class User(Base):
    """Read-only mirror of the platform user directory"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Affiliate relationship
    affiliate_profile = relationship(
        "AffiliateProfile",
        foreign_keys="AffiliateProfile.user_id",
        back_populates="user",
        uselist=False
    )

    def __str__(self):
        return f"User(email={self.email})"

    @property
    def display_name(self) -> str:
        return self.full_name or (self.email or "").split("@")[0]
