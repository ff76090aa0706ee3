"""
Profile Model - חשבון לקוח
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base, utcnow


class Profile(Base):
    """Customer account"""

    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    full_name = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    @property
    def first_name(self) -> str | None:
        if self.full_name and self.full_name.strip():
            return self.full_name.strip().split()[0]
        return None
