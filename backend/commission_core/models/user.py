from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from commission_core.core.database import Base
import enum


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    COACH = "coach"
    CLOSER = "closer"
    SETTER = "setter"


class User(Base):
    """An earner: anyone entitled to commission (coach, closer, setter)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)

    role = Column(String, default="coach", nullable=False)
    is_active = Column(Boolean, default=True)

    # Per-earner rate overrides: {"company_lead_rate": 0.6, "self_gen_rate": 0.75}
    commission_config = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
