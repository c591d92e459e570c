"""Client directory models: lead source, seller/coach assignment and splits."""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from commission_core.core.database import Base
import enum


class LeadSource(str, enum.Enum):
    COMPANY_DRIVEN = "company_driven"
    SELF_GENERATED = "self_generated"


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)

    # "company_driven" pays the company lead rate; anything else is self-generated
    lead_source = Column(String, nullable=True)

    sold_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    assigned_coach_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    sold_by = relationship("User", foreign_keys=[sold_by_user_id])
    assigned_coach = relationship("User", foreign_keys=[assigned_coach_id])
    splits = relationship("CommissionSplit", back_populates="client", cascade="all, delete-orphan")


class CommissionSplit(Base):
    """Client-scoped override dividing each payment among several earners."""
    __tablename__ = "commission_splits"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    role_in_sale = Column(String, nullable=False)  # coach, closer, setter
    split_percentage = Column(Numeric(5, 2), nullable=False)  # 60.00 = 60% of basis

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    client = relationship("Client", back_populates="splits")
    user = relationship("User")
