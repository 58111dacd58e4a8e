"""User model."""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User model for authenticated users."""
    
    __tablename__ = "users"
    
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    
    # Relationships; ledger rows are never removed with their user
    plan = relationship("Plan", back_populates="users")
    credit_account = relationship("CreditAccount", back_populates="user", uselist=False, passive_deletes="all")
    credit_transactions = relationship("CreditTransaction", back_populates="user", passive_deletes="all")
