"""Subscription plan model carrying generation limits."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Plan(Base):
    """Plan limits applied to generation requests."""

    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False, unique=True)
    max_chapters = Column(Integer, nullable=False, default=3)
    max_lessons_per_chapter = Column(Integer, nullable=False, default=3)
    max_slides = Column(Integer, nullable=False, default=50)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    users = relationship("User", back_populates="plan")
