from sqlalchemy import Column, String, Integer, DateTime
from datetime import datetime

from shipyard.core.database import Base
from shipyard.models.application import generate_uuid


class CustomMessageLimit(Base):
    """Per-user override of DAILY_MESSAGE_LIMIT"""
    __tablename__ = "custom_message_limits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, unique=True)
    daily_limit = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
