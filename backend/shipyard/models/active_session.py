from sqlalchemy import Column, String, DateTime, Index
from datetime import datetime

from shipyard.core.database import Base
from shipyard.models.application import generate_uuid


class ActiveSession(Base):
    """A live /message stream, counted against MAX_ACTIVE_CONNECTIONS"""
    __tablename__ = "active_sessions"

    __table_args__ = (
        Index('ix_active_sessions_user_id', 'user_id'),
        Index('ix_active_sessions_last_active_at', 'last_active_at'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    trace_id = Column(String(255), nullable=False)
    application_id = Column(String(36), nullable=True)
    request_id = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_active_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ActiveSession {self.id} user={self.user_id}>"
