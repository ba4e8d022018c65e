"""
Conversation turns - one row per user or assistant message of an application.
Read back in created_at order when the conversation cache has no entry.
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from shipyard.core.database import Base
from shipyard.models.application import generate_uuid


class PromptKind(str, enum.Enum):
    """Message sender role"""
    USER = "user"
    ASSISTANT = "assistant"


class Prompt(Base):
    """Immutable conversation turn"""
    __tablename__ = "app_prompts"

    __table_args__ = (
        Index('ix_app_prompts_app_id', 'app_id'),
        Index('ix_app_prompts_created_at', 'created_at'),
        Index('ix_app_prompts_app_created', 'app_id', 'created_at'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    app_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False)

    prompt = Column(Text, nullable=False)
    kind = Column(String(20), nullable=False)  # user / assistant
    message_kind = Column(String(50), nullable=True)  # agent classifier, e.g. RefinementRequest
    extra_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    application = relationship("Application", back_populates="prompts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "appId": self.app_id,
            "prompt": self.prompt,
            "kind": self.kind,
            "messageKind": self.message_kind,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Prompt {self.kind}: {self.prompt[:50]}...>"
