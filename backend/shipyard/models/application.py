from sqlalchemy import Column, String, DateTime, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum

from shipyard.core.database import Base


def generate_uuid() -> str:
    """Generate a UUID string"""
    return str(uuid.uuid4())


class DeployStatus(str, enum.Enum):
    """Deployment lifecycle of an application"""
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"


class Application(Base):
    """
    A generated application.

    Created once the first diff of a new build is applied and committed;
    updated on every iteration; soft-deleted only.
    """
    __tablename__ = "applications"

    __table_args__ = (
        Index('ix_applications_owner_id', 'owner_id'),
        Index('ix_applications_created_at', 'created_at'),
        Index('ix_applications_owner_deleted', 'owner_id', 'deleted_at'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)  # display name, first prompt truncated
    owner_id = Column(String(255), nullable=False)

    # Correlation key: app-<id>.req-<requestId>
    trace_id = Column(String(255), nullable=True)

    # GitHub
    repository_url = Column(String(500), nullable=True)
    app_name = Column(String(255), nullable=True)  # repository name, unique per namespace
    github_username = Column(String(255), nullable=True)

    # Deployment - plain string so the conditional UPDATE compares text on every dialect
    deploy_status = Column(String(20), default=DeployStatus.PENDING.value, nullable=False)
    app_url = Column(String(500), nullable=True)

    client_source = Column(String(50), nullable=True)  # web, cli, ...

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    prompts = relationship(
        "Prompt",
        back_populates="application",
        cascade="all, delete-orphan",
        order_by="Prompt.created_at",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "traceId": self.trace_id,
            "repositoryUrl": self.repository_url,
            "appName": self.app_name,
            "githubUsername": self.github_username,
            "deployStatus": self.deploy_status,
            "appUrl": self.app_url,
            "clientSource": self.client_source,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Application {self.id} {self.deploy_status}>"
