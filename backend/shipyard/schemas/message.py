from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime


class PostMessageBody(BaseModel):
    """Body of POST /message"""
    message: str = Field(..., min_length=1)
    application_id: Optional[str] = Field(None, alias="applicationId")
    settings: Optional[Dict[str, Any]] = None
    client_source: Optional[str] = Field(None, alias="clientSource", max_length=50)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v


class PromptResponse(BaseModel):
    id: str
    app_id: str = Field(serialization_alias="appId")
    prompt: str
    kind: str
    message_kind: Optional[str] = Field(None, serialization_alias="messageKind")
    created_at: datetime = Field(serialization_alias="createdAt")

    model_config = ConfigDict(from_attributes=True)


class ApplicationResponse(BaseModel):
    id: str
    name: str
    owner_id: str = Field(serialization_alias="ownerId")
    trace_id: Optional[str] = Field(None, serialization_alias="traceId")
    repository_url: Optional[str] = Field(None, serialization_alias="repositoryUrl")
    app_name: Optional[str] = Field(None, serialization_alias="appName")
    github_username: Optional[str] = Field(None, serialization_alias="githubUsername")
    deploy_status: str = Field(serialization_alias="deployStatus")
    app_url: Optional[str] = Field(None, serialization_alias="appUrl")
    client_source: Optional[str] = Field(None, serialization_alias="clientSource")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(None, serialization_alias="updatedAt")

    model_config = ConfigDict(from_attributes=True)


class ApplicationDetailResponse(ApplicationResponse):
    history: List[PromptResponse] = []


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int = Field(serialization_alias="totalPages")


class ApplicationListResponse(BaseModel):
    data: List[ApplicationResponse]
    pagination: Pagination
