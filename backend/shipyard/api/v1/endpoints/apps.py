from datetime import datetime
from typing import List
import math

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.database import get_db
from shipyard.core.exceptions import PreviousRequestNotFoundError, TraceAccessDeniedError
from shipyard.core.logging_config import logger
from shipyard.core.security import UserIdentity, get_current_user
from shipyard.models.application import Application
from shipyard.schemas.message import (
    ApplicationDetailResponse,
    ApplicationListResponse,
    ApplicationResponse,
    Pagination,
    PromptResponse,
)
from shipyard.services.conversation_cache import ConversationCache, get_conversation_cache
from shipyard.services.conversation_resolver import fetch_owned_application
from shipyard.services.dev_logs import DevLogStore, get_dev_log_store
from shipyard.services.prompt_service import PromptService
from shipyard.services.trace import belongs_to
from shipyard.services.usage_guardrail import UsageGuardrail

router = APIRouter(prefix="/apps", tags=["Apps"])

HISTORY_LIMIT = 50


@router.get("", response_model=ApplicationListResponse)
async def list_apps(
    response: Response,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's applications, newest first"""
    usage = await UsageGuardrail(db).check_and_reserve(current_user)
    response.headers.update(usage.build_headers(reserve=False))

    owned = (
        Application.owner_id == current_user.user_id,
        Application.deleted_at.is_(None),
    )
    total = await db.scalar(select(func.count(Application.id)).where(*owned)) or 0

    result = await db.execute(
        select(Application)
        .where(*owned)
        .order_by(Application.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    applications = result.scalars().all()

    return ApplicationListResponse(
        data=[ApplicationResponse.model_validate(app) for app in applications],
        pagination=Pagination(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        ),
    )


@router.get("/{application_id}", response_model=ApplicationDetailResponse)
async def get_app(
    application_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Application with its conversation history"""
    application = await fetch_owned_application(db, application_id, current_user.user_id)
    prompts = await PromptService(db).get_history(application.id, limit=HISTORY_LIMIT)

    detail = ApplicationDetailResponse.model_validate(application)
    detail.history = [PromptResponse.model_validate(p) for p in prompts]
    return detail


@router.get("/{application_id}/history", response_model=List[PromptResponse])
async def get_app_history(
    application_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Oldest-first prompts of an application (at most 50)"""
    application = await fetch_owned_application(db, application_id, current_user.user_id)
    prompts = await PromptService(db).get_history(application.id, limit=HISTORY_LIMIT)
    if not prompts:
        raise PreviousRequestNotFoundError(application.id, application.trace_id)
    return prompts


@router.delete("/{application_id}")
async def delete_app(
    application_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: ConversationCache = Depends(get_conversation_cache),
):
    """Soft delete; the repository and deployment are left untouched"""
    application = await fetch_owned_application(db, application_id, current_user.user_id)
    application.deleted_at = datetime.utcnow()
    await db.commit()

    if application.trace_id:
        await cache.delete(application.trace_id)

    logger.info(f"Application {application_id} deleted by {current_user.user_id}")
    return {"success": True, "id": application_id}


@router.get("/{application_id}/logs")
async def list_app_logs(
    application_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dev_logs: DevLogStore = Depends(get_dev_log_store),
):
    """Development log folders of an application, newest first"""
    application = await fetch_owned_application(db, application_id, current_user.user_id)
    return {"data": await dev_logs.list_folders(application.id)}


@router.get("/{application_id}/logs/{trace_id}")
async def get_app_trace_logs(
    application_id: str,
    trace_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dev_logs: DevLogStore = Depends(get_dev_log_store),
):
    """Log files of one trace; the trace must carry the application's prefix"""
    application = await fetch_owned_application(db, application_id, current_user.user_id)

    if not belongs_to(trace_id, application.id):
        logger.warning(f"Trace {trace_id} requested for application {application.id}")
        raise TraceAccessDeniedError(application.id, trace_id)

    return {"traceId": trace_id, "files": await dev_logs.read_trace(application.id, trace_id)}
