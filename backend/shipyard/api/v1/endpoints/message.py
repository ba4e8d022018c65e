from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.database import get_db
from shipyard.core.logging_config import get_request_id, generate_request_id, logger
from shipyard.core.security import UserIdentity, get_current_user
from shipyard.services.active_sessions import ActiveSessionService, get_active_session_service
from shipyard.services.agent_client import AgentClient, get_agent_client
from shipyard.services.conversation_cache import ConversationCache, get_conversation_cache
from shipyard.services.deployment import DeploymentTrigger, get_deployment_trigger
from shipyard.services.dev_logs import DevLogStore, get_dev_log_store
from shipyard.services.github_client import RepositoryHostFactory, get_repository_host_factory
from shipyard.services.message_orchestrator import MessageOrchestrator

router = APIRouter(tags=["Message"])


async def get_message_orchestrator(
    db: AsyncSession = Depends(get_db),
    cache: ConversationCache = Depends(get_conversation_cache),
    sessions: ActiveSessionService = Depends(get_active_session_service),
    agent_client: AgentClient = Depends(get_agent_client),
    repository_host_factory: RepositoryHostFactory = Depends(get_repository_host_factory),
    deployment: DeploymentTrigger = Depends(get_deployment_trigger),
    dev_logs: DevLogStore = Depends(get_dev_log_store),
) -> MessageOrchestrator:
    return MessageOrchestrator(
        db=db,
        cache=cache,
        sessions=sessions,
        agent_client=agent_client,
        repository_host_factory=repository_host_factory,
        deployment=deployment,
        dev_logs=dev_logs,
    )


@router.post("/message")
async def post_message(
    request: Request,
    current_user: UserIdentity = Depends(get_current_user),
    orchestrator: MessageOrchestrator = Depends(get_message_orchestrator),
):
    """
    Send a message to the agent and stream its build back as SSE.

    Without `applicationId` this starts a new application; with one it
    iterates on an existing application of the caller. The body of the
    response mirrors the agent's frames, adds platform notices (repository,
    commit and deployment URLs) and ends with `event: done` or
    `event: error`.

    Errors before the stream starts are plain JSON (400/401/404/429/5xx).
    Daily limit headers are present on every response.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    client = request.client
    run = await orchestrator.prepare(
        current_user,
        payload,
        request_id=get_request_id() or generate_request_id(),
        ip_address=client.host if client else None,
        user_agent=request.headers.get("user-agent"),
        is_disconnected=request.is_disconnected,
    )

    logger.info(
        f"Streaming {'iteration' if run.is_iteration else 'new build'} for {run.application_id}",
        extra={"event_type": "message_stream_start", "application_id": run.application_id}
    )

    return StreamingResponse(
        orchestrator.stream(run),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            **run.headers,
        }
    )
