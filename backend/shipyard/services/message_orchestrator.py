"""
Message Orchestrator
====================
Runs one POST /message call end to end.

    prepare()  RESOLVING → CALLING_UPSTREAM
               errors raise before any byte is streamed (JSON error response)

    stream()   STREAMING → [DIFF_READY → COMMITTING → DEPLOYING → NOTIFIED]
               errors become an `event: error` frame; the stream always ends
               with the active session removed and the upstream closed

A stream whose last relayed turn carries no real diff ends after STREAMING
with can_deploy = False.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.config import settings
from shipyard.core.database import AsyncSessionLocal
from shipyard.core.exceptions import (
    AppsLimitExceededError,
    ConcurrencyExceededError,
    InternalError,
    QuotaExceededError,
    ShipyardError,
    ValidationError,
)
from shipyard.core.logging_config import logger, set_trace_id
from shipyard.core.security import UserIdentity
from shipyard.models.application import Application
from shipyard.modules.overlay.diff_applier import apply_unified_diff
from shipyard.modules.overlay.virtual_fs import VirtualOverlay, materialize, remove_directory
from shipyard.modules.streaming.sse_parser import FrameDecodeError
from shipyard.schemas.events import (
    AgentSseEvent,
    DiffReady,
    Done,
    Keepalive,
    PlatformNotice,
    StreamError,
    StreamEvent,
    Turn,
    from_upstream,
)
from shipyard.schemas.message import PostMessageBody
from shipyard.services.active_sessions import ActiveSessionService
from shipyard.services.agent_client import AgentClient, AgentStream
from shipyard.services.conversation_cache import ConversationCache
from shipyard.services.conversation_resolver import ConversationResolver, ResolvedConversation
from shipyard.services.deployment import DeploymentTrigger
from shipyard.services.dev_logs import DevLogSession, DevLogStore
from shipyard.services.github_client import RepositoryHostFactory, unique_repository_name
from shipyard.services.prompt_service import PromptService
from shipyard.services.trace import promote_trace_id
from shipyard.services.usage_guardrail import UsageCheck, UsageGuardrail


DEFAULT_APP_NAME_PREFIX = "shipyard-app"


class RunState(str, Enum):
    RESOLVING = "resolving"
    CALLING_UPSTREAM = "calling_upstream"
    STREAMING = "streaming"
    DIFF_READY = "diff_ready"
    COMMITTING = "committing"
    DEPLOYING = "deploying"
    NOTIFIED = "notified"
    COMPLETED = "completed"  # stream ended without a deployable diff
    CANCELLED = "cancelled"
    ERROR = "error"


def default_app_name() -> str:
    return f"{DEFAULT_APP_NAME_PREFIX}-{uuid.uuid4().hex[:4]}"


@dataclass
class PreparedRun:
    """Everything stream() needs; created by prepare()"""
    user: UserIdentity
    message: str
    request_id: str
    conversation: ResolvedConversation
    usage: UsageCheck
    session_id: str
    overlay_task: "asyncio.Task[VirtualOverlay]"
    dev_log: DevLogSession
    upstream: Optional[AgentStream] = None
    client_source: Optional[str] = None
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None

    state: RunState = RunState.RESOLVING
    trace_id: str = ""
    application_persisted: bool = False
    user_prompt_saved: bool = False
    deferred_events: List[AgentSseEvent] = field(default_factory=list)
    last_turn: Optional[Turn] = None
    can_deploy: bool = False
    repository_url: Optional[str] = None
    commit_sha: Optional[str] = None
    app_url: Optional[str] = None

    def __post_init__(self):
        self.trace_id = self.trace_id or self.conversation.trace_id
        self.application_persisted = self.conversation.is_iteration

    @property
    def application_id(self) -> str:
        return self.conversation.application_id

    @property
    def is_iteration(self) -> bool:
        return self.conversation.is_iteration

    @property
    def headers(self) -> Dict[str, str]:
        return self.usage.headers

    def transition(self, state: RunState) -> None:
        self.state = state
        logger.log_pipeline_stage(state.value, trace_id=self.trace_id, application_id=self.application_id)


class MessageOrchestrator:
    """
    Coordinates guardrail, resolver, upstream agent, overlay, repository host
    and deployment for one request.

    `db` is the request-scoped session and is only used by prepare(); the
    stream outlives the request scope, so stream() opens its own sessions
    through `session_factory`.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: ConversationCache,
        sessions: ActiveSessionService,
        agent_client: AgentClient,
        repository_host_factory: RepositoryHostFactory,
        deployment: DeploymentTrigger,
        dev_logs: DevLogStore,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    ):
        self.db = db
        self.cache = cache
        self.sessions = sessions
        self.agent_client = agent_client
        self.repository_host_factory = repository_host_factory
        self.deployment = deployment
        self.dev_logs = dev_logs
        self.session_factory = session_factory
        self.resolver = ConversationResolver(db, cache)

    # ------------------------------------------------------------------
    # RESOLVING / CALLING_UPSTREAM
    # ------------------------------------------------------------------

    async def prepare(
        self,
        user: UserIdentity,
        payload: Any,
        request_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> PreparedRun:
        """
        Run every check that can still fail with a plain HTTP error.

        Raised errors carry the daily limit headers in `error.headers`.
        """
        guardrail = UsageGuardrail(self.db, self.sessions)
        usage = await guardrail.check_and_reserve(user)

        try:
            return await self._prepare(
                user, payload, request_id, usage, guardrail, ip_address, user_agent, is_disconnected
            )
        except ShipyardError as e:
            e.headers.update(usage.headers)
            raise
        except Exception as e:
            logger.log_error_with_context(e, "message prepare")
            error = InternalError(f"An error occurred while processing your request: {e}")
            error.headers.update(usage.headers)
            raise error from e

    async def _prepare(
        self,
        user: UserIdentity,
        payload: Any,
        request_id: str,
        usage: UsageCheck,
        guardrail: UsageGuardrail,
        ip_address: Optional[str],
        user_agent: Optional[str],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ) -> PreparedRun:
        if not usage.allowed:
            raise QuotaExceededError(usage.limit, usage.reset_iso)

        body = self._validate_body(payload)

        if not body.application_id:
            apps_check = await guardrail.check_apps_limit(user)
            if not apps_check.allowed:
                raise AppsLimitExceededError(apps_check.reason, apps_check.limit, apps_check.scope)

        conversation = await self.resolver.resolve(
            user,
            body.message,
            request_id,
            application_id=body.application_id,
            settings=body.settings,
        )
        set_trace_id(conversation.trace_id)

        grant = await self.sessions.create_or_refresh_session(
            user_id=user.user_id,
            trace_id=conversation.trace_id,
            application_id=conversation.application_id if conversation.is_iteration else None,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if not grant.can_proceed:
            raise ConcurrencyExceededError(self.sessions.max_connections)

        run = PreparedRun(
            user=user,
            message=body.message,
            request_id=request_id,
            conversation=conversation,
            usage=usage,
            session_id=grant.session_id,
            overlay_task=asyncio.ensure_future(self._seed_overlay(user, conversation)),
            dev_log=self.dev_logs.open(conversation.trace_id),
            client_source=body.client_source,
            is_disconnected=is_disconnected,
        )

        try:
            if conversation.is_iteration:
                await self._attach_files(run)

            run.transition(RunState.CALLING_UPSTREAM)
            run.upstream = await self.agent_client.open_stream(conversation.upstream_body)
        except Exception:
            await self._finish(run)
            raise

        return run

    @staticmethod
    def _validate_body(payload: Any) -> PostMessageBody:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            return PostMessageBody.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(first.get("msg", "Invalid request body"), field=field_name or None)

    async def _seed_overlay(self, user: UserIdentity, conversation: ResolvedConversation) -> VirtualOverlay:
        """Empty overlay for new builds; a copy of the repository for iterations"""
        if not conversation.is_iteration:
            return VirtualOverlay.create()

        application = conversation.application
        owner = application.github_username or user.github_username
        host = self.repository_host_factory(user)
        clone_dir = await host.clone_repository(owner, application.app_name)
        try:
            return await VirtualOverlay.seed_from(clone_dir)
        finally:
            await remove_directory(clone_dir)

    async def _attach_files(self, run: PreparedRun) -> None:
        """
        Send the current repository files along with an iteration.

        A seeding failure does not block the agent call; it is raised again
        when the diff stage awaits the overlay.
        """
        try:
            overlay = await run.overlay_task
        except ShipyardError as e:
            logger.warning(f"Overlay seeding failed, calling agent without files: {e.message}")
            return
        run.conversation.upstream_body["allFiles"] = [f.to_dict() for f in overlay.list_all()]

    # ------------------------------------------------------------------
    # STREAMING → NOTIFIED
    # ------------------------------------------------------------------

    async def stream(self, run: PreparedRun) -> AsyncIterator[str]:
        """Outbound SSE frames, ending with `event: done` or `event: error`"""
        set_trace_id(run.trace_id)
        run.transition(RunState.STREAMING)

        try:
            async for envelope in self._relay(run):
                yield envelope.to_sse()

            if run.state == RunState.CANCELLED:
                return

            await run.upstream.aclose()

            if not isinstance(run.last_turn, DiffReady):
                run.can_deploy = False
                run.transition(RunState.COMPLETED)
                yield Done(run.trace_id).to_sse()
                return

            run.can_deploy = True
            run.transition(RunState.DIFF_READY)
            async for notice in self._ship(run, run.last_turn):
                yield notice.to_sse()

            run.transition(RunState.NOTIFIED)
            yield Done(run.trace_id).to_sse()
        except Exception as e:
            run.transition(RunState.ERROR)
            logger.log_error_with_context(e, "message stream", trace_id=run.trace_id)
            if isinstance(e, ShipyardError):
                error = StreamError(e.message, e.kind, run.trace_id)
            else:
                error = StreamError(f"An error occurred while processing your request: {e}", "InternalError", run.trace_id)
            yield error.to_sse()
        finally:
            # runs on client disconnect too, possibly inside a cancelled task
            await asyncio.shield(asyncio.ensure_future(self._finish(run)))

    async def _relay(self, run: PreparedRun) -> AsyncIterator[StreamEvent]:
        """Upstream frames in arrival order, keep-alives dropped"""
        async for frame in run.upstream.frames():
            if run.is_disconnected is not None and await run.is_disconnected():
                logger.info(f"Client disconnected for application {run.application_id}")
                run.transition(RunState.CANCELLED)
                return

            try:
                envelope = from_upstream(frame)
            except (FrameDecodeError, PydanticValidationError) as e:
                logger.warning(f"Skipping undecodable agent frame: {e}")
                continue

            if isinstance(envelope, Keepalive):
                logger.log_agent_event("keepalive")
                await self.sessions.update_session_activity(run.session_id)
                continue

            event = envelope.event
            logger.log_agent_event("frame", status=event.status, message_kind=event.message.kind)

            await run.dev_log.write_frame(envelope.raw)
            await self.cache.record_event(run.trace_id, event.dump())
            await self.sessions.update_session_activity(run.session_id)

            run.last_turn = envelope
            yield envelope

            if event.is_idle and event.has_text_content:
                await self._persist_turn(run, event)

    async def _persist_turn(self, run: PreparedRun, event: AgentSseEvent) -> None:
        """User message (once) then the assistant output; deferred until the app row exists"""
        if not run.application_persisted:
            run.deferred_events.append(event)
            return

        async with self.session_factory() as db:
            prompts = PromptService(db)
            if not run.user_prompt_saved:
                await prompts.add_user_prompt(run.application_id, run.message)
                run.user_prompt_saved = True
            await prompts.add_assistant_turns(run.application_id, event)

    async def _flush_deferred(self, run: PreparedRun) -> None:
        async with self.session_factory() as db:
            prompts = PromptService(db)
            if not run.user_prompt_saved:
                await prompts.add_user_prompt(run.application_id, run.message)
                run.user_prompt_saved = True
            for event in run.deferred_events:
                await prompts.add_assistant_turns(run.application_id, event)
        run.deferred_events.clear()

    async def _ship(self, run: PreparedRun, turn: DiffReady) -> AsyncIterator[PlatformNotice]:
        """COMMITTING and DEPLOYING; yields the notices for the client"""
        run.transition(RunState.COMMITTING)

        overlay = await run.overlay_task
        await run.dev_log.write_diff(turn.diff)
        files = apply_unified_diff(turn.diff, overlay)
        await run.dev_log.write_files(files)

        host = self.repository_host_factory(run.user)

        if run.is_iteration:
            application = run.conversation.application
            owner = application.github_username or run.user.github_username
            repo = application.app_name
            run.commit_sha = await host.commit(
                owner,
                repo,
                files,
                turn.commit_message or settings.DEFAULT_COMMIT_MESSAGE,
                branch=settings.GITHUB_DEFAULT_BRANCH,
            )
            await self._touch_application(run.application_id)
            if not run.user_prompt_saved:
                await self._flush_deferred(run)
            yield PlatformNotice(
                run.trace_id,
                f"committed in existing app - commit url: {settings.get_commit_url(owner, repo, run.commit_sha)}",
            )
        else:
            owner = run.user.github_username
            repo = await unique_repository_name(host, owner, turn.app_name or default_app_name())
            run.repository_url = await host.create_repository(owner, repo)
            run.commit_sha = await host.create_initial_commit(owner, repo, files)

            await self._create_application(run, owner, repo)
            await self._flush_deferred(run)
            yield PlatformNotice(
                run.trace_id,
                f"Your application has been uploaded to this github repository: {run.repository_url}",
            )

        run.transition(RunState.DEPLOYING)
        await self.sessions.update_session_activity(run.session_id)
        directory = await materialize(overlay)
        result = await self.deployment.deploy(run.application_id, directory)
        run.app_url = result.app_url

        yield PlatformNotice(run.trace_id, f"Your application has been deployed to {run.app_url}")

    async def _create_application(self, run: PreparedRun, owner: str, repo: str) -> None:
        """Insert the application row and move everything onto its trace id"""
        trace_id = promote_trace_id(run.trace_id, run.application_id)

        async with self.session_factory() as db:
            db.add(Application(
                id=run.application_id,
                name=run.message[:255],
                owner_id=run.user.user_id,
                trace_id=trace_id,
                repository_url=run.repository_url,
                app_name=repo,
                github_username=owner,
                client_source=run.client_source,
            ))
            await db.commit()
        logger.info(f"Created application {run.application_id} ({owner}/{repo})")

        await self.cache.rekey(run.trace_id, trace_id)
        await self.sessions.update_session_activity(run.session_id, trace_id=trace_id)
        await run.dev_log.promote(trace_id)

        run.trace_id = trace_id
        run.application_persisted = True
        set_trace_id(trace_id)

    async def _touch_application(self, application_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Application)
                .where(Application.id == application_id)
                .values(updated_at=datetime.utcnow())
            )
            await db.commit()

    async def _finish(self, run: PreparedRun) -> None:
        """Close the upstream, drop the overlay, end the active session"""
        if run.upstream is not None:
            try:
                await run.upstream.aclose()
            except Exception as e:
                logger.warning(f"Error closing agent stream: {e}")

        if not run.overlay_task.done():
            run.overlay_task.cancel()
        elif not run.overlay_task.cancelled() and run.overlay_task.exception() is None:
            run.overlay_task.result().discard()

        try:
            await self.sessions.end_session(run.session_id)
        except Exception as e:
            logger.error(f"Failed to end active session {run.session_id}: {e}")
