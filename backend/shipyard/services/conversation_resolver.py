"""
Conversation State Resolver

Decides between a new build and an iteration and produces the body sent to
the agent:

    {allMessages: [{role, content}, ...], applicationId, traceId, settings}

For iterations the prior turns come from exactly one source: the
conversation cache when it has the trace, otherwise the prompt history.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.config import settings as app_settings
from shipyard.core.exceptions import ApplicationNotFoundError, PreviousRequestNotFoundError
from shipyard.core.logging_config import logger
from shipyard.core.security import UserIdentity
from shipyard.models.application import Application
from shipyard.models.prompt import PromptKind
from shipyard.schemas.events import AgentStatus, MessageKind
from shipyard.services.conversation_cache import ConversationCache, ConversationSnapshot, Turn
from shipyard.services.prompt_service import PromptService
from shipyard.services.trace import build_trace_id


@dataclass
class ResolvedConversation:
    is_iteration: bool
    application_id: str
    trace_id: str
    upstream_body: Dict[str, Any]
    application: Optional[Application] = None
    from_cache: bool = False


def default_settings() -> Dict[str, Any]:
    return {"max-iterations": app_settings.DEFAULT_MAX_ITERATIONS}


async def fetch_owned_application(db: AsyncSession, application_id: str, owner_id: str) -> Application:
    """
    Load a live application owned by owner_id.

    Someone else's application is reported exactly like a missing one.
    """
    result = await db.execute(
        select(Application).where(
            Application.id == application_id,
            Application.owner_id == owner_id,
            Application.deleted_at.is_(None),
        )
    )
    application = result.scalar_one_or_none()
    if application is None:
        logger.warning(f"Application {application_id} not found for user {owner_id}")
        raise ApplicationNotFoundError(application_id)
    return application


class ConversationResolver:
    """Builds the upstream request body for one /message call"""

    def __init__(self, db: AsyncSession, cache: ConversationCache):
        self.db = db
        self.cache = cache
        self.history_reads = 0

    async def resolve(
        self,
        user: UserIdentity,
        message: str,
        request_id: str,
        application_id: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> ResolvedConversation:
        settings = settings or default_settings()

        if not application_id:
            new_id = str(uuid.uuid4())
            trace_id = build_trace_id(request_id)
            logger.info(f"New build {new_id} ({trace_id})")
            return ResolvedConversation(
                is_iteration=False,
                application_id=new_id,
                trace_id=trace_id,
                upstream_body=self._body([], message, new_id, trace_id, settings),
            )

        application = await fetch_owned_application(self.db, application_id, user.user_id)
        trace_id = application.trace_id or build_trace_id(request_id, application.id)

        turns: Optional[List[Turn]] = None
        snapshot = await self.cache.get(trace_id)
        from_cache = snapshot is not None and bool(snapshot.messages)
        if from_cache:
            turns = list(snapshot.messages)
            logger.debug(f"Conversation for {trace_id} served from cache ({len(turns)} turns)")
        else:
            turns = await self._rebuild_from_history(application, trace_id)

        return ResolvedConversation(
            is_iteration=True,
            application_id=application.id,
            trace_id=trace_id,
            upstream_body=self._body(turns, message, application.id, trace_id, settings),
            application=application,
            from_cache=from_cache,
        )

    async def _rebuild_from_history(self, application: Application, trace_id: str) -> List[Turn]:
        """One turn per stored user/assistant prompt, oldest first; re-primes the cache"""
        self.history_reads += 1
        prompts = await PromptService(self.db).get_history(application.id)

        turns = [
            {"role": prompt.kind, "content": prompt.prompt}
            for prompt in prompts
            if prompt.kind in (PromptKind.USER.value, PromptKind.ASSISTANT.value)
        ]
        if not turns:
            raise PreviousRequestNotFoundError(application.id, trace_id)

        logger.info(f"Rebuilt conversation for {trace_id} from {len(turns)} stored prompts")

        reconstructed = {
            "status": AgentStatus.IDLE.value,
            "traceId": trace_id,
            "createdAt": datetime.utcnow().isoformat(),
            "message": {
                "role": "assistant",
                "kind": MessageKind.STAGE_RESULT.value,
                "messages": turns,
                "app_name": application.app_name,
            },
        }
        await self.cache.set(trace_id, ConversationSnapshot(last_event=reconstructed, messages=turns))
        return turns

    @staticmethod
    def _body(
        turns: List[Turn],
        message: str,
        application_id: str,
        trace_id: str,
        settings: Dict[str, Any],
    ) -> Dict[str, Any]:
        all_messages = [{"role": t["role"], "content": t["content"]} for t in turns]

        # A failed earlier attempt may have left this exact message unanswered
        if not (all_messages and all_messages[-1] == {"role": "user", "content": message}):
            all_messages.append({"role": "user", "content": message})

        return {
            "allMessages": all_messages,
            "applicationId": application_id,
            "traceId": trace_id,
            "settings": settings,
        }
