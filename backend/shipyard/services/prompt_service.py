"""
Prompt Service - conversation turns of an application (app_prompts table)
Written once per turn; read back in order to rebuild a conversation.
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from shipyard.core.config import settings
from shipyard.core.logging_config import logger
from shipyard.models.prompt import Prompt, PromptKind
from shipyard.schemas.events import AgentSseEvent
from shipyard.services.conversation_cache import extract_history


TRUNCATION_SUFFIX = "... [truncated]"


def truncate_prompt(text: str, limit: Optional[int] = None) -> str:
    limit = limit or settings.MAX_PROMPT_LENGTH
    if len(text) > limit:
        return text[:limit] + TRUNCATION_SUFFIX
    return text


def new_assistant_texts(event: AgentSseEvent) -> List[str]:
    """
    Assistant text produced since the last user turn of the event's history.

    Events carry the full conversation, so earlier assistant turns are
    already stored. Content that is not a history list is stored as-is.
    """
    history = extract_history(event.message.model_dump(by_alias=False))
    if history is None:
        content = event.message.content
        return [content] if isinstance(content, str) and content else []

    last_user = max((i for i, turn in enumerate(history) if turn["role"] == "user"), default=-1)
    return [
        turn["content"]
        for turn in history[last_user + 1:]
        if turn["role"] == "assistant" and turn["content"]
    ]


class PromptService:
    """Persistence of user and assistant turns"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_prompt(
        self,
        app_id: str,
        kind: PromptKind,
        content: str,
        message_kind: Optional[str] = None,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> Prompt:
        """
        Add a turn to the application's conversation.

        Content beyond MAX_PROMPT_LENGTH is truncated with a marker.
        """
        prompt = Prompt(
            app_id=app_id,
            kind=kind.value if isinstance(kind, PromptKind) else kind,
            prompt=truncate_prompt(content),
            message_kind=message_kind,
            extra_data=extra_data,
            created_at=datetime.utcnow()
        )

        self.db.add(prompt)
        await self.db.commit()
        await self.db.refresh(prompt)

        logger.debug(f"Added {prompt.kind} prompt for app {app_id}")
        return prompt

    async def add_user_prompt(self, app_id: str, content: str) -> Prompt:
        return await self.add_prompt(app_id, PromptKind.USER, content)

    async def add_assistant_turns(self, app_id: str, event: AgentSseEvent) -> List[Prompt]:
        """Persist the assistant output of a settled agent event"""
        saved = []
        for text in new_assistant_texts(event):
            saved.append(await self.add_prompt(
                app_id,
                PromptKind.ASSISTANT,
                text,
                message_kind=event.message.kind,
            ))
        return saved

    async def get_history(self, app_id: str, limit: Optional[int] = None) -> List[Prompt]:
        """Turns of an application, oldest first"""
        query = (
            select(Prompt)
            .where(Prompt.app_id == app_id)
            .order_by(Prompt.created_at)
        )
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
