"""
Conversation Cache - last agent event and text-only history per trace id

The cache is an optimization, never the source of truth: a miss means "read
prompt history from the database", not "the conversation does not exist".

Backends:
- InMemoryConversationCache: process-local dict (default)
- RedisConversationCache: shared across workers
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shipyard.core.config import settings
from shipyard.core.logging_config import logger
from shipyard.core.redis_client import RedisClient


Turn = Dict[str, str]


def flatten_content(content: Any) -> str:
    """Reduce a message's content to its text blocks"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def extract_history(message: Dict[str, Any]) -> Optional[List[Turn]]:
    """
    Read the conversation carried by an agent event message.

    The agent sends the whole history either as `messages` or JSON-encoded in
    `content`. Returns None when the message carries no history list.
    """
    raw = message.get("messages")
    if raw is None:
        content = message.get("content")
        if not isinstance(content, str):
            return None
        try:
            raw = json.loads(content)
        except (json.JSONDecodeError, TypeError):
            return None
    if not isinstance(raw, list):
        return None

    turns: List[Turn] = []
    for item in raw:
        if not isinstance(item, dict) or item.get("role") not in ("user", "assistant"):
            continue
        turns.append({"role": item["role"], "content": flatten_content(item.get("content"))})
    return turns


@dataclass
class ConversationSnapshot:
    """Last upstream event plus the accumulated text-only turns"""
    last_event: Dict[str, Any]
    messages: List[Turn] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"last_event": self.last_event, "messages": self.messages}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSnapshot":
        return cls(last_event=data.get("last_event") or {}, messages=list(data.get("messages") or []))

    @classmethod
    def from_event(
        cls,
        event: Dict[str, Any],
        previous: Optional["ConversationSnapshot"] = None,
    ) -> "ConversationSnapshot":
        """Fold a new upstream event into the snapshot"""
        history = extract_history(event.get("message") or {})
        if history is None:
            history = list(previous.messages) if previous else []
        return cls(last_event=event, messages=history)


class ConversationCache(ABC):
    """Injectable cache keyed by trace id"""

    @abstractmethod
    async def get(self, trace_id: str) -> Optional[ConversationSnapshot]:
        ...

    @abstractmethod
    async def set(self, trace_id: str, snapshot: ConversationSnapshot) -> None:
        ...

    @abstractmethod
    async def delete(self, trace_id: str) -> None:
        ...

    async def record_event(self, trace_id: str, event: Dict[str, Any]) -> ConversationSnapshot:
        """Update the entry for trace_id with a freshly relayed event"""
        snapshot = ConversationSnapshot.from_event(event, await self.get(trace_id))
        await self.set(trace_id, snapshot)
        return snapshot

    async def rekey(self, old_trace_id: str, new_trace_id: str) -> None:
        """Move an entry, used once a temporary trace id is promoted"""
        if old_trace_id == new_trace_id:
            return
        snapshot = await self.get(old_trace_id)
        if snapshot is not None:
            await self.set(new_trace_id, snapshot)
            await self.delete(old_trace_id)


class InMemoryConversationCache(ConversationCache):
    """Process-local cache; lost on restart"""

    def __init__(self):
        self._entries: Dict[str, ConversationSnapshot] = {}

    async def get(self, trace_id: str) -> Optional[ConversationSnapshot]:
        return self._entries.get(trace_id)

    async def set(self, trace_id: str, snapshot: ConversationSnapshot) -> None:
        self._entries[trace_id] = snapshot

    async def delete(self, trace_id: str) -> None:
        self._entries.pop(trace_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisConversationCache(ConversationCache):
    """Redis-backed cache; Redis errors degrade to cache misses"""

    PREFIX = "conversation:"

    def __init__(self, client: RedisClient, ttl: int = None):
        self.client = client
        self.ttl = ttl or settings.CONVERSATION_CACHE_TTL

    async def get(self, trace_id: str) -> Optional[ConversationSnapshot]:
        data = await self.client.cache_get(self.PREFIX + trace_id)
        return ConversationSnapshot.from_dict(data) if data else None

    async def set(self, trace_id: str, snapshot: ConversationSnapshot) -> None:
        await self.client.cache_set(self.PREFIX + trace_id, snapshot.to_dict(), expire=self.ttl)

    async def delete(self, trace_id: str) -> None:
        await self.client.cache_delete(self.PREFIX + trace_id)


_conversation_cache: Optional[ConversationCache] = None


def get_conversation_cache() -> ConversationCache:
    """Process-wide cache instance (FastAPI dependency)"""
    global _conversation_cache
    if _conversation_cache is None:
        _conversation_cache = InMemoryConversationCache()
        logger.info("Using in-memory conversation cache")
    return _conversation_cache


def set_conversation_cache(cache: ConversationCache) -> None:
    global _conversation_cache
    _conversation_cache = cache
