# Pydantic schemas
from shipyard.schemas.message import PostMessageBody
from shipyard.schemas.events import (
    AgentStatus,
    MessageKind,
    AgentMessage,
    AgentSseEvent,
    Keepalive,
    Turn,
    DiffReady,
    PlatformNotice,
    Done,
    StreamError,
    StreamEvent,
    from_upstream,
)

__all__ = [
    "PostMessageBody",
    "AgentStatus",
    "MessageKind",
    "AgentMessage",
    "AgentSseEvent",
    "Keepalive",
    "Turn",
    "DiffReady",
    "PlatformNotice",
    "Done",
    "StreamError",
    "StreamEvent",
    "from_upstream",
]
