"""
Stream events.

Upstream agent frames are decoded into AgentSseEvent and mapped onto one
internal envelope:

    Keepalive | Turn | DiffReady | PlatformNotice | Done | StreamError

The orchestrator only ever handles envelope values; each value knows how to
render itself as an outbound SSE frame.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from shipyard.modules.overlay.diff_applier import is_noop_diff
from shipyard.modules.streaming.sse_parser import SSEFrame


class AgentStatus(str, Enum):
    RUNNING = "running"
    IDLE = "idle"


class MessageKind(str, Enum):
    KEEP_ALIVE = "KeepAlive"
    STAGE_RESULT = "StageResult"
    RUNTIME_ERROR = "RuntimeError"
    REFINEMENT_REQUEST = "RefinementRequest"
    REVIEW_RESULT = "ReviewResult"
    PLATFORM_MESSAGE = "PlatformMessage"


class AgentMessage(BaseModel):
    role: str = "assistant"
    kind: Optional[str] = None
    content: Optional[Any] = None
    messages: Optional[List[Dict[str, Any]]] = None
    agent_state: Optional[Dict[str, Any]] = Field(None, alias="agentState")
    unified_diff: Optional[str] = Field(None, alias="unifiedDiff")
    app_name: Optional[str] = None
    commit_message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class AgentSseEvent(BaseModel):
    """One upstream frame: {status, traceId, message}"""
    status: str
    trace_id: Optional[str] = Field(None, alias="traceId")
    message: AgentMessage

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def is_keepalive(self) -> bool:
        return self.message.kind == MessageKind.KEEP_ALIVE.value

    @property
    def is_idle(self) -> bool:
        return self.status == AgentStatus.IDLE.value

    @property
    def has_text_content(self) -> bool:
        return isinstance(self.message.content, str)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _sse(data: str, event: Optional[str] = None) -> str:
    return SSEFrame(data=data, event=event).to_sse()


@dataclass
class Keepalive:
    """Upstream heartbeat - never relayed, never persisted"""
    event: AgentSseEvent


@dataclass
class Turn:
    """An upstream frame relayed to the client unchanged"""
    event: AgentSseEvent
    raw: str
    sse_event: Optional[str] = None

    def to_sse(self) -> str:
        return _sse(self.raw, self.sse_event)


@dataclass
class DiffReady(Turn):
    """A turn carrying a unified diff that changes files"""

    @property
    def diff(self) -> str:
        return self.event.message.unified_diff

    @property
    def commit_message(self) -> Optional[str]:
        return self.event.message.commit_message

    @property
    def app_name(self) -> Optional[str]:
        return self.event.message.app_name


@dataclass
class PlatformNotice:
    """Message originated by the platform (repository URL, commit URL, app URL)"""
    trace_id: str
    text: str
    status: str = AgentStatus.IDLE.value

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "traceId": self.trace_id,
            "message": {
                "role": "assistant",
                "kind": MessageKind.PLATFORM_MESSAGE.value,
                "content": self.text,
            },
        }

    def to_sse(self) -> str:
        return _sse(json.dumps(self.to_payload()))


@dataclass
class Done:
    """Last frame of every stream"""
    trace_id: str

    def to_sse(self) -> str:
        return _sse(json.dumps({"done": True, "traceId": self.trace_id}), "done")


@dataclass
class StreamError:
    """Failure after the stream started"""
    error: str
    kind: str
    trace_id: Optional[str] = None

    def to_sse(self) -> str:
        return _sse(json.dumps({"error": self.error, "kind": self.kind, "traceId": self.trace_id}), "error")


StreamEvent = Union[Keepalive, Turn, DiffReady, PlatformNotice, Done, StreamError]


def from_upstream(frame: SSEFrame) -> Union[Keepalive, Turn, DiffReady]:
    """
    Map a parsed upstream frame onto the envelope.

    Raises FrameDecodeError for non-JSON data and pydantic.ValidationError
    when the JSON is not an agent event.
    """
    event = AgentSseEvent.model_validate(frame.json())
    if event.is_keepalive:
        return Keepalive(event)
    if not is_noop_diff(event.message.unified_diff):
        return DiffReady(event, frame.data, frame.event)
    return Turn(event, frame.data, frame.event)
