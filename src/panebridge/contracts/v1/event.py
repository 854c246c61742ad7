from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AgentEventType = Literal[
    "session.start",
    "session.progress",
    "session.final",
    "session.idle",
    "session.error",
    "session.cancelled",
]
ProgressMode = Literal["off", "thread", "channel"]

# Lifecycle stage recorded for each accepted event type.
LIFECYCLE_STAGE_BY_EVENT: Dict[AgentEventType, str] = {
    "session.start": "started",
    "session.progress": "progress",
    "session.final": "final",
    "session.idle": "final",
    "session.error": "error",
    "session.cancelled": "cancelled",
}


class AgentEventPayload(BaseModel):
    """Lifecycle event pushed by an agent hook.

    Wire fields are camelCase (`projectName`, `turnId`, ...); unknown fields
    are ignored so older hook scripts keep working.
    """

    project_name: str = Field(min_length=1)
    agent_type: str = "opencode"
    instance_id: Optional[str] = None
    type: str = ""
    turn_id: Optional[str] = None
    seq: Optional[int] = None
    event_id: Optional[str] = None
    text: Optional[str] = None
    message: Optional[str] = None
    turn_text: Optional[str] = None
    progress_mode: Optional[ProgressMode] = None
    source: Optional[str] = None
    channel_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SendFilesRequest(BaseModel):
    project_name: str = Field(min_length=1)
    agent_type: Optional[str] = None
    instance_id: Optional[str] = None
    files: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)
