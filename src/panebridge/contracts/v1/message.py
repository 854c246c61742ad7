from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Platform = Literal["discord", "slack"]


class MessageAttachment(BaseModel):
    url: str
    filename: str
    content_type: Optional[str] = None
    size: int = 0
    auth_headers: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class MessageContext(BaseModel):
    """Where an inbound message came from and what it replies to."""

    platform: Platform = "discord"
    source_channel_id: str
    route_channel_id: Optional[str] = None
    author_id: Optional[str] = None
    thread_id: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    conversation_key: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class InboundMessage(BaseModel):
    agent_type: str
    content: str
    project_name: str
    channel_id: str
    message_id: Optional[str] = None
    mapped_instance_id: Optional[str] = None
    attachments: List[MessageAttachment] = Field(default_factory=list)
    context: Optional[MessageContext] = None

    model_config = ConfigDict(extra="forbid")


def conversation_key_for(
    *, platform: str, channel_id: str, thread_id: Optional[str] = None, author_id: Optional[str] = None
) -> Optional[str]:
    if thread_id:
        return f"{platform}:thread:{thread_id}"
    if author_id:
        return f"{platform}:channel:{channel_id}:author:{author_id}"
    return None
