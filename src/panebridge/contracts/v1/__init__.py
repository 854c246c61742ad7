from __future__ import annotations

from .event import AgentEventPayload, AgentEventType, LIFECYCLE_STAGE_BY_EVENT, ProgressMode, SendFilesRequest
from .message import InboundMessage, MessageAttachment, MessageContext, Platform, conversation_key_for
from .state import InstanceState, ProjectState

__all__ = [
    "AgentEventPayload",
    "AgentEventType",
    "InboundMessage",
    "InstanceState",
    "LIFECYCLE_STAGE_BY_EVENT",
    "MessageAttachment",
    "MessageContext",
    "Platform",
    "ProgressMode",
    "ProjectState",
    "SendFilesRequest",
    "conversation_key_for",
]
