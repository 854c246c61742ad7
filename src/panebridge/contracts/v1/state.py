from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


class InstanceState(BaseModel):
    """One agent session: a tmux window bound to a chat channel."""

    instance_id: str
    agent_type: str
    tmux_window: str = ""
    channel_id: Optional[str] = None
    event_hook: bool = False

    model_config = ConfigDict(extra="ignore")


class ProjectState(BaseModel):
    project_name: str
    project_path: str = ""
    tmux_session: str = ""
    instances: Dict[str, InstanceState] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)
    last_active: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")
