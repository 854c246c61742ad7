from __future__ import annotations

from typing import List, Optional

from ..contracts.v1 import InstanceState, ProjectState


def build_queue_key(project_name: str, agent_type: str, instance_id: Optional[str] = None) -> str:
    return f"{project_name}:{instance_id or agent_type}"


def normalize_project_state(project: ProjectState) -> ProjectState:
    """Re-key instances by their instance id and fill in missing ids.

    Hand-edited state files sometimes carry an entry whose key and
    `instance_id` disagree; the key wins only when the id is blank.
    """
    out = {}
    for key, inst in project.instances.items():
        iid = (inst.instance_id or "").strip() or str(key).strip() or inst.agent_type
        if not iid or not inst.agent_type:
            continue
        if iid != inst.instance_id:
            inst = inst.model_copy(update={"instance_id": iid})
        out[iid] = inst
    return project.model_copy(update={"instances": out})


def list_project_instances(project: ProjectState) -> List[InstanceState]:
    return sorted(project.instances.values(), key=lambda i: (i.agent_type, i.instance_id))


def get_project_instance(project: ProjectState, instance_id: str) -> Optional[InstanceState]:
    return project.instances.get(instance_id)


def get_primary_instance_for_agent(project: ProjectState, agent_type: str) -> Optional[InstanceState]:
    """The instance named after the agent type, else the first one of that type."""
    exact = project.instances.get(agent_type)
    if exact is not None and exact.agent_type == agent_type:
        return exact
    for inst in list_project_instances(project):
        if inst.agent_type == agent_type:
            return inst
    return None


def find_project_instance_by_channel(project: ProjectState, channel_id: str) -> Optional[InstanceState]:
    if not channel_id:
        return None
    for inst in list_project_instances(project):
        if inst.channel_id == channel_id:
            return inst
    return None
