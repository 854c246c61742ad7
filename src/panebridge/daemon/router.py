"""Inbound chat message routing.

Every message is resolved to exactly one agent instance, in this order:

1. the instance id the platform client mapped the channel to
2. the remembered route of the message being replied to
3. the remembered route of the conversation (thread, or channel + author)
4. the instance bound to the channel
5. the primary instance of the agent type

Bridge commands (/q, /qw, /retry, /health, /snapshot, key commands) are
handled here; anything else is typed into the instance's tmux pane with an
agent-specific submit protocol.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Tuple

from ..contracts.v1 import InboundMessage, InstanceState, MessageAttachment, ProjectState
from ..kernel.errors import TerminalError, TerminalTargetMissing
from ..kernel.instances import (
    find_project_instance_by_channel,
    get_primary_instance_for_agent,
    get_project_instance,
    normalize_project_state,
)
from ..kernel.settings import BridgeSettings
from ..kernel.state import StateStore
from ..ports.im.adapters.base import MessagingClient
from ..ports.im.commands import CommandType, ParsedCommand, parse_message, sanitize_input
from ..runners.base import TerminalDriver
from ..runners.tmux import is_missing_target_error
from ..util.capture_text import clean_capture
from .attachments import build_file_markers, download_attachments
from .event_hook import LocalAgentEventHookClient
from .pending import PendingMessageTracker, RouteHint

logger = logging.getLogger("panebridge.router")

MAX_ROUTES_BY_MESSAGE = 4000
MAX_ROUTES_BY_CONVERSATION = 2000
MAX_PROMPT_MEMORY = 500

SHELL_COMMANDS = {
    "bash", "zsh", "sh", "fish", "dash", "ksh", "tcsh", "csh",
    "cmd", "powershell", "pwsh", "nu",
}

MSG_MAPPING_NOT_FOUND = "⚠️ Agent instance mapping not found for this channel"
MSG_INVALID_INPUT = "⚠️ Invalid message: empty, too long (>10000 chars), or contains invalid characters"
MSG_CODEX_RESTARTED = (
    "⚠️ Codex pane was not active, so I relaunched `codex` in tmux. Send your message again in a few seconds."
)
MSG_NO_PROMPT_TO_RETRY = "⚠️ No previous prompt found for this instance. Send a normal prompt first."

SubmitResult = Literal["sent", "restarted"]
Downloader = Callable[[List[MessageAttachment], str], Awaitable[List[Path]]]


@dataclass(frozen=True)
class RouteMemory:
    project_name: str
    instance_id: str
    agent_type: str


class RouteCache:
    """Insertion-ordered map that evicts its oldest entries past `max_entries`."""

    def __init__(self, max_entries: int) -> None:
        self.max_entries = int(max_entries)
        self._items: Dict[str, RouteMemory] = {}

    def get(self, key: Optional[str]) -> Optional[RouteMemory]:
        return self._items.get(key) if key else None

    def set(self, key: Optional[str], route: RouteMemory) -> None:
        if not key:
            return
        self._items.pop(key, None)
        self._items[key] = route
        while len(self._items) > self.max_entries:
            self._items.pop(next(iter(self._items)))

    def forget_instance(self, project_name: str, instance_id: str) -> int:
        doomed = [
            k for k, r in self._items.items() if r.project_name == project_name and r.instance_id == instance_id
        ]
        for k in doomed:
            del self._items[k]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._items)


def is_shell_command(command: str) -> bool:
    name = (command or "").strip().lower().rsplit("/", 1)[-1]
    if name.endswith(".exe"):
        name = name[: -len(".exe")]
    return name.lstrip("-") in SHELL_COMMANDS


def build_delivery_failure_guidance(project_name: str, error: BaseException) -> str:
    if isinstance(error, TerminalTargetMissing) or is_missing_target_error(str(error)):
        return (
            "⚠️ I couldn't deliver your message because the agent tmux window is not running.\n"
            f"Please restart the agent session for `{project_name}`, then send your message again."
        )
    return (
        "⚠️ I couldn't deliver your message to the tmux agent session.\n"
        f"Please confirm the agent for `{project_name}` is running, then try again."
    )


def format_age(age_ms: Optional[int]) -> str:
    if age_ms is None or age_ms < 0:
        return "unknown"
    if age_ms < 1000:
        return "<1s"
    sec = round(age_ms / 1000)
    if sec < 60:
        return f"{sec}s"
    minutes = round(sec / 60)
    if minutes < 60:
        return f"{minutes}m"
    return f"{round(minutes / 60)}h"


def build_input_status(snapshot: Mapping[str, Any]) -> str:
    depth = int(snapshot.get("pendingDepth") or 0)
    if depth > 0:
        stage = snapshot.get("latestStage") or snapshot.get("oldestStage") or "received"
        return f"✅ accepted (`{depth}` queued, latest stage: `{stage}`)"
    last = snapshot.get("lastTerminalStage")
    age = format_age(snapshot.get("lastTerminalAgeMs"))
    if last == "completed":
        return f"✅ completed recently ({age} ago)"
    if last == "error":
        return f"⚠️ last request failed ({age} ago)"
    if last == "retry":
        return f"⚠️ last request needs retry ({age} ago)"
    return "ℹ️ no in-flight request"


def build_runtime_status(snapshot: Mapping[str, Any]) -> str:
    if int(snapshot.get("pendingDepth") or 0) <= 0:
        return "🟢 idle"
    stage = snapshot.get("oldestStage") or snapshot.get("latestStage") or "received"
    age = format_age(snapshot.get("oldestAgeMs"))
    if stage == "processing":
        return f"🟡 working (oldest stage: `{stage}`, age: {age})"
    if stage == "routed":
        return f"🟡 routed to tmux (age: {age})"
    return f"🟡 queued (stage: `{stage}`, age: {age})"


class MessageRouter:
    def __init__(
        self,
        *,
        messaging: MessagingClient,
        terminal: TerminalDriver,
        state: StateStore,
        tracker: PendingMessageTracker,
        settings: BridgeSettings,
        downloader: Downloader = download_attachments,
        events: Optional[LocalAgentEventHookClient] = None,
    ) -> None:
        self.messaging = messaging
        self.terminal = terminal
        self.state = state
        self.tracker = tracker
        self.settings = settings
        self.downloader = downloader
        self.events = events
        self.routes_by_message = RouteCache(MAX_ROUTES_BY_MESSAGE)
        self.routes_by_conversation = RouteCache(MAX_ROUTES_BY_CONVERSATION)
        self.last_prompt_by_instance: Dict[str, str] = {}

    def register(self) -> None:
        self.messaging.on_message(self.handle_message)

    # ------------------------------------------------------------------
    # route resolution

    def _remembered(self, project: ProjectState, route: Optional[RouteMemory]) -> Optional[InstanceState]:
        if route is None or route.project_name != project.project_name:
            return None
        return get_project_instance(project, route.instance_id)

    def resolve_instance(
        self, project: ProjectState, msg: InboundMessage
    ) -> Optional[Tuple[InstanceState, Optional[RouteHint]]]:
        ctx = msg.context
        thread_hint: Optional[RouteHint] = "thread" if ctx is not None and ctx.thread_id else None

        if msg.mapped_instance_id:
            inst = get_project_instance(project, msg.mapped_instance_id)
            if inst is not None:
                return inst, thread_hint

        if ctx is not None:
            inst = self._remembered(project, self.routes_by_message.get(ctx.reply_to_message_id))
            if inst is not None:
                return inst, "reply"
            inst = self._remembered(project, self.routes_by_conversation.get(ctx.conversation_key))
            if inst is not None:
                return inst, thread_hint or "memory"

        channel_id = (ctx.route_channel_id if ctx is not None else None) or msg.channel_id
        inst = find_project_instance_by_channel(project, channel_id)
        if inst is not None:
            return inst, thread_hint

        inst = get_primary_instance_for_agent(project, msg.agent_type)
        if inst is not None:
            return inst, thread_hint
        return None

    def remember_route(self, msg: InboundMessage, project_name: str, inst: InstanceState) -> None:
        route = RouteMemory(project_name=project_name, instance_id=inst.instance_id, agent_type=inst.agent_type)
        self.routes_by_message.set(msg.message_id, route)
        if msg.context is not None:
            self.routes_by_conversation.set(msg.context.conversation_key, route)

    def forget_routes_for_instance(self, project_name: str, instance_id: str) -> None:
        self.routes_by_message.forget_instance(project_name, instance_id)
        self.routes_by_conversation.forget_instance(project_name, instance_id)
        self.last_prompt_by_instance.pop(f"{project_name}:{instance_id}", None)

    def remember_prompt(self, project_name: str, instance_id: str, prompt: str) -> None:
        key = f"{project_name}:{instance_id}"
        self.last_prompt_by_instance.pop(key, None)
        self.last_prompt_by_instance[key] = prompt
        while len(self.last_prompt_by_instance) > MAX_PROMPT_MEMORY:
            self.last_prompt_by_instance.pop(next(iter(self.last_prompt_by_instance)))

    def remembered_prompt(self, project_name: str, instance_id: str) -> Optional[str]:
        return self.last_prompt_by_instance.get(f"{project_name}:{instance_id}")

    # ------------------------------------------------------------------
    # entry point

    async def handle_message(self, msg: InboundMessage) -> None:
        extra = {"project": msg.project_name, "agent_type": msg.agent_type, "channel_id": msg.channel_id}
        logger.info("inbound: %s", self.messaging.summarize(msg.content, 50), extra=extra)

        raw_project = self.state.get_project(msg.project_name)
        if raw_project is None:
            await self.messaging.send_to_channel(msg.channel_id, f'⚠️ Project "{msg.project_name}" not found in state')
            return
        project = normalize_project_state(raw_project)

        resolved = self.resolve_instance(project, msg)
        if resolved is None:
            logger.info("no instance mapping", extra=extra)
            await self.messaging.send_to_channel(msg.channel_id, MSG_MAPPING_NOT_FOUND)
            return
        inst, hint = resolved

        parsed = parse_message(msg.content)
        if parsed.type == CommandType.INVALID:
            await self.messaging.send_to_channel(msg.channel_id, parsed.error)
            return
        if parsed.type in (CommandType.CLOSE, CommandType.CLOSE_SAVE):
            await self._handle_session_command(msg, project, inst, hint, save=parsed.type == CommandType.CLOSE_SAVE)
            return
        if parsed.type == CommandType.KEY:
            await self._handle_key_command(msg, project, inst, hint, parsed)
            return
        if parsed.type == CommandType.HEALTH:
            await self.send_health_summary(msg.channel_id, project, inst)
            return
        if parsed.type == CommandType.SNAPSHOT:
            await self.send_snapshot(msg.channel_id, project, inst)
            return
        if parsed.type == CommandType.RETRY:
            prompt = self.remembered_prompt(project.project_name, inst.instance_id)
            if prompt is None:
                await self.messaging.send_to_channel(msg.channel_id, MSG_NO_PROMPT_TO_RETRY)
                return
            await self._dispatch_prompt(msg, project, inst, hint, prompt)
            return
        await self._deliver_prompt(msg, project, inst, hint)

    # ------------------------------------------------------------------
    # utility commands

    async def send_health_summary(self, channel_id: str, project: ProjectState, inst: InstanceState) -> None:
        pn, iid = project.project_name, inst.instance_id
        window = inst.tmux_window or iid
        try:
            await asyncio.to_thread(self.terminal.get_pane_current_command, project.tmux_session, window)
            window_status = "✅"
        except TerminalError as e:
            logger.info("health: window check failed: %s", e, extra={"project": pn, "instance_id": iid})
            window_status = "⚠️ missing"
        snapshot = self.tracker.get_runtime_snapshot(pn, inst.agent_type, iid)
        lines = [
            "🩺 **Bridge Health**",
            f"Project: `{pn}`",
            f"Instance: `{iid}` (`{inst.agent_type}`)",
            f"tmux window: `{project.tmux_session}:{window}` {window_status}",
            f"input status: {build_input_status(snapshot)}",
            f"runtime status: {build_runtime_status(snapshot)}",
            f"pending queue: `{snapshot.get('pendingDepth', 0)}`",
        ]
        await self.messaging.send_to_channel(channel_id, "\n".join(lines))

    async def send_snapshot(self, channel_id: str, project: ProjectState, inst: InstanceState) -> None:
        pn, iid = project.project_name, inst.instance_id
        try:
            raw = await asyncio.to_thread(
                self.terminal.capture_pane_from_window, project.tmux_session, inst.tmux_window or iid
            )
        except Exception as e:
            logger.warning("snapshot failed: %s", e, extra={"project": pn, "instance_id": iid})
            await self.messaging.send_to_channel(channel_id, build_delivery_failure_guidance(pn, e))
            return
        text = clean_capture(raw)
        if not text.strip():
            await self.messaging.send_to_channel(channel_id, f"⚠️ Snapshot is empty for `{pn}/{iid}`.")
            return
        lines = text.split("\n")
        tail = lines[-self.settings.snapshot_tail_lines :]
        title = f"📸 Snapshot `{pn}/{iid}`"
        if len(tail) < len(lines):
            title += f" (last {len(tail)}/{len(lines)} lines)"
        body = "\n".join(tail)
        payload = f"{title}\n```text\n{body}\n```"
        if self.messaging.platform == "discord" and len(payload) >= self.settings.long_output_thread_threshold:
            await self.messaging.send_long_output(channel_id, payload)
        else:
            await self.messaging.send_to_channel(channel_id, payload)

    # ------------------------------------------------------------------
    # commands

    async def _begin(self, msg: InboundMessage, project: ProjectState, inst: InstanceState, hint, prompt: str) -> None:
        pn, at, iid = project.project_name, inst.agent_type, inst.instance_id
        await self.tracker.mark_pending(pn, at, msg.channel_id, msg.message_id, iid, prompt=prompt)
        await self.tracker.mark_route_resolved(pn, at, iid, hint)

    async def _handle_key_command(
        self, msg: InboundMessage, project: ProjectState, inst: InstanceState, hint, parsed: ParsedCommand
    ) -> None:
        pn, at, iid = project.project_name, inst.agent_type, inst.instance_id
        window = inst.tmux_window or iid
        await self._begin(msg, project, inst, hint, prompt="")
        await self.tracker.mark_dispatching(pn, at, iid)
        try:
            for _ in range(parsed.repeat):
                await asyncio.to_thread(
                    self.terminal.send_raw_key_to_window, project.tmux_session, window, parsed.key_token
                )
        except Exception as e:
            logger.warning("key command failed: %s", e, extra={"project": pn, "instance_id": iid})
            await self.tracker.mark_error(pn, at, iid, target="tail")
            await self.messaging.send_to_channel(msg.channel_id, build_delivery_failure_guidance(pn, e))
            return
        await self.tracker.mark_completed(pn, at, iid, target="tail")
        self.state.update_last_active(pn)

    def _remove_instance(self, project: ProjectState, instance_id: str) -> None:
        remaining = {k: v for k, v in project.instances.items() if k != instance_id}
        if remaining:
            self.state.set_project(project.model_copy(update={"instances": remaining}))
        else:
            self.state.remove_project(project.project_name)

    async def _handle_session_command(
        self, msg: InboundMessage, project: ProjectState, inst: InstanceState, hint, *, save: bool
    ) -> None:
        pn, at, iid = project.project_name, inst.agent_type, inst.instance_id
        channel_id = msg.channel_id
        await self._begin(msg, project, inst, hint, prompt="")
        await self.tracker.mark_dispatching(pn, at, iid)
        try:
            try:
                await asyncio.to_thread(self.terminal.kill_window, project.tmux_session, inst.tmux_window or iid)
            except Exception as e:
                if not (isinstance(e, TerminalTargetMissing) or is_missing_target_error(str(e))):
                    raise
            self._remove_instance(project, iid)
            self.forget_routes_for_instance(pn, iid)
            logger.info("closed session (save=%s)", save, extra={"project": pn, "instance_id": iid})
            await self.tracker.mark_completed(pn, at, iid, target="tail")

            if not save:
                try:
                    deleted = await self.messaging.delete_channel(channel_id)
                except Exception:
                    logger.warning("channel delete failed", extra={"channel_id": channel_id}, exc_info=True)
                    deleted = False
                if not deleted:
                    await self.messaging.send_to_channel(
                        channel_id, "⚠️ Closed tmux session, but failed to delete this channel."
                    )
                return

            try:
                archived = await self.messaging.archive_channel(channel_id)
            except Exception:
                logger.warning("channel archive failed", extra={"channel_id": channel_id}, exc_info=True)
                await self.messaging.send_to_channel(
                    channel_id, "⚠️ Closed tmux session, but failed to rename this channel."
                )
                return
            if archived:
                await self.messaging.send_to_channel(
                    channel_id, f"✅ Closed tmux session. Saved this channel as `{archived}`."
                )
            else:
                await self.messaging.send_to_channel(
                    channel_id, "⚠️ Closed tmux session. Channel-save rename is not supported on this platform."
                )
        except Exception as e:
            logger.warning("session close failed: %s", e, extra={"project": pn, "instance_id": iid})
            await self.tracker.mark_error(pn, at, iid, target="tail")
            await self.messaging.send_to_channel(channel_id, build_delivery_failure_guidance(pn, e))
        finally:
            self.tracker.clear_pending_for_instance(pn, at, iid)

    # ------------------------------------------------------------------
    # prompt delivery

    async def _deliver_prompt(
        self, msg: InboundMessage, project: ProjectState, inst: InstanceState, hint: Optional[RouteHint]
    ) -> None:
        content = msg.content
        files: List[Path] = []
        if msg.attachments:
            try:
                files = await self.downloader(msg.attachments, project.project_path)
                content = (content or "") + build_file_markers(files)
            except Exception as e:
                # The prompt still goes out, just without file markers.
                files = []
                logger.warning(
                    "attachment processing failed: %s",
                    e,
                    extra={"project": project.project_name, "instance_id": inst.instance_id},
                )

        text = sanitize_input(content)
        if text is None:
            await self.messaging.send_to_channel(msg.channel_id, MSG_INVALID_INPUT)
            return
        await self._dispatch_prompt(msg, project, inst, hint, text, has_files=bool(files))

    async def _dispatch_prompt(
        self,
        msg: InboundMessage,
        project: ProjectState,
        inst: InstanceState,
        hint: Optional[RouteHint],
        text: str,
        *,
        has_files: bool = False,
    ) -> None:
        pn, at, iid = project.project_name, inst.agent_type, inst.instance_id
        extra = {"project": pn, "instance_id": iid, "agent_type": at, "message_id": msg.message_id}

        await self._begin(msg, project, inst, hint, prompt=text)
        if has_files:
            await self.tracker.mark_has_attachments(pn, at, iid)
        await self.tracker.mark_dispatching(pn, at, iid)

        try:
            result = await self.submit(project, inst, text)
        except Exception as e:
            logger.warning("delivery failed: %s", e, extra=extra)
            if at == "codex":
                await self._safe_emit(
                    "codex error",
                    self.events.emit_codex_error if self.events else None,
                    pn,
                    iid,
                    str(e),
                    turn_id=msg.message_id,
                    channel_id=msg.channel_id,
                )
            await self.tracker.mark_error(pn, at, iid, target="tail")
            await self.messaging.send_to_channel(msg.channel_id, build_delivery_failure_guidance(pn, e))
            return

        if result == "restarted":
            logger.info("codex relaunched in pane", extra=extra)
            await self.tracker.mark_retry(pn, at, iid, target="tail")
            await self.messaging.send_to_channel(msg.channel_id, MSG_CODEX_RESTARTED)
            return

        self.remember_route(msg, pn, inst)
        self.remember_prompt(pn, iid, text)
        if at == "codex":
            await self._safe_emit(
                "codex start",
                self.events.emit_codex_start if self.events else None,
                pn,
                iid,
                turn_id=msg.message_id,
                channel_id=msg.channel_id,
            )
        self.state.update_last_active(pn)

    async def _safe_emit(self, what: str, emit: Optional[Callable[..., Awaitable[bool]]], *args, **kwargs) -> None:
        if emit is None:
            return
        try:
            await emit(*args, **kwargs)
        except Exception:
            logger.warning("%s event emit failed", what, exc_info=True)

    async def submit(self, project: ProjectState, inst: InstanceState, text: str) -> SubmitResult:
        session = project.tmux_session
        window = inst.tmux_window or inst.instance_id
        delay_s = self.settings.submit_delay_ms / 1000.0

        if inst.agent_type == "opencode":
            await asyncio.to_thread(self.terminal.type_keys_to_window, session, window, text)
            await asyncio.sleep(delay_s)
            await asyncio.to_thread(self.terminal.send_enter_to_window, session, window)
            return "sent"

        if inst.agent_type == "codex":
            command = await asyncio.to_thread(self.terminal.get_pane_current_command, session, window)
            if is_shell_command(command):
                await asyncio.to_thread(self.terminal.type_keys_to_window, session, window, "codex")
                await asyncio.to_thread(self.terminal.send_enter_to_window, session, window)
                return "restarted"
            await asyncio.to_thread(self.terminal.type_keys_to_window, session, window, text)
            await asyncio.sleep(delay_s)
            await asyncio.to_thread(self.terminal.send_enter_to_window, session, window)
            return "sent"

        await asyncio.to_thread(self.terminal.send_keys_to_window, session, window, text)
        return "sent"
