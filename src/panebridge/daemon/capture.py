"""Screen-capture poller.

Agents without an event hook are observed by sampling their tmux pane. Each
sample is diffed against the previous one; new text is delivered to chat and
a per-instance state machine decides when the agent's turn is over:

    idle -> streaming -> quiet-counting -> complete -> idle

A turn completes after `quiet_polls` unchanged samples following output.
Before the first output of a turn, codex uses its own (longer) count because
its startup banner settles slowly.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..contracts.v1 import InstanceState, ProjectState
from ..kernel.instances import list_project_instances, normalize_project_state
from ..kernel.settings import BridgeSettings
from ..kernel.state import StateStore
from ..ports.im.adapters.base import MessagingClient
from ..runners.base import TerminalDriver
from ..util.capture_text import clean_capture, collapse_whitespace, split_for_discord, split_for_slack
from ..util.time import now_ms
from .pending import PendingMessageTracker

logger = logging.getLogger("panebridge.capture")

REDRAW_TAIL_LINES = 20
CODEX_REDRAW_LIMIT = 4000
CODEX_REDRAW_TAIL_LINES = 24

_CODEX_EXPORT_RE = re.compile(r"^export AGENT_[A-Z_]+=")
_CODEX_LAUNCH_RE = re.compile(r'^\$?\s*cd\s+".*"\s*&&\s*codex\b')
_CONTEXT_LEFT_RE = re.compile(r"\b\d{1,3}%\s*context left\b", re.IGNORECASE)
_ROLE_PREFIX_RE = re.compile(r"^(assistant|system|user)\s*:", re.IGNORECASE)


class CapturePhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    QUIET_COUNTING = "quiet-counting"
    COMPLETE = "complete"


@dataclass
class CaptureState:
    project_name: str
    agent_type: str
    instance_id: str
    snapshot: Optional[str] = None
    phase: CapturePhase = CapturePhase.IDLE
    quiet_polls: int = 0
    has_output: bool = False
    echo_polls: int = 0
    buffered: List[str] = field(default_factory=list)
    last_change_ms: int = 0
    pending_since_ms: int = 0
    stale: bool = False

    def reset_turn(self) -> None:
        self.phase = CapturePhase.IDLE
        self.quiet_polls = 0
        self.has_output = False
        self.echo_polls = 0
        self.buffered = []
        self.stale = False


def extract_delta(previous: str, current: str) -> str:
    """Text in `current` that was not on screen in `previous`."""
    if current.startswith(previous):
        return current[len(previous) :]

    for n in range(min(len(previous), len(current)), 0, -1):
        if previous.endswith(current[:n]):
            return current[n:]

    prev_lines = previous.split("\n")
    curr_lines = current.split("\n")
    for line in reversed(prev_lines):
        if not line.strip():
            continue
        try:
            anchor = len(curr_lines) - 1 - curr_lines[::-1].index(line)
        except ValueError:
            continue
        if anchor == len(curr_lines) - 1:
            return ""
        return "\n".join(curr_lines[anchor + 1 :])

    # Full-screen redraw: only the tail is new enough to be worth sending.
    return "\n".join(curr_lines[-REDRAW_TAIL_LINES:])


def _is_codex_status_noise(line: str) -> bool:
    compact = collapse_whitespace(line)
    if not compact:
        return True
    has_shortcuts = "for shortcuts" in compact.lower()
    has_context = bool(_CONTEXT_LEFT_RE.search(compact))
    if has_shortcuts and has_context:
        return True
    if re.fullmatch(r"\d{1,3}%\s*context left", compact, re.IGNORECASE):
        return True
    return bool(re.fullmatch(r"\??\s*for shortcuts", compact, re.IGNORECASE))


def normalize_delta_for_agent(agent_type: str, delta: str, previous: str, current: str) -> str:
    if agent_type != "codex":
        return delta
    kept = []
    for line in delta.split("\n"):
        t = line.strip()
        if not t or _CODEX_EXPORT_RE.match(t) or _CODEX_LAUNCH_RE.match(t) or _is_codex_status_noise(t):
            continue
        kept.append(line)
    out = "\n".join(kept)
    if len(out) > CODEX_REDRAW_LIMIT and not current.startswith(previous):
        out = "\n".join(out.split("\n")[-CODEX_REDRAW_TAIL_LINES:])
    return out


def _is_prompt_echo_line(prompt: str, line: str) -> bool:
    if len(line) < 16:
        return False
    if line == prompt:
        return True
    # Wrapped echo shows up as a leading or trailing fragment of the prompt.
    return len(line) >= 24 and (prompt.startswith(line) or prompt.endswith(line))


def strip_prompt_echo(delta: str, prompt_tails: List[str]) -> str:
    """Drop leading lines that merely echo pending prompts back."""
    prompts = [collapse_whitespace(t) for t in prompt_tails]
    prompts = [p for p in prompts if len(p) >= 16]
    if not prompts:
        return delta
    lines = delta.split("\n")
    single = len(prompts) == 1
    max_scan = 8 if single else 2
    drop = 0
    for raw in lines[:max_scan]:
        line = collapse_whitespace(raw)
        if not line:
            drop += 1
            continue
        if _ROLE_PREFIX_RE.match(line):
            break
        if single:
            echo = _is_prompt_echo_line(prompts[0], line)
        else:
            echo = len(line) >= 48 and any(line == p or line in p for p in prompts)
        if not echo:
            break
        drop += 1
    return "\n".join(lines[drop:]) if drop else delta


class CapturePoller:
    def __init__(
        self,
        *,
        state: StateStore,
        terminal: TerminalDriver,
        messaging: MessagingClient,
        tracker: PendingMessageTracker,
        settings: BridgeSettings,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.state = state
        self.terminal = terminal
        self.messaging = messaging
        self.tracker = tracker
        self.settings = settings
        self._clock = clock
        self._states: Dict[str, CaptureState] = {}
        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # lifecycle

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="capture-poller")
            logger.info("capture poller started (interval=%dms)", self.settings.capture_poll_ms)

    async def stop(self) -> None:
        task, self._task = self._task, None
        for t in [task, *self._ticks]:
            if t is not None:
                t.cancel()
        await asyncio.gather(*[t for t in [task, *self._ticks] if t is not None], return_exceptions=True)
        self._ticks.clear()
        self._in_flight.clear()

    async def _run(self) -> None:
        interval_s = self.settings.capture_poll_ms / 1000.0
        while True:
            self._spawn_ticks()
            await asyncio.sleep(interval_s)

    def _live_instances(self) -> List[Tuple[ProjectState, InstanceState]]:
        out = []
        for raw in self.state.list_projects():
            project = normalize_project_state(raw)
            for inst in list_project_instances(project):
                if inst.event_hook or not inst.channel_id:
                    continue
                if not (inst.tmux_window or inst.instance_id):
                    continue
                out.append((project, inst))
        return out

    def _spawn_ticks(self) -> List[asyncio.Task]:
        live = self._live_instances()
        keys = {self._key(p.project_name, i.instance_id) for p, i in live}
        for stale_key in [k for k in self._states if k not in keys]:
            self._states.pop(stale_key, None)

        spawned = []
        for project, inst in live:
            key = self._key(project.project_name, inst.instance_id)
            if key in self._in_flight:
                continue
            self._in_flight.add(key)
            task = asyncio.create_task(self._tick(key, project, inst))
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            spawned.append(task)
        return spawned

    async def poll_once(self) -> None:
        """Run one tick for every live instance and wait for all of them."""
        tasks = self._spawn_ticks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # per-instance tick

    @staticmethod
    def _key(project_name: str, instance_id: str) -> str:
        return f"{project_name}::{instance_id}"

    def _state_for(self, key: str, project: ProjectState, inst: InstanceState) -> CaptureState:
        st = self._states.get(key)
        if st is None:
            st = CaptureState(project_name=project.project_name, agent_type=inst.agent_type, instance_id=inst.instance_id)
            st.last_change_ms = self._clock()
            self._states[key] = st
        return st

    def _route(self, inst: InstanceState, project_name: str) -> Tuple[Optional[str], int]:
        pending_channel = self.tracker.get_pending_channel(project_name, inst.agent_type, inst.instance_id)
        depth = self.tracker.get_pending_depth(project_name, inst.agent_type, inst.instance_id)
        if depth > 1:
            return inst.channel_id or pending_channel, depth
        return pending_channel or inst.channel_id, depth

    async def _tick(self, key: str, project: ProjectState, inst: InstanceState) -> None:
        extra = {"project": project.project_name, "instance_id": inst.instance_id, "agent_type": inst.agent_type}
        try:
            await self._poll_instance(key, project, inst)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("capture tick failed", extra=extra, exc_info=True)
        finally:
            self._in_flight.discard(key)

    async def _poll_instance(self, key: str, project: ProjectState, inst: InstanceState) -> None:
        st = self._state_for(key, project, inst)
        channel_id, depth = self._route(inst, project.project_name)
        now = self._clock()
        if depth > 0 and st.pending_since_ms == 0:
            st.pending_since_ms = now
        elif depth == 0:
            st.pending_since_ms = 0

        window = inst.tmux_window or inst.instance_id
        raw = await asyncio.to_thread(self.terminal.capture_pane_from_window, project.tmux_session, window)
        current = clean_capture(raw)
        if not current.strip():
            await self._on_quiet(st, channel_id, depth)
            return

        previous, st.snapshot = st.snapshot, current
        if previous is None or previous == current:
            await self._on_quiet(st, channel_id, depth)
            return

        st.last_change_ms = now
        st.stale = False
        delta = normalize_delta_for_agent(inst.agent_type, extract_delta(previous, current), previous, current)
        text = delta
        if depth > 0 and self.settings.capture_filter_prompt_echo:
            text = strip_prompt_echo(
                delta, self.tracker.get_pending_prompt_tails(project.project_name, inst.agent_type, inst.instance_id)
            )

        if not text.strip():
            if not delta.strip():
                await self._on_quiet(st, channel_id, depth)
                return
            st.echo_polls += 1
            if st.echo_polls <= self.settings.capture_prompt_echo_max_polls:
                # An echoed prompt is activity; counting it as quiet would complete the turn early.
                st.quiet_polls = 0
                if depth > 0:
                    st.phase = CapturePhase.STREAMING
                return
            logger.info(
                "prompt echo persisted for %d polls; delivering raw output",
                st.echo_polls,
                extra={"project": st.project_name, "instance_id": st.instance_id},
            )
            text = delta
        st.echo_polls = 0
        await self._deliver(st, channel_id, depth, text.strip())

    async def _send(self, channel_id: Optional[str], text: str) -> bool:
        if not channel_id or not text.strip():
            return False
        split = split_for_slack if self.messaging.platform == "slack" else split_for_discord
        sent = False
        for chunk in split(text):
            if not chunk.strip():
                continue
            await self.messaging.send_to_channel(channel_id, chunk)
            sent = True
        return sent

    def _final_only(self, agent_type: str) -> bool:
        return agent_type == "codex" and self.settings.capture_codex_final_only

    async def _deliver(self, st: CaptureState, channel_id: Optional[str], depth: int, text: str) -> None:
        if depth > 0 and self._final_only(st.agent_type):
            st.buffered.append(text)
            st.has_output = True
        elif await self._send(channel_id, text):
            st.has_output = depth > 0
        if depth > 0 and st.has_output:
            st.phase = CapturePhase.STREAMING
            st.quiet_polls = 0
        else:
            st.reset_turn()

    def _quiet_threshold(self, st: CaptureState) -> int:
        if not st.has_output and st.agent_type == "codex":
            return self.settings.capture_pending_initial_quiet_polls_codex
        return self.settings.capture_pending_quiet_polls

    async def _on_quiet(self, st: CaptureState, channel_id: Optional[str], depth: int) -> None:
        if depth <= 0:
            if st.buffered:
                await self._send(channel_id, "\n".join(st.buffered))
            st.reset_turn()
            return

        self._check_stale(st)
        st.quiet_polls += 1
        st.phase = CapturePhase.QUIET_COUNTING
        if st.quiet_polls < self._quiet_threshold(st):
            return

        st.phase = CapturePhase.COMPLETE
        buffered, st.buffered = st.buffered, []
        try:
            if buffered:
                await self._send(channel_id, "\n".join(buffered))
        finally:
            await self.tracker.mark_completed(st.project_name, st.agent_type, st.instance_id)
            st.reset_turn()
            st.pending_since_ms = 0

    def _check_stale(self, st: CaptureState) -> None:
        if st.stale:
            return
        since = max(st.last_change_ms, st.pending_since_ms)
        idle_ms = self._clock() - since
        if idle_ms < self.settings.capture_stale_alert_ms:
            return
        st.stale = True
        logger.warning(
            "pending turn has shown no screen change for %ds",
            idle_ms // 1000,
            extra={"project": st.project_name, "instance_id": st.instance_id, "agent_type": st.agent_type},
        )

    # ------------------------------------------------------------------
    # observability

    def get_instance_snapshot(self, project_name: str, instance_id: str) -> Dict[str, object]:
        st = self._states.get(self._key(project_name, instance_id))
        if st is None:
            return {}
        return {
            "capturePhase": st.phase.value,
            "captureQuietPolls": st.quiet_polls,
            "captureBufferedChunks": len(st.buffered),
            "captureStale": st.stale,
        }
