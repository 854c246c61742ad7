"""Pending-request lifecycle for the bridge.

Every inbound chat message that reaches an agent gets a queue entry keyed by
its instance. The entry walks received -> routed -> processing and ends in
completed or error; retry parks it at the head of the queue. Each stage is
mirrored as a reaction on the user's message, and a typing indicator runs in
the channel while anything is pending there.

Queue discipline:
- Output routing reads the oldest entry (the request the agent is answering).
- Hint/lifecycle updates default to the newest entry (the request just sent).
- Terminal transitions default to the oldest entry.

Reactions and typing indicators are best-effort: a failing chat API call is
logged and never propagates to the caller.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from ..kernel.instances import build_queue_key
from ..ports.im.adapters.base import MessagingClient, StopTyping
from ..util.capture_text import collapse_whitespace
from ..util.time import ms_to_iso, now_ms

logger = logging.getLogger("panebridge.pending")

PendingStage = Literal["received", "routed", "processing", "completed", "error", "retry"]
RouteHint = Literal["reply", "thread", "memory", "attachment"]
Target = Literal["head", "tail"]

DISCORD_STAGE_EMOJI: Dict[str, str] = {
    "received": "📥",
    "routed": "🚀",
    "processing": "⏳",
    "completed": "✅",
    "error": "❌",
    "retry": "⚠️",
}
DEFAULT_STAGE_EMOJI: Dict[str, str] = {
    "received": "⏳",
    "routed": "⏳",
    "processing": "⏳",
    "completed": "✅",
    "error": "❌",
    "retry": "⚠️",
}
HINT_EMOJI: Dict[str, str] = {
    "reply": "↩️",
    "thread": "🧵",
    "memory": "🧠",
    "attachment": "📎",
}

PROMPT_TAIL_CHARS = 240
MAX_TERMINAL_RECORDS = 4000


@dataclass
class PendingEntry:
    channel_id: str
    message_id: str
    stage: str
    status_emoji: str
    created_at_ms: int
    updated_at_ms: int
    prompt_tail: str = ""
    holds_typing: bool = False
    alerted: bool = False


@dataclass
class TerminalRecord:
    stage: str
    at_ms: int


class TypingIndicatorPool:
    """Reference-counted typing indicators, one per channel."""

    def __init__(self, messaging: MessagingClient) -> None:
        self._messaging = messaging
        self._refs: Dict[str, int] = {}
        self._stops: Dict[str, Optional[StopTyping]] = {}

    def acquire(self, channel_id: str) -> None:
        n = self._refs.get(channel_id, 0)
        if n == 0:
            try:
                self._stops[channel_id] = self._messaging.start_typing_indicator(channel_id)
            except Exception:
                logger.warning("typing indicator start failed", extra={"channel_id": channel_id}, exc_info=True)
                self._stops[channel_id] = None
        self._refs[channel_id] = n + 1

    def release(self, channel_id: str) -> None:
        n = self._refs.get(channel_id, 0)
        if n <= 0:
            return
        if n > 1:
            self._refs[channel_id] = n - 1
            return
        self._refs.pop(channel_id, None)
        stop = self._stops.pop(channel_id, None)
        if stop is None:
            return
        try:
            stop()
        except Exception:
            logger.warning("typing indicator stop failed", extra={"channel_id": channel_id}, exc_info=True)

    def refs(self, channel_id: str) -> int:
        return self._refs.get(channel_id, 0)


class PendingMessageTracker:
    def __init__(
        self,
        messaging: MessagingClient,
        *,
        clock: Callable[[], int] = now_ms,
        pending_alert_ms: int = 45000,
    ) -> None:
        self.messaging = messaging
        self.typing = TypingIndicatorPool(messaging)
        self._clock = clock
        self.pending_alert_ms = int(pending_alert_ms)
        self._queues: Dict[str, List[PendingEntry]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_terminal: Dict[str, TerminalRecord] = {}

    # ------------------------------------------------------------------
    # internals

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _stage_emoji(self, stage: str) -> str:
        table = DISCORD_STAGE_EMOJI if self.messaging.platform == "discord" else DEFAULT_STAGE_EMOJI
        return table[stage]

    async def _best_effort(self, what: str, entry: PendingEntry, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            await call()
        except Exception:
            logger.warning(
                "%s failed",
                what,
                extra={"channel_id": entry.channel_id, "message_id": entry.message_id},
                exc_info=True,
            )

    def _pick(self, key: str, target: Target) -> Optional[PendingEntry]:
        q = self._queues.get(key)
        if not q:
            return None
        return q[0] if target == "head" else q[-1]

    async def _transition(self, entry: PendingEntry, stage: str) -> None:
        entry.stage = stage
        entry.updated_at_ms = self._clock()
        emoji = self._stage_emoji(stage)
        if emoji == entry.status_emoji:
            return
        previous = entry.status_emoji
        entry.status_emoji = emoji
        await self._best_effort(
            "reaction replace",
            entry,
            lambda: self.messaging.replace_own_reaction_on_message(entry.channel_id, entry.message_id, previous, emoji),
        )

    def _release_typing(self, entry: PendingEntry) -> None:
        if entry.holds_typing:
            entry.holds_typing = False
            self.typing.release(entry.channel_id)

    def _record_terminal(self, key: str, stage: str) -> None:
        self._last_terminal.pop(key, None)
        self._last_terminal[key] = TerminalRecord(stage=stage, at_ms=self._clock())
        while len(self._last_terminal) > MAX_TERMINAL_RECORDS:
            self._last_terminal.pop(next(iter(self._last_terminal)))

    async def _finish(self, key: str, entry: PendingEntry, stage: str) -> None:
        q = self._queues.get(key) or []
        if entry in q:
            q.remove(entry)
        if not q:
            self._queues.pop(key, None)
        self._release_typing(entry)
        self._record_terminal(key, stage)
        await self._transition(entry, stage)

    # ------------------------------------------------------------------
    # lifecycle

    async def mark_pending(
        self,
        project_name: str,
        agent_type: str,
        channel_id: str,
        message_id: Optional[str],
        instance_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> None:
        if not message_id:
            return
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            now = self._clock()
            emoji = self._stage_emoji("received")
            entry = PendingEntry(
                channel_id=channel_id,
                message_id=message_id,
                stage="received",
                status_emoji=emoji,
                created_at_ms=now,
                updated_at_ms=now,
                prompt_tail=collapse_whitespace(prompt or "")[-PROMPT_TAIL_CHARS:],
            )
            self._queues.setdefault(key, []).append(entry)
            self.typing.acquire(channel_id)
            entry.holds_typing = True
            await self._best_effort(
                "reaction add",
                entry,
                lambda: self.messaging.add_reaction_to_message(channel_id, message_id, emoji),
            )

    async def mark_route_resolved(
        self,
        project_name: str,
        agent_type: str,
        instance_id: Optional[str] = None,
        hint: Optional[RouteHint] = None,
        target: Target = "tail",
    ) -> None:
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is None:
                return
            hint_emoji = HINT_EMOJI.get(hint or "")
            if hint_emoji and self.messaging.platform == "discord":
                await self._best_effort(
                    "hint reaction",
                    entry,
                    lambda: self.messaging.add_reaction_to_message(entry.channel_id, entry.message_id, hint_emoji),
                )
            await self._transition(entry, "routed")

    async def mark_has_attachments(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None, target: Target = "tail"
    ) -> None:
        if self.messaging.platform != "discord":
            return
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is None:
                return
            await self._best_effort(
                "attachment reaction",
                entry,
                lambda: self.messaging.add_reaction_to_message(entry.channel_id, entry.message_id, HINT_EMOJI["attachment"]),
            )

    async def mark_dispatching(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None, target: Target = "tail"
    ) -> None:
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is not None:
                await self._transition(entry, "processing")

    async def mark_completed(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None, target: Target = "head"
    ) -> None:
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is not None:
                await self._finish(key, entry, "completed")

    async def mark_error(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None, target: Target = "head"
    ) -> None:
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is not None:
                await self._finish(key, entry, "error")

    async def _finish_by_message_id(
        self, project_name: str, agent_type: str, message_id: str, instance_id: Optional[str], stage: str
    ) -> bool:
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            for entry in list(self._queues.get(key) or []):
                if entry.message_id == message_id:
                    await self._finish(key, entry, stage)
                    return True
        return False

    async def mark_completed_by_message_id(
        self, project_name: str, agent_type: str, message_id: str, instance_id: Optional[str] = None
    ) -> bool:
        return await self._finish_by_message_id(project_name, agent_type, message_id, instance_id, "completed")

    async def mark_error_by_message_id(
        self, project_name: str, agent_type: str, message_id: str, instance_id: Optional[str] = None
    ) -> bool:
        return await self._finish_by_message_id(project_name, agent_type, message_id, instance_id, "error")

    async def mark_retry(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None, target: Target = "tail"
    ) -> None:
        """Flag the request for a retry and move it ahead of newer requests."""
        key = build_queue_key(project_name, agent_type, instance_id)
        async with self._lock(key):
            entry = self._pick(key, target)
            if entry is None:
                return
            q = self._queues[key]
            q.remove(entry)
            q.insert(0, entry)
            self._release_typing(entry)
            self._record_terminal(key, "retry")
            await self._transition(entry, "retry")

    def clear_pending_for_instance(self, project_name: str, agent_type: str, instance_id: Optional[str] = None) -> int:
        key = build_queue_key(project_name, agent_type, instance_id)
        q = self._queues.pop(key, None) or []
        for entry in q:
            self._release_typing(entry)
        return len(q)

    # ------------------------------------------------------------------
    # read accessors

    def _queue(self, project_name: str, agent_type: str, instance_id: Optional[str]) -> List[PendingEntry]:
        return self._queues.get(build_queue_key(project_name, agent_type, instance_id)) or []

    def get_pending_channel(self, project_name: str, agent_type: str, instance_id: Optional[str] = None) -> Optional[str]:
        q = self._queue(project_name, agent_type, instance_id)
        return q[0].channel_id if q else None

    def get_pending_message_id(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None
    ) -> Optional[str]:
        q = self._queue(project_name, agent_type, instance_id)
        return q[0].message_id if q else None

    def get_pending_depth(self, project_name: str, agent_type: str, instance_id: Optional[str] = None) -> int:
        return len(self._queue(project_name, agent_type, instance_id))

    def get_pending_prompt_tail(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None
    ) -> Optional[str]:
        q = self._queue(project_name, agent_type, instance_id)
        return (q[0].prompt_tail or None) if q else None

    def get_pending_prompt_tails(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None
    ) -> List[str]:
        return [e.prompt_tail for e in self._queue(project_name, agent_type, instance_id) if e.prompt_tail]

    def get_runtime_snapshot(
        self, project_name: str, agent_type: str, instance_id: Optional[str] = None
    ) -> Dict[str, Any]:
        key = build_queue_key(project_name, agent_type, instance_id)
        q = self._queues.get(key) or []
        now = self._clock()
        snap: Dict[str, Any] = {"pendingDepth": len(q)}
        if q:
            oldest, latest = q[0], q[-1]
            snap.update(
                oldestStage=oldest.stage,
                oldestAgeMs=max(0, now - oldest.created_at_ms),
                oldestUpdatedAt=ms_to_iso(oldest.updated_at_ms),
                latestStage=latest.stage,
                latestAgeMs=max(0, now - latest.created_at_ms),
                latestUpdatedAt=ms_to_iso(latest.updated_at_ms),
            )
        last = self._last_terminal.get(key)
        if last is not None:
            snap.update(
                lastTerminalStage=last.stage,
                lastTerminalAgeMs=max(0, now - last.at_ms),
                lastTerminalAt=ms_to_iso(last.at_ms),
            )
        return snap

    def check_stuck_entries(self) -> List[str]:
        """Warn once per entry that has stayed non-terminal past the alert threshold."""
        now = self._clock()
        stuck: List[str] = []
        for key, q in self._queues.items():
            for entry in q:
                if entry.alerted or now - entry.created_at_ms < self.pending_alert_ms:
                    continue
                entry.alerted = True
                stuck.append(key)
                logger.warning(
                    "request pending for %ds (stage=%s)",
                    (now - entry.created_at_ms) // 1000,
                    entry.stage,
                    extra={"channel_id": entry.channel_id, "message_id": entry.message_id, "project": key},
                )
        return stuck
