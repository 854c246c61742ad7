"""Client side of the agent event hook.

Agent wrappers use LocalAgentEventHookClient to push lifecycle events to the
bridge's local hook server (`POST /agent-event`).

Two delivery modes:
- start/error events are queued in an outbox and retried with exponential
  backoff (`min(cap, base * 2**(attempt - 1))`) until `retry_max` retries
  have failed;
- final/progress events and `post()` try once and report the outcome.

Every event carries a stable `eventId` and, when it belongs to a turn, a
per-turn `seq` that increases by one for each event the client emits.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Set

import httpx

from ..contracts.v1 import AgentEventPayload, AgentEventType
from ..kernel.settings import BridgeSettings
from ..util.time import now_ms

logger = logging.getLogger("panebridge.event_hook")

MAX_TURN_SEQUENCES = 50000
CODEX_SOURCE = "codex-poc"


@dataclass
class OutboxEntry:
    payload: AgentEventPayload
    attempt: int
    due_at_ms: int


class LocalAgentEventHookClient:
    def __init__(
        self,
        *,
        port: int = 18470,
        enabled: bool = False,
        timeout_ms: int = 1500,
        retry_max: int = 3,
        retry_base_ms: int = 250,
        retry_max_delay_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], int] = now_ms,
        auto_drain: bool = True,
    ) -> None:
        self.enabled = bool(enabled)
        self.endpoint = f"http://127.0.0.1:{int(port)}/agent-event"
        self.timeout_ms = int(timeout_ms)
        self.retry_max = int(retry_max)
        self.retry_base_ms = int(retry_base_ms)
        self.retry_max_delay_ms = int(retry_max_delay_ms)
        self.auto_drain = bool(auto_drain)
        self._clock = clock
        self._http = httpx.AsyncClient(timeout=self.timeout_ms / 1000.0, transport=transport)
        self.outbox: Deque[OutboxEntry] = deque()
        self._draining = False
        self._drain_handle: Optional[asyncio.TimerHandle] = None
        self._drain_tasks: Set[asyncio.Task] = set()
        self._event_counter = itertools.count(1)
        self._turn_seq: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: BridgeSettings, **kwargs) -> "LocalAgentEventHookClient":
        return cls(
            port=settings.hook_server_port,
            enabled=settings.event_hook_enabled,
            timeout_ms=settings.event_hook_timeout_ms,
            retry_max=settings.event_hook_retry_max,
            retry_base_ms=settings.event_hook_retry_base_ms,
            retry_max_delay_ms=settings.event_hook_retry_max_delay_ms,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        for t in list(self._drain_tasks):
            t.cancel()
        await self._http.aclose()

    # ------------------------------------------------------------------
    # payload normalization

    def _attach_sequence(self, payload: AgentEventPayload) -> AgentEventPayload:
        if payload.seq is not None and payload.seq >= 0:
            return payload
        turn_id = (payload.turn_id or "").strip()
        if not turn_id:
            return payload
        key = f"{payload.project_name}:{payload.instance_id or payload.agent_type}:{turn_id}"
        nxt = self._turn_seq.pop(key, 0) + 1
        self._turn_seq[key] = nxt
        while len(self._turn_seq) > MAX_TURN_SEQUENCES:
            self._turn_seq.pop(next(iter(self._turn_seq)))
        return payload.model_copy(update={"seq": nxt})

    def _event_id(self, payload: AgentEventPayload) -> str:
        turn = (payload.turn_id or "").strip()
        agent = payload.instance_id or payload.agent_type
        base = f"{payload.project_name}:{agent}:{payload.type}"
        if turn and payload.seq is not None:
            return f"{base}:{turn}:seq-{payload.seq}"
        if turn:
            return f"{base}:{turn}"
        return f"{base}:seq-{self._clock()}-{next(self._event_counter)}"

    def normalize(self, payload: AgentEventPayload) -> AgentEventPayload:
        payload = self._attach_sequence(payload)
        if payload.event_id and payload.event_id.strip():
            return payload
        return payload.model_copy(update={"event_id": self._event_id(payload)})

    # ------------------------------------------------------------------
    # delivery

    def compute_retry_delay_ms(self, attempt: int) -> int:
        return min(self.retry_max_delay_ms, self.retry_base_ms * (2 ** max(0, attempt - 1)))

    async def _post_once(self, payload: AgentEventPayload) -> bool:
        if not self.enabled:
            return False
        try:
            resp = await self._http.post(self.endpoint, json=payload.wire())
        except httpx.HTTPError as e:
            logger.debug("event post failed: %s", e, extra={"event_id": payload.event_id})
            return False
        return resp.is_success

    async def post(self, payload: AgentEventPayload) -> bool:
        if not self.enabled:
            return False
        if not payload.project_name or not payload.agent_type or not payload.type:
            return False
        return await self._post_once(self.normalize(payload))

    def _enqueue(self, payload: AgentEventPayload) -> bool:
        if not self.enabled:
            return False
        self.outbox.append(OutboxEntry(payload=self.normalize(payload), attempt=0, due_at_ms=self._clock()))
        self._schedule_drain(0)
        return True

    def _schedule_drain(self, delay_ms: int) -> None:
        if not self.auto_drain or self._drain_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_handle = loop.call_later(max(0, delay_ms) / 1000.0, self._on_drain_timer)

    def _on_drain_timer(self) -> None:
        self._drain_handle = None
        task = asyncio.ensure_future(self.drain_outbox())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def drain_outbox(self) -> None:
        """Post due entries in order; failures go to the back with a backoff."""
        if self._draining:
            return
        self._draining = True
        try:
            while self.outbox:
                now = self._clock()
                head = self.outbox[0]
                if head.due_at_ms > now:
                    self._schedule_drain(head.due_at_ms - now)
                    return
                self.outbox.popleft()
                if await self._post_once(head.payload):
                    continue
                if head.attempt >= self.retry_max:
                    logger.warning(
                        "dropping event after %d attempts",
                        head.attempt + 1,
                        extra={"event_id": head.payload.event_id, "project": head.payload.project_name},
                    )
                    continue
                attempt = head.attempt + 1
                self.outbox.append(
                    OutboxEntry(
                        payload=head.payload,
                        attempt=attempt,
                        due_at_ms=self._clock() + self.compute_retry_delay_ms(attempt),
                    )
                )
        finally:
            self._draining = False
            if self.outbox and self._drain_handle is None:
                self._schedule_drain(max(0, self.outbox[0].due_at_ms - self._clock()))

    # ------------------------------------------------------------------
    # codex helpers

    def _codex(self, event_type: AgentEventType, project_name: str, instance_id: str, **fields) -> AgentEventPayload:
        return AgentEventPayload(
            project_name=project_name,
            agent_type="codex",
            instance_id=instance_id,
            type=event_type,
            source=CODEX_SOURCE,
            **fields,
        )

    async def emit_codex_start(
        self, project_name: str, instance_id: str, *, turn_id: Optional[str] = None, channel_id: Optional[str] = None
    ) -> bool:
        return self._enqueue(self._codex("session.start", project_name, instance_id, turn_id=turn_id, channel_id=channel_id))

    async def emit_codex_error(
        self,
        project_name: str,
        instance_id: str,
        text: str,
        *,
        turn_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> bool:
        return self._enqueue(
            self._codex("session.error", project_name, instance_id, turn_id=turn_id, channel_id=channel_id, text=text)
        )

    async def emit_codex_final(
        self,
        project_name: str,
        instance_id: str,
        *,
        text: Optional[str] = None,
        turn_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> bool:
        return await self.post(
            self._codex("session.final", project_name, instance_id, turn_id=turn_id, channel_id=channel_id, text=text)
        )

    async def emit_codex_progress(
        self,
        project_name: str,
        instance_id: str,
        *,
        text: Optional[str] = None,
        turn_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        progress_mode: Optional[str] = None,
    ) -> bool:
        return await self.post(
            self._codex(
                "session.progress",
                project_name,
                instance_id,
                turn_id=turn_id,
                channel_id=channel_id,
                text=text,
                progress_mode=progress_mode,
            )
        )
