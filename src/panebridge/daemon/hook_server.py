"""Local HTTP surface of the bridge (FastAPI, bound to 127.0.0.1).

    GET  /runtime-status   per-instance pending/lifecycle snapshot
    POST /reload           re-read project/channel mappings
    POST /send-files       attach generated files to an instance's channel
    POST /opencode-event   lifecycle event from an agent hook
    POST /agent-event      sequenced lifecycle event from an agent hook

Events are deduplicated by eventId and, within one turn, by seq: an event
whose seq is not greater than the last accepted one is counted as rejected
and otherwise ignored, so a late `session.progress` can never overwrite a
`session.final`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import LIFECYCLE_STAGE_BY_EVENT, AgentEventPayload, InstanceState, SendFilesRequest
from ..kernel.instances import (
    get_primary_instance_for_agent,
    get_project_instance,
    list_project_instances,
    normalize_project_state,
)
from ..kernel.settings import BridgeSettings
from ..kernel.state import StateStore
from ..ports.im.adapters.base import MessagingClient
from ..util.capture_text import (
    extract_file_paths,
    format_discord_output,
    split_for_discord,
    split_for_slack,
    strip_file_paths,
    wrap_codeblock,
)
from ..util.fs import is_within
from ..util.time import ms_to_iso, now_ms, utc_now_iso
from .capture import CapturePoller
from .pending import PendingMessageTracker

logger = logging.getLogger("panebridge.hook")

EVENT_ID_RETENTION_MS = 10 * 60 * 1000
MAX_EVENT_IDS = 50000
SEQ_RETENTION_MS = 30 * 60 * 1000
MAX_SEQ_KEYS = 100000
LIFECYCLE_STALE_MS = 120 * 1000
CODEX_SOURCE = "codex-poc"


@dataclass
class EventCounters:
    ignored: int = 0
    ignored_types: Dict[str, int] = field(default_factory=dict)
    ignored_last_ms: int = 0
    rejected: int = 0
    rejected_last_ms: int = 0


@dataclass
class LifecycleState:
    stage: str
    turn_id: Optional[str]
    event_id: Optional[str]
    seq: Optional[int]
    updated_at_ms: int


def build_file_notice(paths: List[str]) -> str:
    names = [Path(p).name for p in paths]
    if not names:
        return "📎 Generated files attached."
    if len(names) <= 3:
        plural = "s" if len(names) > 1 else ""
        return f"📎 Generated file{plural}: " + ", ".join(f"`{n}`" for n in names)
    head = ", ".join(f"`{n}`" for n in names[:3])
    return f"📎 Generated {len(names)} files: {head}, …"


def format_agent_label(agent_type: str) -> str:
    s = (agent_type or "").strip().lower()
    if s == "opencode":
        return "OpenCode"
    if s == "codex":
        return "Codex"
    return s[:1].upper() + s[1:] if s else "Agent"


class BridgeHookServer:
    def __init__(
        self,
        *,
        state: StateStore,
        messaging: MessagingClient,
        tracker: PendingMessageTracker,
        settings: BridgeSettings,
        poller: Optional[CapturePoller] = None,
        reload_channel_mappings: Optional[Callable[[], Any]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.state = state
        self.messaging = messaging
        self.tracker = tracker
        self.settings = settings
        self.poller = poller
        self.reload_channel_mappings = reload_channel_mappings or state.reload
        self._clock = clock
        self._counters: Dict[str, EventCounters] = {}
        self._lifecycle: Dict[str, LifecycleState] = {}
        self._progress_mode: Dict[str, Tuple[str, int]] = {}
        self._seen_event_ids: Dict[str, int] = {}
        self._last_seq: Dict[str, Tuple[int, int]] = {}
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self.app = self.create_app()

    # ------------------------------------------------------------------
    # app

    def create_app(self) -> FastAPI:
        app = FastAPI(title="panebridge-hook", version=__version__)

        async def read_json(request: Request) -> Dict[str, Any]:
            raw = await request.body()
            try:
                data = json.loads(raw or b"null")
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid JSON")
            if not isinstance(data, dict):
                raise HTTPException(status_code=400, detail="Invalid payload")
            return data

        @app.get("/runtime-status")
        async def runtime_status() -> JSONResponse:
            return JSONResponse(self.build_runtime_status())

        @app.post("/reload")
        async def reload() -> PlainTextResponse:
            result = self.reload_channel_mappings()
            if asyncio.iscoroutine(result):
                await result
            logger.info("channel mappings reloaded")
            return PlainTextResponse("OK")

        @app.post("/send-files")
        async def send_files(request: Request) -> PlainTextResponse:
            data = await read_json(request)
            status, message = await self.handle_send_files(data)
            if status != 200:
                raise HTTPException(status_code=status, detail=message)
            return PlainTextResponse(message)

        async def ingest(request: Request, route: str) -> PlainTextResponse:
            data = await read_json(request)
            try:
                payload = AgentEventPayload.model_validate(data)
            except ValidationError:
                raise HTTPException(status_code=400, detail="Invalid event payload")
            try:
                ok = await self.handle_agent_event(payload, route)
            except Exception:
                logger.exception("event handling failed", extra={"project": payload.project_name})
                raise HTTPException(status_code=500, detail="Internal error")
            if not ok:
                raise HTTPException(status_code=400, detail="Event not deliverable")
            return PlainTextResponse("OK")

        @app.post("/opencode-event")
        async def opencode_event(request: Request) -> PlainTextResponse:
            return await ingest(request, "opencode-event")

        @app.post("/agent-event")
        async def agent_event(request: Request) -> PlainTextResponse:
            return await ingest(request, "agent-event")

        return app

    async def start(self, host: str = "127.0.0.1") -> None:
        config = uvicorn.Config(
            self.app,
            host=host,
            port=self.settings.hook_server_port,
            log_config=None,
            access_log=False,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(), name="hook-server")
        logger.info("hook server listening on %s:%d", host, self.settings.hook_server_port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)
        self._server = None
        self._serve_task = None

    # ------------------------------------------------------------------
    # bookkeeping

    @staticmethod
    def _instance_key(project_name: str, instance_id: str) -> str:
        return f"{project_name}:{instance_id}"

    def _counters_for(self, key: str) -> EventCounters:
        c = self._counters.get(key)
        if c is None:
            c = EventCounters()
            self._counters[key] = c
        return c

    def _mark_ignored(self, key: str, event_type: str) -> None:
        c = self._counters_for(key)
        c.ignored += 1
        t = event_type or "unknown"
        c.ignored_types[t] = c.ignored_types.get(t, 0) + 1
        c.ignored_last_ms = self._clock()

    def _is_duplicate(self, scope: str, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        now = self._clock()
        for k in [k for k, at in self._seen_event_ids.items() if now - at > EVENT_ID_RETENTION_MS]:
            del self._seen_event_ids[k]
        key = f"{scope}:{event_id}"
        if key in self._seen_event_ids:
            return True
        self._seen_event_ids[key] = now
        while len(self._seen_event_ids) > MAX_EVENT_IDS:
            self._seen_event_ids.pop(next(iter(self._seen_event_ids)))
        return False

    def _is_stale_seq(self, scope: str, turn_id: Optional[str], seq: Optional[int]) -> bool:
        if seq is None or not turn_id:
            return False
        now = self._clock()
        for k in [k for k, (_, at) in self._last_seq.items() if now - at > SEQ_RETENTION_MS]:
            del self._last_seq[k]
        key = f"{scope}:{turn_id}"
        last = self._last_seq.get(key)
        if last is not None and seq <= last[0]:
            return True
        self._last_seq.pop(key, None)
        self._last_seq[key] = (seq, now)
        while len(self._last_seq) > MAX_SEQ_KEYS:
            self._last_seq.pop(next(iter(self._last_seq)))
        return False

    def _resolve_channel(self, project_name: str, inst: InstanceState) -> Optional[str]:
        pending = self.tracker.get_pending_channel(project_name, inst.agent_type, inst.instance_id)
        depth = self.tracker.get_pending_depth(project_name, inst.agent_type, inst.instance_id)
        if depth > 1:
            return inst.channel_id or pending
        return pending or inst.channel_id

    # ------------------------------------------------------------------
    # handlers

    async def handle_send_files(self, data: Dict[str, Any]) -> Tuple[int, str]:
        if not data.get("projectName"):
            return 400, "Missing projectName"
        try:
            req = SendFilesRequest.model_validate(data)
        except ValidationError:
            return 400, "Invalid payload"
        if not req.files:
            return 400, "No files provided"

        raw = self.state.get_project(req.project_name)
        if raw is None:
            return 404, "Project not found"
        project = normalize_project_state(raw)
        inst = (get_project_instance(project, req.instance_id) if req.instance_id else None) or (
            get_primary_instance_for_agent(project, req.agent_type or "opencode")
        )
        channel_id = inst.channel_id if inst is not None else None
        if not channel_id:
            return 404, "No channel found for project/agent"

        valid = self._validate_file_paths(req.files, project.project_path)
        if not valid:
            return 400, "No valid files"
        logger.info("send-files: %d file(s)", len(valid), extra={"project": req.project_name})
        await self.messaging.send_to_channel_with_files(channel_id, build_file_notice(valid), valid)
        return 200, "OK"

    @staticmethod
    def _validate_file_paths(paths: List[str], project_path: str) -> List[str]:
        if not project_path:
            return []
        root = Path(project_path).expanduser()
        out = []
        for p in paths:
            path = Path(p)
            if path.is_file() and is_within(path, root):
                out.append(str(path))
        return out

    async def handle_agent_event(self, payload: AgentEventPayload, route: str = "agent-event") -> bool:
        raw = self.state.get_project(payload.project_name)
        if raw is None:
            return False
        project = normalize_project_state(raw)
        pn = project.project_name
        inst = (get_project_instance(project, payload.instance_id) if payload.instance_id else None) or (
            get_primary_instance_for_agent(project, payload.agent_type)
        )
        if inst is None:
            return False
        agent_type = inst.agent_type
        event_type = payload.type
        turn_id = (payload.turn_id or "").strip() or None
        key = self._instance_key(pn, inst.instance_id)
        extra = {
            "project": pn,
            "instance_id": inst.instance_id,
            "agent_type": agent_type,
            "event_id": payload.event_id,
            "turn_id": turn_id,
        }

        codex_poc = agent_type == "codex" and (payload.source or "").strip().lower() == CODEX_SOURCE
        if not inst.event_hook and not codex_poc:
            self._mark_ignored(key, event_type)
            logger.info("ignoring %s (event hook disabled)", event_type or "unknown", extra=extra)
            return True

        scope = f"{pn}:{agent_type}:{inst.instance_id}"
        if self._is_duplicate(scope, payload.event_id):
            logger.info("duplicate event %s skipped", event_type, extra=extra)
            return True
        if self._is_stale_seq(scope, turn_id, payload.seq):
            c = self._counters_for(key)
            c.rejected += 1
            c.rejected_last_ms = self._clock()
            logger.info("stale seq=%s for %s rejected", payload.seq, event_type, extra=extra)
            return True

        channel_id = self._resolve_channel(pn, inst)
        if not channel_id:
            return False

        stage = LIFECYCLE_STAGE_BY_EVENT.get(event_type)
        if stage is not None:
            self._lifecycle[key] = LifecycleState(
                stage=stage, turn_id=turn_id, event_id=payload.event_id, seq=payload.seq, updated_at_ms=self._clock()
            )
        if payload.progress_mode:
            self._progress_mode[key] = (payload.progress_mode, self._clock())

        text = next((t for t in (payload.text, payload.message) if t and t.strip()), None)
        logger.info("%s %s (%d chars)", route, event_type, len(text or ""), extra=extra)

        if event_type == "session.error":
            await self._finish(pn, agent_type, inst.instance_id, turn_id, "error")
            await self.messaging.send_to_channel(
                channel_id, f"⚠️ {format_agent_label(agent_type)} session error: {text or 'unknown error'}"
            )
            return True

        if event_type == "session.cancelled":
            await self._finish(pn, agent_type, inst.instance_id, turn_id, "completed")
            suffix = f": {text.strip()}" if text else ""
            await self.messaging.send_to_channel(
                channel_id, f"ℹ️ {format_agent_label(agent_type)} session cancelled{suffix}"
            )
            return True

        if event_type == "session.progress":
            if text:
                await self._deliver_progress(pn, inst, channel_id, payload.progress_mode, text)
            return True

        if event_type in ("session.final", "session.idle"):
            try:
                if text:
                    trimmed = text.strip()
                    search_text = (payload.turn_text or "").strip() or trimmed
                    files = self._validate_file_paths(extract_file_paths(search_text), project.project_path)
                    display = strip_file_paths(trimmed, files) if files else trimmed
                    await self.send_event_output(channel_id, display)
                    if files:
                        await self.messaging.send_to_channel_with_files(channel_id, build_file_notice(files), files)
                await self._finish(pn, agent_type, inst.instance_id, turn_id, "completed")
            except Exception:
                await self._finish(pn, agent_type, inst.instance_id, turn_id, "error")
                raise
            return True

        # session.start and unknown types only update lifecycle state.
        return True

    async def _finish(self, project_name: str, agent_type: str, instance_id: str, turn_id: Optional[str], stage: str) -> None:
        if turn_id:
            if stage == "error":
                await self.tracker.mark_error_by_message_id(project_name, agent_type, turn_id, instance_id)
            else:
                await self.tracker.mark_completed_by_message_id(project_name, agent_type, turn_id, instance_id)
            return
        if stage == "error":
            await self.tracker.mark_error(project_name, agent_type, instance_id)
        else:
            await self.tracker.mark_completed(project_name, agent_type, instance_id)

    async def _deliver_progress(
        self, project_name: str, inst: InstanceState, channel_id: str, mode: Optional[str], text: str
    ) -> None:
        mode = mode or self.settings.capture_progress_output
        if mode == "off":
            return
        if mode == "thread":
            pending = self.tracker.get_pending_channel(project_name, inst.agent_type, inst.instance_id)
            # Only stream progress into a per-request thread, never the main channel.
            if not pending or pending == inst.channel_id:
                return
            channel_id = pending
        await self.send_event_output(channel_id, text)

    async def send_event_output(self, channel_id: str, text: str) -> None:
        discord = self.messaging.platform == "discord"
        if discord:
            fmt = format_discord_output(text)
            content, use_codeblock, language = fmt.text, fmt.use_codeblock, fmt.language
        else:
            content, use_codeblock, language = text, False, "text"
        if not content.strip():
            return
        if discord and len(content) >= self.settings.long_output_thread_threshold:
            await self.messaging.send_long_output(channel_id, content)
            return
        split = split_for_slack if self.messaging.platform == "slack" else split_for_discord
        for chunk in split(content):
            if not chunk.strip():
                continue
            await self.messaging.send_to_channel(
                channel_id, wrap_codeblock(chunk, language) if discord and use_codeblock else chunk
            )

    # ------------------------------------------------------------------
    # observability

    def build_runtime_status(self) -> Dict[str, Any]:
        now = self._clock()
        instances: List[Dict[str, Any]] = []
        for raw in self.state.list_projects():
            project = normalize_project_state(raw)
            for inst in list_project_instances(project):
                key = self._instance_key(project.project_name, inst.instance_id)
                entry: Dict[str, Any] = {
                    "key": key,
                    "projectName": project.project_name,
                    "instanceId": inst.instance_id,
                    "agentType": inst.agent_type,
                    "channelId": inst.channel_id,
                    "eventHook": inst.event_hook,
                }
                entry.update(self.tracker.get_runtime_snapshot(project.project_name, inst.agent_type, inst.instance_id))
                if self.poller is not None:
                    entry.update(self.poller.get_instance_snapshot(project.project_name, inst.instance_id))

                c = self._counters.get(key)
                if c is not None:
                    entry["ignoredEventCount"] = c.ignored
                    entry["ignoredEventTypes"] = dict(c.ignored_types)
                    if c.ignored_last_ms:
                        entry["ignoredLastAt"] = ms_to_iso(c.ignored_last_ms)
                    entry["rejectedEventCount"] = c.rejected
                    if c.rejected_last_ms:
                        entry["rejectedLastAt"] = ms_to_iso(c.rejected_last_ms)

                lc = self._lifecycle.get(key)
                if lc is not None:
                    age = max(0, now - lc.updated_at_ms)
                    entry.update(
                        eventLifecycleStage=lc.stage,
                        eventLifecycleTurnId=lc.turn_id,
                        eventLifecycleEventId=lc.event_id,
                        eventLifecycleSeq=lc.seq,
                        eventLifecycleUpdatedAt=ms_to_iso(lc.updated_at_ms),
                        eventLifecycleAgeMs=age,
                        eventLifecycleStale=lc.stage in ("started", "progress") and age >= LIFECYCLE_STALE_MS,
                    )

                pm = self._progress_mode.get(key)
                if pm is not None:
                    entry["eventProgressMode"] = pm[0]
                    entry["eventProgressModeAgeMs"] = max(0, now - pm[1])
                instances.append(entry)
        return {"generatedAt": utc_now_iso(), "instances": instances}
