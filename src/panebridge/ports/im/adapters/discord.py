"""
Discord client for panebridge.

Uses the discord.py Gateway connection for both inbound and outbound traffic,
running on the bridge's own event loop. Channels are mapped to agent
instances from the state store; a message in a thread is routed through the
thread's parent channel.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import discord

from ....contracts.v1 import InboundMessage, MessageAttachment, MessageContext, conversation_key_for
from ....kernel.instances import list_project_instances, normalize_project_state
from ....kernel.state import StateStore
from ....util.capture_text import split_for_discord
from .base import MessageHandler, MessagingClient, StopTyping

logger = logging.getLogger("panebridge.discord")

MAX_FILES_PER_MESSAGE = 10
LONG_OUTPUT_PREVIEW_CHARS = 180
READY_TIMEOUT_S = 30.0

# (project_name, agent_type, instance_id)
ChannelRoute = Tuple[str, str, str]


def normalize_channel_name(name: str, max_length: int = 100) -> str:
    s = re.sub(r"\s+", "-", (name or "").lower())
    s = re.sub(r"[^a-z0-9_-]", "-", s)
    s = re.sub(r"-+", "-", s).strip("-_")
    s = s[:max_length].strip("-_")
    return s or "saved-channel"


def build_saved_channel_name(current: str, now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return normalize_channel_name(f"saved_{ts}_{current}")


def build_long_output_preview(text: str, max_chars: int = LONG_OUTPUT_PREVIEW_CHARS) -> str:
    compact = " ".join((text or "").split())
    if len(compact) <= max_chars:
        return compact
    return compact[: max_chars - 1] + "…"


class DiscordMessagingClient(MessagingClient):
    platform = "discord"

    def __init__(self, token: str, state: StateStore) -> None:
        self.token = token
        self.state = state
        self._handler: Optional[MessageHandler] = None
        self._routes: Dict[str, ChannelRoute] = {}
        self._typing: Dict[str, asyncio.Task] = {}
        self._runner: Optional[asyncio.Task] = None

        intents = discord.Intents.default()
        intents.message_content = True
        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            logger.info("connected as %s", self._client.user)

        @self._client.event
        async def on_message(message):
            await self._handle_message(message)

    # ------------------------------------------------------------------
    # connection

    async def connect(self) -> None:
        self.refresh_channel_mapping()
        await self._client.login(self.token)
        self._runner = asyncio.create_task(self._client.connect(), name="discord-gateway")
        await asyncio.wait_for(self._client.wait_until_ready(), timeout=READY_TIMEOUT_S)

    async def disconnect(self) -> None:
        for task in list(self._typing.values()):
            task.cancel()
        self._typing.clear()
        await self._client.close()
        if self._runner is not None:
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
        logger.info("disconnected")

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    def refresh_channel_mapping(self) -> int:
        """Rebuild channel -> instance routes from the state store."""
        routes: Dict[str, ChannelRoute] = {}
        for raw in self.state.list_projects():
            project = normalize_project_state(raw)
            for inst in list_project_instances(project):
                if inst.channel_id:
                    routes[str(inst.channel_id)] = (project.project_name, inst.agent_type, inst.instance_id)
        self._routes = routes
        logger.info("channel mapping refreshed: %d channel(s)", len(routes))
        return len(routes)

    # ------------------------------------------------------------------
    # inbound

    def _resolve_route(self, channel: Any) -> Optional[Tuple[ChannelRoute, str, Optional[str]]]:
        source_id = str(channel.id)
        direct = self._routes.get(source_id)
        if direct is not None:
            return direct, source_id, None
        if isinstance(channel, discord.Thread) and channel.parent_id is not None:
            parent_id = str(channel.parent_id)
            parent = self._routes.get(parent_id)
            if parent is not None:
                return parent, parent_id, source_id
        return None

    async def _handle_message(self, message: Any) -> None:
        if message.author.bot or self._handler is None:
            return
        resolved = self._resolve_route(message.channel)
        if resolved is None:
            return
        (project_name, agent_type, instance_id), route_channel_id, thread_id = resolved
        source_channel_id = str(message.channel.id)
        author_id = str(message.author.id)

        attachments = [
            MessageAttachment(url=a.url, filename=a.filename or "unknown", content_type=a.content_type, size=a.size)
            for a in message.attachments
        ]
        reply_to = message.reference.message_id if message.reference is not None else None
        context = MessageContext(
            platform="discord",
            source_channel_id=source_channel_id,
            route_channel_id=route_channel_id,
            author_id=author_id,
            thread_id=thread_id,
            reply_to_message_id=str(reply_to) if reply_to else None,
            conversation_key=conversation_key_for(
                platform="discord", channel_id=route_channel_id, thread_id=thread_id, author_id=author_id
            ),
        )
        msg = InboundMessage(
            agent_type=agent_type,
            content=message.content or "",
            project_name=project_name,
            channel_id=source_channel_id,
            message_id=str(message.id),
            mapped_instance_id=instance_id,
            attachments=attachments,
            context=context,
        )
        try:
            await self._handler(msg)
        except Exception:
            logger.exception(
                "message handler failed",
                extra={"project": project_name, "agent_type": agent_type, "channel_id": source_channel_id},
            )

    # ------------------------------------------------------------------
    # outbound

    async def _channel(self, channel_id: str) -> Any:
        cid = int(channel_id)
        return self._client.get_channel(cid) or await self._client.fetch_channel(cid)

    async def _send_split(self, target: Any, text: str) -> None:
        for chunk in split_for_discord(text):
            if chunk.strip():
                await target.send(chunk)

    async def send_to_channel(self, channel_id: str, text: str) -> None:
        if not (text or "").strip():
            return
        channel = await self._channel(channel_id)
        await self._send_split(channel, text)

    async def send_to_channel_with_files(self, channel_id: str, text: str, files: List[str]) -> None:
        channel = await self._channel(channel_id)
        content: Optional[str] = text or None
        for i in range(0, len(files), MAX_FILES_PER_MESSAGE):
            batch = [discord.File(p) for p in files[i : i + MAX_FILES_PER_MESSAGE]]
            await channel.send(content=content, files=batch)
            content = None

    async def send_long_output(self, channel_id: str, text: str) -> None:
        full = (text or "").strip()
        if not full:
            return
        channel = await self._channel(channel_id)
        anchor = await channel.send(
            "🧾 **Long response received**\n"
            "Full output was posted in a thread.\n"
            f"Preview: {build_long_output_preview(full)}"
        )
        try:
            thread = await anchor.create_thread(
                name=f"output-{datetime.utcnow().strftime('%H%M%S')}", auto_archive_duration=60
            )
        except discord.HTTPException:
            logger.warning("thread creation failed; posting in channel", extra={"channel_id": channel_id}, exc_info=True)
            await self._send_split(channel, full)
            return
        await self._send_split(thread, full)

    async def add_reaction_to_message(self, channel_id: str, message_id: str, emoji: str) -> None:
        channel = await self._channel(channel_id)
        message = await channel.fetch_message(int(message_id))
        await message.add_reaction(emoji)

    async def replace_own_reaction_on_message(
        self, channel_id: str, message_id: str, from_emoji: str, to_emoji: str
    ) -> None:
        channel = await self._channel(channel_id)
        message = await channel.fetch_message(int(message_id))
        if from_emoji and self._client.user is not None:
            try:
                await message.remove_reaction(from_emoji, self._client.user)
            except discord.HTTPException:
                logger.debug("reaction %s already gone", from_emoji, extra={"message_id": message_id})
        await message.add_reaction(to_emoji)

    def start_typing_indicator(self, channel_id: str) -> Optional[StopTyping]:
        if channel_id in self._typing:
            return lambda: self._stop_typing(channel_id)
        self._typing[channel_id] = asyncio.create_task(self._type_forever(channel_id), name=f"typing-{channel_id}")
        return lambda: self._stop_typing(channel_id)

    async def _type_forever(self, channel_id: str) -> None:
        try:
            channel = await self._channel(channel_id)
            async with channel.typing():
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            raise
        except discord.DiscordException:
            logger.debug("typing indicator unavailable", extra={"channel_id": channel_id}, exc_info=True)

    def _stop_typing(self, channel_id: str) -> None:
        task = self._typing.pop(channel_id, None)
        if task is not None:
            task.cancel()

    async def delete_channel(self, channel_id: str) -> bool:
        try:
            channel = await self._channel(channel_id)
            await channel.delete(reason="panebridge session closed")
        except discord.HTTPException:
            logger.warning("channel delete failed", extra={"channel_id": channel_id}, exc_info=True)
            return False
        self._routes.pop(str(channel_id), None)
        return True

    async def archive_channel(self, channel_id: str) -> Optional[str]:
        channel = await self._channel(channel_id)
        saved = build_saved_channel_name(getattr(channel, "name", "") or str(channel_id))
        await channel.edit(name=saved, reason="panebridge session saved")
        self._routes.pop(str(channel_id), None)
        return saved
