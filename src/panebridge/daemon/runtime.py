"""Bridge runtime: wires the chat client, router, poller and hook server onto one loop."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from ..kernel.errors import SettingsError
from ..kernel.settings import BridgeSettings
from ..kernel.state import StateStore, YamlStateStore
from ..ports.im.adapters.base import MessagingClient
from ..runners.base import TerminalDriver
from ..runners.tmux import TmuxDriver
from .capture import CapturePoller
from .event_hook import LocalAgentEventHookClient
from .hook_server import BridgeHookServer
from .pending import PendingMessageTracker
from .router import MessageRouter

logger = logging.getLogger("panebridge.runtime")

KEEPALIVE_INTERVAL_S = 5.0


class BridgeRuntime:
    def __init__(
        self,
        settings: BridgeSettings,
        *,
        state: Optional[StateStore] = None,
        messaging: Optional[MessagingClient] = None,
        terminal: Optional[TerminalDriver] = None,
    ) -> None:
        self.settings = settings
        self.state = state or YamlStateStore()
        if messaging is None:
            if not settings.discord_token:
                raise SettingsError(
                    "discord_token is required (set PANEBRIDGE_DISCORD_TOKEN or discord_token in settings.yaml)"
                )
            from ..ports.im.adapters.discord import DiscordMessagingClient

            messaging = DiscordMessagingClient(settings.discord_token, self.state)
        self.messaging = messaging
        self.terminal = terminal or TmuxDriver(history_lines=settings.capture_history_lines)
        self.tracker = PendingMessageTracker(self.messaging, pending_alert_ms=settings.pending_alert_ms)
        self.events = LocalAgentEventHookClient.from_settings(settings)
        self.router = MessageRouter(
            messaging=self.messaging,
            terminal=self.terminal,
            state=self.state,
            tracker=self.tracker,
            settings=settings,
            events=self.events,
        )
        self.poller = CapturePoller(
            state=self.state,
            terminal=self.terminal,
            messaging=self.messaging,
            tracker=self.tracker,
            settings=settings,
        )
        self.hook_server = BridgeHookServer(
            state=self.state,
            messaging=self.messaging,
            tracker=self.tracker,
            settings=settings,
            poller=self.poller,
            reload_channel_mappings=self.reload_channel_mappings,
        )
        self._stop = asyncio.Event()
        self._keepalive: Optional[asyncio.Task] = None

    def reload_channel_mappings(self) -> None:
        self.state.reload()
        n = self.messaging.refresh_channel_mapping()
        logger.info("reloaded state (%d mapped channel(s))", n)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(KEEPALIVE_INTERVAL_S)
            try:
                self.tracker.check_stuck_entries()
            except Exception:
                logger.warning("pending check failed", exc_info=True)

    async def start(self) -> None:
        self.router.register()
        await self.messaging.connect()
        await self.hook_server.start()
        self.poller.start()
        self._keepalive = asyncio.create_task(self._keepalive_loop(), name="pending-keepalive")
        logger.info("bridge started (platform=%s)", self.messaging.platform)

    async def stop(self) -> None:
        if self._keepalive is not None:
            self._keepalive.cancel()
            await asyncio.gather(self._keepalive, return_exceptions=True)
            self._keepalive = None
        await self.poller.stop()
        await self.hook_server.stop()
        await self.events.aclose()
        await self.messaging.disconnect()
        logger.info("bridge stopped")

    def request_stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> int:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass
        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.stop()
        return 0
