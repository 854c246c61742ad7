"""
Base class for chat platform clients.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from ....contracts.v1 import InboundMessage

MessageHandler = Callable[[InboundMessage], Awaitable[None]]
StopTyping = Callable[[], None]


class MessagingClient(ABC):
    """
    Chat primitives the bridge needs from a platform.

    Each client handles:
    - Connecting and turning platform messages into InboundMessage
    - Sending text, files and long output
    - Reactions and typing indicators on the user's message
    - Deleting or archiving a channel when its session is closed
    """

    platform: str = "unknown"

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    def on_message(self, handler: MessageHandler) -> None:
        """Register the coroutine called for every inbound message."""
        pass

    @abstractmethod
    async def send_to_channel(self, channel_id: str, text: str) -> None:
        pass

    @abstractmethod
    async def send_to_channel_with_files(self, channel_id: str, text: str, files: List[str]) -> None:
        pass

    async def send_long_output(self, channel_id: str, text: str) -> None:
        """
        Deliver output that is too long for a single message.

        Platforms with threads post a preview and put the full text in a
        thread; the default just sends it as is.
        """
        await self.send_to_channel(channel_id, text)

    @abstractmethod
    async def add_reaction_to_message(self, channel_id: str, message_id: str, emoji: str) -> None:
        pass

    @abstractmethod
    async def replace_own_reaction_on_message(
        self, channel_id: str, message_id: str, from_emoji: str, to_emoji: str
    ) -> None:
        pass

    def refresh_channel_mapping(self) -> int:
        """Re-read channel -> instance routes; returns the number mapped."""
        return 0

    def start_typing_indicator(self, channel_id: str) -> Optional[StopTyping]:
        """Start a typing indicator; returns the callable that stops it."""
        return None

    async def delete_channel(self, channel_id: str) -> bool:
        return False

    async def archive_channel(self, channel_id: str) -> Optional[str]:
        """Archive (rename) the channel; returns the new name or None if unsupported."""
        return None

    def summarize(self, text: str, max_chars: int = 160) -> str:
        t = " ".join((text or "").split())
        if len(t) <= max_chars:
            return t
        return t[: max_chars - 1] + "…"
