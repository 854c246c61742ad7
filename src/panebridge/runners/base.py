from __future__ import annotations

from abc import ABC, abstractmethod


class TerminalDriver(ABC):
    """Blocking pane primitives; async callers run them via asyncio.to_thread.

    Methods raise TerminalTargetMissing when the session, window or pane is
    gone and TerminalError for any other tmux failure.
    """

    @abstractmethod
    def capture_pane_from_window(self, session: str, window: str) -> str:
        pass

    @abstractmethod
    def send_keys_to_window(self, session: str, window: str, text: str) -> None:
        """Type `text` literally and submit it with Enter."""
        pass

    @abstractmethod
    def type_keys_to_window(self, session: str, window: str, text: str) -> None:
        """Type `text` literally without submitting."""
        pass

    @abstractmethod
    def send_enter_to_window(self, session: str, window: str) -> None:
        pass

    @abstractmethod
    def send_raw_key_to_window(self, session: str, window: str, key: str) -> None:
        """Send one tmux key name (`Enter`, `Escape`, `Up`, ...)."""
        pass

    @abstractmethod
    def get_pane_current_command(self, session: str, window: str) -> str:
        pass

    @abstractmethod
    def kill_window(self, session: str, window: str) -> None:
        pass
