from __future__ import annotations


class SettingsError(ValueError):
    """Invalid configuration; the only error allowed to stop the daemon at startup."""


class TerminalError(RuntimeError):
    pass


class TerminalTargetMissing(TerminalError):
    """The tmux session, window or pane an instance points at is gone."""
