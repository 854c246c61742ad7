"""
Chat command parser for panebridge.

Recognises the commands handled by the bridge itself instead of the agent:
- /enter, /tab, /esc, /escape, /up, /down [count]  (raw key injection)
- /q   close the agent session and delete the channel
- /qw  close the agent session and keep the channel under a saved name
- /retry  re-send the last prompt delivered to the instance
- /health, /snapshot  report the instance's state or the tail of its pane

Everything else is a regular prompt.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

MAX_MESSAGE_CHARS = 10000
MAX_KEY_REPEAT = 20

KEY_USAGE = "`/enter [count]`, `/tab [count]`, `/esc [count]`, `/up [count]`, `/down [count]`"

_KEY_SHORTCUTS = {
    "/enter": "Enter",
    "/tab": "Tab",
    "/esc": "Escape",
    "/escape": "Escape",
    "/up": "Up",
    "/down": "Down",
}
_LEGACY_BANG = {"!enter", "!tab", "!esc", "!escape", "!up", "!down", "!key", "!keys"}
# C0 controls other than tab/newline/CR, plus DEL.
_INVALID_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class CommandType(str, Enum):
    KEY = "key"
    CLOSE = "close"
    CLOSE_SAVE = "close_save"
    RETRY = "retry"
    HEALTH = "health"
    SNAPSHOT = "snapshot"
    INVALID = "invalid"
    MESSAGE = "message"


_UTILITY_COMMANDS = {
    "/retry": CommandType.RETRY,
    "/health": CommandType.HEALTH,
    "/snapshot": CommandType.SNAPSHOT,
}


@dataclass
class ParsedCommand:
    """Result of parsing a chat message."""

    type: CommandType
    text: str
    key_token: str = ""
    repeat: int = 1
    error: str = ""


def parse_key_command(text: str) -> Optional[ParsedCommand]:
    """Parse a key-injection command; None when the text is not one."""
    parts = (text or "").strip().split()
    if not parts:
        return None
    token = parts[0].lower()

    if token in _LEGACY_BANG:
        return ParsedCommand(
            type=CommandType.INVALID,
            text=text,
            error=f"⚠️ `!` key commands were removed. Use slash commands: {KEY_USAGE}",
        )
    key = _KEY_SHORTCUTS.get(token)
    if key is None:
        return None
    if len(parts) > 2:
        return ParsedCommand(type=CommandType.INVALID, text=text, error=f"⚠️ Too many arguments. Usage: {KEY_USAGE}")

    repeat = 1
    if len(parts) == 2:
        if not re.fullmatch(r"\d+", parts[1]):
            return ParsedCommand(
                type=CommandType.INVALID, text=text, error=f"⚠️ Count must be a number between 1 and {MAX_KEY_REPEAT}."
            )
        repeat = int(parts[1])
        if repeat < 1 or repeat > MAX_KEY_REPEAT:
            return ParsedCommand(
                type=CommandType.INVALID, text=text, error=f"⚠️ Count must be between 1 and {MAX_KEY_REPEAT}."
            )
    return ParsedCommand(type=CommandType.KEY, text=text, key_token=key, repeat=repeat)


def parse_message(text: str) -> ParsedCommand:
    """
    Parse a chat message into a bridge command or a regular prompt.

    Examples:
        "/q" -> CLOSE
        "/Retry" -> RETRY
        "/tab 3" -> KEY (Tab x3)
        "!enter" -> INVALID (legacy form)
        "fix the tests" -> MESSAGE
    """
    stripped = (text or "").strip()
    lowered = stripped.lower()
    if lowered == "/q":
        return ParsedCommand(type=CommandType.CLOSE, text=stripped)
    if lowered == "/qw":
        return ParsedCommand(type=CommandType.CLOSE_SAVE, text=stripped)
    utility = _UTILITY_COMMANDS.get(lowered)
    if utility is not None:
        return ParsedCommand(type=utility, text=stripped)
    key = parse_key_command(stripped)
    if key is not None:
        return key
    return ParsedCommand(type=CommandType.MESSAGE, text=text or "")


def sanitize_input(text: str) -> Optional[str]:
    """Prompt text safe to type into a pane, or None if it must be rejected."""
    if text is None:
        return None
    if not text.strip():
        return None
    if len(text) > MAX_MESSAGE_CHARS:
        return None
    if _INVALID_CHARS_RE.search(text):
        return None
    return text
