from __future__ import annotations

import os
import re
import subprocess
import tempfile
import time
from typing import List, Tuple

from ..kernel.errors import TerminalError, TerminalTargetMissing
from .base import TerminalDriver

_MISSING_TARGET_RE = re.compile(
    r"can't find (?:session|window|pane)|no such (?:session|window|pane)|unknown target|no server running",
    re.IGNORECASE,
)


def _run_tmux(args: List[str], *, timeout_s: float = 3.0) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(
            ["tmux", *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        return int(p.returncode), (p.stdout or ""), (p.stderr or "")
    except subprocess.TimeoutExpired:
        return 124, "", "tmux timeout"
    except OSError as e:
        return 1, "", str(e)


def pane_target(session: str, window: str) -> str:
    return f"{session}:{window}.0"


def is_missing_target_error(message: str) -> bool:
    return bool(_MISSING_TARGET_RE.search(message or ""))


class TmuxDriver(TerminalDriver):
    def __init__(self, *, history_lines: int = 1000, timeout_s: float = 3.0) -> None:
        self.history_lines = int(history_lines)
        self.timeout_s = float(timeout_s)

    def _tmux(self, args: List[str]) -> str:
        code, out, err = _run_tmux(args, timeout_s=self.timeout_s)
        if code != 0:
            msg = (err or "").strip() or f"tmux {args[0]} exited {code}"
            if is_missing_target_error(msg):
                raise TerminalTargetMissing(msg)
            raise TerminalError(msg)
        return out

    def _leave_copy_mode(self, pane: str) -> None:
        out = self._tmux(["display-message", "-p", "-t", pane, "#{pane_in_mode}"])
        if out.strip() in ("1", "on", "yes", "true"):
            self._tmux(["send-keys", "-t", pane, "-X", "cancel"])

    def capture_pane_from_window(self, session: str, window: str) -> str:
        return self._tmux(
            ["capture-pane", "-p", "-J", "-t", pane_target(session, window), "-S", f"-{self.history_lines}"]
        )

    def type_keys_to_window(self, session: str, window: str, text: str) -> None:
        pane = pane_target(session, window)
        self._leave_copy_mode(pane)
        if "\n" not in text:
            self._tmux(["send-keys", "-t", pane, "-l", text])
            return
        # Multi-line prompts go through a paste buffer so newlines are not submitted early.
        with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8") as f:
            f.write(text)
            fname = f.name
        buf = f"panebridge-{int(time.time() * 1000)}"
        try:
            self._tmux(["load-buffer", "-b", buf, fname])
            self._tmux(["paste-buffer", "-p", "-d", "-t", pane, "-b", buf])
        finally:
            try:
                os.unlink(fname)
            except OSError:
                pass

    def send_enter_to_window(self, session: str, window: str) -> None:
        self._tmux(["send-keys", "-t", pane_target(session, window), "Enter"])

    def send_keys_to_window(self, session: str, window: str, text: str) -> None:
        self.type_keys_to_window(session, window, text)
        self.send_enter_to_window(session, window)

    def send_raw_key_to_window(self, session: str, window: str, key: str) -> None:
        self._tmux(["send-keys", "-t", pane_target(session, window), key])

    def get_pane_current_command(self, session: str, window: str) -> str:
        out = self._tmux(["display-message", "-p", "-t", pane_target(session, window), "#{pane_current_command}"])
        return out.strip()

    def kill_window(self, session: str, window: str) -> None:
        self._tmux(["kill-window", "-t", f"{session}:{window}"])
