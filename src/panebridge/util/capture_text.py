from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import List, Optional

DISCORD_MAX_LEN = 1900
SLACK_MAX_LEN = 3900

_ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC ... BEL | ST
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\([A-Z]"  # charset
    r"|\x1b[=>78cDEHMNOZ]"
)
_FENCE_OPEN_RE = re.compile(r"^```[\w+-]*\s*$")
_FILE_PATH_RE = re.compile(
    r"(?i)(?:^|[\s`\"'(\[])"
    r"(/[^\s`\"')\]]+\.(?:png|jpg|jpeg|gif|webp|svg|bmp|pdf|docx|pptx|xlsx|csv|json|txt))"
    r"(?=$|[\s`\"')\].,;:!?])"
)
_CODEBLOCK_LANG_RE = re.compile(r"^[a-z0-9_+-]{1,20}$")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def clean_capture(raw: str) -> str:
    """Plain text of a pane capture: no escapes, NULs, CRs or trailing blank lines."""
    s = strip_ansi(raw or "").replace("\x00", "")
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    lines = s.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def _hard_chunks(line: str, max_len: int) -> List[str]:
    return [line[i : i + max_len] for i in range(0, len(line), max_len)] or [""]


def split_for_chat(text: str, max_len: int) -> List[str]:
    """Split on line boundaries, keeping ``` fences balanced in every chunk.

    A chunk that ends inside a fenced block is closed with ``` and the next
    chunk re-opens it with the same opener line. Lines longer than the budget
    are hard-split.
    """
    text = text or ""
    if len(text) <= max_len:
        return [text]

    # Every chunk keeps room for a closing "\n```".
    budget = max(1, max_len - 4)
    chunks: List[str] = []
    cur: List[str] = []
    open_fence: Optional[str] = None

    def flush() -> None:
        nonlocal cur
        body = "\n".join(cur)
        if open_fence is not None:
            body += "\n```"
        chunks.append(body)
        cur = [open_fence] if open_fence is not None else []

    for line in text.split("\n"):
        piece_len = budget - (len(open_fence) + 1 if open_fence is not None else 0)
        pieces = _hard_chunks(line, max(1, piece_len)) if len(line) > piece_len else [line]
        for piece in pieces:
            if cur and cur != [open_fence] and len("\n".join(cur + [piece])) > budget:
                flush()
            cur.append(piece)

        stripped = line.strip()
        if stripped.startswith("```"):
            if open_fence is None and _FENCE_OPEN_RE.match(stripped):
                open_fence = stripped
            elif open_fence is not None:
                open_fence = None

    if cur and cur != [open_fence]:
        chunks.append("\n".join(cur))
    return chunks


def split_for_discord(text: str, max_len: int = DISCORD_MAX_LEN) -> List[str]:
    return split_for_chat(text, max_len)


def split_for_slack(text: str, max_len: int = SLACK_MAX_LEN) -> List[str]:
    return split_for_chat(text, max_len)


def strip_outer_codeblock(text: str) -> str:
    t = (text or "").strip()
    if len(t) < 6 or not t.startswith("```") or not t.endswith("```"):
        return text
    first_nl = t.find("\n")
    if first_nl < 0 or not _FENCE_OPEN_RE.match(t[:first_nl]):
        return text
    inner = t[first_nl + 1 : len(t) - 3]
    inner_fences = sum(1 for ln in inner.split("\n") if ln.strip().startswith("```"))
    if inner_fences % 2:
        return text
    return inner.rstrip("\n")


@dataclass
class DiscordOutput:
    text: str
    use_codeblock: bool
    language: str


def _codeblock_language() -> str:
    raw = os.environ.get("PANEBRIDGE_OUTPUT_CODEBLOCK_LANG", "").strip().lower()
    return raw if _CODEBLOCK_LANG_RE.match(raw) else "text"


def format_discord_output(text: str) -> DiscordOutput:
    s = strip_ansi((text or "").replace("\r\n", "\n").replace("\r", "\n"))
    s = "\n".join(ln.rstrip(" \t") for ln in s.split("\n"))
    s = re.sub(r"\n{3,}", "\n\n", s).strip()
    if not s:
        return DiscordOutput(text="", use_codeblock=False, language=_codeblock_language())
    unfenced = strip_outer_codeblock(s).strip()
    return DiscordOutput(text=unfenced, use_codeblock=unfenced != s, language=_codeblock_language())


def wrap_codeblock(content: str, language: str) -> str:
    return f"```{language}\n{content}\n```"


def extract_file_paths(text: str) -> List[str]:
    seen = set()
    out: List[str] = []
    for m in _FILE_PATH_RE.finditer(text or ""):
        p = m.group(1)
        if p not in seen:
            seen.add(p)
            out.append(p)
    return out


def strip_file_paths(text: str, file_paths: List[str]) -> str:
    result = text or ""
    for p in file_paths:
        esc = re.escape(p)
        result = re.sub(r"!\[[^\]]*\]\(" + esc + r"\)", "", result)
        result = re.sub("`" + esc + "`", "", result)
        result = re.sub(esc, "", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return re.sub(r"(?m)^[ \t]+$", "", result)


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()
