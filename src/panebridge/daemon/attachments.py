from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional

import httpx

from ..contracts.v1 import MessageAttachment
from ..util.fs import atomic_write_bytes
from ..util.time import now_ms

logger = logging.getLogger("panebridge.attachments")

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024
FILES_DIRNAME = ".panebridge/files"


def _safe_filename(name: str) -> str:
    s = re.sub(r"[^A-Za-z0-9._-]+", "_", (name or "").strip()).strip("._")
    return (s or "attachment")[:120]


async def download_attachments(
    attachments: List[MessageAttachment],
    project_path: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout_s: float = 30.0,
) -> List[Path]:
    """Save chat attachments under <project>/.panebridge/files; failures are skipped."""
    if not attachments or not project_path:
        return []
    dest_dir = Path(project_path).expanduser() / FILES_DIRNAME
    owned = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
    saved: List[Path] = []
    try:
        for att in attachments:
            if att.size and att.size > MAX_ATTACHMENT_BYTES:
                logger.warning("attachment %s too large (%d bytes); skipped", att.filename, att.size)
                continue
            try:
                resp = await http.get(att.url, headers=att.auth_headers or None)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("attachment %s download failed: %s", att.filename, e)
                continue
            data = resp.content
            if len(data) > MAX_ATTACHMENT_BYTES:
                logger.warning("attachment %s too large (%d bytes); skipped", att.filename, len(data))
                continue
            path = dest_dir / f"{now_ms()}-{_safe_filename(att.filename)}"
            atomic_write_bytes(path, data)
            saved.append(path.resolve())
    finally:
        if owned:
            await http.aclose()
    return saved


def build_file_markers(paths: List[Path]) -> str:
    if not paths:
        return ""
    return "\n" + "\n".join(f"[file:{p}]" for p in paths)
