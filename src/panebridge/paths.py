from __future__ import annotations

import os
from pathlib import Path


def panebridge_home() -> Path:
    env = os.environ.get("PANEBRIDGE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".panebridge").resolve()


def ensure_home() -> Path:
    home = panebridge_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
