"""Bridge settings.

Settings come from `PANEBRIDGE_*` environment variables, then
~/.panebridge/settings.yaml, then defaults. Every knob is range-checked at
load time; a malformed or out-of-range value raises SettingsError instead of
being clamped, so a typo in a deployment is visible at startup.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.conv import parse_bool, parse_int
from .errors import SettingsError

PROGRESS_OUTPUT_MODES = ("off", "thread", "channel")

# field -> (min, max)
INT_RANGES: Dict[str, Tuple[int, int]] = {
    "capture_poll_ms": (250, 60000),
    "capture_pending_quiet_polls": (1, 20),
    "capture_pending_initial_quiet_polls_codex": (0, 20),
    "capture_stale_alert_ms": (1000, 3600000),
    "capture_prompt_echo_max_polls": (1, 20),
    "capture_history_lines": (300, 4000),
    "long_output_thread_threshold": (1200, 20000),
    "hook_server_port": (1, 65535),
    "event_hook_timeout_ms": (200, 20000),
    "event_hook_retry_max": (0, 10),
    "event_hook_retry_base_ms": (50, 5000),
    "event_hook_retry_max_delay_ms": (100, 30000),
    "submit_delay_ms": (0, 5000),
    "pending_alert_ms": (5000, 3600000),
    "snapshot_tail_lines": (1, 500),
}


@dataclass
class BridgeSettings:
    capture_poll_ms: int = 3000
    capture_pending_quiet_polls: int = 2
    capture_pending_initial_quiet_polls_codex: int = 12
    capture_codex_final_only: bool = False
    capture_stale_alert_ms: int = 90000
    capture_filter_prompt_echo: bool = True
    capture_prompt_echo_max_polls: int = 3
    capture_history_lines: int = 1000
    capture_progress_output: str = "channel"
    long_output_thread_threshold: int = 2000

    hook_server_port: int = 18470
    event_hook_enabled: bool = False
    event_hook_timeout_ms: int = 1500
    event_hook_retry_max: int = 3
    event_hook_retry_base_ms: int = 250
    event_hook_retry_max_delay_ms: int = 5000

    submit_delay_ms: int = 75
    pending_alert_ms: int = 45000
    snapshot_tail_lines: int = 30

    log_level: str = "INFO"
    discord_token: str = ""
    discord_channel_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out.get("discord_token"):
            out["discord_token"] = "***"
        return out


def env_key(name: str) -> str:
    return "PANEBRIDGE_" + name.upper()


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def _load_doc(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise SettingsError(f"{path}: invalid YAML: {e}") from e
    if not isinstance(doc, dict):
        raise SettingsError(f"{path}: expected a mapping at top level")
    return doc


def _resolve(name: str, default: Any, raw: Any, source: str) -> Any:
    if isinstance(default, bool):
        b = parse_bool(raw)
        if b is None:
            raise SettingsError(f"{source} must be boolean-like (true/false/1/0) (received: {raw!r})")
        return b
    if isinstance(default, int):
        lo, hi = INT_RANGES[name]
        n = parse_int(raw)
        if n is None or n < lo or n > hi:
            raise SettingsError(f"{source} must be an integer between {lo} and {hi} (received: {raw!r})")
        return n
    s = str(raw).strip()
    if name == "capture_progress_output":
        s = s.lower()
        if s not in PROGRESS_OUTPUT_MODES:
            raise SettingsError(f"{source} must be one of {'|'.join(PROGRESS_OUTPUT_MODES)} (received: {raw!r})")
    return s


def load_settings(
    *,
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BridgeSettings:
    """Load and validate settings. Raises SettingsError on any invalid value."""
    doc = _load_doc(path or _settings_path())
    environ = os.environ if env is None else env
    defaults = BridgeSettings()
    values: Dict[str, Any] = {}
    for f in fields(BridgeSettings):
        default = getattr(defaults, f.name)
        ek = env_key(f.name)
        raw_env = environ.get(ek)
        if raw_env is not None and str(raw_env).strip() != "":
            values[f.name] = _resolve(f.name, default, raw_env, ek)
        elif doc.get(f.name) is not None:
            values[f.name] = _resolve(f.name, default, doc[f.name], f"settings.yaml:{f.name}")
    unknown = sorted(k for k in doc if k not in {f.name for f in fields(BridgeSettings)})
    if unknown:
        raise SettingsError(f"settings.yaml: unknown keys: {', '.join(unknown)}")
    return BridgeSettings(**values)

