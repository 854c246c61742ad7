from __future__ import annotations

import math
from typing import Any, Optional

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def parse_bool(value: Any) -> Optional[bool]:
    """Parse a boolean-like value; None when it is not recognisable.

    Settings loaders use this to tell "unset" apart from "malformed" so a
    typo such as `PANEBRIDGE_EVENT_HOOK_ENABLED=ture` can be reported instead
    of quietly falling back to a default.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        if math.isnan(value):
            return None
        return value != 0.0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
    return None


def parse_int(value: Any) -> Optional[int]:
    """Strict integer parse: accepts ints and base-10 digit strings only."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or not value.is_integer():
            return None
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        if s.startswith("-"):
            return -int(s[1:]) if s[1:].isdigit() else None
        if s.isdigit():
            return int(s)
    return None
