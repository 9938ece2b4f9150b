from __future__ import annotations

import re
from typing import Any

TOKENISH = re.compile(r"(?i)(secret|token|password|passwd|key|credential)")
HEX_LONG = re.compile(r"\b[0-9a-f]{32,}\b", re.I)


def redact_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: redact_value(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(key, v) for v in value]
    if TOKENISH.search(key):
        return "[REDACTED]"
    if isinstance(value, str) and HEX_LONG.search(value):
        return "[REDACTED]"
    return value
