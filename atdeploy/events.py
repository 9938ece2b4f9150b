"""
Run journal in NDJSON format.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .redact import redact_value
from .state import get_run_dir


def emit_event(run_id: str, event_type: str, data: Dict[str, Any], home: Optional[Path] = None) -> None:
    """
    Append an event to the run's events.ndjson file.

    Payload values whose keys look like secrets are redacted before they are
    written.

    Args:
        run_id: Run ID
        event_type: Event type (e.g., "INIT", "STEP_OK", "STEP_FAIL")
        data: Event data
        home: State directory override
    """
    events_file = get_run_dir(run_id, home) / "events.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": redact_value("data", data),
    }

    with open(events_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()


def read_events(run_id: str, home: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    Read all events from a run's journal.

    Args:
        run_id: Run ID
        home: State directory override

    Returns:
        List of events
    """
    events_file = get_run_dir(run_id, home) / "events.ndjson"

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # torn last line of an aborted run

    return events


def get_last_event(run_id: str, home: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    events = read_events(run_id, home)
    return events[-1] if events else None


def get_status_from_events(run_id: str, home: Optional[Path] = None) -> str:
    """
    Determine run status from its journal.

    Returns:
        Status string
    """
    last_event = get_last_event(run_id, home)
    if not last_event:
        return "unknown"

    event_type = last_event.get("type", "")

    if event_type == EventTypes.DONE:
        return last_event.get("data", {}).get("status", "completed")

    status_map = {
        EventTypes.INIT: "running",
        EventTypes.STEP_START: "running",
        EventTypes.STEP_OK: "running",
        EventTypes.STEP_SKIP: "running",
        EventTypes.CERT_PENDING: "running",
        EventTypes.CERT_ISSUED: "running",
        EventTypes.CERT_FAILED: "running",
        EventTypes.PROBE: "running",
        EventTypes.STEP_FAIL: "failed",
        EventTypes.ERROR: "failed",
    }

    return status_map.get(event_type, "unknown")


class EventTypes:
    INIT = "INIT"
    STEP_START = "STEP_START"
    STEP_OK = "STEP_OK"
    STEP_SKIP = "STEP_SKIP"
    STEP_FAIL = "STEP_FAIL"
    # Proxy / TLS
    CERT_PENDING = "CERT_PENDING"
    CERT_ISSUED = "CERT_ISSUED"
    CERT_FAILED = "CERT_FAILED"
    # Readiness probe
    PROBE = "PROBE"
    DONE = "DONE"
    ERROR = "ERROR"
