"""
State management for provisioning runs.

The state home holds the persisted deployment file, the proxy state file and
one directory per run with its event journal.
"""

import json
import os
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

# r-<date>-<time>-<hex>; sorts by start time
RUN_ID_PATTERN = re.compile(r"r-\d{8}-\d{6}-[0-9a-f]{6}")


def new_run_id(now: Optional[datetime] = None) -> str:
    """Stamp a provisioning run with its start time and a random suffix."""
    now = now or datetime.now()
    return f"r-{now:%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"


def is_valid_run_id(run_id: str) -> bool:
    return RUN_ID_PATTERN.fullmatch(run_id) is not None


def get_atdeploy_home() -> Path:
    """
    Get the atdeploy state directory.

    Returns:
        Path: State directory (ATDEPLOY_HOME, default ~/.atdeploy)
    """
    home = os.environ.get("ATDEPLOY_HOME") or str(Path.home() / ".atdeploy")
    return Path(home).resolve()


def get_run_dir(run_id: str, home: Optional[Path] = None) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID
        home: State directory override

    Returns:
        Path: Run directory

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return (home or get_atdeploy_home()) / "runs" / run_id


def create_run_dir(run_id: str, home: Optional[Path] = None) -> Path:
    """Create the run directory (owner-only) and return its path."""
    run_dir = get_run_dir(run_id, home)
    run_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(run_dir, 0o700)
    return run_dir


def list_runs(home: Optional[Path] = None) -> List[str]:
    """
    List all run IDs, most recent first.
    """
    runs_dir = (home or get_atdeploy_home()) / "runs"

    if not runs_dir.exists():
        return []

    runs = [item.name for item in runs_dir.iterdir() if item.is_dir() and is_valid_run_id(item.name)]
    return sorted(runs, reverse=True)


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON state file, or None when it does not exist."""
    if not path.exists():
        return None

    with open(path, "r") as f:
        return json.load(f)
