"""
Recurring schedule table (cron).

The table is edited read-modify-write through `crontab -l` / `crontab -`.
Entries are keyed by command: an identical entry is left alone, an entry for
the same command with another schedule is replaced, duplicates are dropped.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import CommandError
from .host import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleEntry:
    schedule: str   # five cron fields or an @-shortcut
    command: str

    def line(self) -> str:
        return f"{self.schedule} {self.command}"

    @classmethod
    def parse(cls, line: str) -> Optional["ScheduleEntry"]:
        """Parse a crontab line; comments, blanks and variable assignments yield None."""
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        if stripped.startswith("@"):
            parts = stripped.split(None, 1)
            if len(parts) < 2:
                return None
            return cls(parts[0], parts[1].strip())
        parts = stripped.split(None, 5)
        if len(parts) < 6 or "=" in parts[0]:
            return None
        return cls(" ".join(parts[:5]), parts[5].strip())


class ScheduleTable:
    """A user's crontab; root's when privileged."""

    def __init__(self, host: Host, privileged: bool = False):
        self.host = host
        self.privileged = privileged

    def read_lines(self) -> List[str]:
        result = self.host.run(["crontab", "-l"], sudo=self.privileged, check=False)
        if result.ok:
            return result.stdout.splitlines()
        if "no crontab" in (result.stderr + result.stdout).lower():
            return []
        raise CommandError(result.argv, result.returncode, result.stderr)

    def entries(self) -> List[ScheduleEntry]:
        return [e for e in (ScheduleEntry.parse(line) for line in self.read_lines()) if e]

    def ensure(self, entry: ScheduleEntry) -> bool:
        """
        Make entry present exactly once.

        Returns:
            True if the table was changed
        """
        lines = self.read_lines()
        kept: List[str] = []
        found = False
        for line in lines:
            parsed = ScheduleEntry.parse(line)
            if parsed and parsed.command == entry.command:
                if not found and parsed.schedule.split() == entry.schedule.split():
                    found = True
                    kept.append(line)
                continue  # stale schedule or duplicate
            kept.append(line)

        if found and len(kept) == len(lines):
            logger.info(f"Schedule entry already present: {entry.line()}")
            return False

        if not found:
            kept.append(entry.line())
        self.host.run(["crontab", "-"], sudo=self.privileged, input="\n".join(kept) + "\n")
        logger.info(f"Scheduled: {entry.line()}")
        return True
