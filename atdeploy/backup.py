"""
Backup job: registration with the schedule table and the job itself.

The scheduled job dumps each database, archives the data and blob
directories, compresses everything into one timestamped tarball and prunes
archives older than the retention window. Failures are written to the backup
log by the job; they never reach the provisioning driver.
"""

import logging
import os
import shlex
import shutil
import sys
import tarfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .config import DeploymentConfig, HostLayout
from .errors import BackupExecutionError, CommandError
from .host import Host
from .schedule import ScheduleEntry, ScheduleTable
from .services import DATABASES, DB_ROLE

logger = logging.getLogger(__name__)

BACKUP_SCHEDULE = "0 2 * * *"
RETENTION_DAYS = 7
ARCHIVE_PREFIX = "atproto_backup_"
ARCHIVE_SUFFIX = ".tar.gz"
STAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


@dataclass(frozen=True)
class BackupJob:
    script_path: Path
    log_path: Path
    schedule: str = BACKUP_SCHEDULE
    retention_days: int = RETENTION_DAYS

    def script_body(self, layout: HostLayout, python: str = sys.executable) -> str:
        # cron starts jobs with a bare environment; pin the layout the job must load
        environment = {
            "ATDEPLOY_HOME": layout.state_dir,
            "ATDEPLOY_ROOT": layout.root,
            "ATDEPLOY_BACKUP_DIR": layout.backup_dir,
        }
        return "\n".join([
            "#!/bin/sh",
            "# atproto backup job, installed by atdeploy",
            *(f"export {name}={shlex.quote(str(value))}" for name, value in environment.items()),
            f"exec {shlex.quote(python)} -m atdeploy backup run --retention-days {self.retention_days}"
            f" >> {shlex.quote(str(self.log_path))} 2>&1",
            "",
        ])

    def schedule_entry(self) -> ScheduleEntry:
        return ScheduleEntry(self.schedule, str(self.script_path))


def backup_job_for(layout: HostLayout) -> BackupJob:
    return BackupJob(
        script_path=layout.bin_dir / "atproto-backup",
        log_path=layout.logs_dir / "backup.log",
    )


class BackupScheduler:
    def __init__(self, host: Host, layout: HostLayout, table: ScheduleTable):
        self.host = host
        self.layout = layout
        self.table = table

    def register(self, job: Optional[BackupJob] = None) -> bool:
        """
        Install the job script and its schedule entry.

        Returns:
            True if the schedule table changed
        """
        job = job or backup_job_for(self.layout)
        self.host.make_dirs([self.layout.backup_dir], privileged=True, owner=self.host.user)
        self.host.write_file(job.script_path, job.script_body(self.layout), mode=0o755)
        return self.table.ensure(job.schedule_entry())


def archive_path(backup_dir: Path, stamp: str) -> Path:
    return backup_dir / f"{ARCHIVE_PREFIX}{stamp}{ARCHIVE_SUFFIX}"


def claim_stamp(backup_dir: Path, now: datetime) -> Tuple[str, Path]:
    """
    Reserve a timestamp no other run can take.

    The staging directory is created with mkdir, which fails if another
    trigger in the same tick already holds the name; the stamp is then
    suffixed until it is free.

    Returns:
        (stamp, staging directory)
    """
    backup_dir.mkdir(parents=True, exist_ok=True)
    base = now.strftime(STAMP_FORMAT)
    stamp, n = base, 1
    while True:
        staging = backup_dir / f".staging_{stamp}"
        if not archive_path(backup_dir, stamp).exists():
            try:
                staging.mkdir(mode=0o700)
                return stamp, staging
            except FileExistsError:
                pass
        stamp = f"{base}_{n}"
        n += 1


def prune(
    backup_dir: Path,
    retention_days: int = RETENTION_DAYS,
    now: Optional[datetime] = None,
    keep: Iterable[Path] = (),
) -> List[Path]:
    """
    Delete archives whose modification time is older than the window.

    Args:
        backup_dir: Directory holding the archives
        retention_days: Window length in days
        now: Reference time (defaults to now)
        keep: Archives never to delete, e.g. the one just produced

    Returns:
        Removed paths
    """
    now = now or datetime.now()
    cutoff = now - timedelta(days=retention_days)
    keep = {Path(p).resolve() for p in keep}
    removed = []
    for path in sorted(Path(backup_dir).glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}")):
        if path.resolve() in keep:
            continue
        if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
            path.unlink()
            removed.append(path)
            logger.info(f"Pruned {path.name}")
    return removed


def run_backup(
    config: DeploymentConfig,
    layout: HostLayout,
    host: Host,
    now: Optional[datetime] = None,
    retention_days: int = RETENTION_DAYS,
) -> Path:
    """
    Produce one backup archive and prune old ones.

    Returns:
        Path of the archive written

    Raises:
        BackupExecutionError: If any stage fails
    """
    now = now or datetime.now()
    backup_dir = layout.backup_dir
    stamp, staging = claim_stamp(backup_dir, now)
    archive = archive_path(backup_dir, stamp)
    partial = archive.with_name(f".{archive.name}.partial")

    try:
        for database in DATABASES:
            dump = staging / f"{database}_{stamp}.sql"
            host.run(
                ["pg_dump", "-h", "localhost", "-U", DB_ROLE, "-f", str(dump), database],
                env={"PGPASSWORD": config.db_password.get_secret_value()},
            )
            logger.info(f"Dumped {database}")

        with tarfile.open(partial, "w:gz") as tar:
            tar.add(staging, arcname=stamp)
            for directory in (layout.data_dir, layout.blobs_dir):
                if directory.exists():
                    tar.add(directory, arcname=f"{stamp}/{directory.name}")
        os.replace(partial, archive)
    except (CommandError, OSError, tarfile.TarError) as e:
        if partial.exists():
            partial.unlink()
        raise BackupExecutionError(f"Backup {stamp} failed: {e}") from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    logger.info(f"Backup completed: {archive.name}")
    prune(backup_dir, retention_days, now=now, keep=[archive])
    return archive
