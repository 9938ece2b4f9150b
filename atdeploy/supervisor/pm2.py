"""
PM2 backend: a user-space parent process owns the service children.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from ..config import SupervisorKind
from ..errors import CommandError, SupervisorStartError
from .base import ManifestEntry, ProcessManifest, SupervisorAdapter

logger = logging.getLogger(__name__)


def _app(entry: ManifestEntry) -> Dict:
    return {
        "name": entry.name,
        "script": entry.service.entry,
        "cwd": str(entry.working_directory),
        "node_args": f"--env-file={entry.env_file}",
        "instances": 1,
        "autorestart": entry.restart_policy == "always",
        "restart_delay": entry.restart_delay_s * 1000,
        "watch": False,
        "max_memory_restart": entry.memory_ceiling,
        "log_file": str(entry.combined_log),
        "out_file": str(entry.out_log),
        "error_file": str(entry.err_log),
        "log_date_format": "YYYY-MM-DD HH:mm:ss Z",
        "env": {"NODE_ENV": "production"},
    }


class Pm2Supervisor(SupervisorAdapter):
    kind = SupervisorKind.PM2

    def manifest_paths(self, manifest: Optional[ProcessManifest] = None) -> List[Path]:
        return [self.layout.ecosystem_file]

    def render(self, manifest: ProcessManifest) -> Dict[Path, str]:
        body = yaml.safe_dump({"apps": [_app(e) for e in manifest.entries]}, sort_keys=False)
        return {self.layout.ecosystem_file: "# PM2 process file generated by atdeploy\n" + body}

    def write_manifest(self, manifest: ProcessManifest) -> None:
        for path, text in self.render(manifest).items():
            self.host.write_file(path, text, mode=0o644)
            logger.info(f"PM2 process file written to {path}")

    def start(self, manifest: ProcessManifest) -> None:
        try:
            self.host.run(["pm2", "startOrReload", str(self.layout.ecosystem_file)])
            self.host.run(["pm2", "save"])
        except CommandError as e:
            raise SupervisorStartError(
                f"PM2 did not accept {self.layout.ecosystem_file}: {e}",
                hint="Check 'pm2 logs' and the generated process file",
            ) from e
        logger.info(f"PM2 accepted {len(manifest.entries)} services")

    def restart(self, name: str) -> None:
        self.host.run(["pm2", "restart", name])

    def status(self, name: Optional[str] = None) -> str:
        argv = ["pm2", "describe", name] if name else ["pm2", "status"]
        return self.host.run(argv, check=False).stdout

    def tail_logs(self, name: str, follow: bool = False, lines: int = 100) -> Optional[str]:
        argv = ["pm2", "logs", name, "--lines", str(lines)]
        if not follow:
            argv.append("--nostream")
            return self.host.run(argv, check=False).stdout
        self.host.run(argv, check=False, capture=False)
        return None

    def enable_at_boot(self) -> None:
        unit = f"pm2-{self.host.user}"
        enabled = self.host.run(["systemctl", "is-enabled", "--quiet", unit], check=False)
        if enabled.ok:
            logger.info(f"{unit} already enabled at boot")
        else:
            try:
                self.host.run(
                    ["env", f"PATH={os.environ.get('PATH', '/usr/bin:/bin')}", "pm2", "startup", "systemd",
                     "-u", self.host.user, "--hp", str(self.host.home)],
                    sudo=True,
                )
            except CommandError as e:
                raise SupervisorStartError(f"Could not register PM2 at boot: {e}") from e
        self.host.run(["pm2", "save"])

    def retire(self) -> bool:
        path = self.layout.ecosystem_file
        if not path.exists():
            return False
        if self.host.command_exists("pm2"):
            self.host.run(["pm2", "delete", str(path)], check=False)
            self.host.run(["pm2", "save", "--force"], check=False)
        self.host.remove_file(path)
        logger.info(f"Removed PM2 process file {path}")
        return True
