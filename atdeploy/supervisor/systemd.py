from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..config import SupervisorKind
from ..errors import CommandError, SupervisorStartError
from ..services import SERVICES, get_service
from .base import ManifestEntry, ProcessManifest, SupervisorAdapter

logger = logging.getLogger(__name__)

NODE_BIN = "/usr/bin/node"


def generate_systemd_unit(entry: ManifestEntry, user: str) -> str:
    upstream = [f"{get_service(dep).unit_name}.service" for dep in entry.service.depends_on]
    after = " ".join(["network-online.target", *entry.service.daemons, *upstream])
    wants = " ".join(["network-online.target", *upstream])
    return f"""
[Unit]
Description={entry.service.description}
After={after}
Wants={wants}

[Service]
Type=simple
User={user}
WorkingDirectory={entry.working_directory}
EnvironmentFile={entry.env_file}
Environment=NODE_ENV=production
ExecStart={NODE_BIN} --enable-source-maps {entry.service.entry}
Restart={entry.restart_policy}
RestartSec={entry.restart_delay_s}
MemoryMax={entry.memory_ceiling}
StandardOutput=journal
StandardError=journal
SyslogIdentifier={entry.service.unit_name}

[Install]
WantedBy=multi-user.target
""".lstrip()


class SystemdSupervisor(SupervisorAdapter):
    kind = SupervisorKind.SYSTEMD

    def _unit_path(self, name: str) -> Path:
        return self.layout.systemd_dir / f"{get_service(name).unit_name}.service"

    def _units(self, names: Optional[List[str]] = None) -> List[str]:
        names = names or [s.name for s in SERVICES]
        return [get_service(n).unit_name for n in names]

    def manifest_paths(self, manifest: Optional[ProcessManifest] = None) -> List[Path]:
        names = manifest.names() if manifest else [s.name for s in SERVICES]
        return [self._unit_path(n) for n in names]

    def render(self, manifest: ProcessManifest) -> Dict[Path, str]:
        return {self._unit_path(e.name): generate_systemd_unit(e, self.host.user) for e in manifest.entries}

    def write_manifest(self, manifest: ProcessManifest) -> None:
        for path, text in self.render(manifest).items():
            self.host.write_file(path, text, mode=0o644, privileged=True)
            logger.info(f"Unit written to {path}")
        self.host.run(["systemctl", "daemon-reload"], sudo=True)

    def start(self, manifest: ProcessManifest) -> None:
        # restart starts stopped units and picks up re-rendered configuration
        try:
            self.host.run(["systemctl", "restart", *self._units(manifest.names())], sudo=True)
        except CommandError as e:
            raise SupervisorStartError(
                f"systemd did not start the services: {e}",
                hint="Inspect 'journalctl -u atproto-*' for the failing unit",
            ) from e
        logger.info(f"systemd accepted {len(manifest.entries)} units")

    def restart(self, name: str) -> None:
        self.host.run(["systemctl", "restart", get_service(name).unit_name], sudo=True)

    def status(self, name: Optional[str] = None) -> str:
        units = self._units([name] if name else None)
        return self.host.run(["systemctl", "status", "--no-pager", *units], check=False).stdout

    def tail_logs(self, name: str, follow: bool = False, lines: int = 100) -> Optional[str]:
        argv = ["journalctl", "-u", get_service(name).unit_name, "-n", str(lines), "--no-pager"]
        if not follow:
            return self.host.run(argv, sudo=True, check=False).stdout
        self.host.run([*argv, "-f"], sudo=True, check=False, capture=False)
        return None

    def enable_at_boot(self) -> None:
        try:
            self.host.run(["systemctl", "enable", *self._units()], sudo=True)
        except CommandError as e:
            raise SupervisorStartError(f"Could not enable units at boot: {e}") from e

    def retire(self) -> bool:
        present = [p for p in self.manifest_paths() if p.exists()]
        if not present:
            return False
        for path in present:
            self.host.run(["systemctl", "disable", "--now", path.stem], sudo=True, check=False)
            self.host.remove_file(path, privileged=True)
            logger.info(f"Removed unit {path}")
        self.host.run(["systemctl", "daemon-reload"], sudo=True)
        return True
