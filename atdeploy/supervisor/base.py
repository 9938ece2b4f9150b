"""
Process manifest and the supervisor lifecycle contract.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import HostLayout, SupervisorKind
from ..host import Host
from ..services import SERVICES, ServiceDefinition, start_order

logger = logging.getLogger(__name__)

MEMORY_CEILING = "1G"
RESTART_DELAY_S = 10


@dataclass(frozen=True)
class ManifestEntry:
    """How one service is run by the supervisor."""
    service: ServiceDefinition
    working_directory: Path
    env_file: Path
    out_log: Path
    err_log: Path
    combined_log: Path
    restart_policy: str = "always"
    restart_delay_s: int = RESTART_DELAY_S
    memory_ceiling: str = MEMORY_CEILING

    @property
    def name(self) -> str:
        return self.service.name


@dataclass(frozen=True)
class ProcessManifest:
    """Ordered set of entries; dependencies come before their dependants."""
    entries: Tuple[ManifestEntry, ...]

    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def get(self, name: str) -> ManifestEntry:
        for entry in self.entries:
            if entry.name == name:
                return entry
        raise KeyError(f"No manifest entry for {name}")


def build_manifest(layout: HostLayout, services: Sequence[ServiceDefinition] = SERVICES) -> ProcessManifest:
    entries = []
    for service in start_order(services):
        entries.append(ManifestEntry(
            service=service,
            working_directory=layout.root,
            env_file=layout.env_file(service.name),
            out_log=layout.logs_dir / f"{service.name}-out.log",
            err_log=layout.logs_dir / f"{service.name}-error.log",
            combined_log=layout.logs_dir / f"{service.name}.log",
        ))
    return ProcessManifest(tuple(entries))


class SupervisorAdapter(ABC):
    """
    One lifecycle contract over two mutually exclusive backends.

    start() returning means the supervisor accepted the manifest; it says
    nothing about whether the services are serving traffic yet.
    """

    kind: SupervisorKind

    def __init__(self, host: Host, layout: HostLayout):
        self.host = host
        self.layout = layout

    @abstractmethod
    def manifest_paths(self, manifest: Optional[ProcessManifest] = None) -> List[Path]:
        """Files this backend's manifest occupies on disk."""

    @abstractmethod
    def render(self, manifest: ProcessManifest) -> Dict[Path, str]:
        """Render manifest file contents keyed by path."""

    @abstractmethod
    def write_manifest(self, manifest: ProcessManifest) -> None:
        pass

    @abstractmethod
    def start(self, manifest: ProcessManifest) -> None:
        pass

    @abstractmethod
    def restart(self, name: str) -> None:
        pass

    @abstractmethod
    def status(self, name: Optional[str] = None) -> str:
        pass

    @abstractmethod
    def tail_logs(self, name: str, follow: bool = False, lines: int = 100) -> Optional[str]:
        pass

    @abstractmethod
    def enable_at_boot(self) -> None:
        pass

    @abstractmethod
    def retire(self) -> bool:
        """Stop what this backend manages and remove its manifest. True if anything was removed."""

    def has_manifest(self) -> bool:
        return any(p.exists() for p in self.manifest_paths())
