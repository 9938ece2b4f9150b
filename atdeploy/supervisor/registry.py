"""
Supervisor selection.

The backend is chosen once per deployment. Activating one retires the other
first, so exactly one manifest kind is ever left on disk.
"""

import logging
from typing import Dict, List, Type

from ..config import HostLayout, SupervisorKind
from ..errors import SupervisorStartError
from ..host import Host
from .base import ProcessManifest, SupervisorAdapter
from .pm2 import Pm2Supervisor
from .systemd import SystemdSupervisor

logger = logging.getLogger(__name__)


AVAILABLE_SUPERVISORS: Dict[SupervisorKind, Type[SupervisorAdapter]] = {
    SupervisorKind.PM2: Pm2Supervisor,
    SupervisorKind.SYSTEMD: SystemdSupervisor,
}


def select_supervisor(kind: SupervisorKind, host: Host, layout: HostLayout) -> SupervisorAdapter:
    """Instantiate the adapter for kind."""
    try:
        adapter_cls = AVAILABLE_SUPERVISORS[SupervisorKind(kind)]
    except (KeyError, ValueError):
        raise SupervisorStartError(f"Unknown supervisor backend: {kind}")
    return adapter_cls(host, layout)


def manifest_kinds_on_disk(host: Host, layout: HostLayout) -> List[SupervisorKind]:
    return [kind for kind, cls in AVAILABLE_SUPERVISORS.items() if cls(host, layout).has_manifest()]


def activate(kind: SupervisorKind, host: Host, layout: HostLayout, manifest: ProcessManifest) -> SupervisorAdapter:
    """
    Make kind the deployment's only supervisor and write its manifest.

    Args:
        kind: Selected backend
        host: Host access
        layout: Host layout
        manifest: Process manifest to write

    Returns:
        The active adapter

    Raises:
        SupervisorStartError: If more or fewer than one manifest kind remains on disk
    """
    chosen = select_supervisor(kind, host, layout)
    for other_kind, cls in AVAILABLE_SUPERVISORS.items():
        if other_kind is chosen.kind:
            continue
        if cls(host, layout).retire():
            logger.info(f"Retired {other_kind.value} manifest in favour of {chosen.kind.value}")

    chosen.write_manifest(manifest)

    on_disk = manifest_kinds_on_disk(host, layout)
    if on_disk != [chosen.kind]:
        raise SupervisorStartError(
            f"Expected only a {chosen.kind.value} manifest on disk, found {[k.value for k in on_disk]}"
        )
    return chosen
