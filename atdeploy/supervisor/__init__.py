"""
Process supervisor adapters: PM2 or systemd units, never both.
"""

from .base import ManifestEntry, ProcessManifest, SupervisorAdapter, build_manifest
from .registry import activate, manifest_kinds_on_disk, select_supervisor

__all__ = [
    "ManifestEntry",
    "ProcessManifest",
    "SupervisorAdapter",
    "build_manifest",
    "activate",
    "manifest_kinds_on_disk",
    "select_supervisor",
]
