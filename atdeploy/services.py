"""
The four services of the deployment and their static conventions.

This module is the single source of truth for service names, ports, entry
points and upstream dependencies. Configuration artifacts, process manifests
and proxy routes are all derived from SERVICES.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

POSTGRES_UNIT = "postgresql.service"
REDIS_UNIT = "redis-server.service"
POSTGRES_PORT = 5432
DB_ROLE = "atproto"
PLC_DIRECTORY_URL = "https://plc.directory"


@dataclass(frozen=True)
class ServiceDefinition:
    """A long-running service managed by the supervisor."""
    name: str
    description: str
    port: int
    entry: str                          # relative to the install root
    database: Optional[str] = None
    depends_on: Tuple[str, ...] = ()    # services that must already be reachable
    daemons: Tuple[str, ...] = (POSTGRES_UNIT,)
    health_path: str = "/xrpc/_health"

    @property
    def unit_name(self) -> str:
        return f"atproto-{self.name}"

    @property
    def internal_url(self) -> str:
        return f"http://localhost:{self.port}"


SERVICES: Tuple[ServiceDefinition, ...] = (
    ServiceDefinition(
        name="pds",
        description="AT Protocol PDS Service",
        port=2583,
        entry="services/pds/index.js",
        database="pds",
        daemons=(POSTGRES_UNIT, REDIS_UNIT),
    ),
    ServiceDefinition(
        name="bsky",
        description="AT Protocol BSky AppView Service",
        port=3000,
        entry="services/bsky/api.js",
        database="bsky_appview",
        depends_on=("pds", "bsync"),
        daemons=(POSTGRES_UNIT, REDIS_UNIT),
    ),
    ServiceDefinition(
        name="ozone",
        description="AT Protocol Ozone Moderation Service",
        port=3001,
        entry="services/ozone/api.js",
        database="ozone",
        depends_on=("pds", "bsky"),
    ),
    ServiceDefinition(
        name="bsync",
        description="AT Protocol BSync Service",
        port=3002,
        entry="services/bsync/index.js",
        database="bsync",
        health_path="/_health",
    ),
)

DATABASES: Tuple[str, ...] = tuple(s.database for s in SERVICES if s.database)


def get_service(name: str) -> ServiceDefinition:
    for service in SERVICES:
        if service.name == name:
            return service
    raise KeyError(f"Unknown service: {name}")


def service_names() -> List[str]:
    return [s.name for s in SERVICES]


def start_order(services: Sequence[ServiceDefinition] = SERVICES) -> List[ServiceDefinition]:
    """
    Order services so every service comes after its dependencies.

    Ties keep declaration order.

    Raises:
        ValueError: On an unknown dependency or a dependency cycle
    """
    by_name: Dict[str, ServiceDefinition] = {s.name: s for s in services}
    for service in services:
        for dep in service.depends_on:
            if dep not in by_name:
                raise ValueError(f"{service.name} depends on unknown service {dep}")

    ordered: List[ServiceDefinition] = []
    placed = set()
    while len(ordered) < len(services):
        ready = [s for s in services if s.name not in placed and all(d in placed for d in s.depends_on)]
        if not ready:
            pending = [s.name for s in services if s.name not in placed]
            raise ValueError(f"Dependency cycle between services: {', '.join(pending)}")
        ordered.append(ready[0])
        placed.add(ready[0].name)
    return ordered
