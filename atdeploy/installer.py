"""
Idempotency-aware installation of system dependencies and the database.

Every dependency is probed before anything is installed. Present
dependencies are skipped, though their daemon is started if it is down;
running daemons are never restarted. `apt-get update` runs at most once per
Installer, and only when a package actually has to be installed.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .config import HostLayout, SupervisorKind
from .errors import CommandError, DependencyInstallError
from .host import Host
from .services import DATABASES, DB_ROLE, POSTGRES_UNIT, REDIS_UNIT

logger = logging.getLogger(__name__)

NODE_MAJOR = 20
NODESOURCE_SETUP_URL = f"https://deb.nodesource.com/setup_{NODE_MAJOR}.x"

REDIS_CONF = """# Redis configuration for production, written by atdeploy
bind 127.0.0.1
port 6379
timeout 300
tcp-keepalive 60
loglevel notice
logfile /var/log/redis/redis-server.log
databases 16
save 900 1
save 300 10
save 60 10000
stop-writes-on-bgsave-error yes
rdbcompression yes
rdbchecksum yes
dbfilename dump.rdb
dir /var/lib/redis
maxmemory 256mb
maxmemory-policy allkeys-lru
appendonly yes
appendfilename "appendonly.aof"
appendfsync everysec
no-appendfsync-on-rewrite no
auto-aof-rewrite-percentage 100
auto-aof-rewrite-min-size 64mb
"""


class Dependency:
    """A system dependency detected by its binaries."""

    name = ""
    binaries: Sequence[str] = ()
    packages: Sequence[str] = ()
    unit: Optional[str] = None

    def present(self, host: Host) -> bool:
        return all(host.command_exists(b) for b in self.binaries)

    def install(self, installer: "Installer") -> None:
        installer.apt_install(self.packages)

    def configure(self, host: Host, layout: HostLayout) -> bool:
        """Post-install configuration, fresh installs only. True if the daemon must be restarted."""
        return False


class NodeJs(Dependency):
    name = "nodejs"
    binaries = ("node", "pnpm")
    packages = ("nodejs",)

    def install(self, installer: "Installer") -> None:
        host = installer.host
        if not host.command_exists("node"):
            installer.apt_install(["ca-certificates", "curl", "gnupg"])
            host.run(["bash", "-c", f"curl -fsSL {NODESOURCE_SETUP_URL} | bash -"], sudo=True)
            # the setup script already refreshed the package index
            installer.apt_install(self.packages, update=False)
        host.run(["npm", "install", "-g", "pnpm"], sudo=True)


class PostgreSQL(Dependency):
    name = "postgresql"
    binaries = ("psql", "pg_dump")
    packages = ("postgresql", "postgresql-contrib")
    unit = POSTGRES_UNIT


class Redis(Dependency):
    name = "redis"
    binaries = ("redis-server",)
    packages = ("redis-server",)
    unit = REDIS_UNIT

    def configure(self, host: Host, layout: HostLayout) -> bool:
        host.write_file(layout.redis_conf, REDIS_CONF, mode=0o644, privileged=True)
        logger.info(f"Wrote production Redis configuration to {layout.redis_conf}")
        return True


class Pm2(Dependency):
    name = "pm2"
    binaries = ("pm2",)

    def install(self, installer: "Installer") -> None:
        installer.host.run(["npm", "install", "-g", "pm2"], sudo=True)


class Nginx(Dependency):
    name = "nginx"
    binaries = ("nginx",)
    packages = ("nginx",)
    unit = "nginx.service"

    def configure(self, host: Host, layout: HostLayout) -> bool:
        # the distribution's default site would shadow ours on port 80
        return host.remove_file(layout.nginx_enabled / "default", privileged=True)


class Certbot(Dependency):
    name = "certbot"
    binaries = ("certbot",)
    packages = ("certbot",)


class Ufw(Dependency):
    name = "ufw"
    binaries = ("ufw",)
    packages = ("ufw",)


def dependencies_for(kind: SupervisorKind) -> List[Dependency]:
    """Dependencies in installation order; PM2 only for the PM2 backend."""
    deps: List[Dependency] = [NodeJs(), PostgreSQL(), Redis()]
    if SupervisorKind(kind) is SupervisorKind.PM2:
        deps.append(Pm2())
    deps.extend([Nginx(), Certbot(), Ufw()])
    return deps


class Installer:
    def __init__(self, host: Host, layout: HostLayout):
        self.host = host
        self.layout = layout
        self._index_updated = False

    def apt_install(self, packages: Iterable[str], update: bool = True) -> None:
        packages = list(packages)
        if not packages:
            return
        if update and not self._index_updated:
            self.host.run(["apt-get", "update"], sudo=True)
        self._index_updated = True
        self.host.run(
            ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", *packages],
            sudo=True,
        )

    def ensure(self, dep: Dependency) -> bool:
        """
        Make dep present and, for daemons, running.

        Returns:
            True if dep was installed by this call

        Raises:
            DependencyInstallError: If installing, enabling or starting fails
        """
        try:
            if dep.present(self.host):
                logger.info(f"{dep.name} is already installed")
                if dep.unit:
                    self._ensure_running(dep.unit)
                return False

            logger.info(f"Installing {dep.name}...")
            dep.install(self)
            needs_restart = dep.configure(self.host, self.layout)
            if dep.unit:
                self.host.run(["systemctl", "enable", dep.unit], sudo=True)
                action = "restart" if needs_restart else "start"
                self.host.run(["systemctl", action, dep.unit], sudo=True)
        except CommandError as e:
            raise DependencyInstallError(
                f"Installing {dep.name} failed: {e}",
                hint="\n".join(e.tail(10)) or None,
            ) from e
        logger.info(f"{dep.name} installed")
        return True

    def _ensure_running(self, unit: str) -> None:
        active = self.host.run(["systemctl", "is-active", "--quiet", unit], check=False)
        if active.ok:
            return
        logger.info(f"{unit} is installed but not running; starting it")
        self.host.run(["systemctl", "enable", unit], sudo=True)
        self.host.run(["systemctl", "start", unit], sudo=True)


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class DatabaseSetup:
    """
    The shared database role and one database per service.

    Statements are fed to psql on stdin so passwords never show up in the
    process list.
    """

    def __init__(self, host: Host, role: str = DB_ROLE, databases: Sequence[str] = DATABASES):
        self.host = host
        self.role = role
        self.databases = tuple(databases)

    def _psql(self, sql: str) -> str:
        result = self.host.run(
            ["psql", "-v", "ON_ERROR_STOP=1", "-tA"],
            as_user="postgres",
            input=sql + "\n",
            cwd=Path("/"),
        )
        return result.stdout.strip()

    def role_exists(self) -> bool:
        return self._psql(f"SELECT 1 FROM pg_roles WHERE rolname = {quote_literal(self.role)};") == "1"

    def database_exists(self, name: str) -> bool:
        return self._psql(f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)};") == "1"

    def ensure_role(self, password: str) -> bool:
        """Create the role, or converge its password. True if created."""
        verb = "ALTER" if self.role_exists() else "CREATE"
        self._psql(f"{verb} ROLE {quote_ident(self.role)} WITH LOGIN PASSWORD {quote_literal(password)};")
        logger.info(f"Database role {self.role} {'updated' if verb == 'ALTER' else 'created'}")
        return verb == "CREATE"

    def ensure_database(self, name: str) -> bool:
        created = False
        if self.database_exists(name):
            logger.info(f"Database {name} already exists")
        else:
            self._psql(f"CREATE DATABASE {quote_ident(name)} OWNER {quote_ident(self.role)};")
            logger.info(f"Database {name} created")
            created = True
        self._psql(f"GRANT ALL PRIVILEGES ON DATABASE {quote_ident(name)} TO {quote_ident(self.role)};")
        return created

    def ensure(self, password: str) -> List[str]:
        """
        Converge the role and every database.

        Returns:
            Names of databases created by this call

        Raises:
            DependencyInstallError: If any statement fails
        """
        try:
            self.ensure_role(password)
            return [name for name in self.databases if self.ensure_database(name)]
        except CommandError as e:
            # the output tail may echo the statement, so it is not attached
            raise DependencyInstallError(
                f"Database setup failed (exit {e.returncode})",
                hint=f"Check 'sudo systemctl status {POSTGRES_UNIT}'",
            ) from e
