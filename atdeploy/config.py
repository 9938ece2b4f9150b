"""
Deployment configuration: operator input, generated secrets and host layout.

DeploymentConfig is created once per run and is immutable afterwards. Secret
material is held as pydantic SecretStr so it never shows up in reprs, log
lines or tracebacks.
"""

import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator

from .state import get_atdeploy_home


class SupervisorKind(str, Enum):
    """Process supervisor backends. Exactly one is active per deployment."""
    PM2 = "pm2"
    SYSTEMD = "systemd"


class OperatorInput(BaseModel):
    """Values the operator supplies at the start of a run."""
    model_config = ConfigDict(frozen=True)

    domain: str
    admin_email: str
    db_password: SecretStr
    supervisor: SupervisorKind = SupervisorKind.PM2

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        value = value.strip().lower().rstrip(".")
        if not value:
            raise ValueError("domain must not be empty")
        if "/" in value or ":" in value or " " in value:
            raise ValueError(f"domain must be a bare hostname, got {value!r}")
        return value

    @field_validator("admin_email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("admin email must not be empty")
        return value

    @field_validator("db_password")
    @classmethod
    def _check_password(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("database password must not be empty")
        return value


class SecretBundle(BaseModel):
    """Key material generated for one run."""
    model_config = ConfigDict(frozen=True)

    repo_signing_key: SecretStr       # 256-bit
    plc_rotation_key: SecretStr       # 256-bit
    dpop_secret: SecretStr            # 256-bit
    jwt_secret: SecretStr             # 256-bit
    pds_admin_password: SecretStr     # 128-bit
    ozone_admin_password: SecretStr   # 128-bit
    ozone_signing_key: SecretStr      # 256-bit

    def reveal(self) -> Dict[str, str]:
        return {name: getattr(self, name).get_secret_value() for name in type(self).model_fields}


class DeploymentConfig(BaseModel):
    """The single value set every component renders from."""
    model_config = ConfigDict(frozen=True)

    domain: str
    admin_email: str
    db_password: SecretStr
    secrets: SecretBundle
    supervisor: SupervisorKind = SupervisorKind.PM2

    @classmethod
    def from_input(cls, operator: OperatorInput, bundle: SecretBundle) -> "DeploymentConfig":
        return cls(
            domain=operator.domain,
            admin_email=operator.admin_email,
            db_password=operator.db_password,
            secrets=bundle,
            supervisor=operator.supervisor,
        )

    def to_persisted(self) -> Dict[str, Any]:
        """Plain-text form for the owner-only deployment file."""
        return {
            "domain": self.domain,
            "admin_email": self.admin_email,
            "db_password": self.db_password.get_secret_value(),
            "supervisor": self.supervisor.value,
            "secrets": self.secrets.reveal(),
        }


@dataclass(frozen=True)
class HostLayout:
    """Every filesystem location a run touches."""
    root: Path = Path("/opt/atproto")
    state_dir: Path = Path("/var/lib/atdeploy")
    systemd_dir: Path = Path("/etc/systemd/system")
    nginx_available: Path = Path("/etc/nginx/sites-available")
    nginx_enabled: Path = Path("/etc/nginx/sites-enabled")
    acme_webroot: Path = Path("/var/www/certbot")
    letsencrypt_live: Path = Path("/etc/letsencrypt/live")
    redis_conf: Path = Path("/etc/redis/redis.conf")
    backup_dir: Path = Path("/backup/atproto")

    site_name = "atproto"

    @classmethod
    def under(cls, prefix: Path) -> "HostLayout":
        """Rebase every absolute path under prefix."""
        prefix = Path(prefix)
        defaults = cls()
        return replace(defaults, **{
            f.name: prefix / Path(getattr(defaults, f.name)).relative_to("/")
            for f in fields(cls)
        })

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def blobs_dir(self) -> Path:
        return self.root / "blobs"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def ecosystem_file(self) -> Path:
        return self.root / "ecosystem.config.yml"

    @property
    def deployment_file(self) -> Path:
        return self.state_dir / "deployment.json"

    @property
    def proxy_state_file(self) -> Path:
        return self.state_dir / "proxy.json"

    @property
    def site_file(self) -> Path:
        return self.nginx_available / self.site_name

    @property
    def site_link(self) -> Path:
        return self.nginx_enabled / self.site_name

    def service_dir(self, name: str) -> Path:
        return self.root / name

    def service_data_dir(self, name: str) -> Path:
        return self.data_dir / name

    def env_file(self, name: str) -> Path:
        return self.service_dir(name) / ".env"

    def cert_path(self, domain: str) -> Path:
        return self.letsencrypt_live / domain / "fullchain.pem"

    def key_path(self, domain: str) -> Path:
        return self.letsencrypt_live / domain / "privkey.pem"


def load_layout() -> HostLayout:
    """
    Build the host layout, honouring environment overrides.

    ATDEPLOY_ROOT moves the install root, ATDEPLOY_HOME the state directory
    and ATDEPLOY_BACKUP_DIR the backup target.
    """
    layout = HostLayout(state_dir=get_atdeploy_home())
    overrides = {}
    if os.environ.get("ATDEPLOY_ROOT"):
        overrides["root"] = Path(os.environ["ATDEPLOY_ROOT"])
    if os.environ.get("ATDEPLOY_BACKUP_DIR"):
        overrides["backup_dir"] = Path(os.environ["ATDEPLOY_BACKUP_DIR"])
    return replace(layout, **overrides) if overrides else layout
