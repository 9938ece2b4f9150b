"""
Orchestration driver: provisions the host in one fixed, fail-fast sequence.

There are no retries and no rollback. Every step converges, so re-running the
driver after fixing the reported cause is the recovery procedure. A failed
certificate issuance is the only non-fatal step failure: it is recorded as a
warning and the proxy stays in the pending state.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Type

from .backup import BackupScheduler
from .config import DeploymentConfig, HostLayout, OperatorInput, SecretBundle
from .emitter import check_consistency, render, write_artifacts
from .errors import (
    CertificateIssuanceError, CommandError, ConfigurationRenderError, DependencyInstallError,
    DeployError, PreconditionError, SupervisorStartError,
)
from .events import EventTypes, emit_event
from .firewall import FirewallConfigurator
from .host import Host
from .installer import DatabaseSetup, Installer, dependencies_for
from .probe import ProbeResult, probe_services
from .proxy import ProxyConfigurator, ProxyState
from .schedule import ScheduleTable
from .secretgen import generate_bundle, persist_config
from .services import SERVICES
from .state import create_run_dir, new_run_id
from .supervisor import activate, build_manifest

logger = logging.getLogger(__name__)


@dataclass
class Step:
    name: str
    action: Callable[[], Optional[str]]
    # taxonomy error a bare CommandError from this step is reported as
    error_cls: Type[DeployError] = DeployError


@dataclass
class RunResult:
    run_id: str
    status: str                      # completed | completed_with_warnings | failed
    warnings: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None
    probes: List[ProbeResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class Driver:
    """
    Runs every provisioning step for one deployment.

    Args:
        operator: Operator-supplied values
        layout: Host layout
        host: Host access (defaults to the local machine)
        source_dir: Checkout of the service sources to stage into the install
            root; when omitted the root must already hold them
        run_id: Journal run id (generated when omitted)
        verify: Probe services after starting them
        ssh_port: Port of the administrative SSH rule
        bundle_factory: Secret bundle source
    """

    def __init__(
        self,
        operator: OperatorInput,
        layout: HostLayout,
        host: Optional[Host] = None,
        source_dir: Optional[Path] = None,
        run_id: Optional[str] = None,
        verify: bool = False,
        ssh_port: int = 22,
        bundle_factory: Callable[[], SecretBundle] = generate_bundle,
    ):
        self.operator = operator
        self.layout = layout
        self.host = host or Host()
        self.source_dir = Path(source_dir) if source_dir else None
        self.run_id = run_id or new_run_id()
        self.verify = verify
        self.ssh_port = ssh_port
        self.bundle_factory = bundle_factory

        self.config: Optional[DeploymentConfig] = None
        self.manifest = None
        self.supervisor = None
        self.proxy: Optional[ProxyConfigurator] = None
        self.warnings: List[str] = []
        self.probes: List[ProbeResult] = []

    @property
    def home(self) -> Path:
        return self.layout.state_dir

    def _emit(self, event_type: str, data: dict) -> None:
        emit_event(self.run_id, event_type, data, home=self.home)

    def steps(self) -> List[Step]:
        steps = [
            Step("preconditions", self.check_preconditions, PreconditionError),
            Step("secrets", self.generate_secrets, PreconditionError),
            Step("dependencies", self.install_dependencies, DependencyInstallError),
            Step("database", self.setup_database, DependencyInstallError),
            Step("directories", self.create_directories, PreconditionError),
            Step("configuration", self.render_configuration, ConfigurationRenderError),
            Step("supervisor", self.setup_supervisor, SupervisorStartError),
            Step("proxy", self.configure_proxy, ConfigurationRenderError),
            Step("firewall", self.configure_firewall, PreconditionError),
            Step("certificate", self.issue_certificate, CertificateIssuanceError),
            Step("services", self.start_services, SupervisorStartError),
            Step("backups", self.register_backups, PreconditionError),
        ]
        if self.verify:
            steps.append(Step("verify", self.verify_services))
        return steps

    def run(self) -> RunResult:
        create_run_dir(self.run_id, self.home)
        self._emit(EventTypes.INIT, {
            "domain": self.operator.domain,
            "supervisor": self.operator.supervisor.value,
            "verify": self.verify,
        })
        logger.info(f"Run {self.run_id}: deploying {self.operator.domain}")

        try:
            for step in self.steps():
                self._run_step(step)
        except DeployError as e:
            logger.error(f"Step {e.step} failed: {e.message}")
            self._emit(EventTypes.DONE, {
                "status": "failed",
                "failed_step": e.step,
                "error": e.message,
                "hint": e.hint,
            })
            return RunResult(
                run_id=self.run_id,
                status="failed",
                warnings=list(self.warnings),
                failed_step=e.step,
                error=e.message,
                hint=e.hint,
                probes=list(self.probes),
            )
        except Exception as e:
            self._emit(EventTypes.ERROR, {"error": str(e)})
            raise

        status = "completed_with_warnings" if self.warnings else "completed"
        self._emit(EventTypes.DONE, {"status": status, "warnings": self.warnings})
        logger.info(f"Run {self.run_id} {status}")
        return RunResult(self.run_id, status, list(self.warnings), probes=list(self.probes))

    def _run_step(self, step: Step) -> None:
        self._emit(EventTypes.STEP_START, {"step": step.name})
        try:
            detail = step.action()
        except CommandError as e:
            error = step.error_cls(str(e), hint="\n".join(e.tail(10)) or None, step=step.name)
            self._emit(EventTypes.STEP_FAIL, {"step": step.name, "error": error.message})
            raise error from e
        except DeployError as e:
            e.step = e.step or step.name
            self._emit(EventTypes.STEP_FAIL, {"step": step.name, "error": e.message, "hint": e.hint})
            raise
        self._emit(EventTypes.STEP_OK, {"step": step.name, "detail": detail})

    # Steps

    def check_preconditions(self) -> str:
        if self.host.is_root:
            raise PreconditionError(
                "atdeploy must not be run as root",
                hint="Run as a regular user with sudo privileges",
            )
        if not self.host.command_exists("apt-get"):
            raise PreconditionError("apt-get not found; only Debian/Ubuntu hosts are supported")
        if not self.host.use_sudo:
            return "sudo not required"
        if not self.host.command_exists("sudo"):
            raise PreconditionError("sudo is required for privileged steps", hint="Install sudo and add your user to it")
        if not self.host.run(["sudo", "-n", "true"], check=False).ok:
            if not self.host.run(["sudo", "-v"], check=False, capture=False).ok:
                raise PreconditionError("sudo authentication failed")
        return "sudo available"

    def generate_secrets(self) -> str:
        bundle = self.bundle_factory()
        self.config = DeploymentConfig.from_input(self.operator, bundle)
        persist_config(self.config, self.layout.deployment_file)
        return f"{len(bundle.reveal())} secrets generated, stored in {self.layout.deployment_file}"

    def install_dependencies(self) -> str:
        installer = Installer(self.host, self.layout)
        installed = [dep.name for dep in dependencies_for(self.config.supervisor) if installer.ensure(dep)]
        return f"installed: {', '.join(installed)}" if installed else "all dependencies present"

    def setup_database(self) -> str:
        created = DatabaseSetup(self.host).ensure(self.config.db_password.get_secret_value())
        return f"created: {', '.join(created)}" if created else "all databases present"

    def create_directories(self) -> str:
        layout = self.layout
        paths = [layout.root, layout.data_dir, layout.blobs_dir, layout.logs_dir, layout.bin_dir]
        for service in SERVICES:
            paths.extend([layout.service_dir(service.name), layout.service_data_dir(service.name)])
        self.host.make_dirs(paths, privileged=True, owner=self.host.user)
        return str(layout.root)

    def render_configuration(self) -> str:
        artifacts = render(self.config, self.layout)
        check_consistency(artifacts, self.config)
        write_artifacts(artifacts, self.host)
        return f"{len(artifacts)} artifacts written"

    def setup_supervisor(self) -> str:
        self.manifest = build_manifest(self.layout)
        self.supervisor = activate(self.config.supervisor, self.host, self.layout, self.manifest)
        return f"{self.supervisor.kind.value} manifest written"

    def configure_proxy(self) -> str:
        self.proxy = ProxyConfigurator(self.host, self.layout, self.config.domain, self.config.admin_email)
        state = self.proxy.configure()
        if state is ProxyState.CERT_PENDING:
            self._emit(EventTypes.CERT_PENDING, {"domain": self.config.domain})
        return state.value

    def configure_firewall(self) -> str:
        added = FirewallConfigurator(self.host, ssh_port=self.ssh_port).converge()
        return f"added: {', '.join(r.spec for r in added)}" if added else "rules already present"

    def issue_certificate(self) -> str:
        if self.proxy.state is ProxyState.SECURED:
            self._emit(EventTypes.STEP_SKIP, {"step": "certificate", "detail": "certificate already issued"})
        else:
            try:
                self.proxy.issue_certificate()
                self._emit(EventTypes.CERT_ISSUED, {"domain": self.config.domain})
            except CertificateIssuanceError as e:
                logger.warning(f"{e.message}; continuing without HTTPS")
                self.warnings.append(e.message + (f" ({e.hint})" if e.hint else ""))
                self._emit(EventTypes.CERT_FAILED, {"domain": self.config.domain, "error": e.message})
        self.proxy.register_renewal(ScheduleTable(self.host, privileged=True))
        return self.proxy.state.value

    def stage_sources(self) -> None:
        root = self.layout.root
        if self.source_dir:
            self.host.run(["cp", "-a", f"{self.source_dir}/.", str(root)])
            logger.info(f"Staged sources from {self.source_dir}")
        elif not (root / "package.json").exists():
            raise PreconditionError(
                f"No service sources in {root}",
                hint="Pass --source pointing at a checkout of the services",
            )
        try:
            self.host.run(["pnpm", "install"], cwd=root)
            self.host.run(["pnpm", "build"], cwd=root)
        except CommandError as e:
            raise DependencyInstallError(
                f"Building the services failed: {e}",
                hint="\n".join(e.tail(10)) or None,
            ) from e

    def start_services(self) -> str:
        self.stage_sources()
        self.supervisor.start(self.manifest)
        self.supervisor.enable_at_boot()
        return f"{len(self.manifest.entries)} services handed to {self.supervisor.kind.value}"

    def register_backups(self) -> str:
        changed = BackupScheduler(self.host, self.layout, ScheduleTable(self.host)).register()
        return "backup scheduled" if changed else "backup already scheduled"

    def verify_services(self) -> str:
        self.probes = probe_services()
        for result in self.probes:
            self._emit(EventTypes.PROBE, {
                "service": result.service,
                "reachable": result.reachable,
                "status_code": result.status_code,
            })
            if not result.reachable:
                self.warnings.append(f"{result.service} not reachable at {result.url}")
        reachable = sum(1 for r in self.probes if r.reachable)
        return f"{reachable}/{len(self.probes)} services reachable"
