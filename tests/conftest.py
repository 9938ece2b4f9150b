"""
Shared fixtures: a fake command runner and fake host daemons.

Tests run every component unprivileged under a tmp_path layout; commands are
recorded by FakeRunner and answered by the small simulators below.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from atdeploy.config import DeploymentConfig, HostLayout, OperatorInput, SupervisorKind
from atdeploy.errors import CommandError
from atdeploy.host import CommandResult, Host
from atdeploy.secretgen import generate_bundle

# binaries each apt package provides
APT_PROVIDES = {
    "nodejs": ["node", "npm"],
    "postgresql": ["psql", "pg_dump"],
    "redis-server": ["redis-server"],
    "nginx": ["nginx"],
    "certbot": ["certbot"],
    "ufw": ["ufw"],
    "curl": ["curl"],
}


@dataclass
class Call:
    argv: List[str]
    input: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    cwd: Optional[Path] = None


class FakeRunner:
    """Records commands; handlers registered by argv prefix script the results."""

    def __init__(self, binaries=()):
        self.calls: List[Call] = []
        self.binaries = set(binaries)
        self.handlers = []

    def on(self, *prefix, returncode: int = 0, stdout: str = "", stderr: str = "",
           handler: Optional[Callable] = None) -> None:
        if handler is None:
            def handler(argv, call):
                return CommandResult(argv, returncode, stdout, stderr)
        self.handlers.append((list(prefix), handler))

    def run(self, argv, *, check=True, input=None, env=None, capture=True, cwd=None):
        argv = list(argv)
        call = Call(argv, input, env, cwd)
        self.calls.append(call)
        result = CommandResult(argv, 0)
        for prefix, handler in reversed(self.handlers):
            if argv[:len(prefix)] == prefix:
                result = handler(argv, call)
                break
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout + result.stderr)
        return result

    def which(self, name):
        return name in self.binaries

    def commands(self, *prefix) -> List[List[str]]:
        return [c.argv for c in self.calls if c.argv[:len(prefix)] == list(prefix)]

    def index(self, *argv) -> int:
        """Position of the first call equal to argv."""
        for i, call in enumerate(self.calls):
            if call.argv == list(argv):
                return i
        raise AssertionError(f"{argv} was never run")


class FakeApt:
    def __init__(self, runner: FakeRunner):
        self.runner = runner
        runner.on("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", handler=self._install)
        runner.on("npm", "install", "-g", handler=self._npm)

    def _install(self, argv, call):
        for package in argv[5:]:
            self.runner.binaries.update(APT_PROVIDES.get(package, []))
        return CommandResult(argv, 0)

    def _npm(self, argv, call):
        self.runner.binaries.add(argv[3])
        return CommandResult(argv, 0)


class FakePostgres:
    """Answers the psql statements DatabaseSetup sends on stdin."""

    def __init__(self, runner: FakeRunner):
        self.roles = set()
        self.databases = set()
        self.passwords: Dict[str, str] = {}
        runner.on("sudo", "-u", "postgres", "psql", handler=self._psql)

    def _psql(self, argv, call):
        sql = call.input or ""
        out = ""
        m = re.search(r"FROM pg_roles WHERE rolname = '(.+?)'", sql)
        if m:
            out = "1\n" if m.group(1) in self.roles else ""
        m = re.search(r"FROM pg_database WHERE datname = '(.+?)'", sql)
        if m:
            out = "1\n" if m.group(1) in self.databases else ""
        m = re.search(r'(CREATE|ALTER) ROLE "(.+?)" WITH LOGIN PASSWORD \'(.*)\';', sql)
        if m:
            if m.group(1) == "CREATE" and m.group(2) in self.roles:
                return CommandResult(argv, 3, "", "ERROR: role already exists")
            self.roles.add(m.group(2))
            self.passwords[m.group(2)] = m.group(3).replace("''", "'")
        m = re.search(r'CREATE DATABASE "(.+?)"', sql)
        if m:
            if m.group(1) in self.databases:
                return CommandResult(argv, 3, "", "ERROR: database already exists")
            self.databases.add(m.group(1))
        return CommandResult(argv, 0, out)


class FakeUfw:
    def __init__(self, runner: FakeRunner, rules=(), active: bool = False):
        self.rules = list(rules)
        self.active = active
        self.defaults = {}
        runner.on("ufw", "show", "added", handler=self._show)
        runner.on("ufw", "allow", handler=self._allow)
        runner.on("ufw", "status", handler=self._status)
        runner.on("ufw", "default", handler=self._default)
        runner.on("ufw", "--force", "enable", handler=self._enable)

    def _show(self, argv, call):
        lines = ["Added user rules (see 'ufw status' for running firewall):"]
        lines += [f"ufw allow {r}" for r in self.rules]
        return CommandResult(argv, 0, "\n".join(lines) + "\n")

    def _allow(self, argv, call):
        self.rules.append(argv[2])
        return CommandResult(argv, 0, "Rule added\n")

    def _status(self, argv, call):
        return CommandResult(argv, 0, f"Status: {'active' if self.active else 'inactive'}\n")

    def _default(self, argv, call):
        self.defaults[argv[3]] = argv[2]
        return CommandResult(argv, 0)

    def _enable(self, argv, call):
        self.active = True
        return CommandResult(argv, 0, "Firewall is active and enabled on system startup\n")


class FakeCrontab:
    def __init__(self, runner: FakeRunner, lines=None):
        self.lines: Optional[List[str]] = lines
        runner.on("crontab", "-l", handler=self._list)
        runner.on("crontab", "-", handler=self._install)

    def _list(self, argv, call):
        if self.lines is None:
            return CommandResult(argv, 1, "", "no crontab for deploy\n")
        return CommandResult(argv, 0, "".join(f"{line}\n" for line in self.lines))

    def _install(self, argv, call):
        self.lines = (call.input or "").splitlines()
        return CommandResult(argv, 0)


class FakeCertbot:
    """Issues a certificate by creating the live files, or fails."""

    def __init__(self, runner: FakeRunner, layout: HostLayout, fail: bool = False):
        self.layout = layout
        self.fail = fail
        runner.on("certbot", "certonly", handler=self._certonly)

    def _certonly(self, argv, call):
        if self.fail:
            return CommandResult(argv, 1, "", "Challenge failed for domain\n")
        domain = argv[argv.index("-d") + 1]
        cert = self.layout.cert_path(domain)
        cert.parent.mkdir(parents=True, exist_ok=True)
        cert.write_text("CERT")
        self.layout.key_path(domain).write_text("KEY")
        return CommandResult(argv, 0)


@pytest.fixture
def layout(tmp_path):
    return HostLayout.under(tmp_path / "host")


@pytest.fixture
def runner():
    return FakeRunner(binaries={"apt-get", "sudo", "systemctl"})


@pytest.fixture
def host(runner, tmp_path):
    return Host(runner=runner, use_sudo=False, user="deploy", home=tmp_path / "home", is_root=False)


@pytest.fixture
def operator():
    return OperatorInput(domain="example.test", admin_email="admin@example.test", db_password="s3cret-db")


@pytest.fixture
def config(operator):
    return DeploymentConfig.from_input(operator, generate_bundle())


@pytest.fixture
def systemd_config(operator):
    op = operator.model_copy(update={"supervisor": SupervisorKind.SYSTEMD})
    return DeploymentConfig.from_input(op, generate_bundle())
