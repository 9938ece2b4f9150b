"""
End-to-end driver runs against a simulated host.
"""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from atdeploy.config import SupervisorKind
from atdeploy.driver import Driver
from atdeploy.events import EventTypes, get_status_from_events, read_events
from atdeploy.host import Host
from atdeploy.probe import ProbeResult
from atdeploy.proxy import ProxyState
from atdeploy.supervisor import manifest_kinds_on_disk

from conftest import FakeApt, FakeCertbot, FakeCrontab, FakePostgres, FakeUfw


@pytest.fixture
def sim(runner, layout):
    """Simulated daemons behind the fake runner."""
    return SimpleNamespace(
        apt=FakeApt(runner),
        pg=FakePostgres(runner),
        ufw=FakeUfw(runner),
        crontab=FakeCrontab(runner),
        certbot=FakeCertbot(runner, layout),
    )


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "package.json").write_text("{}")
    return src


def make_driver(operator, layout, host, source, **kwargs):
    return Driver(operator, layout, host=host, source_dir=source, **kwargs)


def test_full_run(operator, layout, host, runner, sim, source):
    result = make_driver(operator, layout, host, source).run()

    assert result.status == "completed", result.error
    assert result.warnings == []
    for name in ("pds", "bsky", "ozone", "bsync"):
        assert "example.test" in layout.env_file(name).read_text()
    assert manifest_kinds_on_disk(host, layout) == [SupervisorKind.PM2]
    assert "return 301" in layout.site_file.read_text()
    assert sim.ufw.active
    assert sim.pg.databases == {"pds", "bsky_appview", "ozone", "bsync"}
    assert len(sim.crontab.lines) == 2
    assert runner.commands("pm2", "startOrReload")
    assert runner.commands("pnpm", "build")

    events = read_events(result.run_id, layout.state_dir)
    assert events[0]["type"] == EventTypes.INIT
    assert events[-1]["type"] == EventTypes.DONE
    assert get_status_from_events(result.run_id, layout.state_dir) == "completed"
    steps = [e["data"]["step"] for e in events if e["type"] == EventTypes.STEP_OK]
    assert steps == [
        "preconditions", "secrets", "dependencies", "database", "directories", "configuration",
        "supervisor", "proxy", "firewall", "certificate", "services", "backups",
    ]


def test_steps_run_in_order(operator, layout, host, runner, sim, source):
    make_driver(operator, layout, host, source).run()
    psql = next(i for i, c in enumerate(runner.calls) if c.argv[:4] == ["sudo", "-u", "postgres", "psql"])
    assert runner.index("systemctl", "start", "postgresql.service") < psql
    assert runner.index("ufw", "allow", "22/tcp") < runner.index("ufw", "--force", "enable")
    challenge = runner.index("nginx", "-t")
    certbot = next(i for i, c in enumerate(runner.calls) if c.argv[:2] == ["certbot", "certonly"])
    start = runner.index("pm2", "startOrReload", str(layout.ecosystem_file))
    assert challenge < certbot < start


def test_rerun_is_idempotent(operator, layout, host, runner, sim, source):
    first = make_driver(operator, layout, host, source).run()
    runner.calls.clear()
    second = make_driver(operator, layout, host, source).run()

    assert first.status == second.status == "completed"
    assert not runner.commands("apt-get")
    assert not [c for c in runner.calls if c.input and c.input.startswith("CREATE")]
    assert sim.ufw.rules == ["22/tcp", "80/tcp", "443/tcp"]
    assert len(sim.crontab.lines) == 2
    assert not runner.commands("certbot")
    assert "return 301" in layout.site_file.read_text()
    skipped = [e["data"]["step"] for e in read_events(second.run_id, layout.state_dir) if e["type"] == EventTypes.STEP_SKIP]
    assert skipped == ["certificate"]


def test_secrets_regenerated_each_run(operator, layout, host, sim, source):
    make_driver(operator, layout, host, source).run()
    first = json.loads(layout.deployment_file.read_text())["secrets"]
    make_driver(operator, layout, host, source).run()
    second = json.loads(layout.deployment_file.read_text())["secrets"]
    assert all(first[k] != second[k] for k in first)


def test_failed_certificate_is_a_warning(operator, layout, host, runner, sim, source):
    sim.certbot.fail = True
    driver = make_driver(operator, layout, host, source)
    result = driver.run()

    assert result.status == "completed_with_warnings"
    assert "example.test" in result.warnings[0]
    assert driver.proxy.state is ProxyState.CERT_PENDING
    assert "return 301" not in layout.site_file.read_text()
    assert runner.commands("pm2", "startOrReload")
    types = [e["type"] for e in read_events(result.run_id, layout.state_dir)]
    assert EventTypes.CERT_FAILED in types


def test_root_is_refused(operator, layout, runner, sim, source, tmp_path):
    host = Host(runner=runner, use_sudo=False, user="root", home=tmp_path, is_root=True)
    result = make_driver(operator, layout, host, source).run()

    assert result.status == "failed"
    assert result.failed_step == "preconditions"
    assert result.hint
    assert not runner.commands("apt-get")
    assert get_status_from_events(result.run_id, layout.state_dir) == "failed"


def test_supervisor_failure_stops_the_run(operator, layout, host, runner, sim, source):
    runner.on("pm2", "startOrReload", returncode=1, stderr="boom")
    result = make_driver(operator, layout, host, source).run()

    assert result.status == "failed"
    assert result.failed_step == "services"
    # backups come after services and never ran
    assert len(sim.crontab.lines) == 1


def test_command_failure_is_wrapped(operator, layout, host, runner, sim, source):
    runner.on("cp", returncode=1, stderr="cp: cannot stat")
    result = make_driver(operator, layout, host, source).run()
    assert result.failed_step == "services"
    assert "cp" in result.error


def test_missing_sources(operator, layout, host, sim):
    result = Driver(operator, layout, host=host).run()
    assert result.failed_step == "services"
    assert "--source" in result.hint


def test_switching_supervisor_leaves_one_manifest(operator, layout, host, sim, source):
    make_driver(operator, layout, host, source).run()
    systemd = operator.model_copy(update={"supervisor": SupervisorKind.SYSTEMD})
    result = make_driver(systemd, layout, host, source).run()

    assert result.status == "completed"
    assert manifest_kinds_on_disk(host, layout) == [SupervisorKind.SYSTEMD]


def test_verify_reports_unreachable_services(operator, layout, host, sim, source):
    probes = [
        ProbeResult("pds", "http://localhost:2583/xrpc/_health", True, status_code=200),
        ProbeResult("bsky", "http://localhost:3000/xrpc/_health", False, error="refused"),
    ]
    with patch("atdeploy.driver.probe_services", return_value=probes):
        result = make_driver(operator, layout, host, source, verify=True).run()

    assert result.status == "completed_with_warnings"
    assert result.warnings == ["bsky not reachable at http://localhost:3000/xrpc/_health"]
    assert result.probes == probes
