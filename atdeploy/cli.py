"""
Click CLI for atdeploy.
"""

import json
import logging
import sys
from typing import Optional

import click
from pydantic import ValidationError

from .backup import RETENTION_DAYS, run_backup
from .config import HostLayout, OperatorInput, SupervisorKind, load_layout
from .driver import Driver, RunResult
from .errors import BackupExecutionError, CommandError, DeployError
from .events import get_status_from_events, read_events
from .host import Host
from .probe import probe_services
from .prompts import collect, confirm, load_answers
from .secretgen import load_config
from .services import service_names
from .state import is_valid_run_id, list_runs
from .supervisor import SupervisorAdapter, select_supervisor


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """
    atdeploy - provision a native AT Protocol host (PDS, AppView, Ozone, BSync).
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _operator_input(
    domain: Optional[str],
    admin_email: Optional[str],
    db_password: Optional[str],
    supervisor: Optional[str],
    answers_file: Optional[str],
) -> OperatorInput:
    answers = load_answers(answers_file)
    domain = domain or answers.get("domain") or collect("Enter your domain name (e.g. example.com)")
    admin_email = admin_email or answers.get("admin_email") or collect("Enter admin email address")
    db_password = (
        db_password or answers.get("db_password")
        or collect("Enter PostgreSQL password for the atproto role", hide_input=True)
    )
    supervisor = supervisor or answers.get("supervisor")
    if not supervisor:
        supervisor = SupervisorKind.SYSTEMD if confirm("Use systemd instead of PM2?") else SupervisorKind.PM2
    return OperatorInput(
        domain=str(domain),
        admin_email=str(admin_email),
        db_password=str(db_password),
        supervisor=supervisor,
    )


def _print_result(result: RunResult, layout: HostLayout, domain: str) -> None:
    click.echo(f"\n🆔 Run ID: {result.run_id}")
    click.echo(f"📊 Status: {result.status.upper()}")
    if result.status == "failed":
        click.secho(f"❌ Failed at step '{result.failed_step}': {result.error}", fg="red", err=True)
        if result.hint:
            click.echo(f"💡 Hint: {result.hint}", err=True)
        click.echo(f"📝 Events: atdeploy events {result.run_id}", err=True)
        return

    for warning in result.warnings:
        click.secho(f"⚠️  {warning}", fg="yellow")
    for probe in result.probes:
        mark = "✅" if probe.reachable else "❌"
        click.echo(f"  {mark} {probe.service}: {probe.url}")

    click.echo(f"\n🌐 https://{domain}")
    click.echo(f"🔐 Secrets and admin passwords: {layout.deployment_file} (owner-only)")
    click.echo("Next steps:")
    click.echo(f"  • Point DNS for {domain} at this host")
    click.echo("  • Check services with 'atdeploy status'")
    click.echo(f"  • Backups run daily at 02:00 into {layout.backup_dir}")


@main.command("deploy")
@click.option("--domain", envvar="ATDEPLOY_DOMAIN", help="Public domain name")
@click.option("--admin-email", envvar="ATDEPLOY_ADMIN_EMAIL", help="Admin email (Let's Encrypt registration)")
@click.option("--db-password", envvar="ATDEPLOY_DB_PASSWORD", help="PostgreSQL password for the atproto role")
@click.option("--supervisor", type=click.Choice([k.value for k in SupervisorKind]), envvar="ATDEPLOY_SUPERVISOR",
              help="Process supervisor backend")
@click.option("--answers", "answers_file", type=click.Path(exists=True, dir_okay=False),
              help="YAML file with pre-supplied answers")
@click.option("--source", type=click.Path(exists=True, file_okay=False),
              help="Checkout of the service sources to install")
@click.option("--ssh-port", type=int, default=22, show_default=True, help="SSH port to keep open")
@click.option("--verify", is_flag=True, help="Probe services after starting them")
def deploy_cmd(
    domain: Optional[str],
    admin_email: Optional[str],
    db_password: Optional[str],
    supervisor: Optional[str],
    answers_file: Optional[str],
    source: Optional[str],
    ssh_port: int,
    verify: bool,
):
    """
    Provision this host. Safe to re-run.
    """
    try:
        operator = _operator_input(domain, admin_email, db_password, supervisor, answers_file)
    except ValidationError as e:
        for error in e.errors():
            field = ".".join(str(p) for p in error["loc"])
            click.echo(f"Invalid {field}: {error['msg']}", err=True)
        sys.exit(1)

    layout = load_layout()
    driver = Driver(operator, layout, source_dir=source, verify=verify, ssh_port=ssh_port)
    try:
        result = driver.run()
    except KeyboardInterrupt:
        click.echo("\nDeployment cancelled by user", err=True)
        sys.exit(1)

    _print_result(result, layout, operator.domain)
    sys.exit(0 if result.ok else 1)


def _active_supervisor(layout: HostLayout) -> SupervisorAdapter:
    try:
        config = load_config(layout.deployment_file)
    except FileNotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    return select_supervisor(config.supervisor, Host(), layout)


@main.command("status")
@click.argument("service", required=False, type=click.Choice(service_names()))
def status_cmd(service: Optional[str]):
    """
    Show supervisor status for all services or one.
    """
    adapter = _active_supervisor(load_layout())
    click.echo(adapter.status(service))


@main.command("restart")
@click.argument("service", type=click.Choice(service_names()))
def restart_cmd(service: str):
    """
    Restart one service.
    """
    adapter = _active_supervisor(load_layout())
    try:
        adapter.restart(service)
    except (DeployError, CommandError) as e:
        click.echo(f"Restart failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"🔄 Restarted {service}")


@main.command("logs")
@click.argument("service", type=click.Choice(service_names()))
@click.option("--follow", "-f", is_flag=True, help="Follow logs in real-time")
@click.option("--lines", "-n", type=int, default=100, show_default=True, help="Number of lines")
def logs_cmd(service: str, follow: bool, lines: int):
    """
    Show a service's logs.
    """
    adapter = _active_supervisor(load_layout())
    output = adapter.tail_logs(service, follow=follow, lines=lines)
    if output:
        click.echo(output)


@main.group("backup")
def backup_group():
    """
    Backup job commands.
    """
    pass


@backup_group.command("run")
@click.option("--retention-days", type=int, default=RETENTION_DAYS, show_default=True,
              help="Delete archives older than this many days")
def backup_run_cmd(retention_days: int):
    """
    Produce one backup archive now (this is what cron runs).
    """
    layout = load_layout()
    try:
        config = load_config(layout.deployment_file)
        archive = run_backup(config, layout, Host(), retention_days=retention_days)
    except (FileNotFoundError, BackupExecutionError) as e:
        logging.getLogger(__name__).error(f"Backup failed: {e}")
        sys.exit(1)
    click.echo(f"💾 {archive}")


@main.command("runs")
def runs_cmd():
    """
    List provisioning runs, most recent first.
    """
    home = load_layout().state_dir
    runs = list_runs(home)
    if not runs:
        click.echo("No runs found")
        return
    for run_id in runs:
        click.echo(f"{run_id}  {get_status_from_events(run_id, home)}")


@main.command("events")
@click.argument("run_id")
def events_cmd(run_id: str):
    """
    Print a run's event journal as NDJSON.
    """
    if not is_valid_run_id(run_id):
        click.echo(f"Invalid run ID: {run_id}", err=True)
        sys.exit(1)
    events = read_events(run_id, load_layout().state_dir)
    if not events:
        click.echo(f"No events for {run_id}", err=True)
        sys.exit(1)
    for event in events:
        click.echo(json.dumps(event))


@main.command("check")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Per-service timeout in seconds")
def check_cmd(timeout: float):
    """
    Probe whether each service answers on its local port.
    """
    results = probe_services(timeout=timeout)
    for result in results:
        if result.reachable:
            click.echo(f"✅ {result.service}: {result.url} ({result.status_code})")
        else:
            click.echo(f"❌ {result.service}: {result.url} ({result.error})")
    sys.exit(0 if all(r.reachable for r in results) else 1)


if __name__ == "__main__":
    main()
