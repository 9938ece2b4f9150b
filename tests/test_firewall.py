import pytest

from atdeploy.errors import PreconditionError
from atdeploy.firewall import FirewallConfigurator, parse_added_rules

from conftest import FakeUfw


def test_parse_added_rules():
    output = "\n".join([
        "Added user rules (see 'ufw status' for running firewall):",
        "ufw allow OpenSSH",
        "ufw allow 80/tcp",
        "ufw allow 8080",
        "ufw allow in proto tcp to any port 2222",
        "ufw deny 25/tcp",
    ])
    assert parse_added_rules(output) == {"22/tcp", "80/tcp", "8080/tcp", "8080/udp", "2222/tcp"}


def test_scoped_rules_do_not_count():
    output = "\n".join([
        "ufw allow in on eth0 to any port 22",
        "ufw allow from 10.0.0.0/8 to any port 22 proto tcp",
        "ufw allow to 192.0.2.10 port 443 proto tcp",
        "ufw allow out 80/tcp",
        "ufw allow from any to any port 443 proto tcp",
    ])
    assert parse_added_rules(output) == {"443/tcp"}


def test_source_restricted_ssh_still_gets_global_rule(host, runner):
    ufw = FakeUfw(runner, rules=["from 10.0.0.0/8 to any port 22 proto tcp"], active=True)
    added = FirewallConfigurator(host).converge()
    assert [r.spec for r in added] == ["22/tcp", "80/tcp", "443/tcp"]
    assert "22/tcp" in ufw.rules


def test_allow_list_applied_before_default_deny(host, runner):
    ufw = FakeUfw(runner)
    added = FirewallConfigurator(host).converge()

    assert [r.spec for r in added] == ["22/tcp", "80/tcp", "443/tcp"]
    assert ufw.active
    assert ufw.defaults == {"incoming": "deny", "outgoing": "allow"}
    ssh = runner.index("ufw", "allow", "22/tcp")
    assert ssh < runner.index("ufw", "default", "deny", "incoming")
    assert ssh < runner.index("ufw", "--force", "enable")


def test_rerun_adds_nothing(host, runner):
    ufw = FakeUfw(runner)
    FirewallConfigurator(host).converge()
    added = FirewallConfigurator(host).converge()

    assert added == []
    assert ufw.rules == ["22/tcp", "80/tcp", "443/tcp"]
    assert len(runner.commands("ufw", "--force", "enable")) == 1


def test_existing_alias_rule_is_reused(host, runner):
    ufw = FakeUfw(runner, rules=["OpenSSH"], active=True)
    added = FirewallConfigurator(host).converge()
    assert [r.spec for r in added] == ["80/tcp", "443/tcp"]
    assert ufw.rules == ["OpenSSH", "80/tcp", "443/tcp"]


def test_custom_ssh_port(host, runner):
    ufw = FakeUfw(runner)
    FirewallConfigurator(host, ssh_port=2222).converge()
    assert ufw.rules[0] == "2222/tcp"


def test_refuses_default_deny_without_admin_rule(host, runner):
    FakeUfw(runner)
    # the allow command reports success but the rule never lands
    runner.on("ufw", "allow", stdout="Skipping\n")

    with pytest.raises(PreconditionError, match="22/tcp"):
        FirewallConfigurator(host).converge()
    assert not runner.commands("ufw", "default")
    assert not runner.commands("ufw", "--force", "enable")


def test_default_deny_before_allow_list_is_rejected(host, runner):
    ufw = FakeUfw(runner)
    with pytest.raises(PreconditionError):
        FirewallConfigurator(host).enable_default_deny()
    assert not ufw.active
    assert ufw.defaults == {}
