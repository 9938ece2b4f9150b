"""
Tests for route resolution and the TLS state machine.
"""

import json

import pytest

from atdeploy.errors import CertificateIssuanceError, ConfigurationRenderError, ProxyStateError
from atdeploy.proxy import (
    RENEWAL_COMMAND, ROUTES, ProxyConfigurator, ProxyRoute, ProxyState, resolve, validate_routes,
)
from atdeploy.schedule import ScheduleTable

from conftest import FakeCertbot, FakeCrontab


@pytest.fixture
def proxy(host, layout):
    return ProxyConfigurator(host, layout, "example.test", "admin@example.test")


class TestRouting:

    @pytest.mark.parametrize("path,service", [
        ("/xrpc/app.bsky.feed.getTimeline", "bsky"),
        ("/xrpc/com.atproto.server.describeServer", "pds"),
        ("/ozone/xrpc/tools.ozone.moderation.queryEvents", "ozone"),
        ("/bsync/_health", "bsync"),
    ])
    def test_longest_prefix_wins(self, path, service):
        assert resolve(path).service == service

    def test_unrouted_path(self):
        assert resolve("/favicon.ico") is None

    def test_four_routes_to_four_ports(self):
        assert sorted(r.port for r in ROUTES) == [2583, 3000, 3001, 3002]

    def test_generic_prefix_before_nested_one_is_rejected(self):
        routes = [ROUTES[1], ROUTES[0], ROUTES[2], ROUTES[3]]
        with pytest.raises(ConfigurationRenderError, match="nested"):
            validate_routes(routes)

    def test_route_count_enforced(self):
        with pytest.raises(ConfigurationRenderError):
            validate_routes(ROUTES[:3])

    def test_prefix_stripping_upstream(self):
        assert ProxyRoute("/ozone/", "ozone", strip_prefix=True).upstream == "http://localhost:3001/"
        assert ProxyRoute("/xrpc/", "pds").upstream == "http://localhost:2583"


class TestStateMachine:

    def test_starts_unsecured(self, proxy):
        assert proxy.state is ProxyState.UNSECURED
        assert not proxy.redirect_enabled

    def test_challenge_phase_has_no_redirect(self, proxy, layout, runner):
        assert proxy.configure() is ProxyState.CERT_PENDING
        site = layout.site_file.read_text()
        assert "return 301" not in site
        assert "/.well-known/acme-challenge/" in site
        assert "location /xrpc/app.bsky. {" in site
        assert layout.site_link.is_symlink()
        assert layout.acme_webroot.is_dir()
        assert runner.index("nginx", "-t") < runner.index("systemctl", "reload", "nginx")

    def test_successful_issuance_enables_redirect(self, proxy, layout, runner):
        FakeCertbot(runner, layout)
        proxy.configure()
        assert proxy.issue_certificate() is ProxyState.SECURED
        site = layout.site_file.read_text()
        assert "return 301 https://$server_name$request_uri;" in site
        assert "listen 443 ssl" in site
        assert str(layout.cert_path("example.test")) in site
        assert json.loads(layout.proxy_state_file.read_text())["state"] == "secured"
        certbot = runner.commands("certbot")[0]
        assert "--webroot" in certbot and "admin@example.test" in certbot

    def test_failed_issuance_stays_pending(self, proxy, layout, runner):
        FakeCertbot(runner, layout, fail=True)
        proxy.configure()
        with pytest.raises(CertificateIssuanceError) as exc_info:
            proxy.issue_certificate()
        assert exc_info.value.fatal is False
        assert proxy.state is ProxyState.CERT_PENDING
        assert "return 301" not in layout.site_file.read_text()
        assert json.loads(layout.proxy_state_file.read_text())["state"] == "cert_pending"

    def test_rejected_secured_site_keeps_redirect_off(self, proxy, layout, runner):
        FakeCertbot(runner, layout)
        proxy.configure()
        runner.on("nginx", "-t", returncode=1, stderr="emerg")
        with pytest.raises(ConfigurationRenderError):
            proxy.issue_certificate()
        assert proxy.state is ProxyState.CERT_PENDING
        assert "return 301" not in layout.site_file.read_text()

    def test_issuance_requires_pending(self, proxy):
        with pytest.raises(ProxyStateError):
            proxy.issue_certificate()

    def test_renew_requires_secured(self, proxy):
        with pytest.raises(ProxyStateError):
            proxy.renew()

    def test_secured_state_survives_reload(self, proxy, host, layout, runner):
        FakeCertbot(runner, layout)
        proxy.configure()
        proxy.issue_certificate()

        again = ProxyConfigurator(host, layout, "example.test", "admin@example.test")
        assert again.state is ProxyState.SECURED
        assert again.configure() is ProxyState.SECURED
        assert "return 301" in layout.site_file.read_text()

        other = ProxyConfigurator(host, layout, "other.test", "admin@other.test")
        assert other.state is ProxyState.UNSECURED

    def test_secured_state_needs_certificate_on_disk(self, proxy, host, layout, runner):
        FakeCertbot(runner, layout)
        proxy.configure()
        proxy.issue_certificate()
        layout.cert_path("example.test").unlink()
        assert ProxyConfigurator(host, layout, "example.test", "a@example.test").state is ProxyState.UNSECURED

    def test_secured_only_reachable_through_issuance(self, host, layout):
        with pytest.raises(TypeError):
            ProxyConfigurator(host, layout, "example.test", "a@example.test", state=ProxyState.SECURED)

        layout.proxy_state_file.parent.mkdir(parents=True, exist_ok=True)
        layout.proxy_state_file.write_text('{"state": "secured", "domain": "example.test"}')
        forged = ProxyConfigurator(host, layout, "example.test", "a@example.test")
        assert forged.state is ProxyState.UNSECURED
        assert not forged.redirect_enabled


def test_renewal_registered_once(proxy, host, runner):
    crontab = FakeCrontab(runner)
    table = ScheduleTable(host, privileged=True)
    assert proxy.register_renewal(table) is True
    assert proxy.register_renewal(table) is False
    assert crontab.lines == [f"0 12 * * * {RENEWAL_COMMAND}"]
