"""
Reverse proxy routing and the TLS state machine.

States: UNSECURED -> CERT_PENDING -> SECURED. The plaintext-to-HTTPS redirect
is only ever rendered in SECURED, and SECURED is only reached through a
successful issuance from CERT_PENDING. A failed issuance leaves the proxy in
CERT_PENDING; it never falls back to UNSECURED.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from .config import HostLayout
from .errors import (
    CertificateIssuanceError, CommandError, ConfigurationRenderError, ProxyStateError,
)
from .host import Host
from .schedule import ScheduleEntry, ScheduleTable
from .services import get_service
from .state import read_json

logger = logging.getLogger(__name__)

RENEWAL_SCHEDULE = "0 12 * * *"
RENEWAL_COMMAND = "/usr/bin/certbot renew --quiet --deploy-hook 'systemctl reload nginx'"


@dataclass(frozen=True)
class ProxyRoute:
    """Path prefix forwarded to one local service."""
    prefix: str
    service: str
    strip_prefix: bool = False

    @property
    def port(self) -> int:
        return get_service(self.service).port

    @property
    def upstream(self) -> str:
        # A trailing slash on proxy_pass makes nginx replace the matched prefix
        return f"http://localhost:{self.port}" + ("/" if self.strip_prefix else "")


# More specific prefixes first; /xrpc/app.bsky. is nested under /xrpc/.
ROUTES: Tuple[ProxyRoute, ...] = (
    ProxyRoute("/xrpc/app.bsky.", "bsky"),
    ProxyRoute("/xrpc/", "pds"),
    ProxyRoute("/ozone/", "ozone", strip_prefix=True),
    ProxyRoute("/bsync/", "bsync", strip_prefix=True),
)


def validate_routes(routes: Sequence[ProxyRoute]) -> None:
    """
    Reject route sets that would change who serves a request.

    Raises:
        ConfigurationRenderError: Wrong count, duplicate prefixes, or a
            generic prefix placed before a more specific prefix nested in it
    """
    if len(routes) != 4:
        raise ConfigurationRenderError(f"Expected exactly 4 proxy routes, got {len(routes)}")
    prefixes = [r.prefix for r in routes]
    if len(set(prefixes)) != len(prefixes):
        raise ConfigurationRenderError(f"Duplicate proxy prefixes: {prefixes}")
    for i, earlier in enumerate(routes):
        for later in routes[i + 1:]:
            if later.prefix.startswith(earlier.prefix):
                raise ConfigurationRenderError(
                    f"Route {later.prefix} is nested under {earlier.prefix} and must come first"
                )


def resolve(path: str, routes: Sequence[ProxyRoute] = ROUTES) -> Optional[ProxyRoute]:
    """Longest-prefix match, the rule nginx applies to prefix locations."""
    matches = [r for r in routes if path.startswith(r.prefix)]
    if not matches:
        return None
    return max(matches, key=lambda r: len(r.prefix))


class ProxyState(str, Enum):
    UNSECURED = "unsecured"
    CERT_PENDING = "cert_pending"
    SECURED = "secured"


def _location(route: ProxyRoute) -> str:
    return "\n".join([
        f"    location {route.prefix} {{",
        f"        proxy_pass {route.upstream};",
        "        proxy_http_version 1.1;",
        "        proxy_set_header Upgrade $http_upgrade;",
        "        proxy_set_header Connection \"upgrade\";",
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
        "        proxy_connect_timeout 60s;",
        "        proxy_send_timeout 60s;",
        "        proxy_read_timeout 60s;",
        "    }",
    ])


class ProxyConfigurator:
    """
    Owns the nginx site file and the certificate lifecycle for one domain.
    """

    def __init__(
        self,
        host: Host,
        layout: HostLayout,
        domain: str,
        admin_email: str,
        routes: Sequence[ProxyRoute] = ROUTES,
    ):
        validate_routes(routes)
        self.host = host
        self.layout = layout
        self.domain = domain
        self.admin_email = admin_email
        self.routes = tuple(routes)
        self.state = self._load_state()

    @property
    def redirect_enabled(self) -> bool:
        return self.state is ProxyState.SECURED

    def _load_state(self) -> ProxyState:
        """
        Recover the state recorded by a previous run.

        SECURED survives only for the same domain with its certificate still
        on disk; anything else starts over from UNSECURED.
        """
        data = read_json(self.layout.proxy_state_file) or {}
        if (
            data.get("state") == ProxyState.SECURED.value
            and data.get("domain") == self.domain
            and self.layout.cert_path(self.domain).exists()
        ):
            return ProxyState.SECURED
        return ProxyState.UNSECURED

    def _save_state(self) -> None:
        self.host.write_file(
            self.layout.proxy_state_file,
            json.dumps({"state": self.state.value, "domain": self.domain}, indent=2) + "\n",
            mode=0o600,
        )

    def render_site(self, state: ProxyState) -> str:
        locations = "\n\n".join(_location(r) for r in self.routes)
        acme = "\n".join([
            "    location /.well-known/acme-challenge/ {",
            f"        root {self.layout.acme_webroot};",
            "    }",
        ])
        if state is not ProxyState.SECURED:
            return "\n".join([
                "# Managed by atdeploy; HTTPS redirect disabled until a certificate is issued",
                "server {",
                "    listen 80;",
                "    listen [::]:80;",
                f"    server_name {self.domain};",
                "",
                acme,
                "",
                locations,
                "}",
                "",
            ])
        return "\n".join([
            "# Managed by atdeploy",
            "server {",
            "    listen 80;",
            "    listen [::]:80;",
            f"    server_name {self.domain};",
            "",
            acme,
            "",
            "    location / {",
            "        return 301 https://$server_name$request_uri;",
            "    }",
            "}",
            "",
            "server {",
            "    listen 443 ssl http2;",
            "    listen [::]:443 ssl http2;",
            f"    server_name {self.domain};",
            "",
            f"    ssl_certificate {self.layout.cert_path(self.domain)};",
            f"    ssl_certificate_key {self.layout.key_path(self.domain)};",
            "    ssl_protocols TLSv1.2 TLSv1.3;",
            "    ssl_ciphers ECDHE-RSA-AES256-GCM-SHA512:DHE-RSA-AES256-GCM-SHA512:ECDHE-RSA-AES256-GCM-SHA384:DHE-RSA-AES256-GCM-SHA384;",
            "    ssl_prefer_server_ciphers off;",
            "",
            "    add_header X-Frame-Options DENY;",
            "    add_header X-Content-Type-Options nosniff;",
            "    add_header X-XSS-Protection \"1; mode=block\";",
            "    add_header Strict-Transport-Security \"max-age=63072000; includeSubDomains; preload\";",
            "",
            locations,
            "}",
            "",
        ])

    def _apply_site(self, state: ProxyState) -> None:
        self.host.write_file(self.layout.site_file, self.render_site(state), mode=0o644, privileged=True)
        self.host.symlink(self.layout.site_file, self.layout.site_link, privileged=True)
        try:
            self.host.run(["nginx", "-t"], sudo=True)
            self.host.run(["systemctl", "reload", "nginx"], sudo=True)
        except CommandError as e:
            raise ConfigurationRenderError(
                f"nginx rejected the site configuration: {e}",
                hint=f"Run 'sudo nginx -t' and inspect {self.layout.site_file}",
            ) from e

    def configure(self) -> ProxyState:
        """
        Write the site for the current state.

        A secured proxy is re-rendered in place; otherwise the challenge
        phase is entered.
        """
        if self.state is ProxyState.SECURED:
            self._apply_site(ProxyState.SECURED)
            logger.info(f"Proxy for {self.domain} already secured; site re-rendered")
            return self.state
        return self.prepare_challenge()

    def prepare_challenge(self) -> ProxyState:
        """UNSECURED -> CERT_PENDING: serve the ACME challenge over plain HTTP."""
        if self.state is ProxyState.SECURED:
            raise ProxyStateError("Proxy is already secured; challenge phase not needed")
        self.host.make_dirs([self.layout.acme_webroot], privileged=True)
        self._apply_site(ProxyState.CERT_PENDING)
        self.state = ProxyState.CERT_PENDING
        self._save_state()
        logger.info(f"Proxy for {self.domain} awaiting certificate (redirect disabled)")
        return self.state

    def issue_certificate(self) -> ProxyState:
        """
        CERT_PENDING -> SECURED on success.

        Raises:
            ProxyStateError: If not in CERT_PENDING
            CertificateIssuanceError: If certbot fails; the state stays CERT_PENDING
        """
        if self.state is not ProxyState.CERT_PENDING:
            raise ProxyStateError(f"Cannot issue a certificate from state {self.state.value}")
        try:
            self.host.run([
                "certbot", "certonly", "--webroot",
                "-w", str(self.layout.acme_webroot),
                "-d", self.domain,
                "--non-interactive", "--agree-tos", "--keep-until-expiring",
                "--email", self.admin_email,
            ], sudo=True)
        except CommandError as e:
            self._save_state()
            raise CertificateIssuanceError(
                f"Certificate issuance for {self.domain} failed: {e}",
                hint="Check DNS for the domain points at this host and port 80 is reachable, then re-run",
            ) from e

        try:
            self._apply_site(ProxyState.SECURED)
        except ConfigurationRenderError:
            # keep the redirect off while still pending
            self.host.write_file(
                self.layout.site_file, self.render_site(ProxyState.CERT_PENDING), mode=0o644, privileged=True
            )
            raise
        self.state = ProxyState.SECURED
        self._save_state()
        logger.info(f"Certificate issued for {self.domain}; HTTPS redirect enabled")
        return self.state

    def renew(self) -> None:
        """SECURED -> SECURED. Quiet on success."""
        if self.state is not ProxyState.SECURED:
            raise ProxyStateError(f"Cannot renew from state {self.state.value}")
        try:
            self.host.run(["certbot", "renew", "--quiet"], sudo=True)
        except CommandError as e:
            raise CertificateIssuanceError(f"Certificate renewal for {self.domain} failed: {e}") from e

    def register_renewal(self, table: ScheduleTable) -> bool:
        return table.ensure(ScheduleEntry(RENEWAL_SCHEDULE, RENEWAL_COMMAND))
