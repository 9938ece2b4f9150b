"""
Firewall allow-list (ufw).

Default-deny is only switched on after the administrative SSH rule is
confirmed in the added-rules list, so applying the firewall can never lock the
operator out.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from .errors import CommandError, PreconditionError
from .host import Host

logger = logging.getLogger(__name__)

# ufw application/service names and the port specs they stand for
SERVICE_ALIASES = {
    "ssh": "22/tcp",
    "openssh": "22/tcp",
    "http": "80/tcp",
    "https": "443/tcp",
}


@dataclass(frozen=True)
class FirewallRule:
    port: int
    proto: str = "tcp"
    label: str = ""

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.proto}"


def default_allow_list(ssh_port: int = 22) -> Tuple[FirewallRule, ...]:
    return (
        FirewallRule(ssh_port, label="ssh"),
        FirewallRule(80, label="http"),
        FirewallRule(443, label="https"),
    )


def parse_added_rules(output: str) -> Set[str]:
    """
    Parse `ufw show added` into a set of port specs.

    A rule without a protocol covers both tcp and udp. Only rules open to all
    incoming traffic count: rules bound to an interface or restricted to a
    source or destination address are ignored.
    """
    specs: Set[str] = set()
    for line in output.splitlines():
        parts = line.strip().split()
        if len(parts) < 3 or parts[0] != "ufw" or parts[1] != "allow":
            continue
        tokens = parts[2:]
        if tokens[0] == "out":
            continue
        if tokens[0] == "in":
            tokens = tokens[1:]
        if not tokens:
            continue
        if _is_scoped(tokens):
            logger.info(f"Ignoring scoped firewall rule: {line.strip()}")
            continue
        target = _option(tokens, "port") or tokens[-1]
        alias = SERVICE_ALIASES.get(target.lower())
        if alias:
            specs.add(alias)
        elif "/" in target:
            specs.add(target.lower())
        elif target.isdigit():
            proto = _option(tokens, "proto")
            if proto:
                specs.add(f"{target}/{proto}")
            else:
                specs.update({f"{target}/tcp", f"{target}/udp"})
    return specs


def _option(tokens: List[str], name: str) -> Optional[str]:
    if name in tokens[:-1]:
        return tokens[tokens.index(name) + 1]
    return None


def _is_scoped(tokens: List[str]) -> bool:
    if "on" in tokens:
        return True
    return any(_option(tokens, name) not in (None, "any") for name in ("from", "to"))


class FirewallConfigurator:
    def __init__(self, host: Host, allow_list: Optional[Sequence[FirewallRule]] = None, ssh_port: int = 22):
        self.host = host
        self.allow_list = tuple(allow_list) if allow_list is not None else default_allow_list(ssh_port)
        self.admin_rule = self.allow_list[0]

    def rules(self) -> Set[str]:
        result = self.host.run(["ufw", "show", "added"], sudo=True, check=False)
        return parse_added_rules(result.stdout)

    def is_active(self) -> bool:
        result = self.host.run(["ufw", "status"], sudo=True, check=False)
        return "Status: active" in result.stdout

    def apply(self) -> List[FirewallRule]:
        """
        Add the allow-list rules that are missing.

        Returns:
            Rules that were added
        """
        present = self.rules()
        added = []
        for rule in self.allow_list:
            if rule.spec in present:
                logger.info(f"Firewall rule {rule.spec} ({rule.label}) already present")
                continue
            self.host.run(["ufw", "allow", rule.spec], sudo=True)
            added.append(rule)
            logger.info(f"Firewall rule {rule.spec} ({rule.label}) added")
        return added

    def enable_default_deny(self) -> None:
        """
        Deny incoming traffic by default and enable the firewall.

        Raises:
            PreconditionError: If the administrative rule is not allow-listed;
                nothing is changed in that case
        """
        if self.admin_rule.spec not in self.rules():
            raise PreconditionError(
                f"Refusing to enable default-deny: {self.admin_rule.spec} is not allow-listed",
                hint="Apply the allow-list first; enabling now would lock out SSH",
            )
        self.host.run(["ufw", "default", "deny", "incoming"], sudo=True)
        self.host.run(["ufw", "default", "allow", "outgoing"], sudo=True)
        if self.is_active():
            logger.info("Firewall already active")
            return
        self.host.run(["ufw", "--force", "enable"], sudo=True)
        logger.info("Firewall enabled with default-deny")

    def converge(self) -> List[FirewallRule]:
        try:
            added = self.apply()
            self.enable_default_deny()
        except CommandError as e:
            raise PreconditionError(f"Firewall configuration failed: {e}") from e
        return added
