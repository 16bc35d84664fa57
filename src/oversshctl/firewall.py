"""Firewall Rule Manager: allow/deny rules keyed by port and label.

Firewall management is best-effort. A missing ``ufw`` binary yields a skipped
report, and individual rule failures are collected rather than raised so the
surrounding workflow can keep going.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .providers.ufw import FirewallError, UfwProvider


class RuleAction(str, Enum):
    """Packet filter verdict for a rule."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """A single packet-filter rule."""

    port: int
    label: str
    protocol: str = "tcp"
    action: RuleAction = RuleAction.ALLOW

    @property
    def port_spec(self) -> str:
        """Return the ``<port>/<protocol>`` form ufw expects."""
        return f"{self.port}/{self.protocol}"

    @property
    def key(self) -> tuple[int, str]:
        """Return the identity used when deleting the rule."""
        return (self.port, self.label)

    def describe(self) -> str:
        """Return a short human-readable form such as ``allow 22/tcp (SSH)``."""
        return f"{self.action.value} {self.port_spec} ({self.label})"


@dataclass(slots=True)
class FirewallReport:
    """Outcome of applying a firewall policy."""

    tool_available: bool
    applied: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when ufw was present and every rule applied."""
        return self.tool_available and not self.failures


@dataclass(slots=True)
class FirewallManager:
    """Apply the install and uninstall rule sets through :class:`UfwProvider`."""

    provider: UfwProvider

    def available(self) -> bool:
        """Return ``True`` when the packet filter tool is installed."""
        return self.provider.available()

    def allow(self, port: int, label: str) -> FirewallReport:
        """Allow *port*/tcp with *label*."""
        return self._apply([FirewallRule(port, label)], [])

    def deny(self, port: int, label: str) -> FirewallReport:
        """Deny *port*/tcp with *label*."""
        return self._apply([FirewallRule(port, label, action=RuleAction.DENY)], [])

    def remove(self, port: int, label: str) -> FirewallReport:
        """Delete the allow rule keyed by (*port*, *label*)."""
        return self._apply([], [FirewallRule(port, label)])

    def apply_install_policy(
        self,
        *,
        ssh_port: int = 2222,
        proxy_port: int = 22,
    ) -> FirewallReport:
        """Open the relocated SSH port, the proxy port and HTTP(S)."""
        rules = [
            FirewallRule(ssh_port, "SSH"),
            FirewallRule(proxy_port, "OverSSH"),
            FirewallRule(80, "HTTP"),
            FirewallRule(443, "HTTPS"),
        ]
        return self._apply(rules, [])

    def apply_uninstall_policy(
        self,
        *,
        default_port: int = 22,
        alternate_port: int = 2222,
    ) -> FirewallReport:
        """Remove the proxy rules and re-allow SSH on *default_port*."""
        removals = [
            FirewallRule(default_port, "OverSSH"),
            FirewallRule(80, "HTTP"),
            FirewallRule(443, "HTTPS"),
            FirewallRule(alternate_port, "SSH"),
        ]
        return self._apply([FirewallRule(default_port, "SSH")], removals)

    # ------------------------------------------------------------------
    def _apply(
        self,
        additions: list[FirewallRule],
        removals: list[FirewallRule],
    ) -> FirewallReport:
        if not self.provider.available():
            return FirewallReport(tool_available=False)
        report = FirewallReport(tool_available=True)
        for rule in removals:
            try:
                self.provider.delete(rule.action.value, rule.port_spec, rule.label)
            except FirewallError as exc:
                report.failures.append(f"delete {rule.describe()}: {exc}")
            else:
                report.applied.append(f"delete {rule.describe()}")
        for rule in additions:
            try:
                self.provider.add(rule.action.value, rule.port_spec, rule.label)
            except FirewallError as exc:
                report.failures.append(f"{rule.describe()}: {exc}")
            else:
                report.applied.append(rule.describe())
        return report


__all__ = ["FirewallManager", "FirewallReport", "FirewallRule", "RuleAction"]
