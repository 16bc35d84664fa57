"""Error taxonomy shared by the install and uninstall workflows.

Fatal classes abort the running workflow with a non-zero exit. Only
:class:`BestEffortFailure` (and its subclasses) is downgraded to a warning by
the orchestrator so the remaining steps still run.
"""
from __future__ import annotations


class OversshError(RuntimeError):
    """Base class for oversshctl failures.

    ``remediation`` is the operator-facing instruction printed as the final
    line when the error aborts a workflow.
    """

    default_remediation: str | None = None

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        """Store *message* and an optional remediation hint."""
        super().__init__(message)
        self.remediation = remediation or self.default_remediation


class UsageError(OversshError):
    """Raised for missing or malformed command-line arguments."""

    default_remediation = "Usage: oversshctl install <domain> (e.g. oversshctl install example.com)"


class PrivilegeError(OversshError):
    """Raised when the process lacks root privileges."""

    default_remediation = "Re-run this command as root (for example with sudo)."


class InvalidConfigurationError(OversshError):
    """Raised when the SSH daemon rejects the edited configuration."""

    default_remediation = (
        "Manual intervention required: fix /etc/ssh/sshd_config (or restore a "
        "sshd_config.backup.* file) and confirm with `sshd -t` before restarting SSH."
    )


class RemoteFetchError(OversshError):
    """Raised when a required remote artifact cannot be retrieved."""

    default_remediation = "Check network access to the artifact source and re-run install."


class BestEffortFailure(OversshError):
    """Raised by cleanup-style operations whose failure must not halt a workflow."""


class ConfirmationDeclined(OversshError):
    """Raised when the operator does not confirm a destructive operation."""

    default_remediation = "Uninstall cancelled; no changes were made."


__all__ = [
    "BestEffortFailure",
    "ConfirmationDeclined",
    "InvalidConfigurationError",
    "OversshError",
    "PrivilegeError",
    "RemoteFetchError",
    "UsageError",
]
