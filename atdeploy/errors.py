"""
Error taxonomy for provisioning runs.

Every error the driver can stop on derives from DeployError. Fatal errors halt
the run immediately; there is no rollback, re-running the driver is the
recovery procedure.
"""

from typing import List, Optional, Sequence


class DeployError(Exception):
    """Base class for errors raised while provisioning the host."""

    fatal = True

    def __init__(self, message: str, hint: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.step = step


class PreconditionError(DeployError):
    """The host is not in a state where provisioning may begin or continue."""


class DependencyInstallError(DeployError):
    """A system dependency could not be installed, enabled or started."""


class ConfigurationRenderError(DeployError):
    """Missing required input or a broken cross-reference between artifacts."""


class SupervisorStartError(DeployError):
    """The process supervisor did not accept the manifest."""


class CertificateIssuanceError(DeployError):
    """Certificate issuance failed; the proxy stays in the pending state."""

    fatal = False


class BackupExecutionError(DeployError):
    """The scheduled backup job failed. Reported by the job, never by the driver."""

    fatal = False


class ProxyStateError(DeployError):
    """A proxy transition was requested from a state that does not allow it."""


class CommandError(Exception):
    """A host command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        super().__init__(f"Command failed ({returncode}): {' '.join(self.argv)}")

    def tail(self, lines: int = 40) -> List[str]:
        """Last lines of combined command output."""
        return self.output.strip().splitlines()[-lines:]
