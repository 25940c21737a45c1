"""Exception hierarchy for kina.

Everything kina raises on purpose inherits from KinaError, so callers
(the CLI in particular) can catch all of it with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kina.process import ExecResult


class KinaError(Exception):
    """Base exception for all kina errors."""


class ConfigurationError(KinaError):
    """Raised for invalid configuration, names or arguments."""


class ToolNotFoundError(KinaError):
    """Raised when a required external executable is missing. Never retried."""

    def __init__(self, tool: str, hint: str = "") -> None:
        self.tool = tool
        self.hint = hint
        message = f"Required tool '{tool}' was not found"
        super().__init__(f"{message}. {hint}" if hint else message)


class CommandError(KinaError):
    """Raised when an external command exits non-zero and the caller cares."""

    def __init__(self, context: str, result: ExecResult) -> None:
        self.context = context
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or "no output"
        super().__init__(f"{context} (exit {result.exit_code}): {detail}")


class RuntimeCommandError(CommandError):
    """Raised when the container runtime CLI fails in an unclassified way."""


class KinaTimeoutError(KinaError):
    """Raised when a transient state does not resolve in time."""


class KubeconfigError(KinaError):
    """Raised when a kubeconfig cannot be extracted, parsed or merged."""


class BootstrapError(KinaError):
    """Raised when a fatal bootstrap step fails. Carries the step name."""

    def __init__(self, step: str, reason: str) -> None:
        self.step = step
        self.reason = reason
        super().__init__(f"Bootstrap step '{step}' failed: {reason}")


class ClusterAlreadyExistsError(KinaError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Cluster '{name}' already exists. "
            f"Delete it first with: kina delete {name}"
        )


class ClusterNotFoundError(KinaError):
    """Raised when a named cluster has no containers in the runtime.

    ``hint`` renders the available clusters and the next command to run.
    """

    def __init__(
        self, name: str, available: Sequence[str] = (), command: str = "status",
    ) -> None:
        self.name = name
        self.available = tuple(available)
        self.command = command
        super().__init__(f"Cluster '{name}' does not exist" if name else "No cluster name given")

    @property
    def hint(self) -> str:
        if not self.available:
            return no_clusters_hint()
        headline = (
            f"Cluster '{self.name}' does not exist." if self.name
            else "Several clusters exist; name one explicitly."
        )
        return (
            f"{headline}\n\n"
            f"Available clusters: {', '.join(self.available)}\n\n"
            f"To {_verb(self.command)} an existing cluster, run:\n"
            f"  kina {self.command} <cluster-name>"
        )


def no_clusters_hint() -> str:
    return "No clusters found.\n\nTo create a new cluster, run:\n  kina create [cluster-name]"


def _verb(command: str) -> str:
    return {
        "status": "check the status of",
        "delete": "delete",
        "approve-csr": "approve certificates for",
        "export": "export the kubeconfig of",
        "load": "load an image into",
    }.get(command, "use")
