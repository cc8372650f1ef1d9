"""
Error classes for provchestra deployments.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (throttling, network timeouts, temporary outages)
- PermanentError: Do not retry (bad input, denied credentials, missing outputs)

Steps and adapters raise these errors to signal retry behavior.
The step pipeline catches at the boundary for retry/backoff and run recording.

Poller outcomes (ReadinessTimeoutError, Cancelled) sit outside both branches:
they are terminal for the step that waited, but they are not input defects.
"""

from typing import Any, Optional


class ProvchestraError(Exception):
    """Base exception for provchestra."""
    pass


class TransientError(ProvchestraError):
    """
    Transient error - safe to retry.

    Examples:
    - Throttling response (HTTP 429)
    - Network timeout
    - Service temporarily unavailable
    - Connection reset
    """
    pass


class PermanentError(ProvchestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid configuration
    - Authorization denied
    - Required deployment output missing
    """
    pass


class ConfigurationError(PermanentError):
    """Bad configuration input. Raised before any resource is touched."""
    pass


class CyclicDependencyError(PermanentError):
    """The resource graph contains a dependency cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


class ProvisioningError(PermanentError):
    """
    The provisioning backend reported a failed deployment (Phase 1).

    Carries the backend's diagnostics and per-node status so that the run
    report can point at the failing resources.
    """

    def __init__(
        self,
        message: str,
        diagnostics: Optional[list[dict[str, Any]]] = None,
        node_status: Optional[dict[str, str]] = None,
        run_id: Optional[str] = None,
    ):
        self.diagnostics = list(diagnostics or [])
        self.node_status = dict(node_status or {})
        self.run_id = run_id
        super().__init__(message)


class MissingOutputError(PermanentError):
    """A non-optional deployment output was requested but is absent."""

    def __init__(self, key: str, available: Optional[list[str]] = None):
        self.key = key
        self.available = sorted(available or [])
        super().__init__(f"Deployment output '{key}' is not available")


class AuthenticationError(PermanentError):
    """Credential acquisition was denied. Repeated failures are rarely transient."""

    def __init__(self, message: str, audience: Optional[str] = None):
        self.audience = audience
        super().__init__(message)


class ResourceUnavailableError(PermanentError):
    """A readiness probe reported a terminal error (e.g. the resource was deleted)."""

    def __init__(self, resource: str, detail: str = ""):
        self.resource = resource
        self.detail = detail
        message = f"Resource '{resource}' is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReadinessTimeoutError(ProvchestraError):
    """The readiness poller waited out its maximum duration."""

    def __init__(self, resource: str, waited_seconds: float, probes: int):
        self.resource = resource
        self.waited_seconds = waited_seconds
        self.probes = probes
        super().__init__(
            f"Resource '{resource}' not ready after {waited_seconds:.1f}s ({probes} probes)"
        )


class Cancelled(ProvchestraError):
    """An operator-initiated cancellation aborted the current wait or run."""

    def __init__(self, resource: Optional[str] = None):
        self.resource = resource
        message = "Cancelled"
        if resource:
            message = f"Cancelled while waiting for '{resource}'"
        super().__init__(message)


class AzureCliError(PermanentError):
    """An `az` command failed with a non-transient error."""

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"az {' '.join(command[:3])} failed (exit {returncode}): {stderr.strip()}")


def is_transient(error: BaseException) -> bool:
    """
    Classify an exception for retry.

    TransientError and the builtin TimeoutError/ConnectionError are transient.
    Everything else, including unknown exceptions, is permanent (fail fast).
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(error, ProvchestraError):
        return False
    return isinstance(error, (TimeoutError, ConnectionError))
