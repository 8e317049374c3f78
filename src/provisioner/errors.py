"""Error taxonomy shared by every provider path.

Soft outcomes (NO_CHANGES, NOT_FOUND, IN_PROGRESS) are never raised; they are
returned as typed results. Everything here is a hard failure.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass


class ProvisionerError(Exception):
    """Base class for all provisioning errors."""

    pass


class UnsupportedProviderError(ProvisionerError):
    """Raised when a provider token does not name a known provider."""

    def __init__(self, provider: str, supported: Iterable[str]) -> None:
        self.provider = provider
        self.supported = tuple(supported)
        super().__init__(
            f"unsupported provider: {provider} (supported: {', '.join(self.supported)})"
        )


class NotFoundError(ProvisionerError):
    """Raised when a target or resource that must exist is absent."""

    pass


class AlreadyExistsError(ProvisionerError):
    """Raised by domain clients when a create races with an external create.

    Ensure functions catch this and continue.
    """

    pass


class ConfigurationError(ProvisionerError):
    """Raised when configuration validation fails or clients are missing."""

    pass


class ValidationError(ProvisionerError):
    """Raised when caller-supplied options are invalid."""

    pass


class OperationTimeoutError(ProvisionerError, TimeoutError):
    """Raised when a poll loop exceeds its overall timeout."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timeout waiting for {operation} after {timeout_seconds:g}s")


class OperationCancelledError(ProvisionerError):
    """Raised when the caller's cancellation event fires during a wait."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} cancelled")


class OperationFailedError(ProvisionerError):
    """Terminal failure reported by the provider.

    All provider messages are kept on ``messages`` and joined with ``"; "``
    in the string form.
    """

    def __init__(self, operation: str, messages: Sequence[str] = ()) -> None:
        self.operation = operation
        self.messages = tuple(m for m in messages if m)
        detail = "; ".join(self.messages) if self.messages else "no details reported"
        super().__init__(f"{operation} failed: {detail}")


class ConvergenceError(ProvisionerError):
    """Raised when a resource domain fails during convergence."""

    def __init__(self, domain: str, cause: BaseException) -> None:
        self.domain = domain
        self.cause = cause
        super().__init__(f"failed to deploy {domain}: {cause}")


@dataclass(frozen=True)
class DomainFailure:
    """One failed step of a best-effort teardown."""

    domain: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.domain}: {self.error}"


class TeardownError(ProvisionerError):
    """Aggregated failures from a best-effort teardown, in attempt order."""

    def __init__(self, failures: Sequence[DomainFailure]) -> None:
        self.failures = list(failures)
        super().__init__(
            "failed to destroy some resources: " + "; ".join(str(f) for f in self.failures)
        )

    @property
    def domains(self) -> list[str]:
        """Names of the domains that failed, in order."""
        return [f.domain for f in self.failures]
