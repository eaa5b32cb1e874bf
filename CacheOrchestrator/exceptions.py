"""Custom exceptions for the CacheOrchestrator module."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for all CacheOrchestrator errors."""


class ValidationError(OrchestratorError):
    """Raised when request parameters are malformed.

    Always raised before any remote action is taken.
    """

    def __init__(
        self,
        errors: list[str],
        message: str = "Request validation failed",
    ) -> None:
        self.errors = errors
        super().__init__(f"{message}: {'; '.join(errors)}")


class IllegalTransition(OrchestratorError):
    """Raised when the requested workflow conflicts with recorded state."""

    def __init__(self, site_id: str, message: str) -> None:
        self.site_id = site_id
        super().__init__(message)


class AlreadyEnabled(IllegalTransition):
    def __init__(self, site_id: str) -> None:
        super().__init__(site_id, f"Caching is already enabled for site '{site_id}'")


class NotEnabled(IllegalTransition):
    def __init__(self, site_id: str) -> None:
        super().__init__(site_id, f"Caching is not enabled for site '{site_id}'")


class SiteNotFoundError(OrchestratorError):
    """Raised when a site id is not registered in the desired-state store."""

    def __init__(self, site_id: str) -> None:
        self.site_id = site_id
        super().__init__(f"Unknown site: {site_id}")


class StoreError(OrchestratorError):
    """Raised when the desired-state store cannot be read or written."""


class LockTimeoutError(OrchestratorError):
    """Raised when a scoped lock cannot be acquired in time."""


class WorkflowCancelled(OrchestratorError):
    """Raised when a workflow is cancelled between two steps."""


class StepFailed(OrchestratorError):
    """Raised when a provisioning step failed and the workflow was unwound.

    Attributes:
        step_name: Name of the step whose probe or forward action failed.
        cause: The underlying exception (CommandFailed, ChannelError, ...).
    """

    def __init__(self, step_name: str, cause: BaseException) -> None:
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Step '{step_name}' failed: {cause}")


class CompensationFailure:
    """One compensating action that failed during rollback."""

    def __init__(self, step_name: str, error: BaseException) -> None:
        self.step_name = step_name
        self.error = error

    def __repr__(self) -> str:
        return f"CompensationFailure({self.step_name!r}, {self.error!r})"

    def __str__(self) -> str:
        return f"{self.step_name}: {self.error}"


class RollbackPartial(StepFailed):
    """A step failed AND one or more compensating actions failed too.

    The host may be left partially modified and needs manual attention.
    """

    def __init__(
        self,
        step_name: str,
        cause: BaseException,
        failures: list[CompensationFailure],
    ) -> None:
        self.failures = failures
        super().__init__(step_name, cause)
        self.args = (
            f"Step '{step_name}' failed: {cause}; rollback incomplete: "
            + "; ".join(str(f) for f in failures),
        )
