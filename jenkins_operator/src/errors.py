from __future__ import annotations


class OperatorError(RuntimeError):
    """Base class for errors raised by the operator."""


class ConfigError(OperatorError):
    """Raised when the operator configuration is invalid."""


class ManagementAPIError(OperatorError):
    """Raised when the Jenkins HTTP API cannot be reached or rejects a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ReconcileError(OperatorError):
    """A reconcile stage failed; the whole cycle should be retried later.

    ``stage`` names the step that failed so logs and metrics can tell a broken
    service update apart from an unreachable Jenkins API.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
