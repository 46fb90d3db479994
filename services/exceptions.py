"""Errors raised by the sandbox recovery services."""

from typing import Optional


SANDBOX_UNAVAILABLE_MESSAGE = (
    "Sandbox is currently unavailable. Recovery is in progress. "
    "Please retry in a few seconds."
)


class SandboxProviderError(RuntimeError):
    """A sandbox provider call failed or timed out."""


class SandboxRecoveryError(RuntimeError):
    """Recovery could not complete."""


class ProjectNotFoundError(SandboxRecoveryError):
    """The project to recover does not exist."""

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class RecoveryVerificationError(SandboxRecoveryError):
    """The recreated sandbox still fails the health check."""

    def __init__(
        self,
        project_id: str,
        sandbox_id: Optional[str],
        reason: Optional[str] = None,
        missing_files: Optional[list[str]] = None,
    ):
        super().__init__(
            "Sandbox recovery failed verification. Critical files still missing."
        )
        self.project_id = project_id
        self.sandbox_id = sandbox_id
        self.reason = reason
        self.missing_files = missing_files or []


class SandboxUnavailableError(RuntimeError):
    """User-facing: the sandbox is broken and recovery is expected shortly."""

    def __init__(self, project_id: str, reason: Optional[str] = None):
        super().__init__(SANDBOX_UNAVAILABLE_MESSAGE)
        self.project_id = project_id
        self.reason = reason
