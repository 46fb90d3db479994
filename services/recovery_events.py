"""Debug checkpoints emitted during sandbox recovery."""

import logging
from typing import Any, Callable

logger = logging.getLogger("sandbox.recovery")

# Checkpoint names
RECOVERY_START = "recovery-start"
BEFORE_VERIFY = "before-verify"
VERIFY_SUCCESS = "verify-success"
VERIFY_FAILED = "verify-failed"

RecoveryObserver = Callable[[str, dict[str, Any]], None]


def noop_observer(event: str, data: dict[str, Any]) -> None:
    return None


def logging_observer(event: str, data: dict[str, Any]) -> None:
    details = " ".join(f"{key}={value}" for key, value in data.items())
    logger.info(f"[SandboxRecovery:debug] {event} {details}".rstrip())


def build_recovery_observer(enabled: bool) -> RecoveryObserver:
    """Logging observer when recovery debugging is on, else a no-op."""
    return logging_observer if enabled else noop_observer
