"""Data models for sandbox health and recovery."""

from .sandbox import (
    REASON_HEALTH_CHECK_FAILED,
    REASON_LIST_FILES_FAILED,
    REASON_MISSING_CRITICAL_FILES,
    REASON_MISSING_SANDBOX,
    REASON_NEW_PROJECT,
    REASON_NON_MODAL_PROVIDER,
    BuildStatus,
    Fragment,
    HealthStatus,
    Project,
    RecoveryResult,
    RecoverySnapshotSelection,
    RecoveryState,
    SnapshotSource,
    TemplateResolution,
    TemplateSource,
)

__all__ = [
    "BuildStatus",
    "RecoveryState",
    "Project",
    "Fragment",
    "HealthStatus",
    "TemplateResolution",
    "TemplateSource",
    "SnapshotSource",
    "RecoverySnapshotSelection",
    "RecoveryResult",
    "REASON_NEW_PROJECT",
    "REASON_MISSING_SANDBOX",
    "REASON_NON_MODAL_PROVIDER",
    "REASON_MISSING_CRITICAL_FILES",
    "REASON_LIST_FILES_FAILED",
    "REASON_HEALTH_CHECK_FAILED",
]
