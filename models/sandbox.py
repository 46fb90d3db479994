"""
Data model for sandbox health and recovery.

Project and Fragment mirror rows of the shared PostgreSQL schema (the schema
itself is owned by the web app's migrations). HealthStatus, TemplateResolution
and the recovery values are ephemeral and never persisted.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping, Optional


# =============================================================================
# ENUMS
# =============================================================================

class BuildStatus(str, Enum):
    """Build status of a project."""
    IDLE = "IDLE"
    BUILDING = "BUILDING"
    READY = "READY"
    ERROR = "ERROR"


class RecoveryState(str, Enum):
    """States of a single recovery run."""
    CHECKING = "CHECKING"
    RESOLVING_SNAPSHOT = "RESOLVING_SNAPSHOT"
    MATERIALIZING = "MATERIALIZING"
    RECONCILING = "RECONCILING"
    VERIFYING = "VERIFYING"
    CLEANING_UP = "CLEANING_UP"
    # Terminal
    HEALTHY = "HEALTHY"
    SKIPPED = "SKIPPED"  # Sandbox owned by another provider
    RECOVERED = "RECOVERED"
    FAILED = "FAILED"


# Health reason codes
REASON_NEW_PROJECT = "new-project-no-generation-yet"
REASON_MISSING_SANDBOX = "missing-sandbox"
REASON_NON_MODAL_PROVIDER = "non-modal-provider"
REASON_MISSING_CRITICAL_FILES = "missing-critical-files"
REASON_LIST_FILES_FAILED = "list-files-failed"
REASON_HEALTH_CHECK_FAILED = "health-check-failed"

TemplateSource = Literal["project", "fragment", "heuristic", "fallback", "override"]

SnapshotSource = Literal[
    "active-fragment",
    "fallback-fragment",
    "latest-snapshot",
    "template-bootstrap",
]


# =============================================================================
# STORED RECORDS
# =============================================================================

@dataclass
class Project:
    """A user project and the sandbox it currently points at."""
    id: str
    sandbox_id: Optional[str] = None
    sandbox_provider: Optional[str] = None
    active_fragment_id: Optional[str] = None
    build_status: BuildStatus = BuildStatus.IDLE
    build_status_updated_at: Optional[datetime] = None
    build_error: Optional[str] = None
    imported_from: Optional[str] = None
    code_import_id: Optional[str] = None
    code_import_imported_from: Optional[str] = None

    @property
    def is_imported(self) -> bool:
        return self.code_import_id is not None

    @property
    def provenance(self) -> Optional[str]:
        """Import source, falling back to the linked code import record."""
        return self.imported_from or self.code_import_imported_from

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Project":
        status = row.get("build_status") or BuildStatus.IDLE.value
        return cls(
            id=row["id"],
            sandbox_id=row.get("sandbox_id"),
            sandbox_provider=row.get("sandbox_provider"),
            active_fragment_id=row.get("active_fragment_id"),
            build_status=BuildStatus(status),
            build_status_updated_at=row.get("build_status_updated_at"),
            build_error=row.get("build_error"),
            imported_from=row.get("imported_from"),
            code_import_id=row.get("code_import_id"),
            code_import_imported_from=row.get("code_import_imported_from"),
        )


@dataclass
class Fragment:
    """
    Immutable snapshot of a project's file tree.

    `files` is kept exactly as stored (a JSON string or a decoded object);
    use `services.template_resolver.ensure_file_map` to shape-check it.
    """
    id: str
    project_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    files: Any = None
    snapshot_image_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Fragment":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            files=row.get("files"),
            snapshot_image_id=row.get("snapshot_image_id"),
        )


# =============================================================================
# EPHEMERAL VALUES
# =============================================================================

@dataclass
class HealthStatus:
    """Result of a health check. Recomputed on demand."""
    broken: bool
    sandbox_id: Optional[str]
    reason: Optional[str] = None
    missing_files: Optional[list[str]] = None

    def to_dict(self) -> dict:
        result: dict[str, Any] = {
            "broken": self.broken,
            "sandbox_id": self.sandbox_id,
            "reason": self.reason,
        }
        if self.missing_files is not None:
            result["missing_files"] = list(self.missing_files)
        return result


@dataclass
class TemplateResolution:
    """Which base template a project most resembles."""
    template_name: str
    source: TemplateSource
    has_snapshot: bool

    def to_dict(self) -> dict:
        return {
            "template_name": self.template_name,
            "source": self.source,
            "has_snapshot": self.has_snapshot,
        }


@dataclass
class RecoverySnapshotSelection:
    """Outcome of snapshot selection for a recovery run."""
    fragment_id: Optional[str]
    snapshot_image_id: Optional[str]
    source: Optional[SnapshotSource] = None
    template_name: Optional[str] = None
    # Live sandbox left over from a template bootstrap, reused by materialization
    sandbox: Any = None


@dataclass
class RecoveryResult:
    """Returned by ensure_recovered."""
    recovered: bool
    sandbox_id: Optional[str]
    state: RecoveryState = RecoveryState.HEALTHY
    fragment_id: Optional[str] = None
    template: Optional[TemplateResolution] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "recovered": self.recovered,
            "sandbox_id": self.sandbox_id,
            "state": self.state.value,
            "fragment_id": self.fragment_id,
        }


def dump_files(files: Mapping[str, str]) -> str:
    """Serialize a file map the way fragments are stored."""
    return json.dumps(dict(files))
