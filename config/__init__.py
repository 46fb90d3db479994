"""Configuration package for the sandbox recovery controller."""

from .settings import DeployEnvironment, Settings, settings
from .snapshots import (
    TEMPLATE_SNAPSHOTS,
    SnapshotCatalog,
    SnapshotInfo,
    snapshot_catalog,
)

__all__ = [
    "settings",
    "Settings",
    "DeployEnvironment",
    "TEMPLATE_SNAPSHOTS",
    "SnapshotCatalog",
    "SnapshotInfo",
    "snapshot_catalog",
]
