"""
Template snapshot image IDs.

Maps template names to pre-built Modal snapshot images. A sandbox created
from one of these images already has the template scaffold and its
dependencies installed, so no git clone or install step is needed.

Each entry carries an image for the main (production) environment and,
optionally, a separate image for the dev environment.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .settings import DeployEnvironment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotInfo:
    """Pre-built snapshot image for a template."""
    image_id: str
    description: str
    created_at: str
    version: str
    dev_image_id: Optional[str] = None


TEMPLATE_SNAPSHOTS: dict[str, SnapshotInfo] = {
    "database-vite-template": SnapshotInfo(
        image_id="im-BtQaOaga9rKaqJEQ06TJBP",
        dev_image_id="im-oOBbQUYV31mU1DAf7YvKug",
        description="Base Vite + database template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-todo-template": SnapshotInfo(
        image_id="im-WX5emDijDwwnj7Csp9yVCl",
        dev_image_id="im-r8do7zgmgsfQ6NAnZ16oeD",
        description="Todo app template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-calculator-template": SnapshotInfo(
        image_id="im-dCKhTNXCYzwmrd7a0dEzXr",
        dev_image_id="im-lxSoOCM2qJ0khoFFmdWtFG",
        description="Calculator template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-content-sharing-template": SnapshotInfo(
        image_id="im-qA61sJrU8vEVk9pqFOa2rG",
        dev_image_id="im-VNaAvOwLiaRFuUJTbJGRhl",
        description="Content sharing template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-landing-page-template": SnapshotInfo(
        image_id="im-3R2HBe39WKlLcTvUMsAwwq",
        dev_image_id="im-O3dBPWUERCMx1CffqIw6vL",
        description="Landing page template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-tracker-template": SnapshotInfo(
        image_id="im-bcowjZ8dSXzGSxX6nyyvQJ",
        dev_image_id="im-2ipi7zguRIrnWUod2KsjQ1",
        description="Tracker template",
        created_at="2025-11-26",
        version="v12",
    ),
    # TanStack Start + Convex templates
    "tanstack-template": SnapshotInfo(
        image_id="im-5KUREocgh08oG0OXAFxAwH",
        dev_image_id="im-p8X7Nediv8nUXPe2v3EKnU",
        description="TanStack base template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-todo-template": SnapshotInfo(
        image_id="im-cScxJkjQTbp3QD3LbB4EwJ",
        dev_image_id="im-jyEJb0yi6NObfhCNan9ga3",
        description="TanStack todo template",
        created_at="2025-12-05",
        version="v1",
    ),
    # Empty template for imported projects
    "shipper-empty-bun-template": SnapshotInfo(
        image_id="im-2Lo0DsRhOsNtTlYZ67qfGc",
        dev_image_id="im-rhJUt02flMOGZFpc2CZI1p",
        description="Empty template for imported projects",
        created_at="2025-12-13",
        version="v1",
    ),
}


class SnapshotCatalog:
    """
    Template snapshot lookup: static table plus images registered at runtime.

    Runtime registrations come from template bootstraps during recovery, so a
    template that had no pre-built image gains one for the environment the
    bootstrap ran in.
    """

    def __init__(self, snapshots: dict[str, SnapshotInfo] | None = None):
        self._snapshots = dict(TEMPLATE_SNAPSHOTS if snapshots is None else snapshots)
        self._registered: dict[tuple[str, str], str] = {}

    def get_snapshot_image_id(
        self,
        template_name: str,
        environment: DeployEnvironment = "main",
    ) -> Optional[str]:
        """
        Get snapshot image ID for a template in an environment.

        Returns None if no snapshot exists for the requested environment.
        """
        registered = self._registered.get((template_name, environment))
        if registered:
            return registered

        snapshot = self._snapshots.get(template_name)
        if not snapshot:
            return None

        if environment == "dev":
            return snapshot.dev_image_id
        return snapshot.image_id or None

    def has_snapshot(self, template_name: str, environment: DeployEnvironment = "main") -> bool:
        """Check if a template has a snapshot for an environment."""
        return self.get_snapshot_image_id(template_name, environment) is not None

    def register(self, template_name: str, environment: DeployEnvironment, image_id: str) -> None:
        """Record a freshly bootstrapped baseline image for a template."""
        self._registered[(template_name, environment)] = image_id
        logger.info(
            f"[Snapshots] Registered baseline {image_id} for {template_name} ({environment})"
        )

    def available_templates(self) -> list[str]:
        """All template names with at least one known image."""
        names = set(self._snapshots) | {name for name, _ in self._registered}
        return sorted(names)


# Global catalog instance
snapshot_catalog = SnapshotCatalog()
