"""
Sandbox health checks.

A project's sandbox is healthy when it exists and contains the files a Vite
app cannot start without. Brand-new projects that have never generated any
code are never reported as broken.
"""

import asyncio
import logging
import re
from typing import Iterable, Optional

from config import DeployEnvironment, settings
from models.sandbox import (
    REASON_HEALTH_CHECK_FAILED,
    REASON_LIST_FILES_FAILED,
    REASON_MISSING_CRITICAL_FILES,
    REASON_MISSING_SANDBOX,
    REASON_NEW_PROJECT,
    REASON_NON_MODAL_PROVIDER,
    HealthStatus,
)

logger = logging.getLogger(__name__)


CORE_FILE_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("package.json", re.compile(r"^package\.json$", re.IGNORECASE)),
    ("vite.config", re.compile(r"^vite\.config\.(js|ts|mjs|cjs)$", re.IGNORECASE)),
    ("app entry", re.compile(r"^(src/)?(main|app|index|App)\.(t|j)sx?$", re.IGNORECASE)),
]

CONFIG_PATTERN: tuple[str, re.Pattern] = (
    "tsconfig/jsconfig",
    re.compile(r"^(tsconfig|jsconfig)(\.[^.]+)?\.json$", re.IGNORECASE),
)

# Only TypeScript sources under src/ make a tsconfig mandatory
TYPESCRIPT_SOURCE_FILE_PATTERN = re.compile(r"^src/.*\.(ts|tsx)$", re.IGNORECASE)


def normalize_sandbox_path(path: str, workdir: str = "/workspace") -> str:
    """Turn a sandbox path into a workspace-relative one."""
    root = workdir.rstrip("/")
    if root and (path == root or path.startswith(root + "/")):
        path = path[len(root):]
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def required_file_patterns(paths: Iterable[str]) -> list[tuple[str, re.Pattern]]:
    """Required (label, pattern) pairs for a file listing."""
    patterns = list(CORE_FILE_PATTERNS)
    if any(TYPESCRIPT_SOURCE_FILE_PATTERN.search(path) for path in paths):
        patterns.append(CONFIG_PATTERN)
    return patterns


def find_missing_files(paths: Iterable[str]) -> list[str]:
    """Labels of required files with no match among the given paths."""
    paths = list(paths)
    return [
        label
        for label, pattern in required_file_patterns(paths)
        if not any(pattern.search(path) for path in paths)
    ]


class HealthChecker:
    """Decides whether a project's current sandbox is usable."""

    def __init__(
        self,
        store,
        provider,
        default_provider: str | None = None,
        environment: DeployEnvironment = "main",
        workdir: str | None = None,
    ):
        self.store = store
        self.provider = provider
        self.default_provider = default_provider or settings.default_sandbox_provider
        self.environment = environment
        self.workdir = workdir or settings.sandbox_workdir

    async def check(self, project_id: str, timeout: Optional[float] = None) -> HealthStatus:
        """
        Check a project's sandbox. Never raises.

        Args:
            project_id: Project to check
            timeout: Optional bound (seconds) on the file listing call
        """
        try:
            project = await self.store.get_project(project_id)
            sandbox_id = project.sandbox_id if project else None

            if not sandbox_id:
                fragment_count = await self.store.count_fragments(project_id)
                if fragment_count == 0:
                    return HealthStatus(broken=False, sandbox_id=None, reason=REASON_NEW_PROJECT)
                logger.warning(
                    f"[SandboxHealth] Project {project_id} has {fragment_count} fragments but no sandbox"
                )
                return HealthStatus(broken=True, sandbox_id=None, reason=REASON_MISSING_SANDBOX)

            provider = project.sandbox_provider or self.default_provider
            if provider != self.default_provider:
                return HealthStatus(
                    broken=False,
                    sandbox_id=sandbox_id,
                    reason=REASON_NON_MODAL_PROVIDER,
                )
        except Exception as e:
            logger.error(f"[SandboxHealth] Failed to load project {project_id}: {e}")
            return HealthStatus(broken=True, sandbox_id=None, reason=REASON_HEALTH_CHECK_FAILED)

        try:
            listing = self.provider.list_files(sandbox_id)
            raw_paths = await (asyncio.wait_for(listing, timeout) if timeout is not None else listing)
        except Exception as e:
            logger.warning(
                f"[SandboxHealth] Listing files failed for sandbox {sandbox_id} "
                f"(project={project_id}, env={self.environment}): {e}"
            )
            return HealthStatus(broken=True, sandbox_id=sandbox_id, reason=REASON_LIST_FILES_FAILED)

        paths = {normalize_sandbox_path(path, self.workdir) for path in raw_paths}
        paths.discard("")
        logger.debug(
            f"[SandboxHealth] Sandbox {sandbox_id} lists {len(paths)} files (env={self.environment})"
        )

        missing = find_missing_files(paths)
        if missing:
            logger.warning(
                f"[SandboxHealth] Sandbox {sandbox_id} for project {project_id} "
                f"is missing critical files: {', '.join(missing)}"
            )
            return HealthStatus(
                broken=True,
                sandbox_id=sandbox_id,
                reason=REASON_MISSING_CRITICAL_FILES,
                missing_files=missing,
            )

        return HealthStatus(broken=False, sandbox_id=sandbox_id)
