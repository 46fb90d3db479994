"""
Pytest configuration and fixtures for sandbox recovery tests.

Provides an in-memory project store and a recording fake sandbox provider,
so recovery can be exercised without PostgreSQL or Modal.
"""

import asyncio
import itertools
import os
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

# Add the parent directory to the path so we can import services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.snapshots import SnapshotCatalog  # noqa: E402
from models.sandbox import BuildStatus, Fragment, Project  # noqa: E402
from services.exceptions import SandboxProviderError  # noqa: E402
from services.modal_manager import CreateSandboxOptions, SandboxInfo  # noqa: E402
from services.sandbox_recovery import RecoveryOrchestrator  # noqa: E402

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

HEALTHY_FILES = {
    "package.json",
    "vite.config.ts",
    "index.html",
    "src/main.tsx",
    "src/App.tsx",
    "tsconfig.json",
}


def minutes(n: int) -> datetime:
    return BASE_TIME + timedelta(minutes=n)


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryProjectStore:
    """ProjectStore backed by dicts."""

    def __init__(self):
        self.projects: dict[str, Project] = {}
        self.fragments: dict[str, Fragment] = {}
        self.fail_get_project = False
        self.recovered_calls: list[tuple[str, str, Optional[str]]] = []

    def add_project(self, project_id: str, **fields) -> Project:
        project = Project(id=project_id, **fields)
        self.projects[project_id] = project
        return project

    def add_fragment(
        self,
        fragment_id: str,
        project_id: str,
        created_at: datetime,
        files: Any = None,
        snapshot_image_id: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> Fragment:
        fragment = Fragment(
            id=fragment_id,
            project_id=project_id,
            created_at=created_at,
            updated_at=updated_at or created_at,
            files=files,
            snapshot_image_id=snapshot_image_id,
        )
        self.fragments[fragment_id] = fragment
        return fragment

    def _project_fragments(self, project_id: str) -> list[Fragment]:
        return [f for f in self.fragments.values() if f.project_id == project_id]

    async def get_project(self, project_id: str) -> Optional[Project]:
        if self.fail_get_project:
            raise ConnectionError("database unavailable")
        project = self.projects.get(project_id)
        return replace(project) if project else None

    async def count_fragments(self, project_id: str) -> int:
        return len(self._project_fragments(project_id))

    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        return self.fragments.get(fragment_id)

    async def get_latest_fragment(self, project_id: str) -> Optional[Fragment]:
        fragments = self._project_fragments(project_id)
        return max(fragments, key=lambda f: f.created_at, default=None)

    async def get_latest_updated_fragment(self, project_id: str) -> Optional[Fragment]:
        fragments = self._project_fragments(project_id)
        return max(fragments, key=lambda f: f.updated_at or f.created_at, default=None)

    async def get_latest_snapshot_fragment(
        self,
        project_id: str,
        created_before: Optional[datetime] = None,
    ) -> Optional[Fragment]:
        candidates = [
            f for f in self._project_fragments(project_id)
            if f.snapshot_image_id
            and (created_before is None or f.created_at <= created_before)
        ]
        return max(candidates, key=lambda f: f.created_at, default=None)

    async def update_fragment_snapshot(self, fragment_id: str, snapshot_image_id: str) -> None:
        self.fragments[fragment_id].snapshot_image_id = snapshot_image_id

    async def mark_project_recovered(
        self,
        project_id: str,
        sandbox_id: str,
        active_fragment_id: Optional[str] = None,
    ) -> None:
        self.recovered_calls.append((project_id, sandbox_id, active_fragment_id))
        project = self.projects[project_id]
        project.sandbox_id = sandbox_id
        if active_fragment_id:
            project.active_fragment_id = active_fragment_id
        project.build_status = BuildStatus.READY
        project.build_status_updated_at = datetime.now(timezone.utc)
        project.build_error = None

    async def find_project_by_sandbox_id(
        self,
        sandbox_id: str,
        exclude_project_id: Optional[str] = None,
    ) -> Optional[str]:
        for project in self.projects.values():
            if project.sandbox_id == sandbox_id and project.id != exclude_project_id:
                return project.id
        return None


# =============================================================================
# Fake provider
# =============================================================================

@dataclass
class CreateCall:
    project_id: str
    fragment_id: Optional[str]
    template_name: str
    options: CreateSandboxOptions


@dataclass
class FakeSandboxProvider:
    """Records provider calls; sandboxes are just sets of file paths."""

    catalog: SnapshotCatalog
    environment: str = "main"
    sandboxes: dict[str, set[str]] = field(default_factory=dict)
    created: list[CreateCall] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    snapshots: list[tuple[str, str]] = field(default_factory=list)
    new_sandbox_files: set[str] = field(default_factory=lambda: set(HEALTHY_FILES))
    fail_create: bool = False
    fail_snapshot: bool = False
    fail_delete: bool = False
    create_delay: float = 0.0
    list_delay: float = 0.0

    def __post_init__(self):
        self._ids = itertools.count(1)

    def add_sandbox(self, sandbox_id: str, files=HEALTHY_FILES) -> None:
        self.sandboxes[sandbox_id] = set(files)

    async def create_sandbox(
        self,
        project_id: str,
        fragment_id: Optional[str],
        template_name: str,
        options: CreateSandboxOptions,
    ) -> SandboxInfo:
        self.created.append(CreateCall(project_id, fragment_id, template_name, options))
        await asyncio.sleep(self.create_delay)
        if self.fail_create:
            raise SandboxProviderError("create failed")

        seeded_from_repo = (
            not options.recovery_snapshot_image_id
            and not self.catalog.has_snapshot(template_name, self.environment)
        )
        if seeded_from_repo:
            self.catalog.register(template_name, self.environment, f"im-template-{template_name}")

        sandbox_id = f"sb-new-{next(self._ids)}"
        self.sandboxes[sandbox_id] = set(self.new_sandbox_files)
        return SandboxInfo(
            sandbox_id=sandbox_id,
            sandbox_url=f"https://{sandbox_id}.example.dev",
            template_name=template_name,
        )

    async def delete_sandbox(self, sandbox_id: str, project_id: str) -> None:
        self.deleted.append(sandbox_id)
        if self.fail_delete:
            raise SandboxProviderError("delete failed")
        self.sandboxes.pop(sandbox_id, None)

    async def list_files(self, sandbox_id: str) -> set[str]:
        await asyncio.sleep(self.list_delay)
        if sandbox_id not in self.sandboxes:
            raise SandboxProviderError(f"Sandbox {sandbox_id} has finished")
        return {f"/workspace/{path}" for path in self.sandboxes[sandbox_id]}

    async def create_filesystem_snapshot(
        self,
        sandbox: SandboxInfo,
        fragment_id: str,
        project_id: str,
    ) -> str:
        if self.fail_snapshot:
            raise SandboxProviderError("snapshot failed")
        image_id = f"im-{fragment_id}"
        self.snapshots.append((sandbox.sandbox_id, image_id))
        return image_id

    async def has_snapshot(self, template_name: str, environment: str) -> bool:
        return self.catalog.has_snapshot(template_name, environment)


class FakeLockCache:
    """CacheService stand-in with per-resource asyncio locks."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.locks: dict[str, asyncio.Lock] = {}
        self.acquired: list[str] = []
        self.waits: list[float] = []

    async def acquire_lock(self, resource: str, ttl=None, wait_seconds: float = 0.0):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.waits.append(wait_seconds)
        lock = self.locks.setdefault(resource, asyncio.Lock())
        await lock.acquire()
        self.acquired.append(resource)
        return lock

    async def release_lock(self, lock: asyncio.Lock) -> bool:
        lock.release()
        return True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return InMemoryProjectStore()


@pytest.fixture
def catalog():
    """Empty catalog so template snapshots are under test control."""
    return SnapshotCatalog(snapshots={})


@pytest.fixture
def provider(catalog):
    return FakeSandboxProvider(catalog=catalog)


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(store, provider, events):
    return RecoveryOrchestrator(
        store,
        provider,
        environment="main",
        default_provider="modal",
        fallback_template="database-vite-template",
        observer=lambda event, data: events.append((event, data)),
    )
