"""
Database service for the sandbox recovery controller.

Uses asyncpg for async PostgreSQL access to the schema owned by the web app.
Only the project and fragment columns recovery needs are read or written.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import asyncpg

from config import settings
from models.sandbox import BuildStatus, Fragment, Project

logger = logging.getLogger(__name__)


class ProjectStore(Protocol):
    """Project and fragment access used by health checks and recovery."""

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def count_fragments(self, project_id: str) -> int: ...

    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]: ...

    async def get_latest_fragment(self, project_id: str) -> Optional[Fragment]: ...

    async def get_latest_updated_fragment(self, project_id: str) -> Optional[Fragment]: ...

    async def get_latest_snapshot_fragment(
        self,
        project_id: str,
        created_before: Optional[datetime] = None,
    ) -> Optional[Fragment]: ...

    async def update_fragment_snapshot(self, fragment_id: str, snapshot_image_id: str) -> None: ...

    async def mark_project_recovered(
        self,
        project_id: str,
        sandbox_id: str,
        active_fragment_id: Optional[str] = None,
    ) -> None: ...

    async def find_project_by_sandbox_id(
        self,
        sandbox_id: str,
        exclude_project_id: Optional[str] = None,
    ) -> Optional[str]: ...


PROJECT_COLUMNS = """
    p.id, p.sandbox_id, p.sandbox_provider, p.active_fragment_id,
    p.build_status, p.build_status_updated_at, p.build_error, p.imported_from,
    ci.id AS code_import_id, ci.imported_from AS code_import_imported_from
"""

FRAGMENT_COLUMNS = "id, project_id, files, snapshot_image_id, created_at, updated_at"


class DatabaseService:
    """
    Async database service implementing ProjectStore.

    Tables:
    - projects
    - code_imports (optional import provenance per project)
    - v2_fragments (file-tree snapshots, optionally with a snapshot image)
    """

    def __init__(self, database_url: str | None = None):
        """Initialize database service."""
        self.database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
                command_timeout=30,
            )
            logger.info("[Database] Connected to PostgreSQL")

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("[Database] Disconnected from PostgreSQL")

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create connection pool."""
        if self._pool is None:
            await self.connect()
        return self._pool  # type: ignore

    # =========================================================================
    # Project Operations
    # =========================================================================

    async def get_project(self, project_id: str) -> Optional[Project]:
        """Get project by ID, joined with its code import record."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {PROJECT_COLUMNS}
                FROM projects p
                LEFT JOIN code_imports ci ON ci.project_id = p.id
                WHERE p.id = $1
                """,
                project_id,
            )
            return Project.from_row(dict(row)) if row else None

    async def mark_project_recovered(
        self,
        project_id: str,
        sandbox_id: str,
        active_fragment_id: Optional[str] = None,
    ) -> None:
        """
        Point the project at its recovered sandbox and mark it READY.

        active_fragment_id is only overwritten when one is given.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects SET
                    sandbox_id = $2,
                    active_fragment_id = COALESCE($3, active_fragment_id),
                    build_status = $4,
                    build_status_updated_at = $5,
                    build_error = NULL,
                    updated_at = NOW()
                WHERE id = $1
                """,
                project_id,
                sandbox_id,
                active_fragment_id,
                BuildStatus.READY.value,
                datetime.now(timezone.utc),
            )

    async def find_project_by_sandbox_id(
        self,
        sandbox_id: str,
        exclude_project_id: Optional[str] = None,
    ) -> Optional[str]:
        """Return the ID of a project (other than the excluded one) using a sandbox."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id FROM projects
                WHERE sandbox_id = $1
                  AND ($2::text IS NULL OR id <> $2)
                LIMIT 1
                """,
                sandbox_id,
                exclude_project_id,
            )
            return row["id"] if row else None

    # =========================================================================
    # Fragment Operations
    # =========================================================================

    async def count_fragments(self, project_id: str) -> int:
        """Count fragments of a project."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM v2_fragments WHERE project_id = $1",
                project_id,
            )
            return int(count or 0)

    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        """Get fragment by ID."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {FRAGMENT_COLUMNS} FROM v2_fragments WHERE id = $1",
                fragment_id,
            )
            return Fragment.from_row(dict(row)) if row else None

    async def get_latest_fragment(self, project_id: str) -> Optional[Fragment]:
        """Get the most recently created fragment of a project."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {FRAGMENT_COLUMNS} FROM v2_fragments
                WHERE project_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                project_id,
            )
            return Fragment.from_row(dict(row)) if row else None

    async def get_latest_updated_fragment(self, project_id: str) -> Optional[Fragment]:
        """Get the most recently updated fragment of a project."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {FRAGMENT_COLUMNS} FROM v2_fragments
                WHERE project_id = $1
                ORDER BY updated_at DESC NULLS LAST, created_at DESC
                LIMIT 1
                """,
                project_id,
            )
            return Fragment.from_row(dict(row)) if row else None

    async def get_latest_snapshot_fragment(
        self,
        project_id: str,
        created_before: Optional[datetime] = None,
    ) -> Optional[Fragment]:
        """
        Get the latest fragment that has a snapshot image.

        Args:
            project_id: Project to search
            created_before: Optional inclusive ceiling on created_at
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {FRAGMENT_COLUMNS} FROM v2_fragments
                WHERE project_id = $1
                  AND snapshot_image_id IS NOT NULL
                  AND ($2::timestamptz IS NULL OR created_at <= $2)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                project_id,
                created_before,
            )
            return Fragment.from_row(dict(row)) if row else None

    async def update_fragment_snapshot(self, fragment_id: str, snapshot_image_id: str) -> None:
        """Attach a filesystem snapshot image to a fragment."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE v2_fragments SET
                    snapshot_image_id = $2,
                    snapshot_created_at = NOW(),
                    snapshot_provider = 'modal'
                WHERE id = $1
                """,
                fragment_id,
                snapshot_image_id,
            )


# Global database instance
_db: DatabaseService | None = None


async def get_database() -> DatabaseService:
    """Get or create the global database service."""
    global _db
    if _db is None:
        _db = DatabaseService()
        await _db.connect()
    return _db


async def close_database() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.disconnect()
        _db = None
