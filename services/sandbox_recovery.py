"""
Sandbox recovery orchestration.

Rebuilds a broken project sandbox from the best available snapshot:

    CHECKING -> RESOLVING_SNAPSHOT -> MATERIALIZING -> RECONCILING
             -> VERIFYING -> CLEANING_UP -> RECOVERED

A healthy project short-circuits to HEALTHY without touching the provider.
Any fatal step ends in FAILED and raises a SandboxRecoveryError.

Snapshot selection order:
1. The starting fragment's own snapshot image (explicit fragment, else active)
2. The latest snapshot no newer than the starting fragment
3. The latest snapshot of the project
4. A template bootstrap: create a sandbox from the resolved template with the
   fragment's files, snapshot it and attach the image to the fragment
5. No image at all: the template alone
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from config import DeployEnvironment, settings
from models.sandbox import (
    Fragment,
    HealthStatus,
    Project,
    RecoveryResult,
    RecoverySnapshotSelection,
    RecoveryState,
    TemplateResolution,
)

from .exceptions import (
    ProjectNotFoundError,
    RecoveryVerificationError,
    SandboxProviderError,
    SandboxRecoveryError,
    SandboxUnavailableError,
)
from .modal_manager import CreateSandboxOptions, SandboxInfo
from .recovery_events import (
    BEFORE_VERIFY,
    RECOVERY_START,
    VERIFY_FAILED,
    VERIFY_SUCCESS,
    RecoveryObserver,
    build_recovery_observer,
    noop_observer,
)
from .sandbox_health import HealthChecker
from .template_resolver import TemplateResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_PREFIX = "sandbox-recovery:"


class RecoveryOrchestrator:
    """
    Health checks and recovery for project sandboxes.

    Store and provider are injected; an optional CacheService adds a
    per-project single-flight lock around ensure_recovered.
    """

    def __init__(
        self,
        store,
        provider,
        environment: DeployEnvironment | None = None,
        default_provider: str | None = None,
        fallback_template: str | None = None,
        observer: RecoveryObserver | None = None,
        cache=None,
        lock_ttl_seconds: int | None = None,
        lock_wait_seconds: float | None = None,
        default_timeout: float | None = None,
    ):
        self.store = store
        self.provider = provider
        self.environment = environment or settings.deploy_environment()
        self.default_provider = default_provider or settings.default_sandbox_provider
        self.observer = observer or noop_observer
        self.cache = cache
        self.lock_ttl_seconds = lock_ttl_seconds or settings.recovery_lock_ttl_seconds
        self.lock_wait_seconds = (
            settings.recovery_lock_wait_seconds if lock_wait_seconds is None else lock_wait_seconds
        )
        self.default_timeout = default_timeout

        self.health = HealthChecker(
            store,
            provider,
            default_provider=self.default_provider,
            environment=self.environment,
        )
        self.resolver = TemplateResolver(
            store,
            provider,
            environment=self.environment,
            fallback_template=fallback_template,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    async def check_health(self, project_id: str) -> HealthStatus:
        """Read-only health check. Never raises."""
        return await self.health.check(project_id)

    async def resolve_template(
        self,
        project_id: str,
        fragment_id: Optional[str] = None,
        override: Optional[str] = None,
    ) -> TemplateResolution:
        return await self.resolver.resolve(project_id, fragment_id=fragment_id, override=override)

    async def assert_healthy_or_fail(self, project_id: str) -> None:
        """Raise SandboxUnavailableError if the project's sandbox is broken."""
        status = await self.health.check(project_id)
        if status.broken:
            logger.warning(
                f"[SandboxRecovery] Sandbox for project {project_id} unavailable ({status.reason})"
            )
            raise SandboxUnavailableError(project_id, reason=status.reason)

    async def ensure_recovered(
        self,
        project_id: str,
        fragment_id: Optional[str] = None,
        template_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RecoveryResult:
        """
        Make sure the project has a healthy sandbox, rebuilding it if needed.

        Args:
            project_id: Project to recover
            fragment_id: Fragment to recover to (default: the active fragment)
            template_name: Template to rebuild on (default: resolved)
            timeout: Whole-operation deadline in seconds for provider calls

        Raises:
            ProjectNotFoundError: The project does not exist
            RecoveryVerificationError: The new sandbox is still broken
            SandboxRecoveryError: Any other fatal failure
        """
        if timeout is None:
            timeout = self.default_timeout
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None

        lock = await self._acquire_recovery_lock(project_id, deadline)
        try:
            return await self._recover(project_id, fragment_id, template_name, deadline)
        except SandboxRecoveryError:
            raise
        except Exception as e:
            logger.error(f"[SandboxRecovery] Recovery failed for project {project_id}: {e}")
            raise SandboxRecoveryError(f"Sandbox recovery failed for project {project_id}: {e}") from e
        finally:
            if lock is not None:
                await self._release_recovery_lock(project_id, lock)

    # =========================================================================
    # State machine
    # =========================================================================

    async def _recover(
        self,
        project_id: str,
        fragment_id: Optional[str],
        template_name: Optional[str],
        deadline: Optional[float],
    ) -> RecoveryResult:
        self._transition(project_id, RecoveryState.CHECKING)
        self.observer(RECOVERY_START, {
            "project_id": project_id,
            "fragment_id": fragment_id,
            "template_name": template_name,
        })

        project, template = await asyncio.gather(
            self.store.get_project(project_id),
            self._resolve_for_recovery(project_id, fragment_id, template_name),
        )
        if project is None:
            self._transition(project_id, RecoveryState.FAILED)
            raise ProjectNotFoundError(project_id)

        provider = project.sandbox_provider or self.default_provider
        if provider != self.default_provider:
            logger.info(
                f"[SandboxRecovery] Project {project_id} uses provider {provider}, skipping recovery"
            )
            self._transition(project_id, RecoveryState.SKIPPED)
            return RecoveryResult(
                recovered=False,
                sandbox_id=project.sandbox_id,
                state=RecoveryState.SKIPPED,
                template=template,
            )

        status = await self.health.check(project_id, timeout=self._remaining(deadline))
        if not status.broken:
            self._transition(project_id, RecoveryState.HEALTHY)
            return RecoveryResult(
                recovered=False,
                sandbox_id=status.sandbox_id,
                fragment_id=project.active_fragment_id,
                template=template,
            )
        logger.warning(
            f"[SandboxRecovery] Project {project_id} sandbox {status.sandbox_id} is broken "
            f"({status.reason}), recovering on {template.template_name}"
        )

        self._transition(project_id, RecoveryState.RESOLVING_SNAPSHOT)
        selection = await self.find_recovery_snapshot(project, template, fragment_id, deadline)

        self._transition(project_id, RecoveryState.MATERIALIZING)
        sandbox = await self._materialize(project, template, selection, deadline)

        self._transition(project_id, RecoveryState.RECONCILING)
        await self.store.mark_project_recovered(
            project_id,
            sandbox.sandbox_id,
            active_fragment_id=selection.fragment_id,
        )

        self._transition(project_id, RecoveryState.VERIFYING)
        self.observer(BEFORE_VERIFY, {"project_id": project_id, "sandbox_id": sandbox.sandbox_id})
        verification = await self.health.check(project_id, timeout=self._remaining(deadline))
        if verification.broken:
            self.observer(VERIFY_FAILED, {
                "project_id": project_id,
                "sandbox_id": sandbox.sandbox_id,
                "reason": verification.reason,
                "missing_files": verification.missing_files,
            })
            self._transition(project_id, RecoveryState.FAILED)
            raise RecoveryVerificationError(
                project_id,
                sandbox.sandbox_id,
                reason=verification.reason,
                missing_files=verification.missing_files,
            )
        self.observer(VERIFY_SUCCESS, {"project_id": project_id, "sandbox_id": sandbox.sandbox_id})

        self._transition(project_id, RecoveryState.CLEANING_UP)
        await self._cleanup_previous_sandbox(project_id, project.sandbox_id, sandbox.sandbox_id, deadline)

        self._transition(project_id, RecoveryState.RECOVERED)
        logger.info(
            f"[SandboxRecovery] Recovered project {project_id}: "
            f"{project.sandbox_id} -> {sandbox.sandbox_id} "
            f"(snapshot={selection.source}, fragment={selection.fragment_id})"
        )
        return RecoveryResult(
            recovered=True,
            sandbox_id=sandbox.sandbox_id,
            state=RecoveryState.RECOVERED,
            fragment_id=selection.fragment_id,
            template=template,
        )

    def _transition(self, project_id: str, state: RecoveryState) -> None:
        logger.info(f"[SandboxRecovery] {project_id} -> {state.value}")

    async def _resolve_for_recovery(
        self,
        project_id: str,
        fragment_id: Optional[str],
        template_name: Optional[str],
    ) -> TemplateResolution:
        """Resolve the template, falling back instead of failing the recovery."""
        try:
            return await self.resolver.resolve(project_id, fragment_id=fragment_id, override=template_name)
        except Exception as e:
            fallback = template_name or self.resolver.fallback_template
            logger.warning(
                f"[SandboxRecovery] Template resolution failed for {project_id}: {e}, "
                f"using {fallback}"
            )
            return TemplateResolution(
                template_name=fallback,
                source="override" if template_name else "fallback",
                has_snapshot=False,
            )

    # =========================================================================
    # Snapshot selection
    # =========================================================================

    async def find_recovery_snapshot(
        self,
        project: Project,
        template: TemplateResolution,
        fragment_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> RecoverySnapshotSelection:
        """Pick the snapshot image (and fragment) to rebuild the sandbox from."""
        starting = await self._starting_fragment(project, fragment_id)

        if starting is not None and starting.snapshot_image_id:
            return RecoverySnapshotSelection(
                fragment_id=starting.id,
                snapshot_image_id=starting.snapshot_image_id,
                source="active-fragment",
                template_name=template.template_name,
            )

        if starting is not None:
            fallback = await self.store.get_latest_snapshot_fragment(
                project.id,
                created_before=starting.created_at,
            )
            if fallback is not None:
                logger.info(
                    f"[SandboxRecovery] Fragment {starting.id} has no snapshot, "
                    f"using earlier snapshot from fragment {fallback.id}"
                )
                return RecoverySnapshotSelection(
                    fragment_id=fallback.id,
                    snapshot_image_id=fallback.snapshot_image_id,
                    source="fallback-fragment",
                    template_name=template.template_name,
                )

        latest = await self.store.get_latest_snapshot_fragment(project.id)
        if latest is not None:
            return RecoverySnapshotSelection(
                fragment_id=latest.id,
                snapshot_image_id=latest.snapshot_image_id,
                source="latest-snapshot",
                template_name=template.template_name,
            )

        fragment = starting or await self.store.get_latest_updated_fragment(project.id)
        if fragment is None:
            logger.info(
                f"[SandboxRecovery] Project {project.id} has no fragments, no content to recover"
            )
            return RecoverySnapshotSelection(
                fragment_id=None,
                snapshot_image_id=None,
                template_name=template.template_name,
            )

        bootstrapped = await self._bootstrap_template_baseline(project, template, fragment, deadline)
        if bootstrapped is not None:
            return bootstrapped
        return RecoverySnapshotSelection(
            fragment_id=fragment.id,
            snapshot_image_id=None,
            template_name=template.template_name,
        )

    async def _starting_fragment(
        self,
        project: Project,
        fragment_id: Optional[str],
    ) -> Optional[Fragment]:
        """Explicit fragment if it belongs to the project, else the active one."""
        for candidate in (fragment_id, project.active_fragment_id):
            if not candidate:
                continue
            fragment = await self.store.get_fragment(candidate)
            if fragment is not None and fragment.project_id == project.id:
                return fragment
            logger.warning(
                f"[SandboxRecovery] Fragment {candidate} not found for project {project.id}"
            )
        return None

    async def _bootstrap_template_baseline(
        self,
        project: Project,
        template: TemplateResolution,
        fragment: Fragment,
        deadline: Optional[float],
    ) -> Optional[RecoverySnapshotSelection]:
        """
        Build a first snapshot image for a fragment from its template.

        Returns None on failure; the bootstrap sandbox is removed in that case.
        """
        logger.info(
            f"[SandboxRecovery] No snapshots for project {project.id}, bootstrapping "
            f"{template.template_name} with fragment {fragment.id}"
        )
        sandbox: SandboxInfo | None = None
        try:
            sandbox = await self._call(
                self.provider.create_sandbox(
                    project.id,
                    fragment.id,
                    template.template_name,
                    self._create_options(project),
                ),
                deadline,
            )
            image_id = await self._call(
                self.provider.create_filesystem_snapshot(sandbox, fragment.id, project.id),
                deadline,
            )
            await self.store.update_fragment_snapshot(fragment.id, image_id)
        except Exception as e:
            logger.error(
                f"[SandboxRecovery] Template bootstrap failed for project {project.id}: {e}"
            )
            if sandbox is not None:
                await self._delete_sandbox_quietly(sandbox.sandbox_id, project.id, deadline)
            return None

        return RecoverySnapshotSelection(
            fragment_id=fragment.id,
            snapshot_image_id=image_id,
            source="template-bootstrap",
            template_name=template.template_name,
            sandbox=sandbox,
        )

    # =========================================================================
    # Materialize / cleanup
    # =========================================================================

    async def _materialize(
        self,
        project: Project,
        template: TemplateResolution,
        selection: RecoverySnapshotSelection,
        deadline: Optional[float],
    ) -> SandboxInfo:
        if selection.sandbox is not None:
            return selection.sandbox

        options = self._create_options(project, selection.snapshot_image_id)
        try:
            return await self._call(
                self.provider.create_sandbox(
                    project.id,
                    selection.fragment_id,
                    template.template_name,
                    options,
                ),
                deadline,
            )
        except Exception as e:
            self._transition(project.id, RecoveryState.FAILED)
            raise SandboxRecoveryError(
                f"Failed to create recovery sandbox for project {project.id}: {e}"
            ) from e

    async def _cleanup_previous_sandbox(
        self,
        project_id: str,
        previous_sandbox_id: Optional[str],
        new_sandbox_id: str,
        deadline: Optional[float],
    ) -> None:
        if not previous_sandbox_id or previous_sandbox_id == new_sandbox_id:
            return
        try:
            other_project = await self.store.find_project_by_sandbox_id(
                previous_sandbox_id,
                exclude_project_id=project_id,
            )
        except Exception as e:
            logger.warning(
                f"[SandboxRecovery] Could not check references to sandbox {previous_sandbox_id}: {e}"
            )
            return
        if other_project:
            logger.info(
                f"[SandboxRecovery] Keeping sandbox {previous_sandbox_id}, "
                f"still used by project {other_project}"
            )
            return
        await self._delete_sandbox_quietly(previous_sandbox_id, project_id, deadline)

    async def _delete_sandbox_quietly(
        self,
        sandbox_id: str,
        project_id: str,
        deadline: Optional[float],
    ) -> None:
        try:
            await self._call(self.provider.delete_sandbox(sandbox_id, project_id), deadline)
            logger.info(f"[SandboxRecovery] Deleted sandbox {sandbox_id}")
        except Exception as e:
            logger.warning(f"[SandboxRecovery] Failed to delete sandbox {sandbox_id}: {e}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _create_options(
        self,
        project: Project,
        recovery_snapshot_image_id: Optional[str] = None,
    ) -> CreateSandboxOptions:
        return CreateSandboxOptions(
            recovery_snapshot_image_id=recovery_snapshot_image_id,
            is_imported_project=project.is_imported,
            imported_from=project.provenance,
        )

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    async def _call(self, awaitable: Awaitable[T], deadline: Optional[float]) -> T:
        """Await a provider call within the remaining deadline."""
        remaining = self._remaining(deadline)
        if remaining is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, remaining)
        except asyncio.TimeoutError as e:
            raise SandboxProviderError("Sandbox provider call timed out") from e

    async def _acquire_recovery_lock(self, project_id: str, deadline: Optional[float]) -> Any:
        """
        Single-flight lock per project, or None when running unlocked.

        Waits at most lock_wait_seconds, and never past the recovery deadline.
        Degrades to no lock on Redis errors.
        """
        if self.cache is None:
            return None
        wait_seconds = self.lock_wait_seconds
        remaining = self._remaining(deadline)
        if remaining is not None:
            wait_seconds = min(wait_seconds, remaining)
        try:
            lock = await self.cache.acquire_lock(
                f"{LOCK_PREFIX}{project_id}",
                ttl=self.lock_ttl_seconds,
                wait_seconds=wait_seconds,
            )
        except Exception as e:
            logger.warning(
                f"[SandboxRecovery] Redis error acquiring lock for {project_id}: {e}, "
                f"proceeding without lock"
            )
            return None
        if lock is None:
            logger.warning(
                f"[SandboxRecovery] Timed out waiting for recovery lock on {project_id}, "
                f"proceeding without lock"
            )
        return lock

    async def _release_recovery_lock(self, project_id: str, lock: Any) -> None:
        try:
            await self.cache.release_lock(lock)
        except Exception as e:
            logger.warning(f"[SandboxRecovery] Failed to release lock for {project_id}: {e}")


# =============================================================================
# Global controller
# =============================================================================

_controller: RecoveryOrchestrator | None = None


async def get_recovery_controller() -> RecoveryOrchestrator:
    """Get or create the global recovery controller."""
    global _controller
    if _controller is None:
        from .database import get_database
        from .modal_manager import ModalSandboxProvider

        cache: Any = None
        if settings.enable_recovery_lock:
            from .cache import get_cache

            try:
                cache = await get_cache()
            except Exception as e:
                # No Redis = graceful degradation, recover without locks
                logger.warning(f"[SandboxRecovery] Redis unavailable, recovery locks disabled: {e}")

        store = await get_database()
        _controller = RecoveryOrchestrator(
            store=store,
            provider=ModalSandboxProvider(store=store),
            observer=build_recovery_observer(settings.recovery_debug_enabled()),
            cache=cache,
            default_timeout=settings.recovery_timeout_seconds,
        )
    return _controller


def set_recovery_controller(controller: RecoveryOrchestrator | None) -> None:
    """Replace the global controller (None resets it)."""
    global _controller
    _controller = controller


async def get_sandbox_health(project_id: str) -> HealthStatus:
    controller = await get_recovery_controller()
    return await controller.check_health(project_id)


async def ensure_sandbox_recovered(
    project_id: str,
    fragment_id: Optional[str] = None,
    template_name: Optional[str] = None,
    timeout: Optional[float] = None,
) -> RecoveryResult:
    controller = await get_recovery_controller()
    return await controller.ensure_recovered(
        project_id,
        fragment_id=fragment_id,
        template_name=template_name,
        timeout=timeout,
    )


async def assert_sandbox_healthy(project_id: str) -> None:
    controller = await get_recovery_controller()
    await controller.assert_healthy_or_fail(project_id)
