"""
Modal sandbox provider.

Creates, inspects, snapshots and deletes project sandboxes on Modal.
Each project sandbox is a Bun container with:
- 1 CPU core, 2GB RAM
- 1 hour timeout, 15 minute idle timeout
- The project under /workspace and a Vite dev server on an encrypted port

A sandbox is seeded from, in order of preference:
1. A recovery snapshot image chosen by the caller
2. The fragment's own snapshot image
3. The template's pre-built snapshot image
4. The base image plus a git clone of the template branch
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import modal

from config import DeployEnvironment, SnapshotCatalog, settings, snapshot_catalog

from .exceptions import SandboxProviderError
from .template_resolver import ensure_file_map

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration Constants
# =============================================================================

EXEC_TIMEOUT_S = 120
INSTALL_TIMEOUT_S = 300

# Templates that live on the repository's default branch
DEFAULT_BRANCH_TEMPLATES = {"vite", "default", "node"}

IGNORED_DIRECTORIES = (
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    ".turbo",
    "coverage",
    ".cache",
    "tmp",
)

BASE44_IMPORT = "BASE44"
BASE44_EXTRA_PACKAGES = ("@tanstack/react-query",)


@dataclass
class CreateSandboxOptions:
    """Optional inputs to sandbox creation."""
    recovery_snapshot_image_id: Optional[str] = None
    is_imported_project: bool = False
    imported_from: Optional[str] = None


@dataclass
class SandboxInfo:
    """A freshly created sandbox."""
    sandbox_id: str
    sandbox_url: Optional[str] = None
    template_name: Optional[str] = None
    # Live Modal sandbox handle, when the provider has one
    sandbox: Any = None


class SandboxProvider(Protocol):
    """Provider capabilities consumed by health checks and recovery."""

    async def create_sandbox(
        self,
        project_id: str,
        fragment_id: Optional[str],
        template_name: str,
        options: CreateSandboxOptions,
    ) -> SandboxInfo: ...

    async def delete_sandbox(self, sandbox_id: str, project_id: str) -> None: ...

    async def list_files(self, sandbox_id: str) -> set[str]: ...

    async def create_filesystem_snapshot(
        self,
        sandbox: SandboxInfo,
        fragment_id: str,
        project_id: str,
    ) -> str: ...

    async def has_snapshot(self, template_name: str, environment: DeployEnvironment) -> bool: ...


# =============================================================================
# Helpers
# =============================================================================

def template_branch(template_name: str) -> str:
    """Git branch holding a template's scaffold."""
    if template_name in DEFAULT_BRANCH_TEMPLATES:
        return "main"
    return template_name


def build_list_files_command(workdir: str = "/workspace") -> str:
    """find command listing project files, pruning build and dependency dirs."""
    prune = " -o ".join(f"-name {shlex.quote(name)}" for name in IGNORED_DIRECTORIES)
    return (
        f"cd {shlex.quote(workdir)} && "
        f"find . \\( -type d \\( {prune} \\) \\) -prune -o -type f -print"
    )


def parse_file_listing(stdout: str) -> set[str]:
    """
    Parse find output into workspace-relative paths.

    Dotfiles at the workspace root are hidden, except .env files.
    """
    paths: set[str] = set()
    for line in stdout.splitlines():
        path = line.strip()
        if path.startswith("./"):
            path = path[2:]
        path = path.lstrip("/")
        if not path:
            continue
        if "/" not in path and path.startswith(".") and not path.startswith(".env"):
            continue
        paths.add(path)
    return paths


def _parent_directories(paths: list[str], workdir: str) -> list[str]:
    directories = {
        os.path.dirname(os.path.join(workdir, path))
        for path in paths
    }
    return sorted(d for d in directories if d and d != workdir)


# =============================================================================
# Modal provider
# =============================================================================

class ModalSandboxProvider:
    """
    SandboxProvider over the Modal SDK.

    Uses the async (.aio) interface throughout, so no call blocks the event
    loop. Fragment files are read through the injected store when a sandbox
    has to be seeded from a template.
    """

    def __init__(
        self,
        store=None,
        catalog: SnapshotCatalog | None = None,
        environment: DeployEnvironment | None = None,
    ):
        self._store = store
        self.catalog = catalog or snapshot_catalog
        self.environment = environment or settings.deploy_environment()
        self._app: Any = None

    async def _get_app(self) -> Any:
        """Get or create the Modal app."""
        if self._app is None:
            self._app = await modal.App.lookup.aio(settings.modal_app_name, create_if_missing=True)
        return self._app

    async def _get_store(self):
        if self._store is None:
            from .database import get_database

            self._store = await get_database()
        return self._store

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def has_snapshot(self, template_name: str, environment: DeployEnvironment) -> bool:
        return self.catalog.has_snapshot(template_name, environment)

    async def create_filesystem_snapshot(
        self,
        sandbox: SandboxInfo,
        fragment_id: str,
        project_id: str,
    ) -> str:
        """Snapshot a sandbox filesystem and return the image ID."""
        try:
            handle = sandbox.sandbox or await modal.Sandbox.from_id.aio(sandbox.sandbox_id)
            image = await handle.snapshot_filesystem.aio()
        except Exception as e:
            raise SandboxProviderError(
                f"Failed to snapshot sandbox {sandbox.sandbox_id}: {e}"
            ) from e

        image_id = image.object_id
        logger.info(
            f"[ModalProvider] Snapshot {image_id} of sandbox {sandbox.sandbox_id} "
            f"(project={project_id}, fragment={fragment_id})"
        )
        return image_id

    # =========================================================================
    # Sandbox Creation
    # =========================================================================

    async def create_sandbox(
        self,
        project_id: str,
        fragment_id: Optional[str],
        template_name: str,
        options: CreateSandboxOptions,
    ) -> SandboxInfo:
        """Create a project sandbox and start its dev server."""
        # Prevents cryptic "PERMISSION_DENIED" errors later
        if not os.getenv("MODAL_TOKEN_ID") or not os.getenv("MODAL_TOKEN_SECRET"):
            raise SandboxProviderError(
                "Modal credentials not found in environment. "
                "Set MODAL_TOKEN_ID and MODAL_TOKEN_SECRET environment variables."
            )

        fragment = None
        if fragment_id:
            store = await self._get_store()
            fragment = await store.get_fragment(fragment_id)

        image_id, seed = self._select_image_id(template_name, options, fragment)
        if image_id:
            image = modal.Image.from_id(image_id)
        else:
            image = modal.Image.from_registry(settings.sandbox_base_image).apt_install("git")
        logger.info(
            f"[ModalProvider] Creating sandbox for {project_id} "
            f"(template={template_name}, seed={seed}, image={image_id or settings.sandbox_base_image})"
        )

        try:
            sandbox = await modal.Sandbox.create.aio(
                "tail", "-f", "/dev/null",  # Keep-alive command
                app=await self._get_app(),
                image=image,
                timeout=settings.sandbox_timeout_seconds,
                idle_timeout=settings.sandbox_idle_timeout_seconds,
                workdir=settings.sandbox_workdir,
                cpu=settings.sandbox_cpu,
                memory=settings.sandbox_memory_mb,
                encrypted_ports=[settings.dev_server_port],
            )
        except Exception as e:
            raise SandboxProviderError(f"Failed to create sandbox for {project_id}: {e}") from e

        info = SandboxInfo(
            sandbox_id=sandbox.object_id,
            template_name=template_name,
            sandbox=sandbox,
        )
        # Cancellation (a caller's deadline) must not leave the sandbox running
        try:
            if seed == "template-repo":
                await self._clone_template(sandbox, template_name)
                await self._register_template_baseline(sandbox, template_name)

            if seed in ("template-snapshot", "template-repo") and fragment is not None:
                await self._write_fragment_files(sandbox, fragment)

            if options.is_imported_project:
                await self._install_imported_dependencies(sandbox, options.imported_from)

            await self._start_dev_server(sandbox)
            info.sandbox_url = await self._get_tunnel_url(sandbox)
        except BaseException:
            await asyncio.shield(self._terminate_quietly(sandbox))
            raise

        logger.info(
            f"[ModalProvider] Created sandbox {info.sandbox_id} for project {project_id} "
            f"(url={info.sandbox_url})"
        )
        return info

    def _select_image_id(
        self,
        template_name: str,
        options: CreateSandboxOptions,
        fragment,
    ) -> tuple[Optional[str], str]:
        """Image to seed from, and where it came from."""
        if options.recovery_snapshot_image_id:
            return options.recovery_snapshot_image_id, "recovery-snapshot"
        if fragment is not None and fragment.snapshot_image_id:
            return fragment.snapshot_image_id, "fragment-snapshot"
        template_image = self.catalog.get_snapshot_image_id(template_name, self.environment)
        if template_image:
            return template_image, "template-snapshot"
        if not settings.template_repo_url:
            raise SandboxProviderError(
                f"No snapshot for template {template_name} and TEMPLATE_REPO_URL is not set"
            )
        return None, "template-repo"

    async def _clone_template(self, sandbox: Any, template_name: str) -> None:
        branch = template_branch(template_name)
        await self._exec(
            sandbox,
            f"git clone --depth 1 --branch {shlex.quote(branch)} "
            f"{shlex.quote(settings.template_repo_url or '')} . && rm -rf .git && bun install",
            timeout=INSTALL_TIMEOUT_S,
        )

    async def _register_template_baseline(self, sandbox: Any, template_name: str) -> None:
        """Snapshot a clean template checkout so later sandboxes skip the clone."""
        if self.catalog.has_snapshot(template_name, self.environment):
            return
        try:
            image = await sandbox.snapshot_filesystem.aio()
        except Exception as e:
            logger.warning(f"[ModalProvider] Failed to snapshot template {template_name}: {e}")
            return
        self.catalog.register(template_name, self.environment, image.object_id)

    async def _write_fragment_files(self, sandbox: Any, fragment) -> None:
        files = ensure_file_map(fragment.files)
        if not files:
            logger.warning(f"[ModalProvider] Fragment {fragment.id} has no readable files")
            return

        workdir = settings.sandbox_workdir
        directories = _parent_directories(list(files), workdir)
        if directories:
            await self._exec(sandbox, "mkdir -p " + " ".join(shlex.quote(d) for d in directories))

        for path, content in files.items():
            handle = await sandbox.open.aio(os.path.join(workdir, path.lstrip("/")), "w")
            try:
                await handle.write.aio(content)
            finally:
                await handle.close.aio()
        logger.info(f"[ModalProvider] Wrote {len(files)} files from fragment {fragment.id}")

    async def _install_imported_dependencies(self, sandbox: Any, imported_from: Optional[str]) -> None:
        await self._exec(sandbox, "bun install", timeout=INSTALL_TIMEOUT_S)
        if (imported_from or "").upper() == BASE44_IMPORT:
            await self._exec(
                sandbox,
                "bun add " + " ".join(BASE44_EXTRA_PACKAGES),
                timeout=INSTALL_TIMEOUT_S,
            )

    async def _start_dev_server(self, sandbox: Any) -> None:
        port = settings.dev_server_port
        try:
            await sandbox.exec.aio(
                "sh", "-c",
                f"nohup bun run dev --host 0.0.0.0 --port {port} > /tmp/dev-server.log 2>&1 &",
            )
        except Exception as e:
            logger.warning(f"[ModalProvider] Failed to start dev server: {e}")

    async def _get_tunnel_url(self, sandbox: Any) -> Optional[str]:
        try:
            tunnels = await sandbox.tunnels.aio()
        except Exception as e:
            logger.warning(f"[ModalProvider] Failed to look up tunnel: {e}")
            return None
        tunnel = tunnels.get(settings.dev_server_port)
        return tunnel.url if tunnel else None

    # =========================================================================
    # Inspection and Deletion
    # =========================================================================

    async def list_files(self, sandbox_id: str) -> set[str]:
        """Workspace-relative paths of the files in a sandbox."""
        try:
            sandbox = await modal.Sandbox.from_id.aio(sandbox_id)
            exit_code = await sandbox.poll.aio()
        except Exception as e:
            raise SandboxProviderError(f"Sandbox {sandbox_id} is unreachable: {e}") from e
        if exit_code is not None:
            raise SandboxProviderError(f"Sandbox {sandbox_id} has finished (exit code {exit_code})")

        stdout = await self._exec(sandbox, build_list_files_command(settings.sandbox_workdir))
        return parse_file_listing(stdout)

    async def delete_sandbox(self, sandbox_id: str, project_id: str) -> None:
        try:
            sandbox = await modal.Sandbox.from_id.aio(sandbox_id)
            await sandbox.terminate.aio()
        except Exception as e:
            raise SandboxProviderError(f"Failed to delete sandbox {sandbox_id}: {e}") from e
        logger.info(f"[ModalProvider] Terminated sandbox {sandbox_id} (project={project_id})")

    async def _terminate_quietly(self, sandbox: Any) -> None:
        try:
            await sandbox.terminate.aio()
        except Exception as e:
            logger.warning(f"[ModalProvider] Failed to terminate sandbox {sandbox.object_id}: {e}")

    async def _exec(self, sandbox: Any, command: str, timeout: int = EXEC_TIMEOUT_S) -> str:
        """Run a shell command in the sandbox and return its stdout."""
        try:
            proc = await sandbox.exec.aio("sh", "-c", command, timeout=timeout)
            await proc.wait.aio()
            stdout = await proc.stdout.read.aio()
        except Exception as e:
            raise SandboxProviderError(f"Command failed in sandbox: {e}") from e
        if proc.returncode != 0:
            stderr = await proc.stderr.read.aio()
            raise SandboxProviderError(
                f"Command exited with {proc.returncode}: {command[:80]} {stderr[:500]}"
            )
        return stdout
