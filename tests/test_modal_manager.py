"""Tests for the Modal sandbox provider."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import settings
from config.snapshots import SnapshotCatalog
from models.sandbox import Fragment
from services.exceptions import SandboxProviderError, SandboxRecoveryError
from services.modal_manager import (
    CreateSandboxOptions,
    ModalSandboxProvider,
    SandboxInfo,
    build_list_files_command,
    parse_file_listing,
    template_branch,
)
from services.sandbox_recovery import RecoveryOrchestrator

from conftest import InMemoryProjectStore, minutes


def make_proc(stdout: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.wait.aio = AsyncMock()
    proc.stdout.read.aio = AsyncMock(return_value=stdout)
    proc.stderr.read.aio = AsyncMock(return_value="")
    return proc


def make_sandbox(object_id: str = "sb-1", stdout: str = "", poll=None) -> MagicMock:
    sandbox = MagicMock()
    sandbox.object_id = object_id
    sandbox.poll.aio = AsyncMock(return_value=poll)
    sandbox.exec.aio = AsyncMock(return_value=make_proc(stdout))
    sandbox.terminate.aio = AsyncMock()
    sandbox.tunnels.aio = AsyncMock(return_value={5173: MagicMock(url="https://sb-1.modal.host")})
    image = MagicMock(object_id="im-snap")
    sandbox.snapshot_filesystem.aio = AsyncMock(return_value=image)
    return sandbox


class TestHelpers:
    """Test cases for the pure helpers."""

    def test_template_branch(self):
        assert template_branch("vite") == "main"
        assert template_branch("default") == "main"
        assert template_branch("node") == "main"
        assert template_branch("database-vite-todo-template") == "database-vite-todo-template"

    def test_list_files_command_prunes_build_directories(self):
        command = build_list_files_command("/workspace")
        assert command.startswith("cd /workspace && find .")
        for name in ["node_modules", ".git", "dist", "build", ".next", ".turbo", "coverage", ".cache", "tmp"]:
            assert f"-name {name}" in command

    def test_parse_file_listing_hides_root_dotfiles_except_env(self):
        stdout = "./package.json\n./.gitignore\n./.env.local\n./src/.keep\n./src/main.tsx\n\n"

        assert parse_file_listing(stdout) == {
            "package.json",
            ".env.local",
            "src/.keep",
            "src/main.tsx",
        }


class TestImageSelection:
    """Test cases for seed image priority."""

    @pytest.fixture
    def modal_provider(self):
        catalog = SnapshotCatalog(snapshots={})
        catalog.register("todo", "main", "im-template")
        return ModalSandboxProvider(store=MagicMock(), catalog=catalog, environment="main")

    def test_recovery_image_first(self, modal_provider):
        fragment = Fragment(id="f1", project_id="p1", created_at=minutes(0), snapshot_image_id="im-f1")
        options = CreateSandboxOptions(recovery_snapshot_image_id="im-recovery")

        assert modal_provider._select_image_id("todo", options, fragment) == (
            "im-recovery",
            "recovery-snapshot",
        )

    def test_fragment_image_second(self, modal_provider):
        fragment = Fragment(id="f1", project_id="p1", created_at=minutes(0), snapshot_image_id="im-f1")

        assert modal_provider._select_image_id("todo", CreateSandboxOptions(), fragment) == (
            "im-f1",
            "fragment-snapshot",
        )

    def test_template_snapshot_third(self, modal_provider):
        assert modal_provider._select_image_id("todo", CreateSandboxOptions(), None) == (
            "im-template",
            "template-snapshot",
        )

    def test_template_repo_last(self, modal_provider, monkeypatch):
        monkeypatch.setattr(settings, "template_repo_url", "https://github.com/acme/templates.git")

        assert modal_provider._select_image_id("unknown", CreateSandboxOptions(), None) == (
            None,
            "template-repo",
        )

    def test_no_repo_configured_raises(self, modal_provider, monkeypatch):
        monkeypatch.setattr(settings, "template_repo_url", None)

        with pytest.raises(SandboxProviderError):
            modal_provider._select_image_id("unknown", CreateSandboxOptions(), None)


class TestModalSandboxProvider:
    """Test cases for provider calls against a mocked Modal SDK."""

    @pytest.mark.asyncio
    async def test_list_files(self):
        sandbox = make_sandbox(stdout="./package.json\n./src/main.tsx\n./.DS_Store\n")
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.Sandbox.from_id.aio = AsyncMock(return_value=sandbox)
            files = await provider.list_files("sb-1")

        assert files == {"package.json", "src/main.tsx"}

    @pytest.mark.asyncio
    async def test_list_files_on_finished_sandbox_fails(self):
        sandbox = make_sandbox(poll=0)
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.Sandbox.from_id.aio = AsyncMock(return_value=sandbox)
            with pytest.raises(SandboxProviderError, match="has finished"):
                await provider.list_files("sb-1")

        sandbox.exec.aio.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_sandbox_terminates(self):
        sandbox = make_sandbox()
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.Sandbox.from_id.aio = AsyncMock(return_value=sandbox)
            await provider.delete_sandbox("sb-1", "p1")

        sandbox.terminate.aio.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_snapshot_returns_image_id(self):
        sandbox = make_sandbox()
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))

        image_id = await provider.create_filesystem_snapshot(
            SandboxInfo(sandbox_id="sb-1", sandbox=sandbox), "f1", "p1"
        )

        assert image_id == "im-snap"

    @pytest.mark.asyncio
    async def test_create_from_template_snapshot_writes_fragment_files(self, monkeypatch):
        monkeypatch.setenv("MODAL_TOKEN_ID", "id")
        monkeypatch.setenv("MODAL_TOKEN_SECRET", "secret")

        store = MagicMock()
        store.get_fragment = AsyncMock(return_value=Fragment(
            id="f1",
            project_id="p1",
            created_at=minutes(0),
            files={"src/App.tsx": "export default App"},
        ))
        catalog = SnapshotCatalog(snapshots={})
        catalog.register("todo", "main", "im-template")
        provider = ModalSandboxProvider(store=store, catalog=catalog, environment="main")

        sandbox = make_sandbox()
        handle = MagicMock()
        handle.write.aio = AsyncMock()
        handle.close.aio = AsyncMock()
        sandbox.open.aio = AsyncMock(return_value=handle)

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.App.lookup.aio = AsyncMock(return_value=MagicMock())
            mock_modal.Sandbox.create.aio = AsyncMock(return_value=sandbox)
            info = await provider.create_sandbox("p1", "f1", "todo", CreateSandboxOptions())

        mock_modal.Image.from_id.assert_called_once_with("im-template")
        create_kwargs = mock_modal.Sandbox.create.aio.call_args.kwargs
        assert create_kwargs["encrypted_ports"] == [settings.dev_server_port]
        assert create_kwargs["workdir"] == settings.sandbox_workdir
        sandbox.open.aio.assert_awaited_once_with("/workspace/src/App.tsx", "w")
        handle.write.aio.assert_awaited_once_with("export default App")
        assert info.sandbox_id == "sb-1"
        assert info.sandbox_url == "https://sb-1.modal.host"

    @pytest.mark.asyncio
    async def test_create_without_credentials_fails(self, monkeypatch):
        monkeypatch.delenv("MODAL_TOKEN_ID", raising=False)
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))

        with pytest.raises(SandboxProviderError, match="credentials"):
            await provider.create_sandbox("p1", None, "todo", CreateSandboxOptions())


class TestCreateCancellation:
    """A deadline that expires mid-create must not leak the new sandbox."""

    @pytest.fixture(autouse=True)
    def credentials(self, monkeypatch):
        monkeypatch.setenv("MODAL_TOKEN_ID", "id")
        monkeypatch.setenv("MODAL_TOKEN_SECRET", "secret")

    @staticmethod
    def slow_sandbox() -> MagicMock:
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        sandbox = make_sandbox(object_id="sb-new")
        sandbox.exec.aio = AsyncMock(side_effect=hang)
        return sandbox

    @pytest.mark.asyncio
    async def test_cancelled_create_terminates_sandbox(self):
        sandbox = self.slow_sandbox()
        provider = ModalSandboxProvider(store=MagicMock(), catalog=SnapshotCatalog(snapshots={}))
        options = CreateSandboxOptions(recovery_snapshot_image_id="im-f1")

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.App.lookup.aio = AsyncMock(return_value=MagicMock())
            mock_modal.Sandbox.create.aio = AsyncMock(return_value=sandbox)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(provider.create_sandbox("p1", None, "todo", options), 0.1)

        sandbox.terminate.aio.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recovery_deadline_during_create_terminates_sandbox(self):
        store = InMemoryProjectStore()
        store.add_project("p1", sandbox_id="sb-old", sandbox_provider="modal", active_fragment_id="f1")
        store.add_fragment("f1", "p1", minutes(0), snapshot_image_id="im-f1")
        provider = ModalSandboxProvider(store=store, catalog=SnapshotCatalog(snapshots={}), environment="main")
        controller = RecoveryOrchestrator(store, provider, environment="main")
        sandbox = self.slow_sandbox()

        with patch("services.modal_manager.modal") as mock_modal:
            mock_modal.Sandbox.from_id.aio = AsyncMock(side_effect=Exception("sandbox not found"))
            mock_modal.App.lookup.aio = AsyncMock(return_value=MagicMock())
            mock_modal.Sandbox.create.aio = AsyncMock(return_value=sandbox)
            with pytest.raises(SandboxRecoveryError):
                await controller.ensure_recovered("p1", timeout=0.3)

        sandbox.terminate.aio.assert_awaited_once()
        assert store.projects["p1"].sandbox_id == "sb-old"
