"""
Services for the sandbox recovery controller.
"""

from .database import DatabaseService, ProjectStore, get_database
from .cache import CacheService, get_cache
from .exceptions import (
    SANDBOX_UNAVAILABLE_MESSAGE,
    ProjectNotFoundError,
    RecoveryVerificationError,
    SandboxProviderError,
    SandboxRecoveryError,
    SandboxUnavailableError,
)
from .modal_manager import (
    CreateSandboxOptions,
    ModalSandboxProvider,
    SandboxInfo,
    SandboxProvider,
)
from .recovery_events import RecoveryObserver, build_recovery_observer
from .sandbox_health import HealthChecker, find_missing_files
from .template_resolver import (
    TEMPLATE_KEYWORD_RULES,
    PackageManifest,
    TemplateResolver,
    ensure_file_map,
    infer_template_from_files,
    parse_manifest,
)
from .sandbox_recovery import (
    RecoveryOrchestrator,
    assert_sandbox_healthy,
    ensure_sandbox_recovered,
    get_recovery_controller,
    get_sandbox_health,
    set_recovery_controller,
)

__all__ = [
    "DatabaseService",
    "ProjectStore",
    "get_database",
    "CacheService",
    "get_cache",
    # Errors
    "SANDBOX_UNAVAILABLE_MESSAGE",
    "SandboxProviderError",
    "SandboxRecoveryError",
    "ProjectNotFoundError",
    "RecoveryVerificationError",
    "SandboxUnavailableError",
    # Modal provider
    "SandboxProvider",
    "ModalSandboxProvider",
    "CreateSandboxOptions",
    "SandboxInfo",
    # Health and templates
    "HealthChecker",
    "find_missing_files",
    "TemplateResolver",
    "TEMPLATE_KEYWORD_RULES",
    "PackageManifest",
    "parse_manifest",
    "ensure_file_map",
    "infer_template_from_files",
    # Recovery
    "RecoveryObserver",
    "build_recovery_observer",
    "RecoveryOrchestrator",
    "get_recovery_controller",
    "set_recovery_controller",
    "get_sandbox_health",
    "ensure_sandbox_recovered",
    "assert_sandbox_healthy",
]
