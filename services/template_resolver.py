"""
Template resolution for projects.

Infers which base template a project most resembles, so a broken sandbox can
be rebuilt on top of the right scaffold (and its pre-built snapshot image).

Resolution priority (first match wins):
    override -> explicit fragment -> active fragment -> latest fragment -> fallback
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from config import DeployEnvironment, settings
from models.sandbox import Fragment, TemplateResolution, TemplateSource

logger = logging.getLogger(__name__)


# Ordered (template, keywords) table. Order matters: the first rule with any
# keyword present in the corpus wins.
TEMPLATE_KEYWORD_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("database-vite-todo-template", ("todo", "task", "tasks")),
    ("database-vite-calculator-template", ("calculator",)),
    ("database-vite-content-sharing-template", ("content", "share", "sharing")),
    ("database-vite-landing-page-template", ("landing", "marketing", "hero")),
    ("database-vite-tracker-template", ("tracker", "tracking", "habit", "budget")),
]

MANIFEST_PATH = "package.json"
README_PATH = "README.md"


# =============================================================================
# Stored JSON shape checks
# =============================================================================

@dataclass
class PackageManifest:
    """The parts of a package.json that say what an app is about."""
    name: str = ""
    description: str = ""
    dependencies: list[str] = field(default_factory=list)

    def search_text(self) -> str:
        return " ".join([self.name, self.description, *self.dependencies])


def parse_manifest(raw: str) -> PackageManifest | str:
    """
    Parse package.json contents.

    Returns a PackageManifest, or the raw text unchanged when it is not a JSON
    object. Never raises.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return raw
    if not isinstance(data, dict):
        return raw

    dependencies: list[str] = []
    for key in ("dependencies", "devDependencies"):
        section = data.get(key)
        if isinstance(section, dict):
            dependencies.extend(str(name) for name in section)

    name = data.get("name")
    description = data.get("description")
    return PackageManifest(
        name=name if isinstance(name, str) else "",
        description=description if isinstance(description, str) else "",
        dependencies=dependencies,
    )


def ensure_file_map(value: Any) -> Optional[dict[str, str]]:
    """
    Shape-check a stored fragment file map.

    Accepts a mapping or a JSON string encoding one. Anything else
    (malformed JSON, lists, numbers, None) yields None.
    """
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, Mapping):
        return None
    return {
        str(path): content if isinstance(content, str) else json.dumps(content)
        for path, content in value.items()
    }


# =============================================================================
# Heuristic
# =============================================================================

def build_search_corpus(files: Mapping[str, str]) -> str:
    """Lower-cased text the keyword rules are matched against."""
    parts = list(files.keys())

    manifest = files.get(MANIFEST_PATH)
    if manifest is not None:
        parsed = parse_manifest(manifest)
        parts.append(parsed.search_text() if isinstance(parsed, PackageManifest) else parsed)

    readme = files.get(README_PATH)
    if readme is not None:
        parts.append(readme)

    return "\n".join(parts).lower()


def infer_template_from_files(
    files: Mapping[str, str],
    rules: Sequence[tuple[str, Sequence[str]]] = TEMPLATE_KEYWORD_RULES,
) -> Optional[str]:
    """Return the first template whose keywords appear in the files, if any."""
    corpus = build_search_corpus(files)
    for template_name, keywords in rules:
        if any(keyword in corpus for keyword in keywords):
            return template_name
    return None


# =============================================================================
# Resolver
# =============================================================================

class TemplateResolver:
    """Resolves the base template for a project."""

    def __init__(
        self,
        store,
        provider,
        environment: DeployEnvironment = "main",
        fallback_template: str | None = None,
    ):
        self.store = store
        self.provider = provider
        self.environment = environment
        self.fallback_template = fallback_template or settings.fallback_template

    async def resolve(
        self,
        project_id: str,
        fragment_id: Optional[str] = None,
        override: Optional[str] = None,
    ) -> TemplateResolution:
        """
        Resolve the template for a project.

        Args:
            project_id: Project to resolve
            fragment_id: Explicitly requested fragment, checked before the active one
            override: Template name chosen by the caller, used as-is
        """
        template_name, source = await self._find_template(project_id, fragment_id, override)

        has_snapshot = await self.provider.has_snapshot(template_name, self.environment)
        resolution = TemplateResolution(
            template_name=template_name,
            source=source,
            has_snapshot=has_snapshot,
        )
        logger.info(
            f"[TemplateResolver] Resolved template for {project_id}: "
            f"{template_name} (source={source}, has_snapshot={has_snapshot}, "
            f"env={self.environment})"
        )
        return resolution

    async def _find_template(
        self,
        project_id: str,
        fragment_id: Optional[str],
        override: Optional[str],
    ) -> tuple[str, TemplateSource]:
        if override:
            return override, "override"

        if fragment_id:
            fragment = await self.store.get_fragment(fragment_id)
            template_name = self._infer(fragment, project_id)
            if template_name:
                return template_name, "fragment"

        project = await self.store.get_project(project_id)
        if project and project.active_fragment_id:
            fragment = await self.store.get_fragment(project.active_fragment_id)
            template_name = self._infer(fragment, project_id)
            if template_name:
                return template_name, "project"

        fragment = await self.store.get_latest_fragment(project_id)
        template_name = self._infer(fragment, project_id)
        if template_name:
            return template_name, "heuristic"

        return self.fallback_template, "fallback"

    def _infer(self, fragment: Optional[Fragment], project_id: str) -> Optional[str]:
        if fragment is None or fragment.project_id != project_id:
            return None
        files = ensure_file_map(fragment.files)
        if files is None:
            logger.debug(f"[TemplateResolver] Skipping fragment {fragment.id}: unreadable file map")
            return None
        return infer_template_from_files(files)
