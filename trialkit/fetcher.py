"""
Source fetcher.

Retrieves raw workflow content for a WorkflowSpec, from the local
filesystem or from the hosting service, and records provenance (the
commit a remote ref resolved to and the path that was actually read).
"""

import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trialkit.errors import HostingError, NotFoundError, WorkflowNotFoundError
from trialkit.hosting import HostingService
from trialkit.spec import WorkflowSpec

DEFAULT_REF = "main"
FALLBACK_DIRS = ("workflows", ".github/workflows")


@dataclass(frozen=True)
class FetchedWorkflow:
    """Result of one fetch. Never cached across resolutions."""
    content: bytes
    source_path: str
    is_local: bool
    commit_sha: str = ""


def is_workflow_spec_format(path: str) -> bool:
    """An include written as owner/repo/path@ref."""
    return "@" in path


def split_section(include_path: str) -> tuple[str, str]:
    """Split 'file.md#Section' into ('file.md', '#Section')."""
    path, sep, section = include_path.partition("#")
    return path, f"{sep}{section}" if sep else ""


class SourceFetcher:
    """Fetch workflow documents and their includes."""

    def __init__(
        self,
        hosting: Optional[HostingService] = None,
        base_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            hosting: Hosting service for remote specs. Local-only fetchers
                may omit it.
            base_dir: Directory local ./ paths are resolved against. Defaults
                to the process working directory at construction time.
            logger: Logger to use
        """
        self.hosting = hosting
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.logger = logger or logging.getLogger(__name__)

    def fetch(self, spec: WorkflowSpec) -> FetchedWorkflow:
        """
        Fetch the document a spec points at.

        Raises:
            WorkflowNotFoundError: If the document cannot be found
            HostingError: For remote failures other than not-found
        """
        if spec.is_local:
            return self.fetch_local(spec)
        return self.fetch_remote(spec)

    def resolve_local_path(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.base_dir / p

    def fetch_local(self, spec: WorkflowSpec) -> FetchedWorkflow:
        path = self.resolve_local_path(spec.workflow_path)
        self.logger.debug(f"Reading local workflow: {path}")
        if path.is_dir():
            raise WorkflowNotFoundError(f"local workflow '{spec.workflow_path}' is a directory")
        try:
            content = path.read_bytes()
        except OSError as e:
            raise WorkflowNotFoundError(f"local workflow '{spec.workflow_path}' not found: {e}") from e
        return FetchedWorkflow(content=content, source_path=spec.workflow_path, is_local=True)

    def _require_hosting(self) -> HostingService:
        if self.hosting is None:
            raise WorkflowNotFoundError("remote workflows require a hosting service")
        return self.hosting

    def default_ref(self, slug: str) -> str:
        hosting = self._require_hosting()
        try:
            return hosting.get_default_branch(slug)
        except HostingError as e:
            self.logger.warning(f"Could not determine default branch of {slug}, using '{DEFAULT_REF}': {e}")
            return DEFAULT_REF

    def fetch_remote(self, spec: WorkflowSpec) -> FetchedWorkflow:
        hosting = self._require_hosting()
        parts = spec.repo_slug.split("/")
        if len(parts) != 2 or not all(parts):
            raise WorkflowNotFoundError(f"invalid repository slug: {spec.repo_slug}")

        ref = spec.version or self.default_ref(spec.repo_slug)
        self.logger.info(f"Fetching {spec.repo_slug}/{spec.workflow_path}@{ref}")

        try:
            commit_sha = hosting.resolve_ref(spec.repo_slug, ref)
            self.logger.debug(f"Resolved {ref} to {commit_sha}")
        except HostingError as e:
            self.logger.warning(f"Could not resolve {spec.repo_slug}@{ref} to a commit: {e}")
            commit_sha = ""

        for path in self._candidate_paths(spec.workflow_path):
            try:
                content = hosting.download_file(spec.repo_slug, path, ref)
            except NotFoundError:
                self.logger.debug(f"Not found: {spec.repo_slug}/{path}@{ref}")
                continue
            return FetchedWorkflow(
                content=content,
                source_path=path,
                is_local=False,
                commit_sha=commit_sha,
            )

        raise WorkflowNotFoundError(
            f"failed to download workflow from {spec.repo_slug}/{spec.workflow_path}@{ref}"
        )

    @staticmethod
    def _candidate_paths(workflow_path: str) -> list[str]:
        """Direct path first; bare names also try the conventional directories."""
        candidates = [workflow_path]
        if "/" not in workflow_path:
            name = workflow_path if workflow_path.endswith(".md") else f"{workflow_path}.md"
            candidates += [f"{d}/{name}" for d in FALLBACK_DIRS]
        return candidates

    def fetch_include(self, include_path: str, base_spec: Optional[WorkflowSpec]) -> tuple[bytes, str]:
        """
        Fetch an include referenced from a remote workflow.

        Three addressing modes, in order:
          owner/repo/path@ref   fetched on its own, ignoring base_spec
          shared/...            relative to the base repository's .github/
          anything else         relative to the base workflow's directory

        Returns:
            (content, section) where section is the '#...' fragment or ""

        Raises:
            WorkflowNotFoundError: If the include cannot be fetched
        """
        hosting = self._require_hosting()
        clean_path, section = split_section(include_path)

        if is_workflow_spec_format(clean_path):
            path_part, _, ref = clean_path.partition("@")
            slash_parts = path_part.split("/")
            if len(slash_parts) < 3:
                raise WorkflowNotFoundError(f"invalid include '{include_path}': must be owner/repo/path[@ref]")
            slug = "/".join(slash_parts[:2])
            file_path = "/".join(slash_parts[2:])
            try:
                return hosting.download_file(slug, file_path, ref or DEFAULT_REF), section
            except NotFoundError as e:
                raise WorkflowNotFoundError(f"failed to fetch include from {include_path}: {e}") from e

        if base_spec is None or not base_spec.repo_slug:
            raise WorkflowNotFoundError(f"cannot resolve include path: {include_path} (no base spec provided)")

        ref = base_spec.version or DEFAULT_REF
        full_path = remote_include_path(clean_path, base_spec.workflow_path)
        try:
            return hosting.download_file(base_spec.repo_slug, full_path, ref), section
        except NotFoundError as e:
            raise WorkflowNotFoundError(
                f"failed to fetch include {clean_path} from {base_spec.repo_slug}: {e}"
            ) from e


def remote_include_path(include_path: str, base_workflow_path: str) -> str:
    """Repository path of a non-workflowspec include."""
    if include_path.startswith("shared/"):
        return f".github/{include_path}"
    base_dir = posixpath.dirname(base_workflow_path)
    return posixpath.join(base_dir, include_path) if base_dir else include_path
