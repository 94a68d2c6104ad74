"""
Workflow resolution.

Turns a list of reference strings into ResolvedWorkflows: parsed specs,
freshly fetched content, provenance and header-derived metadata. Each
step is a hard precondition for the next, and any failure aborts the
whole batch.
"""

import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from trialkit.errors import SpecError, TrialkitError, WorkflowNotFoundError
from trialkit.fetcher import FetchedWorkflow, SourceFetcher
from trialkit.frontmatter import extract_description, extract_engine, has_workflow_dispatch
from trialkit.spec import WorkflowSpec, parse_workflow_spec, wildcard_error


@dataclass(frozen=True)
class ResolvedWorkflow:
    """A workflow ready for installation."""
    spec: WorkflowSpec
    fetched: FetchedWorkflow
    description: str = ""
    engine: str = ""
    has_workflow_dispatch: bool = False

    @property
    def content(self) -> bytes:
        return self.fetched.content

    @property
    def name(self) -> str:
        return self.spec.workflow_name


@dataclass(frozen=True)
class ResolvedWorkflows:
    """Atomic output of one resolution."""
    workflows: list[ResolvedWorkflow] = field(default_factory=list)
    has_wildcard: bool = False
    has_workflow_dispatch: bool = False

    def __iter__(self):
        return iter(self.workflows)

    def __len__(self) -> int:
        return len(self.workflows)

    @property
    def specs(self) -> list[WorkflowSpec]:
        return [w.spec for w in self.workflows]


class WorkflowResolver:
    """Resolve workflow reference strings into ResolvedWorkflows."""

    def __init__(
        self,
        fetcher: SourceFetcher,
        current_repo: str = "",
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            fetcher: Fetcher for local and remote content. Its base_dir is
                also where local wildcards are expanded.
            current_repo: owner/name of the repository being worked in, or
                "" when unknown (the self-reference check is then skipped)
            logger: Logger to use
        """
        self.fetcher = fetcher
        self.current_repo = current_repo
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, references: list[str]) -> ResolvedWorkflows:
        """
        Resolve references in order.

        Raises:
            SpecError: Empty input, malformed reference, remote wildcard,
                self-reference, or nothing left after wildcard expansion
            WorkflowNotFoundError: A workflow could not be fetched
        """
        if not references:
            raise SpecError("at least one workflow name is required")
        for i, ref in enumerate(references, start=1):
            if not ref or not ref.strip():
                raise SpecError(f"workflow name cannot be empty (workflow {i})")

        specs = []
        for ref in references:
            try:
                spec = parse_workflow_spec(ref, current_repo=self.current_repo)
            except SpecError as e:
                raise SpecError(f"invalid workflow specification '{ref}': {e}") from e
            if spec.is_wildcard and not spec.is_local:
                raise wildcard_error(ref)
            specs.append(spec)

        if self.current_repo:
            for spec in specs:
                if not spec.is_local and spec.repo_slug == self.current_repo:
                    raise SpecError(
                        f"cannot add workflows from the current repository ({self.current_repo}). "
                        f"Use a local path such as './{spec.workflow_path}' instead"
                    )

        has_wildcard = any(spec.is_wildcard for spec in specs)
        if has_wildcard:
            specs = self.expand_wildcards(specs)

        resolved = []
        for spec in specs:
            try:
                fetched = self.fetcher.fetch(spec)
            except TrialkitError as e:
                raise WorkflowNotFoundError(f"workflow '{spec}' not found: {e}") from e

            text = fetched.content.decode("utf-8", errors="replace")
            resolved.append(ResolvedWorkflow(
                spec=spec,
                fetched=fetched,
                description=extract_description(text),
                engine=extract_engine(text),
                has_workflow_dispatch=has_workflow_dispatch(text),
            ))
            self.logger.debug(f"Resolved {spec} ({len(fetched.content)} bytes from {fetched.source_path})")

        return ResolvedWorkflows(
            workflows=resolved,
            has_wildcard=has_wildcard,
            has_workflow_dispatch=any(w.has_workflow_dispatch for w in resolved),
        )

    def expand_wildcards(self, specs: list[WorkflowSpec]) -> list[WorkflowSpec]:
        """Replace local wildcard specs with one spec per matching .md file."""
        expanded = []
        for spec in specs:
            if not (spec.is_wildcard and spec.is_local):
                expanded.append(spec)
                continue

            matches = self.glob_local(spec.workflow_path)
            if not matches:
                self.logger.warning(f"No workflows found matching {spec.workflow_path}")
                continue
            self.logger.info(f"Found {len(matches)} workflow(s) matching {spec.workflow_path}")
            expanded.extend(spec.with_path(match) for match in matches)

        if not expanded:
            raise SpecError("no workflows to add after expansion")
        return expanded

    def glob_local(self, pattern: str) -> list[str]:
        """Sorted ./-prefixed .md matches of pattern under the fetcher's base_dir."""
        relative = pattern.removeprefix("./")
        base = Path(self.fetcher.base_dir)
        matches = glob.glob(relative, root_dir=str(base), recursive=True)
        return sorted(
            f"./{m}" for m in matches
            if m.endswith(".md") and (base / m).is_file()
        )
