"""
Workflow installation into a working copy.

Installing a workflow means: fetch its content, security-scan it,
stamp provenance, write `.github/workflows/<name>.md`, materialize its
includes, optionally rewrite repository references for a simulated
target, compile it, and commit and push the result.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trialkit.dependencies import (
    DependencyCollector,
    RemoteIncludeMaterializer,
    copy_include_dependencies,
)
from trialkit.errors import CompileError, DependencyError, SecurityScanError
from trialkit.fetcher import FetchedWorkflow, SourceFetcher
from trialkit.frontmatter import add_source_field
from trialkit.git import GitClient
from trialkit.services import CompiledWorkflow, CompileOptions, Compiler, SecurityScanner
from trialkit.spec import WorkflowSpec, build_source_string
from trialkit.tracker import ChangeTracker

WORKFLOWS_DIR = Path(".github") / "workflows"
REPOSITORY_EXPRESSION = "${{ github.repository }}"

_CHECKOUT_RE = re.compile(r"^(\s*)(- )?(uses: actions/checkout@\S*)(.*)$")


def append_text(content: str, text: str) -> str:
    if not text:
        return content
    if not content.endswith("\n"):
        content += "\n"
    return f"{content}\n{text}"


def rewrite_for_logical_repo(content: str, logical_repo: str) -> str:
    """
    Point repository-context references at a simulated repository.

    Replaces `${{ github.repository }}` and adds `with: repository:` to
    every actions/checkout step. No-op when logical_repo is empty.
    """
    if not logical_repo:
        return content

    content = content.replace(REPOSITORY_EXPRESSION, logical_repo)
    lines = []
    for line in content.split("\n"):
        lines.append(line)
        match = _CHECKOUT_RE.match(line)
        if match:
            indent = match.group(1) + ("  " if match.group(2) else "")
            lines.append(f"{indent}with:")
            lines.append(f"{indent}  repository: {logical_repo}")
    return "\n".join(lines)


@dataclass
class InstallOptions:
    """Per-install knobs shared by the add command and trials."""
    append_text: str = ""
    force: bool = True
    disable_security_scanner: bool = False
    logical_repo: str = ""
    simulate: bool = False


class WorkflowInstaller:
    """Install resolved workflows into a repository working copy."""

    def __init__(
        self,
        fetcher: SourceFetcher,
        compiler: Optional[Compiler],
        scanner: SecurityScanner,
        logger: Optional[logging.Logger] = None,
    ):
        self.fetcher = fetcher
        self.compiler = compiler
        self.scanner = scanner
        self.logger = logger or logging.getLogger(__name__)
        self.collector = DependencyCollector(logger=self.logger)

    def prepare_content(
        self,
        spec: WorkflowSpec,
        options: InstallOptions,
        fetched: Optional[FetchedWorkflow] = None,
    ) -> tuple[str, bool]:
        """
        Fetch, scan and stamp a workflow.

        Args:
            spec: Workflow to prepare
            options: Install options
            fetched: Already fetched content; fetched afresh when omitted

        Returns:
            (content, is_local)

        Raises:
            WorkflowNotFoundError: If the workflow cannot be fetched
            SecurityScanError: If the scanner reports findings
        """
        if fetched is None:
            fetched = self.fetcher.fetch(spec)
        content = fetched.content.decode("utf-8", errors="replace")

        if options.disable_security_scanner:
            self.logger.warning("Security scanning disabled")
        else:
            findings = self.scanner.scan(content)
            if findings:
                for finding in findings:
                    self.logger.error(f"{spec.workflow_name}: {finding}")
                raise SecurityScanError(spec.workflow_name, findings)

        if not fetched.is_local and fetched.commit_sha:
            source = build_source_string(spec, fetched.commit_sha)
            if source:
                content = add_source_field(content, source)

        return append_text(content, options.append_text), fetched.is_local

    def install(
        self,
        spec: WorkflowSpec,
        repo_dir: Path,
        options: InstallOptions,
        tracker: Optional[ChangeTracker] = None,
        name: Optional[str] = None,
        fetched: Optional[FetchedWorkflow] = None,
    ) -> Path:
        """
        Write a workflow and its includes into repo_dir.

        Args:
            spec: Workflow to install
            repo_dir: Root of the destination working copy
            options: Install options
            tracker: Records created/modified files
            name: Installed workflow name, defaults to the spec's
            fetched: Already fetched content; fetched afresh when omitted

        Returns:
            Path of the written .md file
        """
        content, is_local = self.prepare_content(spec, options, fetched)
        workflows_dir = Path(repo_dir) / WORKFLOWS_DIR
        workflows_dir.mkdir(parents=True, exist_ok=True)
        dest = workflows_dir / f"{name or spec.workflow_name}.md"

        if tracker is not None:
            tracker.record(dest)
        dest.write_text(content)
        self.logger.info(f"Installed {spec} -> {dest}")

        self.install_includes(spec, content, is_local, workflows_dir, options.force, tracker)

        if options.simulate:
            dest.write_text(rewrite_for_logical_repo(dest.read_text(), options.logical_repo))

        return dest

    def install_includes(
        self,
        spec: WorkflowSpec,
        content: str,
        is_local: bool,
        workflows_dir: Path,
        force: bool,
        tracker: Optional[ChangeTracker],
    ) -> list[Path]:
        """Materialize includes; failures are warnings, never fatal."""
        try:
            if is_local:
                source_dir = self.fetcher.resolve_local_path(spec.workflow_path).parent
                try:
                    deps = self.collector.collect(content, source_dir)
                except DependencyError as e:
                    self.logger.warning(f"Failed to collect include dependencies: {e}")
                    deps = e.collected
                return copy_include_dependencies(deps, workflows_dir, tracker, force, self.logger)

            materializer = RemoteIncludeMaterializer(self.fetcher, tracker, self.logger)
            return materializer.materialize(content, spec, workflows_dir, force)
        except (DependencyError, OSError) as e:
            self.logger.warning(f"Failed to fetch include dependencies: {e}")
            return []

    def compile(self, workflow_file: Path, options: CompileOptions) -> CompiledWorkflow:
        """
        Raises:
            CompileError: If compilation fails or yields other than one result
        """
        if self.compiler is None:
            raise CompileError("no compiler configured")
        compiled = self.compiler.compile([workflow_file], options)
        if len(compiled) != 1:
            raise CompileError(f"expected one compiled workflow, got {len(compiled)}")
        return compiled[0]


def commit_and_push(git: GitClient, repo_dir: Path, message: str, paths: Optional[list[str]] = None) -> bool:
    """
    Stage, commit and pull-then-push.

    Returns:
        False if there was nothing to commit

    Raises:
        PushConflictError: If the push is rejected after one pull
    """
    git.add(repo_dir, paths or ["."])
    if not git.has_changes(repo_dir):
        return False
    git.commit(repo_dir, message)
    git.pull_then_push(repo_dir)
    return True
