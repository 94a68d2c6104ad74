"""
Include dependency collection.

Workflow documents pull in auxiliary files with line directives:

    @include shared/tools.md
    @include? local-overrides.md        (optional: missing file is fine)
    @include shared/prompts.md#Triage   (fragment addresses a section)

Two traversals live here:
- DependencyCollector walks a local include graph and returns
  IncludeDependency edges for copying.
- RemoteIncludeMaterializer walks a remote workflow's includes through the
  SourceFetcher and writes them into the destination workflows directory.

Both use an explicit worklist and a visited set checked before descent,
so cyclic include graphs terminate and each file appears once.
"""

import logging
import os
import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from trialkit.errors import DependencyError, TrialkitError
from trialkit.fetcher import SourceFetcher, is_workflow_spec_format, split_section
from trialkit.frontmatter import extract_frontmatter
from trialkit.spec import WorkflowSpec
from trialkit.tracker import ChangeTracker

INCLUDE_RE = re.compile(r"^@include(\?)?\s+(.+)$")


@dataclass(frozen=True)
class IncludeDirective:
    path: str
    is_optional: bool

    @property
    def file_path(self) -> str:
        return split_section(self.path)[0]


@dataclass(frozen=True)
class IncludeDependency:
    """
    One edge of the include graph.

    Attributes:
        source_path: Location to read from
        target_path: Path relative to the destination workflows directory
        is_optional: Missing source is skipped instead of failing
    """
    source_path: str
    target_path: str
    is_optional: bool = False


def parse_include_directives(content: str) -> list[IncludeDirective]:
    directives = []
    for line in content.splitlines():
        match = INCLUDE_RE.match(line)
        if match:
            directives.append(IncludeDirective(path=match.group(2).strip(), is_optional=match.group(1) == "?"))
    return directives


def _markdown_body(content: str) -> str:
    try:
        return extract_frontmatter(content)[1]
    except yaml.YAMLError:
        return content


class DependencyCollector:
    """Collect the local include graph of a workflow document."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def collect(
        self,
        content: str,
        base_dir: Path,
        seen: Optional[set[str]] = None,
    ) -> list[IncludeDependency]:
        """
        Collect include dependencies of content, transitively.

        Args:
            content: Document to scan
            base_dir: Directory include paths in content are relative to
            seen: Source paths already handled; updated in place

        Returns:
            Deduplicated dependencies in discovery order

        Raises:
            DependencyError: If a required include of content itself cannot
                be read. Failures further down the graph only cut off that
                branch and are logged.
        """
        seen = set() if seen is None else seen
        dependencies: list[IncludeDependency] = []
        first_error: Optional[DependencyError] = None
        worklist = deque([(content, Path(base_dir), 0)])

        while worklist:
            text, directory, depth = worklist.popleft()
            for directive in parse_include_directives(text):
                source = os.path.normpath(str(directory / directive.file_path))
                if source in seen:
                    continue
                seen.add(source)

                dependencies.append(IncludeDependency(
                    source_path=source,
                    target_path=directive.file_path,
                    is_optional=directive.is_optional,
                ))
                self.logger.debug(f"Found include dependency: {source} -> {directive.file_path}")

                try:
                    included = Path(source).read_bytes().decode("utf-8", errors="replace")
                except OSError as e:
                    if directive.is_optional:
                        self.logger.debug(f"Optional include not found: {source}")
                    elif depth == 0:
                        self.logger.warning(f"Could not read include file {source}: {e}")
                        first_error = first_error or DependencyError(source, str(e))
                    else:
                        self.logger.warning(f"Could not read nested include file {source}: {e}")
                    continue

                worklist.append((_markdown_body(included), Path(source).parent, depth + 1))

        self.logger.debug(f"Collected {len(dependencies)} include dependencies from {base_dir}")
        if first_error is not None:
            first_error.collected = dependencies
            raise first_error
        return dependencies


def _write_if_changed(
    target: Path,
    content: bytes,
    force: bool,
    tracker: Optional[ChangeTracker],
    logger: logging.Logger,
) -> bool:
    """Write content to target unless an identical or protected file is there."""
    if target.exists():
        if target.read_bytes() == content:
            logger.debug(f"Include file {target} already up to date, skipping")
            return False
        if not force:
            logger.info(f"Include file {target} already exists with different content, skipping (use --force to overwrite)")
            return False
        if tracker is not None:
            tracker.track_modified(target)
    elif tracker is not None:
        tracker.track_created(target)

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return True


def copy_include_dependencies(
    dependencies: list[IncludeDependency],
    target_dir: Path,
    tracker: Optional[ChangeTracker] = None,
    force: bool = False,
    logger: Optional[logging.Logger] = None,
) -> list[Path]:
    """
    Copy collected local dependencies under target_dir.

    Unreadable sources are skipped (quietly for optional ones). Existing
    files with identical content are left alone; differing files are only
    overwritten with force.

    Returns:
        Paths that were written
    """
    logger = logger or logging.getLogger(__name__)
    written = []
    for dep in dependencies:
        try:
            content = Path(dep.source_path).read_bytes()
        except OSError as e:
            if dep.is_optional:
                logger.info(f"Optional include file not found: {dep.target_path} (create it to configure the workflow)")
            else:
                logger.warning(f"Failed to read include file {dep.source_path}: {e}")
            continue

        target = Path(target_dir) / dep.target_path
        if _write_if_changed(target, content, force, tracker, logger):
            logger.debug(f"Copied include file: {dep.source_path} -> {target}")
            written.append(target)
    return written


def remote_include_target(file_path: str, workflows_dir: Path) -> Path:
    """
    Where a remote include lands locally.

    shared/...            -> <workflows parent>/shared/...
    owner/repo/path@ref   -> <workflows parent>/shared/<basename>
    relative              -> <workflows dir>/<path>
    """
    workflows_dir = Path(workflows_dir)
    if file_path.startswith("shared/"):
        return workflows_dir.parent / file_path
    if is_workflow_spec_format(file_path):
        filename = file_path.partition("@")[0].rsplit("/", 1)[-1]
        return workflows_dir.parent / "shared" / filename
    return workflows_dir / file_path


class RemoteIncludeMaterializer:
    """Fetch a remote workflow's includes and write them next to it."""

    def __init__(
        self,
        fetcher: SourceFetcher,
        tracker: Optional[ChangeTracker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.fetcher = fetcher
        self.tracker = tracker
        self.logger = logger or logging.getLogger(__name__)

    def materialize(
        self,
        content: str,
        spec: WorkflowSpec,
        workflows_dir: Path,
        force: bool = False,
    ) -> list[Path]:
        """
        Fetch and save every include reachable from content.

        Args:
            content: Remote workflow document
            spec: Spec the document came from; relative includes resolve
                against it
            workflows_dir: Destination workflows directory
            force: Overwrite differing existing files

        Returns:
            Paths that were written

        Raises:
            DependencyError: If a required include of content itself cannot
                be fetched. Nested failures are logged as warnings.
        """
        seen: set[str] = set()
        written: list[Path] = []
        worklist = deque([(content, 0)])

        while worklist:
            text, depth = worklist.popleft()
            for directive in parse_include_directives(text):
                file_path = directive.file_path
                if file_path in seen:
                    continue
                seen.add(file_path)

                try:
                    included, _ = self.fetcher.fetch_include(directive.path, spec)
                except TrialkitError as e:
                    if directive.is_optional:
                        self.logger.info(f"Optional include not found: {directive.path}")
                        continue
                    if depth == 0:
                        raise DependencyError(directive.path, str(e)) from e
                    self.logger.warning(f"Failed to fetch nested include {directive.path}: {e}")
                    continue

                target = remote_include_target(file_path, workflows_dir)
                if _write_if_changed(target, included, force, self.tracker, self.logger):
                    self.logger.info(f"Fetched include: {target}")
                    written.append(target)

                worklist.append((included.decode("utf-8", errors="replace"), depth + 1))

        return written
