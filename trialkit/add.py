"""
Add resolved workflows to the current repository.

Every file written is recorded in a ChangeTracker. If any workflow fails
to install, everything this run touched is rolled back.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trialkit.errors import CompileError, GitError, SpecError, TrialkitError
from trialkit.git import GitClient
from trialkit.installer import WORKFLOWS_DIR, InstallOptions, WorkflowInstaller
from trialkit.resolver import ResolvedWorkflows
from trialkit.services import CompileOptions, lock_file_for
from trialkit.tracker import ChangeTracker
from trialkit.utils import print_error, print_info, print_success, print_warning


@dataclass
class AddOptions:
    name: str = ""
    force: bool = False
    append_text: str = ""
    engine_override: str = ""
    no_compile: bool = False
    disable_security_scanner: bool = False
    quiet: bool = False


class WorkflowAdder:
    """Write resolved workflows into `<base_dir>/.github/workflows`."""

    def __init__(
        self,
        installer: WorkflowInstaller,
        git: Optional[GitClient] = None,
        base_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.installer = installer
        self.git = git
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.logger = logger or logging.getLogger(__name__)

    def add(self, resolved: ResolvedWorkflows, options: Optional[AddOptions] = None) -> ChangeTracker:
        """
        Install every resolved workflow.

        Args:
            resolved: Output of WorkflowResolver.resolve
            options: Add options

        Returns:
            Tracker holding the created and modified files

        Raises:
            SpecError: If --name is used with several workflows
            TrialkitError: If a workflow already exists without force, fails
                its security scan, or cannot be written. Files written so far
                are rolled back first.
        """
        options = options or AddOptions()
        if options.name and len(resolved) > 1:
            raise SpecError("--name can only be used when adding a single workflow")

        tracker = ChangeTracker(logger=self.logger)
        if not options.quiet and len(resolved) > 1:
            print_info(f"Adding {len(resolved)} workflow(s)...")

        try:
            for i, workflow in enumerate(resolved, start=1):
                if not options.quiet and len(resolved) > 1:
                    print_info(f"Adding workflow {i}/{len(resolved)}: {workflow.name}")
                self.add_one(workflow, options, tracker, skip_existing=resolved.has_wildcard)
        except (TrialkitError, OSError, ValueError):
            if len(tracker):
                print_warning(f"Rolling back {len(tracker)} file(s)")
            tracker.rollback()
            raise

        if not options.quiet and len(resolved) > 1:
            print_success(f"Successfully added all {len(resolved)} workflows")

        if self.git is not None and len(tracker):
            try:
                tracker.stage(self.git, self.base_dir)
            except GitError as e:
                self.logger.warning(f"Could not stage workflow files: {e}")

        return tracker

    def add_one(self, workflow, options: AddOptions, tracker: ChangeTracker, skip_existing: bool = False) -> Optional[Path]:
        name = options.name or workflow.name
        dest = self.base_dir / WORKFLOWS_DIR / f"{name}.md"

        if dest.exists() and not options.force:
            if skip_existing:
                print_warning(f"Workflow '{name}' already exists in .github/workflows/. Skipping.")
                return None
            raise TrialkitError(
                f"workflow '{name}' already exists in .github/workflows/. Use a different name with "
                "--name, remove the existing workflow first, or use --force to overwrite"
            )

        install_options = InstallOptions(
            append_text=options.append_text,
            force=options.force,
            disable_security_scanner=options.disable_security_scanner,
        )
        path = self.installer.install(
            workflow.spec, self.base_dir, install_options, tracker=tracker, name=name, fetched=workflow.fetched,
        )
        if not options.quiet:
            print_success(f"Added workflow: {path}")
            if workflow.description:
                print_info(workflow.description)

        if not options.no_compile:
            tracker.record(lock_file_for(path))
            try:
                compiled = self.installer.compile(path, CompileOptions(engine_override=options.engine_override))
            except CompileError as e:
                print_error(str(e))
            else:
                for warning in compiled.warnings:
                    print_warning(warning)
        return path
