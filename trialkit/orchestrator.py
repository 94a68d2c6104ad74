"""
Trial orchestration.

A trial installs one or more resolved workflows into a host repository,
runs them there, and records what they produced.

Mode is chosen once per invocation, first match wins:

    clone-repo   seed the host from another repository, no rewrite
    logical-repo rewrite repository references to a simulated target
    direct       host repo given, workflows run as-is
    default      simulate the operator's current repository

One cycle clones the host into a scratch working copy, then for each
workflow in order: install, compile, commit, trigger, wait, download
artifacts and save a result. Cycles repeat `repeat_count` extra times.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import click

from trialkit.artifacts import ArtifactBundle, classify_artifacts
from trialkit.config import TrialkitConfig
from trialkit.errors import (
    CancelledError,
    HostingError,
    NoArtifactsError,
    NotFoundError,
    RunFailedError,
    RunTimeoutError,
    SpecError,
    TransientError,
    TrialkitError,
    UnknownHostingError,
)
from trialkit.frontmatter import extract_description
from trialkit.git import GitClient
from trialkit.hosting import HostingService, RunStatus
from trialkit.installer import InstallOptions, WorkflowInstaller, commit_and_push
from trialkit.resolver import ResolvedWorkflows
from trialkit.results import (
    CombinedTrialResult,
    WorkflowTrialResult,
    cycle_id,
    save_trial_result,
    trial_result_filename,
)
from trialkit.sandbox import SandboxManager
from trialkit.services import CompileOptions
from trialkit.spec import parse_issue_spec, parse_repo_spec
from trialkit.utils import (
    console,
    format_duration,
    print_banner,
    print_info,
    print_panel,
    print_success,
    print_warning,
    retry_with_backoff,
)


class TrialMode(str, Enum):
    CLONE = "clone"
    LOGICAL = "logical"
    DIRECT = "direct"
    DEFAULT = "default"


@dataclass
class RepoConfig:
    """Repository flags as given by the operator (unparsed)."""
    clone_repo: str = ""
    logical_repo: str = ""
    host_repo: str = ""


@dataclass
class TrialOptions:
    """Options for one trial invocation."""
    repos: RepoConfig = field(default_factory=RepoConfig)
    delete_host_repo: bool = False
    force_delete_host_repo: bool = False
    quiet: bool = False
    dry_run: bool = False
    timeout_minutes: int = 30
    poll_interval_seconds: float = 5
    trigger_context: str = ""
    repeat_count: int = 0
    auto_merge_prs: bool = False
    engine_override: str = ""
    append_text: str = ""
    disable_security_scanner: bool = False


def select_mode(repos: RepoConfig) -> TrialMode:
    """Pick the trial mode; clone > logical > direct > default."""
    if repos.clone_repo:
        return TrialMode.CLONE
    if repos.logical_repo:
        return TrialMode.LOGICAL
    if repos.host_repo:
        return TrialMode.DIRECT
    return TrialMode.DEFAULT


@dataclass
class TrialTarget:
    """Repositories a trial acts on, after mode selection."""
    mode: TrialMode
    host_slug: str
    logical_slug: str = ""
    clone_slug: str = ""
    clone_version: str = ""

    @property
    def simulated(self) -> bool:
        """Workflow files get repository references rewritten."""
        return self.mode in (TrialMode.LOGICAL, TrialMode.DEFAULT)

    @property
    def result_label(self) -> str:
        """Target slug used in result file names ("" means clone mode)."""
        if self.mode == TrialMode.DIRECT:
            return self.host_slug
        return self.logical_slug


def wait_for_run(
    hosting: HostingService,
    slug: str,
    run_id: str,
    timeout_minutes: int,
    poll_interval: float = 5,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    logger: Optional[logging.Logger] = None,
) -> RunStatus:
    """
    Poll a run until it completes or the timeout elapses.

    Timeouts and unclassified hosting failures while reading the status
    are retried until the deadline. Cancellation is not observed while
    waiting.

    Returns:
        Final RunStatus of a successful run

    Raises:
        RunFailedError: If the run completed without success
        RunTimeoutError: If the run did not complete in time
    """
    logger = logger or logging.getLogger(__name__)
    deadline = clock() + timeout_minutes * 60
    started = clock()
    last_status = None

    while True:
        try:
            status = hosting.run_status(slug, run_id)
        except (TransientError, UnknownHostingError) as e:
            logger.warning(f"Could not read status of run {run_id}: {e}", extra={"run_id": run_id})
        else:
            if status.status != last_status:
                logger.info(f"Run {run_id}: {status.status}", extra={"run_id": run_id})
            last_status = status.status
            if status.is_completed:
                if not status.succeeded:
                    raise RunFailedError(run_id, status.conclusion)
                logger.info(
                    f"Run {run_id} succeeded after {format_duration(clock() - started)}", extra={"run_id": run_id}
                )
                return status

        if clock() >= deadline:
            raise RunTimeoutError(run_id, timeout_minutes, last_status)
        sleep(poll_interval)


def execute_with_repeat(
    repeat_count: int,
    execute: Callable[[], None],
    cleanup: Callable[[], None],
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Run execute() once plus repeat_count more times.

    A failed cycle does not stop the next one, whether it failed with a
    TrialkitError or a local OSError or ValueError. Anything else is a bug
    and propagates at once. cleanup() runs exactly once at the end. A set
    cancel_event stops further cycles from starting.

    Raises:
        TrialkitError, OSError, ValueError: The first error any cycle raised
        CancelledError: If cancelled before any cycle failed
    """
    logger = logger or logging.getLogger(__name__)
    first_error = None
    total = repeat_count + 1

    try:
        for i in range(total):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Cancelled after {i} of {total} cycle(s)")
                if first_error is None:
                    first_error = CancelledError(f"trial cancelled after {i} of {total} cycle(s)")
                break
            if i > 0:
                print_info(f"Repeating trial run ({i}/{repeat_count})")
            try:
                execute()
            except (TrialkitError, OSError, ValueError) as e:
                logger.error(f"Cycle {i + 1}/{total} failed: {e}")
                if first_error is None:
                    first_error = e
    finally:
        cleanup()

    if first_error is not None:
        raise first_error


class TrialOrchestrator:
    """Run resolved workflows as trials in a host repository."""

    def __init__(
        self,
        hosting: HostingService,
        git: GitClient,
        installer: WorkflowInstaller,
        sandbox: SandboxManager,
        config: Optional[TrialkitConfig] = None,
        base_dir: Optional[Path] = None,
        confirm: Callable[[str], bool] = click.confirm,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            hosting: Hosting service
            git: Local git client
            installer: Installs workflows into working copies
            sandbox: Host repository lifecycle
            config: trialkit config (defaults when omitted)
            base_dir: Directory holding the operator's repository and the
                local results directory
            confirm: Asks the operator to go ahead with the plan
            sleep: Sleep function (injected by tests)
            clock: Monotonic clock (injected by tests)
            logger: Logger to use
        """
        self.hosting = hosting
        self.git = git
        self.installer = installer
        self.sandbox = sandbox
        self.config = config or TrialkitConfig()
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.confirm = confirm
        self.sleep = sleep
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @property
    def results_dir(self) -> Path:
        return self.base_dir / self.config.results_dir

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def build_target(self, repos: RepoConfig) -> TrialTarget:
        """
        Resolve repository flags into a TrialTarget.

        Raises:
            SpecError: If a repository flag is malformed or the current
                repository cannot be determined in default mode
        """
        mode = select_mode(repos)
        current_repo = self.git.remote_slug(self.base_dir)
        target = TrialTarget(mode=mode, host_slug="")

        if mode == TrialMode.CLONE:
            clone = self._parse_repo_flag("--clone-repo", repos.clone_repo, current_repo)
            target.clone_slug = clone.repo_slug
            target.clone_version = clone.version
            print_info(f"Clone mode: Will clone contents from {target.clone_slug} into host repository")
        elif mode == TrialMode.LOGICAL:
            target.logical_slug = self._parse_repo_flag("--logical-repo", repos.logical_repo, current_repo).repo_slug
            print_info(f"Target repository (specified): {target.logical_slug}")
        elif mode == TrialMode.DIRECT:
            print_info("Direct trial mode: Workflows will be installed and run directly in the host repository")
        else:
            if not current_repo:
                raise SpecError(
                    "failed to determine simulated host repository: no origin remote configured. "
                    "Use --logical-repo or --host-repo"
                )
            target.logical_slug = current_repo
            print_info(f"Target repository (current): {target.logical_slug}")

        if repos.host_repo:
            host_repo = repos.host_repo
            if "/" not in host_repo and host_repo != "." and "://" not in host_repo:
                host_repo = f"{self.hosting.current_user()}/{host_repo}"
            target.host_slug = self._parse_repo_flag("--host-repo", host_repo, current_repo).repo_slug
        else:
            target.host_slug = f"{self.hosting.current_user()}/{self.config.default_host_repo_name}"
            print_info(f"Host repository (default): {target.host_slug}")

        self.logger.debug(f"Trial target: {target}")
        return target

    @staticmethod
    def _parse_repo_flag(flag: str, value: str, current_repo: str):
        try:
            return parse_repo_spec(value, current_repo=current_repo)
        except SpecError as e:
            raise SpecError(f"invalid {flag} specification '{value}': {e}") from e

    def show_plan(self, resolved: ResolvedWorkflows, target: TrialTarget, options: TrialOptions) -> bool:
        """Render the trial plan and ask the operator to confirm it."""
        lines = [f"Workflows: {', '.join(w.name for w in resolved)}"]
        if target.mode == TrialMode.CLONE:
            source = target.clone_slug + (f"@{target.clone_version}" if target.clone_version else "")
            lines.append(f"Mode:      Clone contents of {source} into host repository")
        elif target.mode == TrialMode.DIRECT:
            lines.append("Mode:      Direct (workflows run in host repository without simulation)")
        else:
            lines.append(f"Mode:      Simulate running against {target.logical_slug}")
        lines.append(f"Host Repo: {self.sandbox.url(target.host_slug)}")

        if options.delete_host_repo:
            lines.append("Cleanup:   Host repository will be deleted after completion")
        else:
            lines.append("Cleanup:   Host repository will be preserved")
        if options.force_delete_host_repo:
            lines.append("           Existing host repository will be deleted and recreated")

        if options.engine_override:
            secret = self.config.engine_secrets.get(options.engine_override, "")
            lines.append(f"Engine:    {options.engine_override}" + (f" (secret {secret})" if secret else ""))
        if options.repeat_count > 0:
            lines.append(
                f"Repeat:    Will run {options.repeat_count} times "
                f"(total executions: {options.repeat_count + 1})"
            )
        if options.auto_merge_prs:
            lines.append("Auto-merge: Pull requests created by the trial will be merged")

        print_panel("Trial Execution Plan", "\n".join(lines))
        return self.confirm("Do you want to continue?")

    def ensure_engine_secret(self, host_slug: str, engine: str) -> None:
        """Set the engine's API secret in the host from the environment if it is missing."""
        secret = self.config.engine_secrets.get(engine)
        if not secret:
            print_warning(f"No secret configured for engine '{engine}'")
            return

        try:
            existing = set(self.hosting.list_secrets(host_slug))
        except HostingError as e:
            self.logger.warning(f"Could not check existing secrets: {e}")
            existing = set()

        if secret in existing:
            self.logger.debug(f"Secret {secret} already present in {host_slug}")
            return

        value = os.environ.get(secret, "")
        if not value:
            raise TrialkitError(
                f"engine '{engine}' requires secret {secret}; set it in the environment or in {host_slug}"
            )
        self.hosting.set_secret(host_slug, secret, value)
        print_success(f"Set secret {secret} in {host_slug}")

    def seed_clone(self, resolved: ResolvedWorkflows, target: TrialTarget) -> None:
        """Push the clone source into the host and disable its other workflows."""
        self.sandbox.seed_from(target.clone_slug, target.clone_version, target.host_slug)
        keep = [f"{w.name}.lock.yml" for w in resolved]
        try:
            disabled = self.hosting.disable_workflows_except(target.host_slug, keep)
        except HostingError as e:
            print_warning(f"Failed to disable workflows: {e}")
            return
        if disabled:
            print_info(f"Disabled {len(disabled)} workflow(s) in host repository: {', '.join(disabled)}")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(
        self,
        resolved: ResolvedWorkflows,
        options: TrialOptions,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Run a full trial.

        Args:
            resolved: Workflows to trial
            options: Trial options
            cancel_event: When set, no further cycle is started

        Raises:
            SpecError: Invalid repository flags
            SandboxError: Host repository could not be prepared
            TrialkitError: First failure of any cycle
        """
        names = [w.name for w in resolved]
        print_banner("Workflow Trial")
        if len(names) == 1:
            print_info(f"Starting trial of workflow '{names[0]}'")
        else:
            print_info(f"Starting trial of {len(names)} workflows ({', '.join(names)})")
        if options.dry_run:
            print_info("[DRY RUN] Showing what would be done without making changes")

        target = self.build_target(options.repos)

        if not options.quiet and not self.show_plan(resolved, target, options):
            raise CancelledError("trial cancelled by user")

        self.sandbox.ensure(
            target.host_slug,
            force_delete=options.force_delete_host_repo,
            clone_mode=target.mode == TrialMode.CLONE,
            dry_run=options.dry_run,
        )
        if options.dry_run:
            print_info("[DRY RUN] Stopping here. No actual changes were made.")
            return

        if options.engine_override:
            self.ensure_engine_secret(target.host_slug, options.engine_override)

        if target.mode == TrialMode.CLONE:
            self.seed_clone(resolved, target)

        execute_with_repeat(
            options.repeat_count,
            lambda: self.run_cycle(resolved, target, options),
            lambda: self.sandbox.cleanup(target.host_slug, delete=options.delete_host_repo),
            cancel_event=cancel_event,
            logger=self.logger,
        )

    def run_cycle(self, resolved: ResolvedWorkflows, target: TrialTarget, options: TrialOptions) -> list[Path]:
        """
        Run every workflow once in a fresh working copy of the host.

        Returns:
            Result files written locally during this cycle
        """
        cycle = cycle_id()
        self.logger.info(f"Starting trial cycle {cycle}", extra={"cycle": cycle, "host_repo": target.host_slug})
        work_parent = Path(tempfile.mkdtemp(prefix="trialkit-"))
        saved = []
        try:
            repo_dir = self.sandbox.clone(target.host_slug, work_parent)
            results = []
            for workflow in resolved:
                print_info(f"=== Running trial for workflow: {workflow.name} ===")
                result = self.run_workflow(workflow, repo_dir, target, options)
                results.append(result)
                path = self.results_dir / trial_result_filename([workflow.name], target.result_label, cycle)
                if self._save(path, result):
                    saved.append(path)
                self.show_safe_outputs(result)
                print_success(f"Trial completed for workflow: {workflow.name}")

            if len(results) > 1:
                names = [r.workflow_name for r in results]
                path = self.results_dir / trial_result_filename(names, target.result_label, cycle)
                if self._save(path, CombinedTrialResult(workflow_names=names, results=results)):
                    saved.append(path)
                    print_info(f"Combined results saved to: {path}")

            self.publish_results(repo_dir, saved, cycle, [w.name for w in resolved])
            print_success("All trials completed successfully")
        finally:
            shutil.rmtree(work_parent, ignore_errors=True)
        return saved

    def run_workflow(
        self,
        workflow,
        repo_dir: Path,
        target: TrialTarget,
        options: TrialOptions,
    ) -> WorkflowTrialResult:
        """Install, trigger, wait for and collect one workflow."""
        install_options = InstallOptions(
            append_text=options.append_text,
            force=True,
            disable_security_scanner=options.disable_security_scanner,
            logical_repo=target.logical_slug,
            simulate=target.simulated,
        )
        installed = self.installer.install(workflow.spec, repo_dir, install_options, name=workflow.name)
        compiled = self.installer.compile(
            installed,
            CompileOptions(
                trial_mode=target.simulated,
                logical_repo=target.logical_slug,
                engine_override=options.engine_override,
            ),
        )
        for warning in compiled.warnings:
            print_warning(warning)

        commit_and_push(self.git, repo_dir, f"Add trial workflow: {workflow.name} and compiled lock files")

        description = extract_description(installed.read_text())
        if description:
            print_info(description)

        run_id = self.trigger(target.host_slug, compiled.lock_file.name, options.trigger_context)
        print_info(f"Workflow run started with ID: {run_id} ({self.sandbox.url(target.host_slug)}/actions/runs/{run_id})")

        wait_for_run(
            self.hosting,
            target.host_slug,
            run_id,
            options.timeout_minutes,
            poll_interval=options.poll_interval_seconds,
            sleep=self.sleep,
            clock=self.clock,
            logger=self.logger,
        )

        if options.auto_merge_prs:
            try:
                merged = self.hosting.merge_open_pull_requests(target.host_slug)
                if merged:
                    print_success(f"Merged pull request(s): {', '.join(f'#{n}' for n in merged)}")
            except HostingError as e:
                print_warning(f"Failed to auto-merge pull requests: {e}")

        bundle = self.collect_artifacts(target.host_slug, run_id)
        return WorkflowTrialResult(
            workflow_name=workflow.name,
            run_id=run_id,
            safe_outputs=bundle.safe_outputs,
            agentic_run_info=bundle.agentic_run_info,
            additional_artifacts=bundle.additional_artifacts,
        )

    def trigger(self, host_slug: str, workflow_file: str, trigger_context: str = "") -> str:
        """
        Dispatch a workflow and return the id of the run it started.

        Raises:
            HostingError: If the dispatch fails or no new run shows up
        """
        try:
            previous = self.hosting.latest_run(host_slug, workflow_file).run_id
        except NotFoundError:
            previous = ""

        inputs = {}
        if trigger_context:
            issue_number = parse_issue_spec(trigger_context)
            if issue_number:
                inputs["issue_number"] = issue_number
            else:
                print_warning(f"Could not extract an issue number from trigger context '{trigger_context}'")

        self.hosting.dispatch_workflow(host_slug, workflow_file, inputs or None)
        self.logger.info(f"Dispatched {workflow_file} in {host_slug}", extra={"workflow": workflow_file, "host_repo": host_slug})

        def new_run() -> str:
            try:
                run = self.hosting.latest_run(host_slug, workflow_file)
            except NotFoundError as e:
                raise TransientError(f"run for {workflow_file} not listed yet") from e
            if run.run_id == previous:
                raise TransientError(f"run for {workflow_file} not listed yet")
            return run.run_id

        return retry_with_backoff(new_run, max_attempts=5, backoff_seconds=2, logger=self.logger, sleep=self.sleep)

    def collect_artifacts(self, host_slug: str, run_id: str) -> ArtifactBundle:
        """Download and classify a run's artifacts; no artifacts yields an empty bundle."""
        scratch = Path(tempfile.mkdtemp(prefix=f"trialkit-artifacts-{run_id}-"))
        try:
            try:
                self.hosting.download_artifacts(host_slug, run_id, scratch)
            except NoArtifactsError:
                print_info(f"No artifacts found for run {run_id}")
                return ArtifactBundle()
            return classify_artifacts(scratch, logger=self.logger)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _save(self, path: Path, result) -> bool:
        try:
            save_trial_result(path, result)
        except OSError as e:
            print_warning(f"Failed to save trial result {path.name}: {e}")
            return False
        print_info(f"Saved trial result: {path}")
        return True

    def show_safe_outputs(self, result: WorkflowTrialResult) -> None:
        if result.safe_outputs:
            print_success(f"=== Safe Outputs from {result.workflow_name} ===")
            click.echo(json.dumps(result.safe_outputs, indent=2))
            print_success("=== End of Safe Outputs ===")
        else:
            print_info(f"=== No Safe Outputs Generated by {result.workflow_name} ===")
        if result.agentic_run_info:
            print_info(f"=== Agentic Run Information Available from {result.workflow_name} ===")
        if result.additional_artifacts:
            console.print(
                f"[cyan]=== Additional Artifacts Available from {result.workflow_name} "
                f"({len(result.additional_artifacts)} files) ===[/cyan]"
            )

    def publish_results(self, repo_dir: Path, files: list[Path], cycle: str, names: list[str]) -> None:
        """Copy this cycle's result files into the host and push them. Never fatal."""
        if not files:
            return
        dest_dir = Path(repo_dir) / self.config.results_dir
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            for path in files:
                shutil.copy2(path, dest_dir / path.name)
            committed = commit_and_push(
                self.git,
                repo_dir,
                f"Add trial results for {', '.join(names)} ({cycle})",
                paths=[self.config.results_dir],
            )
        except (TrialkitError, OSError) as e:
            print_warning(f"Failed to copy trial results to repository: {e}")
            return
        if committed:
            print_success(f"Trial results committed to host repository under {self.config.results_dir}/")
        else:
            self.logger.info("No new trial results to commit")
