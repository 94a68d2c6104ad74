"""
CLI interface for trialkit.

Provides commands to add agentic workflows to the current repository and
to trial them in a disposable host repository.

Workflow references take the forms:

    ./path/to/workflow.md              local file
    ./workflows/*.md                   local wildcard
    owner/repo/workflow[@ref]          remote, short form
    owner/repo/path/to/file.md[@ref]   remote, explicit path
    https://github.com/owner/repo/blob/<ref>/path.md
"""

import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
import yaml

from trialkit import __version__
from trialkit.add import AddOptions, WorkflowAdder
from trialkit.config import TrialkitConfig, get_trialkit_home, load_config
from trialkit.errors import RunTimeoutError, TrialkitError
from trialkit.fetcher import SourceFetcher
from trialkit.git import GitClient
from trialkit.hosting import GhCliHostingService, HostingService
from trialkit.installer import WorkflowInstaller
from trialkit.orchestrator import RepoConfig, TrialOptions, TrialOrchestrator
from trialkit.resolver import ResolvedWorkflows, WorkflowResolver
from trialkit.sandbox import SandboxManager
from trialkit.services import CommandCompiler, CommandSecurityScanner, NoOpSecurityScanner
from trialkit.utils import setup_logging


@dataclass
class Components:
    """Everything a command needs, wired from config."""
    config: TrialkitConfig
    base_dir: Path
    hosting: HostingService
    git: GitClient
    fetcher: SourceFetcher
    installer: WorkflowInstaller

    def resolver(self) -> WorkflowResolver:
        return WorkflowResolver(self.fetcher, current_repo=self.git.remote_slug(self.base_dir))


def build_components(config: TrialkitConfig, base_dir: Optional[Path] = None) -> Components:
    """Wire the gh/git-backed services for a command run in base_dir."""
    base_dir = Path(base_dir) if base_dir else Path.cwd()
    hosting = GhCliHostingService()
    git = GitClient(github_host=config.github_host)
    fetcher = SourceFetcher(hosting=hosting, base_dir=base_dir)
    if config.scanner_command:
        scanner = CommandSecurityScanner(config.scanner_command)
    else:
        scanner = NoOpSecurityScanner()
    installer = WorkflowInstaller(fetcher, CommandCompiler(config.compiler_command), scanner)
    return Components(config, base_dir, hosting, git, fetcher, installer)


def _get_config(ctx) -> TrialkitConfig:
    if "config_error" in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj['config_error']}", err=True)
        click.echo("Run 'trialkit init --force' to recreate the configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _setup_logging(config: TrialkitConfig, verbose: bool) -> None:
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level="DEBUG" if verbose else config.log_level,
        log_format=config.log_format,
    )


def _resolve(components: Components, workflows: tuple) -> ResolvedWorkflows:
    try:
        return components.resolver().resolve(list(workflows))
    except TrialkitError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="trialkit")
@click.pass_context
def main(ctx):
    """
    trialkit - Add and trial agentic workflows.

    Resolve workflow references, install them, and run them as trials in
    a sandbox repository.
    """
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except FileNotFoundError:
        # Every setting has a default; init is only needed to customize them
        ctx.obj["config"] = TrialkitConfig()
    except (ValueError, yaml.YAMLError) as e:
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize trialkit configuration."""
    home = get_trialkit_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = TrialkitConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# COPILOT_GITHUB_TOKEN=...\n# ANTHROPIC_API_KEY=...\n# OPENAI_API_KEY=...\n"
        )

    click.echo(f"Initialized trialkit config at {cfg_path}")
    click.echo("Make sure `gh auth login` has been run before adding or trialling workflows.")


@main.command("add")
@click.argument("workflows", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="Overwrite existing workflow files")
@click.option("--name", "-n", default="", help="Installed workflow name (single workflow only)")
@click.option("--append", "append_text", default="", help="Text appended to each installed workflow")
@click.option("--engine", "-e", default="", help="Override the AI engine when compiling")
@click.option("--no-compile", is_flag=True, help="Skip compiling the installed workflows")
@click.option("--disable-security-scanner", is_flag=True, help="Skip security scanning of workflow content")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def add(ctx, workflows, force, name, append_text, engine, no_compile, disable_security_scanner, verbose):
    """
    Add workflows to the current repository.

    Examples:

        trialkit add githubnext/agentics/ci-doctor

        trialkit add ./workflows/*.md --force

        trialkit add octo-org/octo-repo/triage@v1.2.0 --name issue-triage
    """
    config = _get_config(ctx)
    _setup_logging(config, verbose)
    components = build_components(config)
    resolved = _resolve(components, workflows)

    adder = WorkflowAdder(components.installer, git=components.git, base_dir=components.base_dir)
    options = AddOptions(
        name=name,
        force=force,
        append_text=append_text,
        engine_override=engine,
        no_compile=no_compile,
        disable_security_scanner=disable_security_scanner,
    )
    try:
        tracker = adder.add(resolved, options)
    except TrialkitError as e:
        click.echo(f"✗ Failed to add workflows: {e}", err=True)
        raise SystemExit(1)
    except OSError as e:
        click.echo(f"✗ Failed to write workflow files: {e}", err=True)
        raise SystemExit(1)

    for path in tracker.created_files:
        click.echo(f"  created:  {path}")
    for path in tracker.modified_files:
        click.echo(f"  modified: {path}")
    click.echo(f"✓ Added {len(resolved)} workflow(s)")


@main.command("trial")
@click.argument("workflows", nargs=-1, required=True)
@click.option("--clone-repo", default="", help="Seed the host with this repository's contents (owner/repo[@ref])")
@click.option("--logical-repo", default="", help="Simulate running against this repository (owner/repo)")
@click.option("--host-repo", "--repo", "host_repo", default="", help="Host repository to run trials in")
@click.option("--delete-host-repo", is_flag=True, help="Delete the host repository when done")
@click.option("--force-delete-host-repo", is_flag=True, help="Delete and recreate an existing host repository")
@click.option("--yes", "-y", "quiet", is_flag=True, help="Skip the confirmation prompt")
@click.option("--dry-run", is_flag=True, help="Show what would be done without making changes")
@click.option("--timeout", "timeout_minutes", type=int, default=None, help="Minutes to wait for each run")
@click.option("--trigger-context", default="", help="Issue URL or number passed to the workflow")
@click.option("--repeat", "repeat_count", type=click.IntRange(min=0), default=0, help="Extra times to repeat the trial")
@click.option("--auto-merge-prs", is_flag=True, help="Merge pull requests created during the trial")
@click.option("--engine", "-e", default="", help="Override the AI engine")
@click.option("--append", "append_text", default="", help="Text appended to each installed workflow")
@click.option("--disable-security-scanner", is_flag=True, help="Skip security scanning of workflow content")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def trial(
    ctx,
    workflows,
    clone_repo,
    logical_repo,
    host_repo,
    delete_host_repo,
    force_delete_host_repo,
    quiet,
    dry_run,
    timeout_minutes,
    trigger_context,
    repeat_count,
    auto_merge_prs,
    engine,
    append_text,
    disable_security_scanner,
    verbose,
):
    """
    Trial workflows in a sandbox host repository.

    Examples:

        trialkit trial githubnext/agentics/weekly-research

        trialkit trial ./my-workflow.md --logical-repo octo-org/octo-repo

        trialkit trial ./my-workflow.md --clone-repo upstream/repo --repeat 2

        trialkit trial owner/repo/triage --trigger-context '#42' --yes
    """
    if clone_repo and logical_repo:
        raise click.UsageError("--clone-repo and --logical-repo are mutually exclusive")

    config = _get_config(ctx)
    _setup_logging(config, verbose)
    if engine and engine not in config.engine_secrets:
        click.echo(
            f"✗ Unknown engine '{engine}'. Known engines: {', '.join(sorted(config.engine_secrets))}",
            err=True,
        )
        raise SystemExit(1)

    components = build_components(config)
    resolved = _resolve(components, workflows)

    sandbox = SandboxManager(components.hosting, components.git, github_host=config.github_host)
    orchestrator = TrialOrchestrator(
        components.hosting,
        components.git,
        components.installer,
        sandbox,
        config=config,
        base_dir=components.base_dir,
    )
    options = TrialOptions(
        repos=RepoConfig(clone_repo=clone_repo, logical_repo=logical_repo, host_repo=host_repo),
        delete_host_repo=delete_host_repo,
        force_delete_host_repo=force_delete_host_repo,
        quiet=quiet,
        dry_run=dry_run,
        timeout_minutes=timeout_minutes or config.timeout_minutes,
        poll_interval_seconds=config.poll_interval_seconds,
        trigger_context=trigger_context,
        repeat_count=repeat_count,
        auto_merge_prs=auto_merge_prs,
        engine_override=engine,
        append_text=append_text,
        disable_security_scanner=disable_security_scanner,
    )

    cancel_event = threading.Event()
    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: cancel_event.set())
    try:
        orchestrator.run(resolved, options, cancel_event=cancel_event)
    except RunTimeoutError as e:
        click.echo(f"✗ {e}. Inspect run {e.run_id} in the host repository.", err=True)
        raise SystemExit(1)
    except (TrialkitError, OSError, ValueError) as e:
        click.echo(f"✗ Trial failed: {e}", err=True)
        raise SystemExit(1)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if not dry_run:
        click.echo("✓ Trial complete")


if __name__ == "__main__":
    main()
