"""
Sandbox (host repository) lifecycle.

A host repository is the disposable place trials run in. ensure() moves
it into a usable state:

    Absent                 -> Created
    Present                -> Reused
    Present + force delete -> Recreated (deleted, then created)

Clone mode reuses an existing host without deleting it, since seeding
force-pushes over its content anyway. Creation and deletion are the only
mutating operations.
"""

import logging
import shutil
import tempfile
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from trialkit.errors import ConflictError, HostingError, SandboxError
from trialkit.git import GitClient
from trialkit.hosting import HostingService
from trialkit.utils import print_info, print_success, print_warning, wait_for_enter

HOST_REPO_DESCRIPTION = "Agentic workflow trial host repository"


class SandboxState(str, Enum):
    """Outcome of SandboxManager.ensure()."""
    CREATED = "created"
    RECREATED = "recreated"
    REUSED = "reused"


class SandboxManager:
    """Create, reuse, seed, clone and delete host repositories."""

    def __init__(
        self,
        hosting: HostingService,
        git: GitClient,
        github_host: str = "https://github.com",
        confirm_permissions: Callable[[str], None] = wait_for_enter,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            hosting: Hosting service
            git: Local git client
            github_host: Base URL used in operator-facing links
            confirm_permissions: Blocks until the operator confirms automation
                permissions on a newly created repository
            sleep: Sleep function (injected by tests)
            logger: Logger to use
        """
        self.hosting = hosting
        self.git = git
        self.github_host = github_host.rstrip("/")
        self.confirm_permissions = confirm_permissions
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def url(self, slug: str) -> str:
        return f"{self.github_host}/{slug}"

    def ensure(
        self,
        slug: str,
        force_delete: bool = False,
        clone_mode: bool = False,
        dry_run: bool = False,
    ) -> SandboxState:
        """
        Make sure the host repository exists.

        Args:
            slug: owner/repo of the host repository
            force_delete: Delete and recreate an existing repository
            clone_mode: Content will be force-pushed afterwards
            dry_run: Report what would happen without mutating anything

        Returns:
            The state the repository ended up in (or would, on dry run)

        Raises:
            SandboxError: If the slug is invalid or create/delete fails
        """
        parts = slug.split("/")
        if len(parts) != 2 or not all(parts):
            raise SandboxError(f"invalid repository slug format: {slug}. Expected format: owner/repo")

        prefix = "[DRY RUN] " if dry_run else ""
        try:
            exists = self.hosting.repo_exists(slug)
        except HostingError as e:
            raise SandboxError(f"failed to check host repository {slug}: {e}") from e

        state = SandboxState.CREATED
        if exists:
            if not force_delete:
                note = " (contents will be force-pushed)" if clone_mode else ""
                self.logger.info(f"Reusing existing host repository: {slug}{note}")
                print_success(f"{prefix}Using existing host repository: {self.url(slug)}")
                return SandboxState.REUSED

            state = SandboxState.RECREATED
            if dry_run:
                print_info(f"{prefix}Would delete repository: {slug}")
            else:
                self.delete(slug)
                print_success(f"Force deleted existing host repository: {slug}")

        if dry_run:
            print_info(f"{prefix}Would create private repository {slug} ('{HOST_REPO_DESCRIPTION}')")
            print_info(f"{prefix}Would ask you to enable Actions permissions at {self.url(slug)}/settings/actions")
            print_info(f"{prefix}Would enable discussions")
            return state

        try:
            self.hosting.create_repo(slug, HOST_REPO_DESCRIPTION, private=True)
        except ConflictError:
            self.logger.info(f"Repository already exists (detected on create): {slug}")
            print_success(f"Using existing host repository: {self.url(slug)}")
            return SandboxState.REUSED
        except HostingError as e:
            raise SandboxError(f"failed to create host repository {slug}: {e}") from e

        print_success(f"Created host repository: {self.url(slug)}")
        print_info("IMPORTANT: You must enable Actions permissions for the repository.")
        print_info(f"1. Go to: {self.url(slug)}/settings/actions")
        print_info("2. Under 'Workflow permissions', allow Actions to create and approve pull requests")
        print_info("3. Click 'Save'")
        self.confirm_permissions("Press Enter after you have enabled these permissions...")
        print_success("Continuing with trial setup")

        try:
            self.hosting.enable_discussions(slug)
        except HostingError as e:
            print_warning(f"Failed to enable discussions: {e}")

        # Give the platform a moment to finish provisioning
        self.sleep(2)
        return state

    def delete(self, slug: str) -> None:
        """
        Raises:
            SandboxError: If deletion fails
        """
        try:
            self.hosting.delete_repo(slug)
        except HostingError as e:
            raise SandboxError(f"failed to delete host repository {slug}: {e}") from e
        self.logger.info(f"Deleted host repository: {slug}")

    def cleanup(self, slug: str, delete: bool = False) -> None:
        """Delete the host repository if requested, otherwise report where it lives."""
        if not delete:
            print_info(f"Host repository preserved: {self.url(slug)}")
            return
        print_info(f"Host repository {slug} will be deleted")
        self.delete(slug)
        print_success(f"Deleted host repository: {slug}")

    def seed_from(self, source_slug: str, source_version: str, host_slug: str) -> None:
        """
        Force-push a source repository's tree into the host's main branch.

        Raises:
            GitError: If cloning, checkout or push fails
        """
        self.logger.info(f"Cloning contents from {source_slug} into host repository {host_slug}")
        scratch = Path(tempfile.mkdtemp(prefix="trialkit-clone-"))
        try:
            work = scratch / "repo"
            self.git.clone(source_slug, work)
            if source_version:
                self.git.checkout(work, source_version)
            self.git.add_remote(work, "host", host_slug)
            self.git.force_push(work, "host", "HEAD:main")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        print_success(f"Pushed contents of {source_slug} to {host_slug}")

    def clone(self, slug: str, parent_dir: Optional[Path] = None) -> Path:
        """Clone the host into a fresh scratch directory and return its path."""
        parent = Path(parent_dir) if parent_dir else Path(tempfile.gettempdir())
        dest = parent / f"trial-{uuid.uuid4().hex[:12]}"
        self.git.clone(slug, dest)
        self.logger.debug(f"Cloned {slug} into {dest}")
        return dest
