"""Local git operations, always run against an explicit working directory."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from trialkit.errors import GitError, PushConflictError

_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")


def parse_repo_slug_from_url(url: str, github_host: str = "https://github.com") -> str:
    """
    Extract owner/repo from a remote URL.

    Handles https://<host>/owner/repo(.git) and git@<host>:owner/repo(.git).
    Returns "" when the URL does not point at the host.
    """
    url = url.strip().removesuffix(".git")
    host = github_host.rstrip("/")
    bare_host = host.removeprefix("https://").removeprefix("http://")

    for prefix in (f"{host}/", f"https://{bare_host}/", f"http://{bare_host}/", f"git@{bare_host}:"):
        if url.startswith(prefix):
            slug = url[len(prefix):]
            return slug if slug.count("/") == 1 else ""
    return ""


class GitClient:
    """
    Thin wrapper over the git CLI.

    Every method takes the repository directory explicitly; the process
    working directory is never changed.
    """

    def __init__(self, github_host: str = "https://github.com", logger: Optional[logging.Logger] = None):
        self.github_host = github_host.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)

    def _run(self, args: list[str], cwd: Optional[Path] = None) -> str:
        self.logger.debug(f"git {' '.join(args)} (cwd={cwd})")
        try:
            proc = subprocess.run(
                ["git", *args],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise GitError(args, f"could not run git: {e}") from e
        if proc.returncode != 0:
            raise GitError(args, proc.stderr or proc.stdout)
        return proc.stdout

    def repo_url(self, slug: str) -> str:
        return f"{self.github_host}/{slug}.git"

    def clone(self, slug: str, dest: Path) -> None:
        self._run(["clone", self.repo_url(slug), str(dest)])

    def checkout(self, repo_dir: Path, ref: str) -> None:
        self._run(["checkout", ref], cwd=repo_dir)

    def add_remote(self, repo_dir: Path, name: str, slug: str) -> None:
        self._run(["remote", "add", name, self.repo_url(slug)], cwd=repo_dir)

    def force_push(self, repo_dir: Path, remote: str, refspec: str) -> None:
        self._run(["push", "--force", remote, refspec], cwd=repo_dir)

    def add(self, repo_dir: Path, paths: list[str]) -> None:
        self._run(["add", *paths], cwd=repo_dir)

    def has_changes(self, repo_dir: Path) -> bool:
        return bool(self._run(["status", "--porcelain"], cwd=repo_dir).strip())

    def commit(self, repo_dir: Path, message: str) -> None:
        self._run(["commit", "-m", message], cwd=repo_dir)

    def pull(self, repo_dir: Path, remote: str = "origin", branch: str = "main") -> None:
        self._run(["pull", "--no-rebase", remote, branch], cwd=repo_dir)

    def push(self, repo_dir: Path, remote: str = "origin", branch: str = "main") -> None:
        try:
            self._run(["push", remote, branch], cwd=repo_dir)
        except GitError as e:
            if any(marker in e.output for marker in _REJECTED_MARKERS):
                raise PushConflictError(e.command, e.output) from e
            raise

    def pull_then_push(self, repo_dir: Path, remote: str = "origin", branch: str = "main") -> None:
        """
        Pull once, then push once.

        Raises:
            PushConflictError: If the push is still rejected after the pull
        """
        self.pull(repo_dir, remote, branch)
        self.push(repo_dir, remote, branch)

    def remote_slug(self, repo_dir: Optional[Path] = None, remote: str = "origin") -> str:
        """owner/repo of a remote, or "" when it is not configured or not hosted."""
        try:
            url = self._run(["config", "--get", f"remote.{remote}.url"], cwd=repo_dir).strip()
        except GitError:
            return ""
        return parse_repo_slug_from_url(url, self.github_host)
