"""
Hosting service boundary.

trialkit never talks to the hosting platform directly. Every remote
operation goes through a HostingService: repository CRUD, file content
at a ref, ref resolution, secrets, workflow dispatch, run status,
artifact download and pull-request merge.

GhCliHostingService drives the `gh` CLI. Failures are classified here,
once, into typed errors:
- UnauthorizedError: gh is not logged in or lacks permission
- NotFoundError / NoArtifactsError: the resource does not exist
- ConflictError: the resource already exists
- UnknownHostingError: anything else, with the raw detail kept, including
  output that is not the JSON we asked for
- HostingTimeoutError: the gh call itself timed out; also a TransientError
Callers branch on these types and never inspect message text.
"""

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trialkit.errors import (
    ConflictError,
    HostingError,
    NoArtifactsError,
    HostingTimeoutError,
    NotFoundError,
    UnauthorizedError,
    UnknownHostingError,
)


@dataclass(frozen=True)
class RunStatus:
    """Snapshot of a workflow run."""
    run_id: str
    status: str
    conclusion: str = ""
    url: str = ""

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def succeeded(self) -> bool:
        return self.is_completed and self.conclusion == "success"


class HostingService(ABC):
    """Abstract hosting platform operations used by resolution and trials."""

    # --- identity / repositories ---

    @abstractmethod
    def current_user(self) -> str:
        """Login of the authenticated user."""

    @abstractmethod
    def repo_exists(self, slug: str) -> bool:
        pass

    @abstractmethod
    def create_repo(self, slug: str, description: str, private: bool = True) -> None:
        """Create a repository seeded with a README.

        Raises:
            ConflictError: If the repository already exists
        """

    @abstractmethod
    def delete_repo(self, slug: str) -> None:
        pass

    @abstractmethod
    def enable_discussions(self, slug: str) -> None:
        pass

    # --- content ---

    @abstractmethod
    def get_default_branch(self, slug: str) -> str:
        pass

    @abstractmethod
    def resolve_ref(self, slug: str, ref: str) -> str:
        """Resolve a branch, tag or SHA to a commit SHA."""

    @abstractmethod
    def download_file(self, slug: str, path: str, ref: str) -> bytes:
        """Raw file content at a ref.

        Raises:
            NotFoundError: If the file does not exist at that ref
        """

    # --- secrets ---

    @abstractmethod
    def list_secrets(self, slug: str) -> list[str]:
        pass

    @abstractmethod
    def set_secret(self, slug: str, name: str, value: str) -> None:
        pass

    # --- workflows / runs ---

    @abstractmethod
    def dispatch_workflow(self, slug: str, workflow_file: str, inputs: Optional[dict[str, str]] = None) -> None:
        pass

    @abstractmethod
    def latest_run(self, slug: str, workflow_file: str) -> RunStatus:
        """Most recent run of a workflow.

        Raises:
            NotFoundError: If the workflow has no runs yet
        """

    @abstractmethod
    def run_status(self, slug: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    def download_artifacts(self, slug: str, run_id: str, dest: Path) -> None:
        """Download all artifacts of a run into dest.

        Raises:
            NoArtifactsError: If the run produced none
        """

    @abstractmethod
    def disable_workflows_except(self, slug: str, keep: list[str]) -> list[str]:
        """Disable every active workflow whose file name is not in keep.

        Returns:
            File names of the workflows that were disabled
        """

    @abstractmethod
    def merge_open_pull_requests(self, slug: str) -> list[int]:
        """Merge every open pull request. Returns the merged numbers."""


class GhCliHostingService(HostingService):
    """HostingService backed by the `gh` command-line client."""

    def __init__(
        self,
        gh_path: str = "gh",
        timeout_seconds: int = 300,
        logger: Optional[logging.Logger] = None,
    ):
        self.gh_path = gh_path
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _run(self, args: list[str], input_text: Optional[str] = None) -> str:
        return self._run_bytes(args, input_text).decode("utf-8", errors="replace")

    def _run_bytes(self, args: list[str], input_text: Optional[str] = None) -> bytes:
        self.logger.debug(f"gh {' '.join(args)}")
        try:
            proc = subprocess.run(
                [self.gh_path, *args],
                input=input_text.encode() if input_text is not None else None,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise HostingTimeoutError(f"gh {args[0]} timed out after {self.timeout_seconds}s") from e
        except FileNotFoundError as e:
            raise UnknownHostingError(f"'{self.gh_path}' not found on PATH", detail=str(e)) from e

        if proc.returncode != 0:
            raise classify_gh_failure(args, proc.returncode, proc.stderr.decode(errors="replace"))
        return proc.stdout

    def _json(self, args: list[str]) -> object:
        out = self._run(args)
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise UnknownHostingError(f"gh {args[0]} returned malformed JSON", detail=out.strip()[:200]) from e

    def current_user(self) -> str:
        return self._run(["api", "user", "--jq", ".login"]).strip()

    def repo_exists(self, slug: str) -> bool:
        try:
            self._run(["repo", "view", slug, "--json", "name"])
        except NotFoundError:
            return False
        return True

    def create_repo(self, slug: str, description: str, private: bool = True) -> None:
        args = ["repo", "create", slug, "--add-readme", "--description", description]
        args.append("--private" if private else "--public")
        self._run(args)

    def delete_repo(self, slug: str) -> None:
        self._run(["repo", "delete", slug, "--yes"])

    def enable_discussions(self, slug: str) -> None:
        self._run(["repo", "edit", slug, "--enable-discussions"])

    def get_default_branch(self, slug: str) -> str:
        branch = self._run(["api", f"repos/{slug}", "--jq", ".default_branch"]).strip()
        if not branch:
            raise UnknownHostingError(f"could not determine default branch of {slug}")
        return branch

    def resolve_ref(self, slug: str, ref: str) -> str:
        sha = self._run(["api", f"repos/{slug}/commits/{ref}", "--jq", ".sha"]).strip()
        if not sha:
            raise NotFoundError(f"ref '{ref}' not found in {slug}")
        return sha

    def download_file(self, slug: str, path: str, ref: str) -> bytes:
        return self._run_bytes([
            "api",
            f"repos/{slug}/contents/{path}?ref={ref}",
            "-H", "Accept: application/vnd.github.raw",
        ])

    def list_secrets(self, slug: str) -> list[str]:
        data = self._json(["secret", "list", "--repo", slug, "--json", "name"]) or []
        return [item["name"] for item in data]

    def set_secret(self, slug: str, name: str, value: str) -> None:
        self._run(["secret", "set", name, "--repo", slug], input_text=value)

    def dispatch_workflow(self, slug: str, workflow_file: str, inputs: Optional[dict[str, str]] = None) -> None:
        args = ["workflow", "run", workflow_file, "--repo", slug]
        for key, value in (inputs or {}).items():
            args += ["--field", f"{key}={value}"]
        self._run(args)

    def latest_run(self, slug: str, workflow_file: str) -> RunStatus:
        data = self._json([
            "run", "list", "--repo", slug, "--workflow", workflow_file,
            "--limit", "1", "--json", "databaseId,status,conclusion,url",
        ])
        if not data:
            raise NotFoundError(f"no runs found for {workflow_file} in {slug}")
        return _run_status_from_json(data[0])

    def run_status(self, slug: str, run_id: str) -> RunStatus:
        data = self._json([
            "run", "view", str(run_id), "--repo", slug,
            "--json", "databaseId,status,conclusion,url",
        ])
        return _run_status_from_json(data)

    def download_artifacts(self, slug: str, run_id: str, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        self._run(["run", "download", str(run_id), "--repo", slug, "--dir", str(dest)])

    def disable_workflows_except(self, slug: str, keep: list[str]) -> list[str]:
        data = self._json(["workflow", "list", "--repo", slug, "--all", "--json", "name,path,state"]) or []
        disabled = []
        for wf in data:
            file_name = Path(wf.get("path", "")).name
            if not file_name or file_name in keep or wf.get("state") != "active":
                continue
            self._run(["workflow", "disable", file_name, "--repo", slug])
            disabled.append(file_name)
        return disabled

    def merge_open_pull_requests(self, slug: str) -> list[int]:
        data = self._json(["pr", "list", "--repo", slug, "--state", "open", "--json", "number"]) or []
        merged = []
        for pr in data:
            number = int(pr["number"])
            self._run(["pr", "merge", str(number), "--repo", slug, "--merge", "--delete-branch"])
            merged.append(number)
        return merged


def _run_status_from_json(data: dict) -> RunStatus:
    return RunStatus(
        run_id=str(data.get("databaseId", "")),
        status=data.get("status", "") or "",
        conclusion=data.get("conclusion", "") or "",
        url=data.get("url", "") or "",
    )


def classify_gh_failure(args: list[str], returncode: int, stderr: str) -> HostingError:
    """Map a failed gh invocation to a typed HostingError."""
    detail = stderr.strip()
    lowered = detail.lower()
    command = f"gh {' '.join(args[:2])}"

    if returncode == 4 or "gh auth login" in lowered or "http 401" in lowered or "http 403" in lowered:
        return UnauthorizedError(f"{command}: authentication required. Run 'gh auth login' first", detail)
    if "no valid artifacts" in lowered or "no artifacts" in lowered:
        return NoArtifactsError(f"{command}: no artifacts found", detail)
    if (
        "http 404" in lowered
        or "not found" in lowered
        or "could not resolve to a repository" in lowered
    ):
        return NotFoundError(f"{command}: not found", detail)
    if "already exists" in lowered or "http 409" in lowered:
        return ConflictError(f"{command}: already exists", detail)
    return UnknownHostingError(f"{command} failed: {detail}", detail)
