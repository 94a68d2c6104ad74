"""
Workflow reference parsing.

Turns the strings an operator types into structured specs. Four shapes are
accepted:

    owner/repo/name[@ref]                 implicit workflows/ directory
    owner/repo/path/to/file.md[@ref]      explicit path, must end in .md
    https://github.com/owner/repo/blob/<ref>/path.md   (and raw URLs)
    ./local/path.md                       local file, may contain * or **

No I/O happens here; the current repository slug is passed in by callers
that know it.
"""

import os
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from trialkit.errors import SpecError


WORKFLOW_SPEC_FORMAT = "owner/repo/workflow-name[@version]"
WORKFLOW_SPEC_EXAMPLE = "githubnext/agentics/ci-doctor@main"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9_])?$")
_SHA_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_ISSUE_URL_RE = re.compile(r"/issues/(\d+)/?$")
_ISSUE_REF_RE = re.compile(r"^#?(\d+)$")


@dataclass(frozen=True)
class RepoSpec:
    """A repository reference with an optional ref."""
    repo_slug: str
    version: str = ""

    @property
    def owner(self) -> str:
        return self.repo_slug.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo_slug.split("/", 1)[1] if "/" in self.repo_slug else ""


@dataclass(frozen=True)
class WorkflowSpec:
    """
    Immutable descriptor of a workflow reference.

    Attributes:
        repo_slug: owner/name of the source repository, empty for local specs
            when the current repository is unknown
        version: ref, tag or commit SHA; empty means the default branch
        workflow_path: path inside the source repository, or the local path
            (local paths keep their ./ prefix)
        workflow_name: file stem used as the installed workflow's name
        is_wildcard: path contains a glob pattern
    """
    repo_slug: str
    workflow_path: str
    workflow_name: str
    version: str = ""
    is_wildcard: bool = False

    @property
    def is_local(self) -> bool:
        return is_local_workflow_path(self.workflow_path)

    def with_path(self, workflow_path: str) -> "WorkflowSpec":
        """Return a non-wildcard copy pointing at a concrete path."""
        return WorkflowSpec(
            repo_slug=self.repo_slug,
            version=self.version,
            workflow_path=workflow_path,
            workflow_name=normalize_workflow_id(workflow_path),
        )

    def __str__(self) -> str:
        if self.is_local:
            return self.workflow_path
        spec = f"{self.repo_slug}/{self.workflow_path}"
        if self.version:
            spec += f"@{self.version}"
        return spec


def is_local_workflow_path(path: str) -> bool:
    return path.startswith("./")


def is_valid_identifier(value: str) -> bool:
    """Check that a string looks like a hosting-platform owner or repo name."""
    return bool(value) and len(value) <= 100 and bool(_IDENTIFIER_RE.match(value))


def is_commit_sha(version: str) -> bool:
    """True for a full 40-character hexadecimal commit id."""
    return bool(_SHA_RE.match(version or ""))


def normalize_workflow_id(path: str) -> str:
    """Workflow identifier from a file path: basename without .md."""
    base = os.path.basename(path)
    if base.endswith(".md"):
        base = base[: -len(".md")]
    return base


def _format_error(detail: str) -> SpecError:
    return SpecError(
        f"{detail}. Expected '{WORKFLOW_SPEC_FORMAT}', "
        f"e.g. '{WORKFLOW_SPEC_EXAMPLE}' or './path/to/workflow.md'"
    )


def wildcard_error(spec: str) -> SpecError:
    return SpecError(
        f"wildcards are only supported for local workflows, not remote repositories: {spec}"
    )


def parse_workflow_spec(spec: str, current_repo: str = "") -> WorkflowSpec:
    """
    Parse a workflow reference string.

    Args:
        spec: Reference string in one of the four accepted shapes
        current_repo: owner/name of the repository we are running in, used as
            the repo slug of local specs

    Returns:
        WorkflowSpec

    Raises:
        SpecError: If the string matches none of the shapes, or a remote
            spec carries a wildcard
    """
    spec = spec.strip()
    if spec.startswith("http://") or spec.startswith("https://"):
        return parse_github_url(spec)

    if is_local_workflow_path(spec):
        return _parse_local_spec(spec, current_repo)

    path_part, _, version = spec.partition("@")
    parts = path_part.split("/")
    if len(parts) < 3:
        raise _format_error("workflow specification must be in format 'owner/repo/workflow-name[@version]'")

    owner, repo = parts[0], parts[1]
    if not owner or not repo:
        raise _format_error("invalid workflow specification: owner and repo cannot be empty")
    if not is_valid_identifier(owner) or not is_valid_identifier(repo):
        raise SpecError(
            f"invalid workflow specification: '{owner}/{repo}' does not look like a valid repository"
        )

    # owner/repo/files/<ref>/path.md is what the web UI copies
    if len(parts) >= 4 and parts[2] == "files":
        workflow_path = "/".join(parts[4:])
        if not version:
            version = parts[3]
    else:
        workflow_path = "/".join(parts[2:])

    if "*" in workflow_path:
        raise wildcard_error(spec)

    if len(parts) == 3 and not workflow_path.endswith(".md"):
        workflow_path = f"workflows/{workflow_path}.md"
    elif not workflow_path.endswith(".md"):
        raise SpecError(
            f"workflow specification with path must end with '.md' extension: {workflow_path}"
        )

    return WorkflowSpec(
        repo_slug=f"{owner}/{repo}",
        version=version,
        workflow_path=workflow_path,
        workflow_name=normalize_workflow_id(workflow_path),
    )


def _parse_local_spec(spec: str, current_repo: str) -> WorkflowSpec:
    if not spec.endswith(".md"):
        raise SpecError(f"local workflow specification must end with '.md' extension: {spec}")
    is_wildcard = "*" in spec
    return WorkflowSpec(
        repo_slug=current_repo,
        workflow_path=spec,
        workflow_name="*" if is_wildcard else normalize_workflow_id(spec),
        is_wildcard=is_wildcard,
    )


def parse_github_url(url: str) -> WorkflowSpec:
    """
    Parse a hosting-platform file URL into a WorkflowSpec.

    Supported:
        https://github.com/<owner>/<repo>/(blob|tree|raw)/<ref>/<path>.md
        https://raw.githubusercontent.com/<owner>/<repo>/refs/heads/<ref>/<path>.md
        https://raw.githubusercontent.com/<owner>/<repo>/refs/tags/<ref>/<path>.md
        https://raw.githubusercontent.com/<owner>/<repo>/<sha-or-ref>/<path>.md

    Raises:
        SpecError: If the URL is not a recognized file URL
    """
    parsed = urlparse(url)
    host = parsed.netloc.lower()
    if host not in ("github.com", "raw.githubusercontent.com"):
        raise SpecError("URL must be from github.com or raw.githubusercontent.com")

    parts = [p for p in parsed.path.split("/") if p]
    if host == "github.com":
        if len(parts) < 5 or parts[2] not in ("blob", "tree", "raw"):
            raise SpecError(
                f"invalid URL: expected https://github.com/owner/repo/blob/<ref>/<path>.md, got {url}"
            )
        owner, repo, ref, file_parts = parts[0], parts[1], parts[3], parts[4:]
    else:
        if len(parts) >= 6 and parts[2] == "refs" and parts[3] in ("heads", "tags"):
            owner, repo, ref, file_parts = parts[0], parts[1], parts[4], parts[5:]
        elif len(parts) >= 4:
            owner, repo, ref, file_parts = parts[0], parts[1], parts[2], parts[3:]
        else:
            raise SpecError(f"invalid raw content URL: {url}")

    file_path = "/".join(file_parts)
    if not file_path.endswith(".md"):
        raise SpecError("URL must point to a .md file")
    if not is_valid_identifier(owner) or not is_valid_identifier(repo):
        raise SpecError(f"invalid URL: '{owner}/{repo}' does not look like a valid repository")

    return WorkflowSpec(
        repo_slug=f"{owner}/{repo}",
        version=ref,
        workflow_path=file_path,
        workflow_name=normalize_workflow_id(file_path),
    )


def parse_repo_spec(repo_spec: str, current_repo: str = "") -> RepoSpec:
    """
    Parse a repository reference like owner/repo[@ref].

    Also accepts https://github.com/owner/repo and "." for the current
    repository.

    Raises:
        SpecError: If the reference is malformed, or "." is given and the
            current repository is unknown
    """
    repo, _, version = repo_spec.strip().partition("@")

    if repo.startswith("https://github.com/") or repo.startswith("http://github.com/"):
        path_parts = [p for p in urlparse(repo).path.split("/") if p]
        if len(path_parts) != 2:
            raise SpecError(
                "invalid URL: must be https://github.com/owner/repo. "
                "Example: https://github.com/octo-org/octo-repo"
            )
        repo = "/".join(path_parts)
    elif repo == ".":
        if not current_repo:
            raise SpecError("failed to get current repository info: no origin remote configured")
        repo = current_repo
    else:
        repo_parts = repo.split("/")
        if len(repo_parts) != 2 or not repo_parts[0] or not repo_parts[1]:
            raise SpecError("repository must be in format 'owner/repo'. Example: octo-org/octo-repo")

    return RepoSpec(repo_slug=repo, version=version)


def parse_issue_spec(value: str) -> str:
    """
    Extract an issue number from an issue URL, '#123' or '123'.

    Returns:
        The number as a string, or "" if none could be found
    """
    value = (value or "").strip()
    match = _ISSUE_URL_RE.search(value)
    if match:
        return match.group(1)
    match = _ISSUE_REF_RE.match(value)
    if match:
        return match.group(1)
    return ""


def build_source_string(spec: WorkflowSpec, commit_sha: Optional[str] = None) -> str:
    """
    Provenance string written into installed workflows.

    Format: owner/repo/path@<commit sha, else version>. Empty when the spec
    has no repository.
    """
    if not spec.repo_slug or not spec.workflow_path:
        return ""
    source = f"{spec.repo_slug}/{spec.workflow_path.removeprefix('./')}"
    ref = commit_sha or spec.version
    if ref:
        source += f"@{ref}"
    return source
