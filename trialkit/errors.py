"""
Error classes for trialkit.

Errors are grouped by where they stop execution:
- SpecError: malformed workflow references, wildcard misuse, self-reference.
  Always fatal, never retried.
- WorkflowNotFoundError: a workflow could not be fetched after fallback search.
  Fatal for the whole resolution batch.
- DependencyError: a required include could not be read.
- HostingError and its variants: raised by the hosting-service boundary.
  The variant is decided where the service is invoked; callers branch on
  the type, never on message text. HostingTimeoutError is also a
  TransientError, so best-effort steps treat it as any hosting failure and
  polling treats it as retryable.
- CompileError, SecurityScanError, PushConflictError, SandboxError:
  orchestration infrastructure failures, fatal for the current cycle.
- RunFailedError / RunTimeoutError: a triggered run did not succeed, or we
  stopped waiting for it. Both carry the run id.

TransientError / PermanentError classify retry behavior for the few calls
wrapped in retry_with_backoff.
"""

from typing import Any, Optional


class TrialkitError(Exception):
    """Base exception for trialkit."""
    pass


class TransientError(TrialkitError):
    """
    Transient error - safe to retry.

    Examples:
    - A dispatched run is not yet listed by the hosting API
    - Network timeout talking to the hosting CLI
    """
    pass


class PermanentError(TrialkitError):
    """Permanent error - do not retry."""
    pass


class SpecError(TrialkitError):
    """Invalid workflow or repository specification."""
    pass


class WorkflowNotFoundError(TrialkitError):
    """Workflow content could not be fetched from its source."""
    pass


class DependencyError(TrialkitError):
    """A required include dependency could not be read."""

    def __init__(self, source_path: str, message: str, collected: Optional[list[Any]] = None):
        self.source_path = source_path
        self.collected = collected or []
        super().__init__(f"include '{source_path}': {message}")


# =============================================================================
# Hosting service errors
# =============================================================================

class HostingError(TrialkitError):
    """Base for failures reported by the hosting service."""

    def __init__(self, message: str, detail: str = ""):
        self.detail = detail
        super().__init__(message)


class UnauthorizedError(HostingError):
    """Hosting CLI is not authenticated or lacks permission."""
    pass


class NotFoundError(HostingError):
    """Repository, file, ref or run does not exist."""
    pass


class NoArtifactsError(NotFoundError):
    """A run finished without producing any downloadable artifacts."""
    pass


class ConflictError(HostingError):
    """Resource already exists or a concurrent update was rejected."""
    pass


class UnknownHostingError(HostingError):
    """Any other hosting failure; the raw detail is preserved."""
    pass


class HostingTimeoutError(HostingError, TransientError):
    """Hosting CLI did not answer in time. Retryable, and still a hosting failure."""
    pass


# =============================================================================
# Orchestration errors
# =============================================================================

class CompileError(TrialkitError):
    """External compiler rejected a workflow."""
    pass


class SecurityScanError(TrialkitError):
    """Security scanner reported findings for a workflow."""

    def __init__(self, workflow: str, findings: list[Any]):
        self.workflow = workflow
        self.findings = findings
        super().__init__(
            f"workflow '{workflow}' failed security scan: {len(findings)} issue(s) detected"
        )


class GitError(TrialkitError):
    """A local version-control command failed."""

    def __init__(self, command: list[str], output: str):
        self.command = command
        self.output = output
        super().__init__(f"git {' '.join(command)} failed: {output.strip()}")


class PushConflictError(GitError):
    """Push was rejected again after a pull-then-push retry."""
    pass


class SandboxError(TrialkitError):
    """Host repository could not be created, reused or deleted."""
    pass


class RunFailedError(TrialkitError):
    """A workflow run completed with a non-success conclusion."""

    def __init__(self, run_id: str, conclusion: str):
        self.run_id = run_id
        self.conclusion = conclusion
        super().__init__(f"workflow run {run_id} finished with conclusion '{conclusion}'")


class RunTimeoutError(TrialkitError):
    """A workflow run did not reach a terminal state in time."""

    def __init__(self, run_id: str, timeout_minutes: int, last_status: Optional[str] = None):
        self.run_id = run_id
        self.timeout_minutes = timeout_minutes
        self.last_status = last_status
        super().__init__(
            f"workflow run {run_id} did not complete within {timeout_minutes} minute(s)"
        )


class CancelledError(TrialkitError):
    """Trial was cancelled before the next cycle started."""
    pass
