"""Tests for the gh-backed hosting service.

Failures are classified once at the boundary; these tests pin the
mapping from gh exit codes and stderr to typed errors.
"""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from trialkit.errors import (
    ConflictError,
    HostingError,
    HostingTimeoutError,
    NoArtifactsError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    UnknownHostingError,
)
from trialkit.hosting import GhCliHostingService, RunStatus, classify_gh_failure


class TestClassifyGhFailure:
    """Tests for classify_gh_failure()."""

    @pytest.mark.parametrize("returncode, stderr, expected", [
        (4, "", UnauthorizedError),
        (1, "To get started with GitHub CLI, please run:  gh auth login", UnauthorizedError),
        (1, "HTTP 403: Resource not accessible by integration", UnauthorizedError),
        (1, "HTTP 404: Not Found (https://api.github.com/repos/o/r)", NotFoundError),
        (1, "GraphQL: Could not resolve to a Repository with the name 'o/r'.", NotFoundError),
        (1, "no valid artifacts found to download", NoArtifactsError),
        (1, "GraphQL: Name already exists on this account (createRepository)", ConflictError),
        (1, "HTTP 502: Bad Gateway", UnknownHostingError),
    ])
    def test_mapping(self, returncode, stderr, expected):
        error = classify_gh_failure(["api", "repos/o/r"], returncode, stderr)

        assert type(error) is expected
        assert error.detail == stderr.strip()

    def test_no_artifacts_is_a_not_found(self):
        assert isinstance(classify_gh_failure(["run", "download"], 1, "no artifacts"), NotFoundError)


def completed(returncode=0, stdout=b"", stderr=b""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestGhCliHostingService:
    """Tests for GhCliHostingService against a mocked gh."""

    def test_repo_exists(self):
        with patch("trialkit.hosting.subprocess.run") as mock_run:
            mock_run.side_effect = [completed(stdout=b'{"name": "r"}'), completed(1, stderr=b"HTTP 404: Not Found")]
            gh = GhCliHostingService()

            assert gh.repo_exists("o/r") is True
            assert gh.repo_exists("o/missing") is False
        assert mock_run.call_args_list[0].args[0][:3] == ["gh", "repo", "view"]

    def test_download_file_returns_raw_bytes(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed(stdout=b"---\non: push\n---\n")) as mock_run:
            content = GhCliHostingService().download_file("o/r", "workflows/a.md", "v1")

        assert content == b"---\non: push\n---\n"
        assert "repos/o/r/contents/workflows/a.md?ref=v1" in mock_run.call_args.args[0]

    def test_download_file_not_found(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed(1, stderr=b"HTTP 404: Not Found")):
            with pytest.raises(NotFoundError):
                GhCliHostingService().download_file("o/r", "a.md", "main")

    def test_latest_run(self):
        payload = [{"databaseId": 99, "status": "queued", "conclusion": "", "url": "u"}]
        with patch("trialkit.hosting.subprocess.run", return_value=completed(stdout=json.dumps(payload).encode())):
            status = GhCliHostingService().latest_run("o/r", "wf.lock.yml")

        assert status == RunStatus("99", "queued", "", "u")

    def test_latest_run_none(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed(stdout=b"[]")):
            with pytest.raises(NotFoundError):
                GhCliHostingService().latest_run("o/r", "wf.lock.yml")

    def test_dispatch_with_inputs(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed()) as mock_run:
            GhCliHostingService().dispatch_workflow("o/r", "wf.lock.yml", {"issue_number": "42"})

        assert mock_run.call_args.args[0] == [
            "gh", "workflow", "run", "wf.lock.yml", "--repo", "o/r", "--field", "issue_number=42",
        ]

    def test_set_secret_uses_stdin(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed()) as mock_run:
            GhCliHostingService().set_secret("o/r", "OPENAI_API_KEY", "sk-test")

        assert mock_run.call_args.kwargs["input"] == b"sk-test"
        assert "sk-test" not in mock_run.call_args.args[0]

    def test_disable_workflows_except(self):
        listing = [
            {"name": "CI", "path": ".github/workflows/ci.yml", "state": "active"},
            {"name": "Trial", "path": ".github/workflows/wf.lock.yml", "state": "active"},
            {"name": "Old", "path": ".github/workflows/old.yml", "state": "disabled_manually"},
        ]
        with patch("trialkit.hosting.subprocess.run") as mock_run:
            mock_run.side_effect = [completed(stdout=json.dumps(listing).encode()), completed()]
            disabled = GhCliHostingService().disable_workflows_except("o/r", ["wf.lock.yml"])

        assert disabled == ["ci.yml"]
        assert mock_run.call_args.args[0][:4] == ["gh", "workflow", "disable", "ci.yml"]

    def test_timeout_is_transient_hosting_error(self):
        with patch("trialkit.hosting.subprocess.run", side_effect=subprocess.TimeoutExpired(["gh"], 300)):
            with pytest.raises(HostingTimeoutError) as exc_info:
                GhCliHostingService().current_user()

        assert isinstance(exc_info.value, HostingError)
        assert isinstance(exc_info.value, TransientError)

    def test_malformed_json(self):
        with patch("trialkit.hosting.subprocess.run", return_value=completed(stdout=b"<html>502 Bad Gateway</html>")):
            with pytest.raises(UnknownHostingError, match="malformed JSON") as exc_info:
                GhCliHostingService().list_secrets("o/r")

        assert exc_info.value.detail == "<html>502 Bad Gateway</html>"

    def test_missing_binary(self):
        with patch("trialkit.hosting.subprocess.run", side_effect=FileNotFoundError("gh")):
            with pytest.raises(UnknownHostingError, match="not found on PATH"):
                GhCliHostingService().current_user()
