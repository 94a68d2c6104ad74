"""Tests for the command-backed compiler and security scanner."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from trialkit.errors import CompileError, TrialkitError
from trialkit.services import (
    CommandCompiler,
    CommandSecurityScanner,
    CompileOptions,
    SecurityFinding,
    lock_file_for,
)


def proc(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def workflow_file(tmp_path):
    wf_dir = tmp_path / ".github" / "workflows"
    wf_dir.mkdir(parents=True)
    path = wf_dir / "triage.md"
    path.write_text("---\non: push\n---\n")
    return path


def test_lock_file_for():
    assert lock_file_for(Path("a/b/triage.md")) == Path("a/b/triage.lock.yml")


class TestCommandCompiler:
    """Tests for CommandCompiler."""

    def test_trial_arguments_and_cwd(self, workflow_file, tmp_path):
        def fake_run(args, **kwargs):
            lock_file_for(workflow_file).write_text("jobs: {}\n")
            return proc(stderr="warning: engine defaulted\n")

        with patch("trialkit.services.subprocess.run", side_effect=fake_run) as mock_run:
            (compiled,) = CommandCompiler(["gh", "aw", "compile"]).compile(
                [workflow_file],
                CompileOptions(trial_mode=True, logical_repo="octo/app", engine_override="claude"),
            )

        assert mock_run.call_args.args[0] == [
            "gh", "aw", "compile", "triage", "--trial", "--logical-repo", "octo/app", "--engine", "claude",
        ]
        assert mock_run.call_args.kwargs["cwd"] == str(tmp_path)
        assert compiled.lock_file == lock_file_for(workflow_file)
        assert compiled.warnings == ["warning: engine defaulted"]

    def test_failure(self, workflow_file):
        with patch("trialkit.services.subprocess.run", return_value=proc(1, stderr="unknown engine")):
            with pytest.raises(CompileError, match="unknown engine"):
                CommandCompiler(["gh", "aw", "compile"]).compile([workflow_file], CompileOptions())

    def test_missing_lock_file(self, workflow_file):
        with patch("trialkit.services.subprocess.run", return_value=proc()):
            with pytest.raises(CompileError, match="no lock file"):
                CommandCompiler(["gh", "aw", "compile"]).compile([workflow_file], CompileOptions())

    def test_missing_compiler(self, workflow_file):
        with patch("trialkit.services.subprocess.run", side_effect=FileNotFoundError("gh")):
            with pytest.raises(CompileError, match="compiler 'gh' not found"):
                CommandCompiler(["gh", "aw", "compile"]).compile([workflow_file], CompileOptions())


class TestCommandSecurityScanner:
    """Tests for CommandSecurityScanner."""

    def test_parses_findings(self):
        output = "12: hidden unicode\n\nprompt injection attempt\n"
        with patch("trialkit.services.subprocess.run", return_value=proc(1, stdout=output)) as mock_run:
            findings = CommandSecurityScanner(["scan"]).scan("content")

        assert findings == [
            SecurityFinding("hidden unicode", line=12),
            SecurityFinding("prompt injection attempt"),
        ]
        assert str(findings[0]) == "line 12: hidden unicode"
        assert mock_run.call_args.kwargs["input"] == "content"

    def test_clean(self):
        with patch("trialkit.services.subprocess.run", return_value=proc(0)):
            assert CommandSecurityScanner(["scan"]).scan("content") == []

    def test_missing_scanner(self):
        with patch("trialkit.services.subprocess.run", side_effect=FileNotFoundError("scan")):
            with pytest.raises(TrialkitError, match="security scanner 'scan' could not be run"):
                CommandSecurityScanner(["scan"]).scan("content")

    def test_scanner_crash(self):
        with patch("trialkit.services.subprocess.run", return_value=proc(2, stderr="segfault")):
            with pytest.raises(TrialkitError, match="security scanner failed"):
                CommandSecurityScanner(["scan"]).scan("content")
