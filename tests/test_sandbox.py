"""Tests for the host repository lifecycle."""

import pytest

from trialkit.errors import SandboxError, UnknownHostingError
from trialkit.sandbox import SandboxManager, SandboxState


@pytest.fixture
def prompts():
    return []


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sandbox(hosting, fake_git, prompts, sleeps):
    return SandboxManager(
        hosting,
        fake_git,
        confirm_permissions=prompts.append,
        sleep=sleeps.append,
    )


def mutating_calls(hosting):
    return [c for c in hosting.calls if c[0] in ("create_repo", "delete_repo")]


class TestEnsure:
    """Tests for SandboxManager.ensure()."""

    def test_creates_missing_repo(self, sandbox, hosting, prompts, sleeps):
        state = sandbox.ensure("octocat/host")

        assert state == SandboxState.CREATED
        assert "octocat/host" in hosting.repos
        assert ("enable_discussions", "octocat/host") in hosting.calls
        assert len(prompts) == 1
        assert sleeps == [2]

    def test_reuse_is_idempotent(self, sandbox, hosting):
        """Running ensure twice on an existing repo mutates nothing."""
        hosting.repos.add("octocat/host")

        first = sandbox.ensure("octocat/host")
        second = sandbox.ensure("octocat/host")

        assert first == second == SandboxState.REUSED
        assert mutating_calls(hosting) == []

    def test_clone_mode_reuses(self, sandbox, hosting):
        hosting.repos.add("octocat/host")

        assert sandbox.ensure("octocat/host", clone_mode=True) == SandboxState.REUSED
        assert mutating_calls(hosting) == []

    def test_force_delete_recreates(self, sandbox, hosting):
        hosting.repos.add("octocat/host")

        state = sandbox.ensure("octocat/host", force_delete=True)

        assert state == SandboxState.RECREATED
        assert mutating_calls(hosting) == [("delete_repo", "octocat/host"), ("create_repo", "octocat/host")]

    def test_dry_run_mutates_nothing(self, sandbox, hosting, prompts):
        hosting.repos.add("octocat/host")

        state = sandbox.ensure("octocat/host", force_delete=True, dry_run=True)

        assert state == SandboxState.RECREATED
        assert mutating_calls(hosting) == []
        assert prompts == []

    def test_create_conflict_means_reuse(self, sandbox, hosting, monkeypatch):
        """A repo that appears between the check and the create is reused."""
        monkeypatch.setattr(hosting, "repo_exists", lambda slug: False)
        hosting.repos.add("octocat/host")

        assert sandbox.ensure("octocat/host") == SandboxState.REUSED

    def test_create_failure(self, sandbox, hosting, monkeypatch):
        def fail(slug, description, private=True):
            raise UnknownHostingError("boom")
        monkeypatch.setattr(hosting, "create_repo", fail)

        with pytest.raises(SandboxError, match="failed to create host repository"):
            sandbox.ensure("octocat/host")

    @pytest.mark.parametrize("slug", ["host", "a/b/c", "/host"])
    def test_invalid_slug(self, sandbox, slug):
        with pytest.raises(SandboxError, match="owner/repo"):
            sandbox.ensure(slug)


class TestCleanupAndClone:
    """Tests for cleanup(), seed_from() and clone()."""

    def test_cleanup_preserves_by_default(self, sandbox, hosting):
        hosting.repos.add("octocat/host")

        sandbox.cleanup("octocat/host")

        assert "octocat/host" in hosting.repos

    def test_cleanup_deletes_when_asked(self, sandbox, hosting):
        hosting.repos.add("octocat/host")

        sandbox.cleanup("octocat/host", delete=True)

        assert "octocat/host" not in hosting.repos

    def test_seed_from_force_pushes(self, sandbox, fake_git):
        sandbox.seed_from("octo/source", "v1", "octocat/host")

        assert fake_git.calls == [
            ("clone", "octo/source"),
            ("checkout", "v1"),
            ("add_remote", "host", "octocat/host"),
            ("force_push", "host", "HEAD:main"),
        ]

    def test_clone_into_parent(self, sandbox, tmp_path):
        dest = sandbox.clone("octocat/host", tmp_path)

        assert dest.parent == tmp_path
        assert dest.is_dir()
        assert dest.name.startswith("trial-")
