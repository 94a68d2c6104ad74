"""Tests for include dependency collection and materialization.

Tests cover:
- Directive parsing (required, optional, sections)
- Cycle-safe traversal of local and remote include graphs
- Optional vs required failures
- Copy semantics (skip identical, overwrite only with force, tracking)
"""

from pathlib import Path

import pytest

from trialkit.dependencies import (
    DependencyCollector,
    IncludeDependency,
    RemoteIncludeMaterializer,
    copy_include_dependencies,
    parse_include_directives,
    remote_include_target,
)
from trialkit.errors import DependencyError
from trialkit.fetcher import SourceFetcher
from trialkit.spec import parse_workflow_spec
from trialkit.tracker import ChangeTracker


class TestParseIncludeDirectives:
    """Tests for parse_include_directives()."""

    def test_required_and_optional(self):
        content = "intro\n@include shared/a.md\n@include? local.md\nnot @include x.md\n"
        directives = parse_include_directives(content)

        assert [(d.path, d.is_optional) for d in directives] == [
            ("shared/a.md", False),
            ("local.md", True),
        ]

    def test_section_stripped_from_file_path(self):
        (directive,) = parse_include_directives("@include prompts.md#Triage\n")

        assert directive.path == "prompts.md#Triage"
        assert directive.file_path == "prompts.md"


class TestDependencyCollector:
    """Tests for DependencyCollector.collect()."""

    def test_cycle_terminates_with_each_file_once(self, workdir, write):
        """A includes B, B includes A: both appear exactly once."""
        write("a.md", "---\non: push\n---\n@include b.md\n")
        write("b.md", "@include a.md\n")
        root = "@include a.md\n"

        deps = DependencyCollector().collect(root, workdir)

        sources = [Path(d.source_path).name for d in deps]
        assert sorted(sources) == ["a.md", "b.md"]
        assert len(sources) == len(set(sources))

    def test_self_include_terminates(self, workdir, write):
        write("loop.md", "@include loop.md\n")

        deps = DependencyCollector().collect("@include loop.md\n", workdir)

        assert len(deps) == 1

    def test_nested_paths_relative_to_including_file(self, workdir, write):
        write("shared/a.md", "@include b.md\n")
        write("shared/b.md", "leaf\n")

        deps = DependencyCollector().collect("@include shared/a.md\n", workdir)

        assert [Path(d.source_path).relative_to(workdir).as_posix() for d in deps] == ["shared/a.md", "shared/b.md"]

    def test_missing_optional_is_skipped(self, workdir):
        deps = DependencyCollector().collect("@include? nothing-here.md\n", workdir)

        assert len(deps) == 1
        assert deps[0].is_optional

    def test_missing_required_raises_with_partial_result(self, workdir, write):
        """Sibling branches already found are kept on the error."""
        write("ok.md", "fine\n")

        with pytest.raises(DependencyError) as exc_info:
            DependencyCollector().collect("@include ok.md\n@include gone.md\n", workdir)

        assert "gone.md" in str(exc_info.value)
        assert [Path(d.source_path).name for d in exc_info.value.collected] == ["ok.md", "gone.md"]

    def test_missing_nested_required_only_warns(self, workdir, write):
        write("a.md", "@include deeper-missing.md\n")

        deps = DependencyCollector().collect("@include a.md\n", workdir)

        assert [Path(d.source_path).name for d in deps] == ["a.md", "deeper-missing.md"]

    def test_undecodable_include_is_collected(self, workdir):
        """Includes are not required to be UTF-8 text."""
        (workdir / "blob.md").write_bytes(b"\xff\xfe\x00bad")

        (dep,) = DependencyCollector().collect("@include blob.md\n", workdir)

        assert Path(dep.source_path) == workdir / "blob.md"
        assert not dep.is_optional

    def test_shared_seen_set(self, workdir, write):
        """A caller-supplied seen set suppresses already handled files."""
        write("a.md", "x\n")
        seen = set()
        collector = DependencyCollector()

        first = collector.collect("@include a.md\n", workdir, seen)
        second = collector.collect("@include a.md\n", workdir, seen)

        assert len(first) == 1
        assert second == []


class TestCopyIncludeDependencies:
    """Tests for copy_include_dependencies()."""

    def test_copies_and_tracks(self, tmp_path, workdir, write):
        src = write("shared/a.md", "A\n")
        target = tmp_path / "out"
        tracker = ChangeTracker()

        written = copy_include_dependencies(
            [IncludeDependency(str(src), "shared/a.md")], target, tracker=tracker
        )

        assert written == [target / "shared/a.md"]
        assert (target / "shared/a.md").read_text() == "A\n"
        assert tracker.created_files == [target / "shared/a.md"]

    def test_identical_file_skipped(self, tmp_path, write):
        src = write("a.md", "same\n")
        target = tmp_path / "out"
        (target).mkdir()
        (target / "a.md").write_text("same\n")

        assert copy_include_dependencies([IncludeDependency(str(src), "a.md")], target) == []

    def test_different_file_needs_force(self, tmp_path, write):
        src = write("a.md", "new\n")
        target = tmp_path / "out"
        target.mkdir()
        (target / "a.md").write_text("old\n")
        deps = [IncludeDependency(str(src), "a.md")]

        assert copy_include_dependencies(deps, target) == []
        assert (target / "a.md").read_text() == "old\n"

        tracker = ChangeTracker()
        copy_include_dependencies(deps, target, tracker=tracker, force=True)
        assert (target / "a.md").read_text() == "new\n"
        assert tracker.modified_files == [target / "a.md"]

    def test_missing_source_skipped(self, tmp_path):
        deps = [IncludeDependency(str(tmp_path / "nope.md"), "nope.md", is_optional=True)]

        assert copy_include_dependencies(deps, tmp_path / "out") == []


class TestRemoteIncludeMaterializer:
    """Tests for RemoteIncludeMaterializer.materialize()."""

    @pytest.fixture
    def spec(self):
        return parse_workflow_spec("octo/repo/wf@v1")

    def test_writes_shared_and_relative_includes(self, hosting, spec, tmp_path):
        hosting.files[("octo/repo", ".github/shared/tools.md", "v1")] = b"tools\n"
        hosting.files[("octo/repo", "workflows/part.md", "v1")] = b"part\n"
        workflows_dir = tmp_path / ".github" / "workflows"
        materializer = RemoteIncludeMaterializer(SourceFetcher(hosting=hosting))

        written = materializer.materialize("@include shared/tools.md\n@include part.md\n", spec, workflows_dir)

        assert (tmp_path / ".github/shared/tools.md").read_bytes() == b"tools\n"
        assert (workflows_dir / "part.md").read_bytes() == b"part\n"
        assert len(written) == 2

    def test_cycle_fetches_each_include_once(self, hosting, spec, tmp_path):
        hosting.files[("octo/repo", ".github/shared/a.md", "v1")] = b"@include shared/b.md\n"
        hosting.files[("octo/repo", ".github/shared/b.md", "v1")] = b"@include shared/a.md\n"
        materializer = RemoteIncludeMaterializer(SourceFetcher(hosting=hosting))

        materializer.materialize("@include shared/a.md\n", spec, tmp_path / ".github" / "workflows")

        fetched = [c[2] for c in hosting.calls if c[0] == "download_file"]
        assert fetched == [".github/shared/a.md", ".github/shared/b.md"]

    def test_optional_missing_is_fine(self, hosting, spec, tmp_path):
        materializer = RemoteIncludeMaterializer(SourceFetcher(hosting=hosting))

        assert materializer.materialize("@include? shared/none.md\n", spec, tmp_path / "wf") == []

    def test_required_missing_at_top_level_raises(self, hosting, spec, tmp_path):
        materializer = RemoteIncludeMaterializer(SourceFetcher(hosting=hosting))

        with pytest.raises(DependencyError, match="shared/none.md"):
            materializer.materialize("@include shared/none.md\n", spec, tmp_path / "wf")

    def test_required_missing_nested_only_warns(self, hosting, spec, tmp_path):
        hosting.files[("octo/repo", ".github/shared/a.md", "v1")] = b"@include shared/none.md\n"
        materializer = RemoteIncludeMaterializer(SourceFetcher(hosting=hosting))

        written = materializer.materialize("@include shared/a.md\n", spec, tmp_path / ".github" / "workflows")

        assert written == [tmp_path / ".github/shared/a.md"]


class TestRemoteIncludeTarget:
    def test_targets(self, tmp_path):
        wf = tmp_path / ".github" / "workflows"

        assert remote_include_target("shared/x.md", wf) == tmp_path / ".github/shared/x.md"
        assert remote_include_target("o/r/lib/y.md@v1", wf) == tmp_path / ".github/shared/y.md"
        assert remote_include_target("z.md", wf) == wf / "z.md"
