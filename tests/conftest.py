import pytest
from pathlib import Path

from trialkit.config import TrialkitConfig
from trialkit.errors import CompileError, ConflictError, NoArtifactsError, NotFoundError
from trialkit.git import GitClient
from trialkit.hosting import HostingService, RunStatus
from trialkit.services import CompiledWorkflow, Compiler, lock_file_for


class FakeHostingService(HostingService):
    """In-memory hosting platform. Records every mutating call."""

    def __init__(self, user="octocat"):
        self.user = user
        self.repos = set()
        self.files = {}            # (slug, path, ref) -> bytes
        self.refs = {}             # (slug, ref) -> sha
        self.default_branches = {}
        self.secrets = {}          # slug -> {name: value}
        self.runs = {}             # run_id -> RunStatus
        self.latest = {}           # (slug, workflow_file) -> run_id
        self.artifacts = {}        # relative path -> bytes
        self.run_conclusion = "success"
        self.run_state = "completed"
        self.dispatch_error = None
        self.calls = []

    def current_user(self):
        return self.user

    def repo_exists(self, slug):
        return slug in self.repos

    def create_repo(self, slug, description, private=True):
        self.calls.append(("create_repo", slug))
        if slug in self.repos:
            raise ConflictError(f"{slug} already exists")
        self.repos.add(slug)

    def delete_repo(self, slug):
        self.calls.append(("delete_repo", slug))
        self.repos.discard(slug)

    def enable_discussions(self, slug):
        self.calls.append(("enable_discussions", slug))

    def get_default_branch(self, slug):
        if slug not in self.default_branches:
            raise NotFoundError(f"{slug} not found")
        return self.default_branches[slug]

    def resolve_ref(self, slug, ref):
        if (slug, ref) not in self.refs:
            raise NotFoundError(f"ref {ref} not found")
        return self.refs[(slug, ref)]

    def download_file(self, slug, path, ref):
        self.calls.append(("download_file", slug, path, ref))
        if (slug, path, ref) not in self.files:
            raise NotFoundError(f"{slug}/{path}@{ref} not found")
        return self.files[(slug, path, ref)]

    def list_secrets(self, slug):
        return sorted(self.secrets.get(slug, {}))

    def set_secret(self, slug, name, value):
        self.calls.append(("set_secret", slug, name))
        self.secrets.setdefault(slug, {})[name] = value

    def dispatch_workflow(self, slug, workflow_file, inputs=None):
        self.calls.append(("dispatch_workflow", slug, workflow_file, inputs))
        if self.dispatch_error is not None:
            raise self.dispatch_error(len([c for c in self.calls if c[0] == "dispatch_workflow"]))
        run_id = str(len(self.runs) + 1)
        self.runs[run_id] = RunStatus(run_id, self.run_state, self.run_conclusion)
        self.latest[(slug, workflow_file)] = run_id

    def latest_run(self, slug, workflow_file):
        if (slug, workflow_file) not in self.latest:
            raise NotFoundError(f"no runs for {workflow_file}")
        return self.runs[self.latest[(slug, workflow_file)]]

    def run_status(self, slug, run_id):
        return self.runs[run_id]

    def download_artifacts(self, slug, run_id, dest):
        self.calls.append(("download_artifacts", slug, run_id))
        if not self.artifacts:
            raise NoArtifactsError("no artifacts")
        for rel, data in self.artifacts.items():
            path = Path(dest) / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

    def disable_workflows_except(self, slug, keep):
        self.calls.append(("disable_workflows_except", slug, tuple(keep)))
        return []

    def merge_open_pull_requests(self, slug):
        self.calls.append(("merge_open_pull_requests", slug))
        return []


class FakeGit(GitClient):
    """GitClient that never runs git; clone just creates the directory."""

    def __init__(self, current_repo=""):
        super().__init__()
        self.current_repo = current_repo
        self.changes = True
        self.calls = []

    def clone(self, slug, dest):
        self.calls.append(("clone", slug))
        Path(dest).mkdir(parents=True, exist_ok=True)

    def checkout(self, repo_dir, ref):
        self.calls.append(("checkout", ref))

    def add_remote(self, repo_dir, name, slug):
        self.calls.append(("add_remote", name, slug))

    def force_push(self, repo_dir, remote, refspec):
        self.calls.append(("force_push", remote, refspec))

    def add(self, repo_dir, paths):
        self.calls.append(("add", tuple(paths)))

    def has_changes(self, repo_dir):
        return self.changes

    def commit(self, repo_dir, message):
        self.calls.append(("commit", message))

    def pull(self, repo_dir, remote="origin", branch="main"):
        self.calls.append(("pull", remote, branch))

    def push(self, repo_dir, remote="origin", branch="main"):
        self.calls.append(("push", remote, branch))

    def remote_slug(self, repo_dir=None, remote="origin"):
        return self.current_repo


class FakeCompiler(Compiler):
    """Writes an empty lock file per workflow and remembers what it saw."""

    def __init__(self, error=None):
        self.error = error
        self.compiled = []   # (path, text, options)

    def compile(self, files, options):
        if self.error is not None:
            raise self.error
        results = []
        for f in files:
            self.compiled.append((f, Path(f).read_text(), options))
            lock = lock_file_for(Path(f))
            lock.write_text("name: compiled\n")
            results.append(CompiledWorkflow(source=Path(f), lock_file=lock))
        return results


@pytest.fixture(autouse=True)
def trialkit_home(monkeypatch, tmp_path):
    # Never read the operator's real config
    home = tmp_path / "trialkit_home"
    monkeypatch.setenv("TRIALKIT_HOME", str(home))
    return home


@pytest.fixture
def test_config():
    return TrialkitConfig()


@pytest.fixture
def hosting():
    return FakeHostingService()


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def compiler():
    return FakeCompiler()


@pytest.fixture
def workdir(tmp_path):
    """Directory acting as the operator's repository checkout."""
    d = tmp_path / "repo"
    d.mkdir()
    return d


@pytest.fixture
def write(workdir):
    """Write a file under workdir and return its path."""
    def _write(rel, text):
        path = workdir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def failing_compiler():
    return FakeCompiler(error=CompileError("failed to compile: invalid frontmatter"))
