"""Shared fixtures: real bare repositories standing in for the mirror and GitHub."""

import subprocess
from pathlib import Path

import pytest

from pygit_mirror import (
    CredentialResolver,
    JsonRepositoryRegistry,
    JsonUserStore,
    MemorySecretStore,
    MirrorConfig,
    RepositoryRef,
    SyncEngine,
)
from pygit_mirror.errors import GitProcessError
from pygit_mirror.process import GitResult, init_bare


def run_git(cwd: Path, *args: str) -> str:
    """Run a git command and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def make_clone(tmp_path: Path, source: Path, name: str) -> Path:
    """Clone source into tmp_path/name with a committer identity configured."""
    run_git(tmp_path, "clone", str(source), name)
    clone = tmp_path / name
    run_git(clone, "config", "user.email", "test@test.com")
    run_git(clone, "config", "user.name", "Test")
    return clone


def commit_and_push(clone: Path, filename: str, content: str, branch: str = "main") -> str:
    """Commit one file in clone and push it to origin. Returns the commit hash."""
    (clone / filename).write_text(content)
    run_git(clone, "add", filename)
    run_git(clone, "commit", "-m", f"update {filename}")
    run_git(clone, "push", "origin", f"HEAD:refs/heads/{branch}")
    return run_git(clone, "rev-parse", "HEAD")


class Mirror:
    """A data dir with one registered repository and a local "GitHub" remote."""

    git = staticmethod(run_git)

    def __init__(self, tmp_path: Path):
        self.tmp_path = tmp_path
        self.config = MirrorConfig(
            data_dir=tmp_path / "data",
            default_branch="main",
            allowed_remote_hosts=[],
            git_timeout=20,
            status_timeout=10,
        )
        self.registry = JsonRepositoryRegistry(self.config.registry_path)
        self.users = JsonUserStore(self.config.users_path)
        self.secrets = MemorySecretStore()
        self.credentials = CredentialResolver(self.secrets)
        self.engine = SyncEngine(self.config, self.registry, self.credentials)

        self.github = tmp_path / "github" / "r1.git"
        self.github.mkdir(parents=True)
        run_git(self.github, "init", "--bare", "-b", "main")

        self.repo_path = init_bare(self.config.repo_path("r1"), "main")
        self.registry.add(RepositoryRef(id="r1"))
        self._clones = 0

    @property
    def repo(self) -> RepositoryRef:
        return self.registry.get("r1")

    def clone_of(self, source: Path) -> Path:
        self._clones += 1
        return make_clone(self.tmp_path, source, f"work{self._clones}")

    def local_commit(self, filename: str = "a.txt", content: str = "a") -> str:
        """Put a new commit on main of the mirror itself."""
        return commit_and_push(self.clone_of(self.repo_path), filename, content)

    def github_commit(self, filename: str = "g.txt", content: str = "g") -> str:
        """Put a new commit on main of the GitHub stand-in."""
        return commit_and_push(self.clone_of(self.github), filename, content)

    def head(self, repo: Path, ref: str = "refs/heads/main") -> str:
        return run_git(repo, "rev-parse", ref)

    def connect(self, direction=None) -> RepositoryRef:
        repo = self.repo.with_updates(sync_direction=direction)
        return self.engine.configure_remote(repo, str(self.github))


@pytest.fixture
def mirror(tmp_path: Path) -> Mirror:
    return Mirror(tmp_path)


class FakeGit:
    """Scripted stand-in for GitProcess that records every invocation.

    responses maps an argument prefix to a GitResult or an exception; the
    longest matching prefix wins and anything unmatched succeeds silently.
    """

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []
        self.path = Path("/fake/repo")

    def factory(self, path, timeout):
        return self

    def execute(self, *args, env=None, timeout=None, secrets=()):
        self.calls.append((args, env or {}))
        for prefix in sorted(self.responses, key=len, reverse=True):
            if args[:len(prefix)] == prefix:
                response = self.responses[prefix]
                if isinstance(response, Exception):
                    raise response
                return response
        return GitResult(0, "", "")

    def run(self, *args, env=None, timeout=None, secrets=()):
        result = self.execute(*args, env=env, timeout=timeout, secrets=secrets)
        if not result.ok:
            raise GitProcessError(list(args), result.status, result.combined)
        return result.stdout

    def invocations(self, command):
        return [args for args, _ in self.calls if args[0] == command]


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()
