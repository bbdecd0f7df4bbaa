"""Git process adapter: runs git against a bare repository through GitPython."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from git import Git, Repo
from git.exc import GitCommandNotFound, InvalidGitRepositoryError, NoSuchPathError

from pygit_mirror.errors import GitProcessError, ResolutionTimeout
from pygit_mirror.urls import redact

# GitPython replaces stderr with this marker when kill_after_timeout fires.
_TIMEOUT_MARKER = 'Timeout:'


@dataclass(frozen=True)
class GitResult:
    """Captured outcome of one git invocation"""
    status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.status == 0

    @property
    def combined(self) -> str:
        """stdout and stderr joined, for diagnostics."""
        return '\n'.join(part for part in (self.stdout, self.stderr) if part)


class GitProcess:
    """Runs git subcommands with a bare repository as working directory.

    No retries happen here; callers own retry policy.
    """

    def __init__(self, repo_path: Path, timeout: float | None = 30.0):
        """Bind to a repository directory with a default per-call time bound."""
        self._path = Path(repo_path)
        self._git = Git(str(self._path))
        self._timeout = timeout
        self._logger = logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        """Directory git runs in."""
        return self._path

    def execute(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        secrets: tuple[str, ...] = (),
    ) -> GitResult:
        """Run ``git <args>`` and capture its output without raising on exit status.

        Raises ResolutionTimeout when the process had to be killed.
        """
        if not self._path.is_dir():
            raise GitProcessError(list(args), 128, f"not a directory: {self._path}")
        command = ['git', *args]
        limit = self._timeout if timeout is None else timeout
        merged_env = {'GIT_TERMINAL_PROMPT': '0'}
        merged_env.update(env or {})
        try:
            status, stdout, stderr = self._git.execute(
                command,
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=limit,
                env=merged_env,
            )
        except GitCommandNotFound as e:
            raise GitProcessError(list(args), 127, str(e)) from e

        result = GitResult(status, redact(stdout or '', *secrets), redact(stderr or '', *secrets))
        if not result.ok and result.stderr.startswith(_TIMEOUT_MARKER):
            self._logger.warning("git %s timed out in %s after %ss", args[0], self._path, limit)
            raise ResolutionTimeout(list(args), limit or 0, result.stderr)
        self._logger.debug("git %s in %s -> %d", args[0], self._path, status)
        return result

    def run(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        secrets: tuple[str, ...] = (),
    ) -> str:
        """Run ``git <args>`` and return stdout; non-zero exit raises GitProcessError."""
        result = self.execute(*args, env=env, timeout=timeout, secrets=secrets)
        if not result.ok:
            raise GitProcessError(list(args), result.status, result.combined)
        return result.stdout


def init_bare(repo_path: Path, initial_branch: str | None = None) -> Path:
    """Create a bare repository at repo_path if none exists yet."""
    repo_path = Path(repo_path)
    if is_git_repository(repo_path):
        return repo_path
    repo_path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(repo_path, bare=True)
    try:
        if initial_branch:
            repo.git.symbolic_ref('HEAD', f'refs/heads/{initial_branch}')
    finally:
        repo.close()
    logging.getLogger(__name__).info("Initialized bare Git repository at %s", repo_path)
    return repo_path


def is_git_repository(repo_path: Path) -> bool:
    """Return True if repo_path opens as a git repository."""
    try:
        Repo(repo_path).close()
        return True
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
