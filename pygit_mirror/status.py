"""SyncStatusResolver: read-only divergence between a branch and its GitHub tracking ref."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from pygit_mirror.errors import GitProcessError
from pygit_mirror.models import MirrorConfig, RepositoryRef, SyncState, SyncStatus
from pygit_mirror.process import GitProcess

GitFactory = Callable[[Path, float], GitProcess]


def resolve_branch(git: GitProcess, default: str) -> str:
    """Branch HEAD points at, or default when HEAD cannot be resolved."""
    try:
        branch = git.run('symbolic-ref', '--short', 'HEAD').strip()
    except GitProcessError:
        return default
    return branch or default


def derive_state(ahead: int, behind: int) -> SyncState:
    if ahead and behind:
        return SyncState.DIVERGED
    if ahead:
        return SyncState.AHEAD
    if behind:
        return SyncState.BEHIND
    return SyncState.SYNCED


class SyncStatusResolver:
    """Computes ahead/behind counts without fetching or touching refs.

    Every git call is bounded by ``status_timeout``; a timeout or any other
    git failure yields an ``error`` status instead of raising.
    """

    def __init__(self, config: MirrorConfig, git_factory: GitFactory | None = None):
        self.config = config
        self._git_factory = git_factory or GitProcess
        self._logger = logging.getLogger(__name__)

    def get_sync_status(self, repo: RepositoryRef) -> SyncStatus:
        """Return the current divergence of repo's HEAD branch."""
        git = self._git_factory(self.config.repo_path(repo.id), self.config.status_timeout)
        branch = resolve_branch(git, self.config.default_branch)
        if not repo.remote_configured:
            return SyncStatus(branch=branch)

        tracking = f"refs/remotes/{self.config.remote_name}/{branch}"
        local = f"refs/heads/{branch}"
        try:
            if not self._ref_exists(git, tracking):
                return SyncStatus(branch=branch)
            if self._ref_exists(git, local):
                counts = git.run('rev-list', '--left-right', '--count', f"{tracking}...{local}")
                behind, ahead = (int(n) for n in counts.split())
            else:
                behind, ahead = int(git.run('rev-list', '--count', tracking).strip()), 0
        except (GitProcessError, ValueError) as e:
            self._logger.warning("Sync status failed for %s: %s", repo.id, e)
            return SyncStatus(state=SyncState.ERROR, branch=branch, error=str(e))

        return SyncStatus(ahead=ahead, behind=behind, state=derive_state(ahead, behind), branch=branch)

    @staticmethod
    def _ref_exists(git: GitProcess, ref: str) -> bool:
        return git.execute('rev-parse', '--verify', '--quiet', f"{ref}^{{commit}}").ok
