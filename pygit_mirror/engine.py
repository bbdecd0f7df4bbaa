"""SyncEngine: keeps a local bare repository and its GitHub remote in step."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from pygit_mirror.credentials import CredentialResolver
from pygit_mirror.errors import (
    GitProcessError,
    MirrorError,
    RemoteConfigurationFailure,
    ResolutionTimeout,
    SyncInProgress,
    TransportFailure,
)
from pygit_mirror.models import Credential, MirrorConfig, RepositoryRef, SyncDirection, SyncOutcome, SyncState
from pygit_mirror.process import GitProcess
from pygit_mirror.protocols import RepositoryRegistry
from pygit_mirror.status import GitFactory, SyncStatusResolver, resolve_branch
from pygit_mirror.urls import credential_env, sanitize_for_log, strip_credentials

# Lower-cased fragments of git output and the explanation shown to the operator.
FAILURE_HINTS = [
    ('authentication failed', "GitHub rejected the credentials; reconnect the account or update the token"),
    ('could not read username', "No usable GitHub credential for this repository"),
    ('permission denied', "The GitHub token lacks access to this repository"),
    ('the requested url returned error: 403', "The GitHub token lacks access to this repository"),
    ('repository not found', "The GitHub repository does not exist or is not visible to this token"),
    ('non-fast-forward', "GitHub has commits the mirror lacks; pull before pushing"),
    ('fetch first', "GitHub has commits the mirror lacks; pull before pushing"),
    ('could not resolve host', "Network error: the GitHub host could not be resolved"),
    ('conflict', "Merge conflict; resolve it manually"),
]

_EMPTY_REF = ''


def explain_failure(output: str) -> str | None:
    """Map well-known git failure output to a short human hint."""
    lowered = output.lower()
    for fragment, hint in FAILURE_HINTS:
        if fragment in lowered:
            return hint
    return None


class KeyedLock:
    """One reentrant lock per repository ID."""

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(key, threading.RLock())

    @contextmanager
    def hold(self, key: str, blocking: bool = True) -> Iterator[None]:
        """Hold the lock for key; non-blocking callers get SyncInProgress."""
        lock = self._lock_for(key)
        if not lock.acquire(blocking=blocking):
            raise SyncInProgress(key)
        try:
            yield
        finally:
            lock.release()


class SyncEngine:
    """Configures the GitHub remote and runs fetch/push for one repository at a time.

    Credentials are handed in per call and only reach git through the
    environment of the subprocess that needs them.
    """

    def __init__(
        self,
        config: MirrorConfig,
        registry: RepositoryRegistry,
        credentials: CredentialResolver | None = None,
        git_factory: GitFactory | None = None,
        locks: KeyedLock | None = None,
    ):
        """Create an engine; git_factory(path, timeout) builds the process adapter."""
        self.config = config
        self.registry = registry
        self.credentials = credentials
        self.locks = locks or KeyedLock()
        self.git_factory = git_factory or GitProcess
        self.status = SyncStatusResolver(config, self.git_factory)
        self._logger = logging.getLogger(__name__)

    @property
    def remote(self) -> str:
        return self.config.remote_name

    def _git(self, repo: RepositoryRef) -> GitProcess:
        return self.git_factory(self.config.repo_path(repo.id), self.config.git_timeout)

    def resolve_branch(self, repo: RepositoryRef) -> str:
        """Branch HEAD points at, falling back to the configured default."""
        return resolve_branch(self._git(repo), self.config.default_branch)

    # -- remote lifecycle ---------------------------------------------------

    def configure_remote(self, repo: RepositoryRef, remote_url: str) -> RepositoryRef:
        """Point the github remote at remote_url, adding it if absent.

        The URL is stored without credentials. Returns the updated ref, which
        is also persisted to the registry.
        """
        with self.locks.hold(repo.id):
            updated = self._configure_remote(repo, remote_url)
            self._persist(updated)
            return updated

    def _configure_remote(self, repo: RepositoryRef, remote_url: str) -> RepositoryRef:
        clean = strip_credentials(remote_url)
        git = self._git(repo)
        try:
            git.run('remote', 'add', self.remote, clean)
        except GitProcessError as add_error:
            try:
                git.run('remote', 'set-url', self.remote, clean)
            except GitProcessError as set_error:
                raise RemoteConfigurationFailure(
                    f"could not configure remote {self.remote} for {repo.id}: "
                    f"{add_error.output}\n\n{set_error.output}".strip()
                ) from set_error
        self._logger.info("Remote %s of %s -> %s", self.remote, repo.id, sanitize_for_log(clean))
        return repo.with_updates(remote_url=clean, remote_configured=True)

    def remove_remote(self, repo: RepositoryRef) -> RepositoryRef:
        """Delete the github remote. A missing remote is not an error."""
        with self.locks.hold(repo.id):
            result = self._git(repo).execute('remote', 'remove', self.remote)
            if not result.ok and 'no such remote' not in result.combined.lower():
                raise RemoteConfigurationFailure(
                    f"could not remove remote {self.remote} from {repo.id}: {result.combined}"
                )
            updated = repo.with_updates(remote_configured=False)
            self._persist(updated)
            return updated

    def list_remote_branches(self, repo: RepositoryRef) -> list[str]:
        """Branch names known under refs/remotes/github/."""
        output = self._git(repo).run(
            'for-each-ref', '--format=%(refname:strip=3)', f"refs/remotes/{self.remote}/"
        )
        return [name for name in output.splitlines() if name and name != 'HEAD']

    def _ensure_remote(self, repo: RepositoryRef) -> RepositoryRef:
        if repo.remote_url:
            return self._configure_remote(repo, repo.remote_url)
        if not repo.remote_configured:
            raise RemoteConfigurationFailure(f"no GitHub remote configured for {repo.id}")
        return repo

    def _remote_url(self, git: GitProcess, repo: RepositoryRef) -> str:
        if repo.remote_url:
            return strip_credentials(repo.remote_url)
        return git.run('remote', 'get-url', self.remote).strip()

    # -- transfers ------------------------------------------------------------

    def _remote_has_branch(
        self, git: GitProcess, repo: RepositoryRef, branch: str, credential: Credential | None
    ) -> bool:
        """True if GitHub has refs/heads/branch. ls-remote exits 2 when it does not."""
        secrets = (credential.token,) if credential else ()
        try:
            env = credential_env(self._remote_url(git, repo), credential)
            result = git.execute(
                'ls-remote', '--exit-code', self.remote, f"refs/heads/{branch}", env=env, secrets=secrets
            )
        except ResolutionTimeout as e:
            raise TransportFailure('fetch', e.output, f"git ls-remote timed out after {e.timeout:g}s") from e
        except GitProcessError as e:
            raise TransportFailure('fetch', e.output, explain_failure(e.output)) from e
        if result.status == 2:
            return False
        if not result.ok:
            raise TransportFailure('fetch', result.combined, explain_failure(result.combined))
        return True

    def _transfer(
        self,
        operation: str,
        git: GitProcess,
        repo: RepositoryRef,
        refspec: str,
        credential: Credential | None,
    ) -> None:
        secrets = (credential.token,) if credential else ()
        try:
            env = credential_env(self._remote_url(git, repo), credential)
            git.run(operation, self.remote, refspec, env=env, secrets=secrets)
        except ResolutionTimeout as e:
            raise TransportFailure(operation, e.output, f"git {operation} timed out after {e.timeout:g}s") from e
        except GitProcessError as e:
            raise TransportFailure(operation, e.output, explain_failure(e.output)) from e
        self._logger.info("%s %s %s: ok", operation, repo.id, refspec)

    def _push(self, git: GitProcess, repo: RepositoryRef, branch: str, credential: Credential | None) -> None:
        self._transfer('push', git, repo, f"refs/heads/{branch}:refs/heads/{branch}", credential)

    def _pull(self, git: GitProcess, repo: RepositoryRef, branch: str, credential: Credential | None) -> bool:
        self._transfer('fetch', git, repo, f"+refs/heads/{branch}:refs/heads/{branch}", credential)
        return True

    def _fetch_and_fast_forward(
        self, git: GitProcess, repo: RepositoryRef, branch: str, credential: Credential | None
    ) -> bool:
        """Fetch into the tracking ref, then fast-forward the local branch if it is behind.

        A local branch with commits GitHub lacks is left for the push, as is a
        branch GitHub does not have yet; truly diverged histories are reported
        and never rewritten. Returns False when there was nothing to fetch.
        """
        tracking = f"refs/remotes/{self.remote}/{branch}"
        local = f"refs/heads/{branch}"
        if not self._remote_has_branch(git, repo, branch, credential):
            self._logger.info("%s has no %s on %s yet; nothing to fetch", repo.id, branch, self.remote)
            return False
        self._transfer('fetch', git, repo, f"+{local}:{tracking}", credential)
        try:
            remote_sha = git.run('rev-parse', '--verify', f"{tracking}^{{commit}}").strip()
            local_result = git.execute('rev-parse', '--verify', '--quiet', f"{local}^{{commit}}")
            if not local_result.ok:
                git.run('update-ref', local, remote_sha, _EMPTY_REF)
                return True
            local_sha = local_result.stdout.strip()
            if local_sha == remote_sha or self._is_ancestor(git, remote_sha, local_sha):
                return True
            if not self._is_ancestor(git, local_sha, remote_sha):
                raise TransportFailure(
                    'fetch', '', f"{branch} has diverged from {self.remote}; resolve manually"
                )
            # Compare-and-swap: fails if a push moved the branch meanwhile.
            git.run('update-ref', local, remote_sha, local_sha)
            self._logger.info("Fast-forwarded %s %s to %s", repo.id, branch, remote_sha[:8])
        except GitProcessError as e:
            raise TransportFailure('fetch', e.output, "could not fast-forward the local branch") from e
        return True

    @staticmethod
    def _is_ancestor(git: GitProcess, ancestor: str, descendant: str) -> bool:
        result = git.execute('merge-base', '--is-ancestor', ancestor, descendant)
        if result.status not in (0, 1):
            raise GitProcessError(['merge-base', '--is-ancestor'], result.status, result.combined)
        return result.ok

    def push_to_remote(
        self,
        repo: RepositoryRef,
        branch: str | None = None,
        credential: Credential | None = None,
    ) -> RepositoryRef:
        """Push one branch to GitHub. Raises RemoteConfigurationFailure or TransportFailure."""
        return self._discrete(repo, branch, credential, self._push)

    def pull_from_remote(
        self,
        repo: RepositoryRef,
        branch: str | None = None,
        credential: Credential | None = None,
    ) -> RepositoryRef:
        """Force-fetch one branch from GitHub into the local branch."""
        return self._discrete(repo, branch, credential, self._pull)

    def _discrete(self, repo, branch, credential, action) -> RepositoryRef:
        with self.locks.hold(repo.id):
            try:
                repo = self._ensure_remote(repo)
                git = self._git(repo)
                action(git, repo, branch or resolve_branch(git, self.config.default_branch), credential)
            finally:
                repo = repo.with_updates(last_sync_at=datetime.now())
                self._persist(repo)
            return repo

    # -- full sync ------------------------------------------------------------

    def sync_with_remote(
        self,
        repo: RepositoryRef,
        credential: Credential | None = None,
        wait: bool = True,
    ) -> SyncOutcome:
        """Reconcile repo with GitHub following its sync direction.

        Remote-side failures are recorded on the outcome, never raised. The
        attempt time is persisted whatever the result. With wait=False a sync
        already running for the same repository raises SyncInProgress.
        """
        direction = repo.sync_direction or SyncDirection.PUSH
        outcome = SyncOutcome(repo_id=repo.id, direction=direction)

        with self.locks.hold(repo.id, blocking=wait):
            try:
                repo = self._ensure_remote(repo)
            except RemoteConfigurationFailure as e:
                outcome.remote_error = str(e)

            if outcome.remote_error is None:
                git = self._git(repo)
                branch = resolve_branch(git, self.config.default_branch)
                outcome.branch = branch
                self._run_direction(git, repo, branch, direction, credential, outcome)
                status = self.status.get_sync_status(repo)
                outcome.ahead, outcome.behind, outcome.status = status.ahead, status.behind, status.state
            else:
                outcome.status = SyncState.ERROR

            repo = repo.with_updates(last_sync_at=outcome.attempted_at)
            outcome.persist_error = self._persist(repo)

        if outcome.succeeded:
            self._logger.info("Synced %s (%s): %s", repo.id, direction.value, outcome.status.value)
        else:
            self._logger.warning("Sync of %s (%s) failed:\n%s", repo.id, direction.value, outcome.error)
        return outcome

    def _run_direction(self, git, repo, branch, direction, credential, outcome: SyncOutcome) -> None:
        if direction in (SyncDirection.PULL, SyncDirection.BOTH):
            fetch = self._pull if direction is SyncDirection.PULL else self._fetch_and_fast_forward
            try:
                outcome.fetched = fetch(git, repo, branch, credential)
            except TransportFailure as e:
                outcome.fetch_error = e.diagnostic
        if direction in (SyncDirection.PUSH, SyncDirection.BOTH):
            try:
                self._push(git, repo, branch, credential)
                outcome.pushed = True
            except TransportFailure as e:
                outcome.push_error = e.diagnostic

    def sync_repository(self, repo_id: str, user_id: str | None = None, wait: bool = True) -> SyncOutcome:
        """Load repo_id, resolve the best credential, and sync it."""
        repo = self.registry.get(repo_id)
        credential = self.credentials.resolve(repo, user_id) if self.credentials else None
        return self.sync_with_remote(repo, credential, wait=wait)

    def _persist(self, repo: RepositoryRef) -> str | None:
        """Write repo to the registry; return the error text instead of raising."""
        try:
            self.registry.update(repo)
        except MirrorError as e:
            self._logger.error("Could not persist %s: %s", repo.id, e)
            return str(e)
        return None
