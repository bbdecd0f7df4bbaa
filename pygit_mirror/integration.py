"""IntegrationService: connect, disconnect and import GitHub repositories."""

from __future__ import annotations

import logging
import shutil
from urllib.parse import urlsplit

from pygit_mirror.credentials import CredentialResolver
from pygit_mirror.engine import SyncEngine, explain_failure
from pygit_mirror.errors import GitProcessError, IntegrationError, RepositoryNotFound, TransportFailure
from pygit_mirror.models import (
    Credential,
    CredentialScope,
    RepositoryRef,
    SyncDirection,
    Visibility,
)
from pygit_mirror.stores import JsonRepositoryRegistry, is_valid_repo_id
from pygit_mirror.urls import credential_env, host_of, is_http_url, sanitize_for_log, strip_credentials


class IntegrationService:
    """Lifecycle of the link between a hosted repository and GitHub"""

    def __init__(
        self,
        engine: SyncEngine,
        registry: JsonRepositoryRegistry,
        credentials: CredentialResolver,
    ):
        self.engine = engine
        self.config = engine.config
        self.registry = registry
        self.credentials = credentials
        self.logger = logging.getLogger(__name__)

    def validate_url(self, url: str) -> str:
        """Return url without credentials, or raise IntegrationError.

        An empty allowed_remote_hosts list accepts any URL, local paths included.
        """
        if not url or not url.strip():
            raise IntegrationError("GitHub URL is required")
        clean = strip_credentials(url.strip())
        allowed = [h.lower() for h in self.config.allowed_remote_hosts]
        if not allowed:
            return clean
        host = host_of(clean)
        if not host or host.lower() not in allowed:
            raise IntegrationError(f"remote host not allowed: {sanitize_for_log(clean)}")
        path = urlsplit(clean).path if is_http_url(clean) else clean.split(':', 1)[-1]
        if len([p for p in path.strip('/').split('/') if p]) < 2:
            raise IntegrationError(f"expected an owner/repository URL: {sanitize_for_log(clean)}")
        return clean

    def connect(
        self,
        repo_id: str,
        github_url: str,
        token: str | None = None,
        direction: SyncDirection | None = SyncDirection.PUSH,
        auto_sync: bool = False,
        owner_id: str | None = None,
    ) -> RepositoryRef:
        """Link repo_id to a GitHub repository and configure the remote."""
        repo = self.registry.get(repo_id)
        clean = self.validate_url(github_url)
        owner = owner_id or repo.owner_id
        record = {
            'github_url': clean,
            'sync_direction': direction.value if direction else '',
            'auto_sync': auto_sync,
            'enabled': True,
            'owner_id': owner,
        }
        if token:
            record['github_token'] = token
        self.credentials.store_integration(repo_id, record)

        repo = repo.with_updates(sync_direction=direction, auto_sync=auto_sync, owner_id=owner)
        repo = self.engine.configure_remote(repo, clean)
        self.logger.info("Connected %s to %s", repo_id, sanitize_for_log(clean))
        return repo

    def disconnect(self, repo_id: str) -> RepositoryRef:
        """Remove the remote, the stored integration and the sync settings."""
        repo = self.registry.get(repo_id)
        repo = self.engine.remove_remote(repo)
        self.credentials.delete_integration(repo_id)
        repo = repo.with_updates(remote_url=None, sync_direction=None, auto_sync=False)
        self.registry.update(repo)
        self.logger.info("Disconnected %s from GitHub", repo_id)
        return repo

    def connect_account(self, user_id: str, token: str, username: str = '') -> None:
        """Store a user's GitHub OAuth token."""
        if not token:
            raise IntegrationError("GitHub token is required")
        self.credentials.store_user_token(user_id, token, username)
        self.logger.info("Stored GitHub token for user %s", user_id)

    def disconnect_account(self, user_id: str) -> None:
        self.credentials.delete_user_token(user_id)
        self.logger.info("Removed GitHub token for user %s", user_id)

    def import_repository(
        self,
        repo_id: str,
        github_url: str,
        token: str | None = None,
        visibility: Visibility = Visibility.PRIVATE,
        owner_id: str | None = None,
        direction: SyncDirection = SyncDirection.PULL,
    ) -> RepositoryRef:
        """Bare-clone a GitHub repository and register it under repo_id."""
        if not is_valid_repo_id(repo_id):
            raise IntegrationError(f"invalid repository id: {repo_id!r}")
        try:
            self.registry.get(repo_id)
        except RepositoryNotFound:
            pass
        else:
            raise IntegrationError(f"repository already exists: {repo_id}")
        target = self.config.repo_path(repo_id)
        if target.exists() and any(target.iterdir()):
            raise IntegrationError(f"directory not empty: {target}")

        clean = self.validate_url(github_url)
        credential = self._import_credential(repo_id, token, owner_id)
        self._clone(clean, repo_id, credential)

        repo = RepositoryRef(
            id=repo_id,
            visibility=visibility,
            remote_url=clean,
            sync_direction=direction,
            remote_configured=True,
            owner_id=owner_id,
        )
        self.registry.add(repo)
        if token:
            self.credentials.store_integration(repo_id, {
                'github_url': clean,
                'github_token': token,
                'sync_direction': direction.value,
                'auto_sync': False,
                'enabled': True,
                'owner_id': owner_id,
            })
        self.logger.info("Imported %s from %s", repo_id, sanitize_for_log(clean))
        return repo

    def _import_credential(self, repo_id: str, token: str | None, owner_id: str | None) -> Credential | None:
        if token:
            return Credential(token=token, scope=CredentialScope.REPOSITORY, principal=repo_id)
        if owner_id:
            return self.credentials.user_token(owner_id)
        return None

    def _clone(self, url: str, repo_id: str, credential: Credential | None) -> None:
        repos_dir = self.config.repos_dir
        repos_dir.mkdir(parents=True, exist_ok=True)
        env = credential_env(url, credential)
        secrets = (credential.token,) if credential else ()
        remote = self.config.remote_name
        target = self.config.repo_path(repo_id)
        try:
            self.engine.git_factory(repos_dir, self.config.clone_timeout).run(
                'clone', '--bare', '--origin', remote, url, repo_id, env=env, secrets=secrets
            )
            git = self.engine.git_factory(target, self.config.clone_timeout)
            git.run('config', f"remote.{remote}.fetch", f"+refs/heads/*:refs/remotes/{remote}/*")
            git.run('fetch', remote, env=env, secrets=secrets)
        except GitProcessError as e:
            shutil.rmtree(target, ignore_errors=True)
            raise TransportFailure('clone', e.output, explain_failure(e.output)) from e
