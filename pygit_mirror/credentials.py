"""Secret stores and GitHub credential resolution.

Secrets are read fresh on every call; nothing here caches a token, so a
revoked or deleted credential stops working on the next operation.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pygit_mirror.errors import SecretNotFound, SecretStoreError
from pygit_mirror.models import Credential, CredentialScope, RepositoryRef
from pygit_mirror.protocols import CredentialStore

GITHUB_USER_PREFIX = 'github/users/'
GITHUB_REPO_PREFIX = 'github/repos/'


class MemorySecretStore:
    """Process-local secret store, used as the degraded fallback."""

    def __init__(self):
        self._secrets: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_secret(self, path: str) -> dict[str, Any]:
        with self._lock:
            if path not in self._secrets:
                raise SecretNotFound(path)
            return dict(self._secrets[path])

    def store_secret(self, path: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._secrets[path] = dict(value)

    def delete_secret(self, path: str) -> None:
        with self._lock:
            self._secrets.pop(path, None)

    def is_available(self) -> bool:
        return True


class FileSecretStore:
    """JSON file of path -> secret mapping, readable only by the owner."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise SecretStoreError(f"cannot read {self._path}: {e}") from e

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        tmp = self._path.with_suffix('.tmp')
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except OSError as e:
            raise SecretStoreError(f"cannot write {self._path}: {e}") from e

    def get_secret(self, path: str) -> dict[str, Any]:
        with self._lock:
            data = self._load()
        if path not in data:
            raise SecretNotFound(path)
        return dict(data[path])

    def store_secret(self, path: str, value: dict[str, Any]) -> None:
        with self._lock:
            data = self._load()
            data[path] = dict(value)
            self._save(data)

    def delete_secret(self, path: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(path, None) is not None:
                self._save(data)

    def is_available(self) -> bool:
        """True if the backing file can be read and its directory written."""
        directory = self._path.parent
        if self._path.exists():
            return os.access(self._path, os.R_OK | os.W_OK)
        return not directory.exists() or os.access(directory, os.W_OK)


class FallbackSecretStore:
    """Uses the primary store while it is available, the fallback otherwise."""

    def __init__(self, primary: CredentialStore, fallback: CredentialStore | None = None):
        self._primary = primary
        self._fallback = fallback or MemorySecretStore()
        self._logger = logging.getLogger(__name__)
        self._degraded = False

    @property
    def mode(self) -> str:
        """'primary' or 'fallback', as of the last check."""
        return 'fallback' if self._degraded else 'primary'

    def _active(self) -> CredentialStore:
        if self._primary.is_available():
            if self._degraded:
                self._logger.info("Secret store recovered, leaving fallback mode")
            self._degraded = False
            return self._primary
        if not self._degraded:
            self._logger.warning("Secret store unavailable, using fallback store")
        self._degraded = True
        return self._fallback

    def get_secret(self, path: str) -> dict[str, Any]:
        return self._active().get_secret(path)

    def store_secret(self, path: str, value: dict[str, Any]) -> None:
        self._active().store_secret(path, value)

    def delete_secret(self, path: str) -> None:
        self._active().delete_secret(path)

    def is_available(self) -> bool:
        return self._primary.is_available() or self._fallback.is_available()

    def is_degraded(self) -> bool:
        self._active()
        return self._degraded


class CredentialResolver:
    """Reads and writes GitHub credentials in a CredentialStore."""

    def __init__(self, store: CredentialStore):
        self.store = store
        self._logger = logging.getLogger(__name__)

    # -- per-user OAuth tokens --------------------------------------------

    def store_user_token(self, user_id: str, token: str, username: str = '') -> None:
        """Save a user's GitHub OAuth token."""
        value = {'token': token}
        if username:
            value['username'] = username
        self.store.store_secret(f"{GITHUB_USER_PREFIX}{user_id}", value)

    def user_token(self, user_id: str) -> Credential | None:
        """Return the user's GitHub token, or None if not connected."""
        secret = self._read(f"{GITHUB_USER_PREFIX}{user_id}")
        token = secret.get('token') if secret else None
        if not isinstance(token, str) or not token:
            return None
        return Credential(token=token, scope=CredentialScope.USER, principal=user_id)

    def github_username(self, user_id: str) -> str | None:
        secret = self._read(f"{GITHUB_USER_PREFIX}{user_id}")
        return secret.get('username') if secret else None

    def delete_user_token(self, user_id: str) -> None:
        self.store.delete_secret(f"{GITHUB_USER_PREFIX}{user_id}")

    # -- per-repository integration records -------------------------------

    def store_integration(self, repo_id: str, data: dict[str, Any]) -> None:
        """Save a repository's GitHub integration record."""
        self.store.store_secret(f"{GITHUB_REPO_PREFIX}{repo_id}", data)

    def integration(self, repo_id: str) -> dict[str, Any] | None:
        return self._read(f"{GITHUB_REPO_PREFIX}{repo_id}")

    def delete_integration(self, repo_id: str) -> None:
        self.store.delete_secret(f"{GITHUB_REPO_PREFIX}{repo_id}")

    def repository_token(self, repo_id: str) -> Credential | None:
        """Token stored with the repository integration, if any."""
        data = self.integration(repo_id)
        token = data.get('github_token') if data else None
        if not isinstance(token, str) or not token:
            return None
        return Credential(token=token, scope=CredentialScope.REPOSITORY, principal=repo_id)

    def resolve(self, repo: RepositoryRef, user_id: str | None = None) -> Credential | None:
        """Best available credential for an operation on repo.

        Order: repository integration token, acting user's token, owner's token.
        """
        credential = self.repository_token(repo.id)
        if credential:
            return credential
        candidates = [user_id, repo.owner_id]
        data = self.integration(repo.id)
        if data and isinstance(data.get('owner_id'), str):
            candidates.append(data['owner_id'])
        for candidate in candidates:
            if not candidate:
                continue
            credential = self.user_token(candidate)
            if credential:
                return credential
        self._logger.debug("No GitHub credential available for %s", repo.id)
        return None

    def _read(self, path: str) -> dict[str, Any] | None:
        try:
            return self.store.get_secret(path)
        except SecretNotFound:
            return None
        except SecretStoreError as e:
            self._logger.warning("Secret lookup failed for %s: %s", path, e)
            return None
