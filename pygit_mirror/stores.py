"""JSON-file backed repository registry and user store."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import re
import secrets
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pygit_mirror.errors import RegistryError, RepositoryNotFound
from pygit_mirror.models import AccessToken, Capability, RepositoryRef, User

REPO_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

_PBKDF2_ITERATIONS = 260_000


def is_valid_repo_id(repo_id: str) -> bool:
    """URL-safe, single path segment, no traversal, no .git suffix."""
    return (
        bool(REPO_ID_PATTERN.match(repo_id))
        and '..' not in repo_id
        and not repo_id.endswith('.git')
    )


def hash_password(password: str, salt: str | None = None) -> str:
    """Return 'pbkdf2_sha256$<iterations>$<salt>$<hex digest>'."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${_PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def check_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split('$', 3)
    except ValueError:
        return False
    if algorithm != 'pbkdf2_sha256':
        return False
    digest = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


class _JsonFile:
    """Whole-file JSON persistence with atomic replace."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise RegistryError(f"cannot read {self.path}: {e}") from e

    def save(self, data: dict[str, Any], mode: int = 0o644) -> None:
        tmp = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as e:
            raise RegistryError(f"cannot write {self.path}: {e}") from e


class JsonRepositoryRegistry:
    """Repository metadata stored in a single JSON document."""

    def __init__(self, path: Path):
        self._file = _JsonFile(path)

    def get(self, repo_id: str) -> RepositoryRef:
        with self._file.lock:
            data = self._file.load()
        record = data.get(repo_id)
        if record is None:
            raise RepositoryNotFound(repo_id)
        return RepositoryRef.from_dict(record)

    def update(self, repo: RepositoryRef) -> None:
        """Persist changed metadata of an existing repository."""
        with self._file.lock:
            data = self._file.load()
            if repo.id not in data:
                raise RepositoryNotFound(repo.id)
            data[repo.id] = repo.to_dict()
            self._file.save(data)

    def add(self, repo: RepositoryRef) -> RepositoryRef:
        """Register a new repository."""
        if not is_valid_repo_id(repo.id):
            raise RegistryError(f"invalid repository id: {repo.id!r}")
        with self._file.lock:
            data = self._file.load()
            if repo.id in data:
                raise RegistryError(f"repository already exists: {repo.id}")
            data[repo.id] = repo.to_dict()
            self._file.save(data)
        return repo

    def remove(self, repo_id: str) -> None:
        with self._file.lock:
            data = self._file.load()
            if data.pop(repo_id, None) is None:
                raise RepositoryNotFound(repo_id)
            self._file.save(data)

    def list_repositories(self) -> list[RepositoryRef]:
        with self._file.lock:
            data = self._file.load()
        return [RepositoryRef.from_dict(record) for _, record in sorted(data.items())]


class JsonUserStore:
    """Users and personal access tokens stored in a single JSON document."""

    def __init__(self, path: Path):
        self._file = _JsonFile(path)

    def _load(self) -> dict[str, dict[str, Any]]:
        data = self._file.load()
        data.setdefault('users', {})
        data.setdefault('tokens', {})
        return data

    @staticmethod
    def _user_from(record: dict[str, Any]) -> User:
        return User(
            id=record['id'],
            username=record['username'],
            password_hash=record.get('password_hash', ''),
            email=record.get('email', ''),
            capabilities=frozenset(Capability(c) for c in record.get('capabilities', [])),
        )

    def add_user(
        self,
        username: str,
        password: str,
        capabilities: set[Capability] | None = None,
        email: str = '',
    ) -> User:
        """Create a user with a hashed password."""
        if not username or not password:
            raise RegistryError("username and password are required")
        with self._file.lock:
            data = self._load()
            if any(u['username'] == username for u in data['users'].values()):
                raise RegistryError(f"user already exists: {username}")
            user = User(
                id=secrets.token_hex(8),
                username=username,
                password_hash=hash_password(password),
                email=email,
                capabilities=frozenset(capabilities or ()),
            )
            data['users'][user.id] = {
                'id': user.id,
                'username': user.username,
                'password_hash': user.password_hash,
                'email': user.email,
                'capabilities': sorted(c.value for c in user.capabilities),
            }
            self._file.save(data, mode=0o600)
        return user

    def get_user(self, user_id: str) -> User:
        with self._file.lock:
            record = self._load()['users'].get(user_id)
        if record is None:
            raise RegistryError(f"unknown user: {user_id}")
        return self._user_from(record)

    def find_by_username(self, username: str) -> User:
        """Look a user up by username or email."""
        with self._file.lock:
            users = self._load()['users']
        for record in users.values():
            if username in (record['username'], record.get('email')):
                return self._user_from(record)
        raise RegistryError(f"unknown user: {username}")

    def verify_password(self, user: User, password: str) -> bool:
        return bool(user.password_hash) and check_password(password, user.password_hash)

    def create_token(self, user_id: str, days: int | None = None) -> AccessToken:
        """Issue a personal access token; the id is used as the git username."""
        self.get_user(user_id)
        token = AccessToken(
            id=f"tok-{secrets.token_hex(6)}",
            user_id=user_id,
            secret=secrets.token_hex(32),
            expires_at=datetime.now() + timedelta(days=days) if days else None,
        )
        with self._file.lock:
            data = self._load()
            data['tokens'][token.id] = {
                'id': token.id,
                'user_id': token.user_id,
                'secret': token.secret,
                'expires_at': token.expires_at.isoformat() if token.expires_at else None,
            }
            self._file.save(data, mode=0o600)
        return token

    def get_token(self, token_id: str) -> AccessToken:
        with self._file.lock:
            record = self._load()['tokens'].get(token_id)
        if record is None:
            raise RegistryError(f"unknown token: {token_id}")
        expires = record.get('expires_at')
        return AccessToken(
            id=record['id'],
            user_id=record['user_id'],
            secret=record['secret'],
            expires_at=datetime.fromisoformat(expires) if expires else None,
        )

    def revoke_token(self, token_id: str) -> None:
        with self._file.lock:
            data = self._load()
            if data['tokens'].pop(token_id, None) is not None:
                self._file.save(data, mode=0o600)
