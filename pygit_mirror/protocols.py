"""Protocols and abstract interfaces for dependency injection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

from pygit_mirror.models import AccessToken, RepositoryRef, SyncOutcome, User


class CredentialStore(Protocol):
    """Key-value secret service (Vault-like)"""

    def get_secret(self, path: str) -> dict[str, Any]: ...
    def store_secret(self, path: str, value: dict[str, Any]) -> None: ...
    def delete_secret(self, path: str) -> None: ...
    def is_available(self) -> bool: ...


class RepositoryRegistry(Protocol):
    """Lookup and persistence of repository metadata"""

    def get(self, repo_id: str) -> RepositoryRef: ...
    def update(self, repo: RepositoryRef) -> None: ...
    def list_repositories(self) -> list[RepositoryRef]: ...


class UserStore(Protocol):
    """Users and their personal access tokens"""

    def get_user(self, user_id: str) -> User: ...
    def find_by_username(self, username: str) -> User: ...
    def verify_password(self, user: User, password: str) -> bool: ...
    def get_token(self, token_id: str) -> AccessToken: ...


class WorkspaceNotifier(Protocol):
    """Collaborator refreshed after a successful push"""

    def update_repository(self, repo_id: str) -> None: ...


class OutputHandler(Protocol):
    """Protocol for handling output"""

    def info(self, message: str, indent: int = 0) -> None: ...
    def success(self, message: str, indent: int = 0) -> None: ...
    def warning(self, message: str, indent: int = 0) -> None: ...
    def error(self, message: str, indent: int = 0) -> None: ...
    def section(self, title: str) -> None: ...
    def debug(self, message: str) -> None: ...


class SyncHook(ABC):
    """Abstract base class for scheduled sync hooks (plugin architecture)"""

    @abstractmethod
    def before_sync(self, repo: RepositoryRef) -> bool:
        """Called before syncing. Return False to skip this repo."""
        pass

    @abstractmethod
    def after_sync(self, repo: RepositoryRef, outcome: SyncOutcome) -> None:
        """Called after syncing a repository with its outcome."""
        pass

    @abstractmethod
    def on_error(self, repo: RepositoryRef, error: Exception) -> None:
        """Called when an unhandled error occurs during sync."""
        pass
