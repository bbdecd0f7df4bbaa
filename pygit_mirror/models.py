"""Domain models: enums, dataclasses, and configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any


class Visibility(Enum):
    """Repository visibility"""
    PUBLIC = 'public'
    PRIVATE = 'private'


class SyncDirection(Enum):
    """Which way commits flow between the local mirror and GitHub"""
    PUSH = 'push'
    PULL = 'pull'
    BOTH = 'both'

    @classmethod
    def parse(cls, value: str | SyncDirection | None) -> SyncDirection | None:
        """Parse a stored direction string. Empty or unknown values mean unset."""
        if isinstance(value, SyncDirection) or value is None:
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class SyncState(Enum):
    """Coarse divergence status between local and remote branch"""
    SYNCED = 'synced'
    AHEAD = 'ahead'
    BEHIND = 'behind'
    DIVERGED = 'diverged'
    NO_REMOTE = 'no-remote'
    ERROR = 'error'


class OperationKind(Enum):
    """Smart-HTTP operation classes"""
    PUSH = auto()
    PULL = auto()
    UNKNOWN = auto()


class Capability(Enum):
    """Capabilities a user may hold"""
    ADMIN = 'admin'
    PUSH = 'push'
    READ_PRIVATE = 'read-private'


class CredentialScope(Enum):
    """What a stored credential is bound to"""
    USER = auto()
    REPOSITORY = auto()


@dataclass(frozen=True)
class RepositoryRef:
    """Registry view of a locally hosted bare repository"""
    id: str
    visibility: Visibility = Visibility.PRIVATE
    remote_url: str | None = None
    sync_direction: SyncDirection | None = None
    auto_sync: bool = False
    remote_configured: bool = False
    last_sync_at: datetime | None = None
    owner_id: str | None = None

    @property
    def is_public(self) -> bool:
        return self.visibility is Visibility.PUBLIC

    def with_updates(self, **kwargs) -> RepositoryRef:
        """Return a new RepositoryRef with the given fields replaced."""
        current = {f.name: getattr(self, f.name) for f in self.__dataclass_fields__.values()}
        current.update(kwargs)
        return RepositoryRef(**current)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON storage."""
        return {
            'id': self.id,
            'visibility': self.visibility.value,
            'remote_url': self.remote_url,
            'sync_direction': self.sync_direction.value if self.sync_direction else None,
            'auto_sync': self.auto_sync,
            'remote_configured': self.remote_configured,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'owner_id': self.owner_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepositoryRef:
        last_sync = data.get('last_sync_at')
        return cls(
            id=data['id'],
            visibility=Visibility(data.get('visibility', Visibility.PRIVATE.value)),
            remote_url=data.get('remote_url') or None,
            sync_direction=SyncDirection.parse(data.get('sync_direction')),
            auto_sync=bool(data.get('auto_sync', False)),
            remote_configured=bool(data.get('remote_configured', False)),
            last_sync_at=datetime.fromisoformat(last_sync) if last_sync else None,
            owner_id=data.get('owner_id'),
        )


@dataclass(frozen=True)
class User:
    """An account that may authenticate against the gateway"""
    id: str
    username: str
    password_hash: str = ''
    email: str = ''
    capabilities: frozenset[Capability] = frozenset()

    def has_any(self, required: frozenset[Capability] | set[Capability]) -> bool:
        """Return True if the user holds at least one of the required capabilities."""
        return bool(self.capabilities & set(required))

    @property
    def is_admin(self) -> bool:
        return Capability.ADMIN in self.capabilities


@dataclass(frozen=True)
class AccessToken:
    """Personal access token; the id doubles as the basic-auth username"""
    id: str
    user_id: str
    secret: str
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True if the token has an expiry in the past."""
        if self.expires_at is None:
            return False
        return (now or datetime.now()) >= self.expires_at


@dataclass(frozen=True)
class Credential:
    """A GitHub secret resolved for a single operation"""
    token: str
    scope: CredentialScope
    principal: str
    username: str = 'x-access-token'

    def __repr__(self) -> str:
        return f"Credential(scope={self.scope.name}, principal={self.principal!r}, token=***)"


@dataclass(frozen=True)
class GitOperationRequest:
    """Parsed view of one inbound smart-HTTP request"""
    repo_id: str
    operation: OperationKind
    username: str
    secret: str

    def __repr__(self) -> str:
        return (
            f"GitOperationRequest(repo_id={self.repo_id!r}, operation={self.operation.name}, "
            f"username={self.username!r})"
        )


@dataclass(frozen=True)
class SyncStatus:
    """Ahead/behind counts between the local branch and its remote-tracking ref"""
    ahead: int = 0
    behind: int = 0
    state: SyncState = SyncState.NO_REMOTE
    branch: str | None = None
    error: str | None = None

    def as_tuple(self) -> tuple[int, int, str]:
        """Return (ahead, behind, status) for rendering."""
        return self.ahead, self.behind, self.state.value


@dataclass
class SyncOutcome:
    """Result of one sync attempt. Never persisted."""
    repo_id: str
    branch: str | None = None
    direction: SyncDirection | None = None
    ahead: int = 0
    behind: int = 0
    status: SyncState = SyncState.ERROR
    remote_error: str | None = None
    fetch_error: str | None = None
    push_error: str | None = None
    persist_error: str | None = None
    fetched: bool = False
    pushed: bool = False
    attempted_at: datetime = field(default_factory=datetime.now)

    @property
    def error(self) -> str | None:
        """All sub-operation diagnostics, separated by a blank line."""
        parts = [e for e in (self.remote_error, self.fetch_error, self.push_error) if e]
        return '\n\n'.join(parts) if parts else None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON output."""
        return {
            'repo_id': self.repo_id,
            'branch': self.branch,
            'direction': self.direction.value if self.direction else None,
            'ahead': self.ahead,
            'behind': self.behind,
            'status': self.status.value,
            'fetched': self.fetched,
            'pushed': self.pushed,
            'remote_error': self.remote_error,
            'fetch_error': self.fetch_error,
            'push_error': self.push_error,
            'persist_error': self.persist_error,
            'attempted_at': self.attempted_at.isoformat(),
        }


@dataclass
class SyncReport:
    """Mutable accumulator for a multi-repository sync run"""
    outcomes: list[SyncOutcome] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def repos_processed(self) -> int:
        return len(self.outcomes)

    def add(self, outcome: SyncOutcome) -> None:
        """Record the outcome of one repository sync."""
        self.outcomes.append(outcome)

    def skip(self, repo_id: str, reason: str) -> None:
        """Record a repository that was not synced this round."""
        self.skipped.append((repo_id, reason))

    def failures(self) -> list[SyncOutcome]:
        """Outcomes with at least one failed sub-operation."""
        return [o for o in self.outcomes if not o.succeeded]

    def by_state(self, state: SyncState) -> list[SyncOutcome]:
        """Filter outcomes by resulting divergence state."""
        return [o for o in self.outcomes if o.status is state]

    def has_failures(self) -> bool:
        return any(not o.succeeded for o in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON output."""
        return {
            'repos_processed': self.repos_processed,
            'outcomes': [o.to_dict() for o in self.outcomes],
            'skipped': [{'repo': r, 'reason': why} for r, why in self.skipped],
            'has_failures': self.has_failures(),
        }


@dataclass(frozen=True)
class MirrorConfig:
    """Configuration for the gateway, sync engine and CLI"""
    data_dir: Path = field(default_factory=lambda: Path.home() / '.pygit-mirror')
    mount_prefix: str = '/repo/'
    host: str = '127.0.0.1'
    port: int = 8080
    remote_name: str = 'github'
    default_branch: str = 'master'
    git_timeout: float = 30.0
    status_timeout: float = 10.0
    clone_timeout: float = 600.0
    notify_delay: float = 2.0
    refresh_command: str | None = None
    strict_operation_kind: bool = True
    allowed_remote_hosts: list[str] = field(default_factory=lambda: ['github.com'])
    sync_interval: float = 0.0
    parallel: bool = False
    max_workers: int = field(default_factory=lambda: min(os.cpu_count() or 4, 8))
    verbose: bool = False
    json_output: bool = False

    @property
    def repos_dir(self) -> Path:
        return Path(self.data_dir) / 'repos'

    @property
    def registry_path(self) -> Path:
        return Path(self.data_dir) / 'repositories.json'

    @property
    def users_path(self) -> Path:
        return Path(self.data_dir) / 'users.json'

    @property
    def secrets_path(self) -> Path:
        return Path(self.data_dir) / 'secrets.json'

    def repo_path(self, repo_id: str) -> Path:
        """Filesystem location of a repository's bare git directory."""
        return self.repos_dir / repo_id

    def with_updates(self, **kwargs) -> MirrorConfig:
        """Return a new MirrorConfig with the given fields replaced."""
        current = {f.name: getattr(self, f.name) for f in self.__dataclass_fields__.values()}
        current.update(kwargs)
        return MirrorConfig(**current)
