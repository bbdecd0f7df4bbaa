"""Exception hierarchy for the gateway and sync engine."""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all pygit-mirror errors"""


class AuthenticationFailure(MirrorError):
    """Credentials did not identify a user"""

    def __init__(self, message: str = "invalid credentials"):
        super().__init__(message)


class AuthorizationFailure(MirrorError):
    """Identity is valid but lacks the capability for the operation"""


class RepositoryNotFound(MirrorError):
    """No repository is registered under the requested ID"""

    def __init__(self, repo_id: str):
        super().__init__(f"repository not found: {repo_id}")
        self.repo_id = repo_id


class GitProcessError(MirrorError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, args: list[str], status: int, output: str):
        self.command = args
        self.status = status
        self.output = output
        super().__init__(f"git {' '.join(args[:2])} exited with status {status}: {output}")


class ResolutionTimeout(GitProcessError):
    """A git subprocess exceeded its time bound and was killed."""

    def __init__(self, args: list[str], timeout: float, output: str = ''):
        self.timeout = timeout
        super().__init__(args, -1, output or f"timed out after {timeout:g}s")


class RemoteConfigurationFailure(MirrorError):
    """git remote add/set-url/remove failed"""


class TransportFailure(MirrorError):
    """Fetch or push against the remote failed.

    ``output`` holds the (redacted) combined git output; ``hint`` a short
    human explanation when the output matches a well-known failure.
    """

    def __init__(self, operation: str, output: str, hint: str | None = None):
        self.operation = operation
        self.output = output
        self.hint = hint
        message = f"{operation} failed"
        if hint:
            message += f": {hint}"
        super().__init__(message)

    @property
    def diagnostic(self) -> str:
        """Hint plus raw output, for display to the operator."""
        if self.hint:
            return f"{self.hint}\n{self.output}".strip()
        return self.output.strip() or str(self)


class RegistryError(MirrorError):
    """Repository or user registry could not be read or written"""


class SecretStoreError(MirrorError):
    """Secret store lookup or write failed"""


class SecretNotFound(SecretStoreError):
    """No secret is stored under the requested path"""

    def __init__(self, path: str):
        super().__init__(f"secret not found: {path}")
        self.path = path


class SyncInProgress(MirrorError):
    """Another sync for the same repository is still running"""

    def __init__(self, repo_id: str):
        super().__init__(f"sync already in progress for {repo_id}")
        self.repo_id = repo_id


class IntegrationError(MirrorError):
    """GitHub integration is missing or misconfigured"""
