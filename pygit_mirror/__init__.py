"""
pygit-mirror: Git smart-HTTP gateway and GitHub mirror

Serves bare repositories over git's smart-HTTP protocol with per-operation
access control, and keeps each repository in step with a GitHub remote.
"""

from colorama import init as colorama_init

colorama_init(autoreset=True)

__version__ = "0.1.0"

# Re-export public API so `from pygit_mirror import X` works.
from pygit_mirror.cli import main  # noqa: E402
from pygit_mirror.config import build_config, create_argument_parser, load_config_file  # noqa: E402
from pygit_mirror.credentials import (  # noqa: E402
    CredentialResolver,
    FallbackSecretStore,
    FileSecretStore,
    MemorySecretStore,
)
from pygit_mirror.engine import SyncEngine  # noqa: E402
from pygit_mirror.errors import (  # noqa: E402
    AuthenticationFailure,
    AuthorizationFailure,
    MirrorError,
    RemoteConfigurationFailure,
    RepositoryNotFound,
    ResolutionTimeout,
    TransportFailure,
)
from pygit_mirror.gateway import AccessPolicy, Authenticator, GitGateway, PrefixMount, build_app  # noqa: E402
from pygit_mirror.integration import IntegrationService  # noqa: E402
from pygit_mirror.models import (  # noqa: E402
    AccessToken,
    Capability,
    Credential,
    CredentialScope,
    MirrorConfig,
    OperationKind,
    RepositoryRef,
    SyncDirection,
    SyncOutcome,
    SyncReport,
    SyncState,
    SyncStatus,
    User,
    Visibility,
)
from pygit_mirror.output import (  # noqa: E402
    SECTION_WIDTH,
    BufferedOutputHandler,
    ConsoleOutputHandler,
    NullOutputHandler,
)
from pygit_mirror.process import GitProcess  # noqa: E402
from pygit_mirror.protocols import (  # noqa: E402
    CredentialStore,
    OutputHandler,
    RepositoryRegistry,
    SyncHook,
    UserStore,
    WorkspaceNotifier,
)
from pygit_mirror.reporter import SummaryReporter  # noqa: E402
from pygit_mirror.scheduler import SyncScheduler  # noqa: E402
from pygit_mirror.status import SyncStatusResolver  # noqa: E402
from pygit_mirror.stores import JsonRepositoryRegistry, JsonUserStore  # noqa: E402
from pygit_mirror.transport import GitHttpBackend  # noqa: E402

__all__ = [
    "__version__",
    # Models
    "AccessToken",
    "Capability",
    "Credential",
    "CredentialScope",
    "MirrorConfig",
    "OperationKind",
    "RepositoryRef",
    "SyncDirection",
    "SyncOutcome",
    "SyncReport",
    "SyncState",
    "SyncStatus",
    "User",
    "Visibility",
    # Errors
    "AuthenticationFailure",
    "AuthorizationFailure",
    "MirrorError",
    "RemoteConfigurationFailure",
    "RepositoryNotFound",
    "ResolutionTimeout",
    "TransportFailure",
    # Protocols
    "CredentialStore",
    "OutputHandler",
    "RepositoryRegistry",
    "SyncHook",
    "UserStore",
    "WorkspaceNotifier",
    # Implementations
    "BufferedOutputHandler",
    "ConsoleOutputHandler",
    "CredentialResolver",
    "FallbackSecretStore",
    "FileSecretStore",
    "GitHttpBackend",
    "GitProcess",
    "JsonRepositoryRegistry",
    "JsonUserStore",
    "MemorySecretStore",
    "NullOutputHandler",
    "SECTION_WIDTH",
    # Services
    "AccessPolicy",
    "Authenticator",
    "GitGateway",
    "IntegrationService",
    "PrefixMount",
    "SummaryReporter",
    "SyncEngine",
    "SyncScheduler",
    "SyncStatusResolver",
    "build_app",
    # Config / CLI
    "build_config",
    "create_argument_parser",
    "load_config_file",
    "main",
]
