"""GitGateway: authentication and authorization in front of the smart-HTTP transport."""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from typing import Callable, Iterable
from urllib.parse import parse_qs

from pygit_mirror.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    MirrorError,
    RepositoryNotFound,
)
from pygit_mirror.models import (
    Capability,
    GitOperationRequest,
    MirrorConfig,
    OperationKind,
    RepositoryRef,
    User,
)
from pygit_mirror.notifier import NullWorkspaceNotifier, schedule_notification
from pygit_mirror.protocols import RepositoryRegistry, UserStore, WorkspaceNotifier
from pygit_mirror.transport import GitHttpBackend, parse_repo_path

RECEIVE_PACK = 'git-receive-pack'
UPLOAD_PACK = 'git-upload-pack'
REALM = 'pygit-mirror'


def classify_operation(path_info: str, query_string: str) -> OperationKind:
    """Push if the request names git-receive-pack, pull if git-upload-pack."""
    service = parse_qs(query_string or '').get('service', [''])[0]
    if path_info.endswith('/' + RECEIVE_PACK) or service == RECEIVE_PACK:
        return OperationKind.PUSH
    if path_info.endswith('/' + UPLOAD_PACK) or service == UPLOAD_PACK:
        return OperationKind.PULL
    return OperationKind.UNKNOWN


def parse_basic_auth(header: str | None) -> tuple[str, str]:
    """Decode an Authorization: Basic header. Empty fields fail."""
    if not header:
        raise AuthenticationFailure("missing credentials")
    scheme, _, encoded = header.partition(' ')
    if scheme.lower() != 'basic':
        raise AuthenticationFailure("unsupported authorization scheme")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise AuthenticationFailure("malformed credentials") from e
    username, sep, password = decoded.partition(':')
    if not sep or not username or not password:
        raise AuthenticationFailure("empty username or password")
    return username, password


class Authenticator:
    """Resolves basic-auth credentials to a User.

    The username is first tried as an access-token ID; if that does not
    match, it is tried as a login name with a password.
    """

    def __init__(self, users: UserStore):
        self.users = users
        self._logger = logging.getLogger(__name__)

    def authenticate(self, username: str, secret: str) -> User:
        if not username or not secret:
            raise AuthenticationFailure()
        user = self._by_token(username, secret)
        if user is not None:
            return user
        try:
            user = self.users.find_by_username(username)
        except MirrorError as e:
            raise AuthenticationFailure() from e
        if not self.users.verify_password(user, secret):
            raise AuthenticationFailure()
        return user

    def _by_token(self, token_id: str, secret: str) -> User | None:
        try:
            token = self.users.get_token(token_id)
        except MirrorError:
            return None
        if not hmac.compare_digest(token.secret.encode(), secret.encode()):
            return None
        if token.is_expired():
            self._logger.info("Expired token %s presented", token_id)
            return None
        try:
            return self.users.get_user(token.user_id)
        except MirrorError as e:
            raise AuthenticationFailure() from e


class AccessPolicy:
    """Capability requirements per operation kind and repository visibility."""

    push_requires = frozenset({Capability.ADMIN, Capability.PUSH})
    private_pull_requires = frozenset({Capability.ADMIN, Capability.READ_PRIVATE})

    def __init__(self, strict_operation_kind: bool = True):
        self.strict_operation_kind = strict_operation_kind

    def authorize(self, user: User, repo: RepositoryRef, operation: OperationKind) -> None:
        """Raise AuthorizationFailure unless user may perform operation on repo."""
        if operation is OperationKind.UNKNOWN:
            if self.strict_operation_kind:
                raise AuthorizationFailure(f"unrecognized git operation on {repo.id}")
            operation = OperationKind.PULL

        if operation is OperationKind.PUSH:
            if not user.has_any(self.push_requires):
                raise AuthorizationFailure(f"{user.username} may not push to {repo.id}")
        elif not repo.is_public and not user.has_any(self.private_pull_requires):
            raise AuthorizationFailure(f"{user.username} may not read {repo.id}")


class GitGateway:
    """WSGI middleware that decides every request before the transport sees it.

    Denials are a plain 401 with a Basic challenge whatever the cause, and
    the request body is never read on a denied request.
    """

    def __init__(
        self,
        app: Callable,
        registry: RepositoryRegistry,
        users: UserStore,
        notifier: WorkspaceNotifier | None = None,
        policy: AccessPolicy | None = None,
        notify_delay: float = 2.0,
    ):
        self.app = app
        self.registry = registry
        self.authenticator = Authenticator(users)
        self.policy = policy or AccessPolicy()
        self.notifier = notifier or NullWorkspaceNotifier()
        self.notify_delay = notify_delay
        self._logger = logging.getLogger(__name__)

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        path = environ.get('PATH_INFO', '')
        repo_id, _ = parse_repo_path(path)
        if repo_id is None:
            return _respond(start_response, '404 Not Found', b'Not Found\n')

        username = ''
        try:
            request = self.parse_request(environ, repo_id)
            username = request.username
            user = self.authenticator.authenticate(request.username, request.secret)
            repo = self.registry.get(repo_id)
            self.policy.authorize(user, repo, request.operation)
        except (AuthenticationFailure, AuthorizationFailure, RepositoryNotFound) as e:
            self._logger.info("Denied %s %s for %r", environ.get('REQUEST_METHOD'), path, username)
            self._logger.debug("Denial reason: %s", e)
            return self.deny(start_response)
        except MirrorError as e:
            self._logger.error("Access check failed for %s: %s", path, e)
            return _respond(start_response, '500 Internal Server Error', b'Internal Server Error\n')

        environ['REMOTE_USER'] = user.username
        self._logger.debug("Allowed %s on %s for %s", request.operation.name, repo_id, user.username)
        if request.operation is not OperationKind.PUSH or environ.get('REQUEST_METHOD') != 'POST':
            return self.app(environ, start_response)

        statuses = []

        def _capture(status, headers, *exc_info):
            statuses.append(status)
            return start_response(status, headers, *exc_info)

        response = self.app(environ, _capture)
        return _CloseHook(response, lambda: self._after_push(repo_id, statuses[-1] if statuses else ''))

    @staticmethod
    def parse_request(environ, repo_id: str) -> GitOperationRequest:
        username, secret = parse_basic_auth(environ.get('HTTP_AUTHORIZATION'))
        operation = classify_operation(environ.get('PATH_INFO', ''), environ.get('QUERY_STRING', ''))
        return GitOperationRequest(repo_id=repo_id, operation=operation, username=username, secret=secret)

    @staticmethod
    def deny(start_response) -> list[bytes]:
        return _respond(
            start_response,
            '401 Unauthorized',
            b'Unauthorized\n',
            [('WWW-Authenticate', f'Basic realm="{REALM}"')],
        )

    def _after_push(self, repo_id: str, status: str) -> None:
        if not status.startswith('2'):
            self._logger.info("Push to %s ended with %s; no workspace refresh", repo_id, status or 'no status')
            return
        schedule_notification(self.notifier, repo_id, self.notify_delay)


class PrefixMount:
    """Strips mount_prefix from PATH_INFO; anything outside it is a 404."""

    def __init__(self, app: Callable, prefix: str = '/repo/'):
        self.app = app
        self.prefix = '/' + prefix.strip('/')

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        path = environ.get('PATH_INFO', '')
        if path != self.prefix and not path.startswith(self.prefix + '/'):
            return _respond(start_response, '404 Not Found', b'Not Found\n')
        environ = dict(environ)
        environ['SCRIPT_NAME'] = environ.get('SCRIPT_NAME', '').rstrip('/') + self.prefix
        environ['PATH_INFO'] = path[len(self.prefix):] or '/'
        return self.app(environ, start_response)


class _CloseHook:
    """Wraps a response iterable and runs a callback once it is closed."""

    def __init__(self, response: Iterable[bytes], callback: Callable[[], None]):
        self._response = response
        self._callback = callback

    def __iter__(self):
        return iter(self._response)

    def close(self) -> None:
        try:
            close = getattr(self._response, 'close', None)
            if close is not None:
                close()
        finally:
            self._callback()


def _respond(start_response, status: str, body: bytes, extra_headers=None) -> list[bytes]:
    headers = [('Content-Type', 'text/plain; charset=utf-8'), ('Content-Length', str(len(body)))]
    headers.extend(extra_headers or [])
    start_response(status, headers)
    return [body]


def build_app(
    config: MirrorConfig,
    registry: RepositoryRegistry,
    users: UserStore,
    notifier: WorkspaceNotifier | None = None,
) -> PrefixMount:
    """Assemble mount -> gateway -> http-backend for the configured data dir."""
    gateway = GitGateway(
        GitHttpBackend(config.repos_dir),
        registry,
        users,
        notifier=notifier,
        policy=AccessPolicy(config.strict_operation_kind),
        notify_delay=config.notify_delay,
    )
    return PrefixMount(gateway, config.mount_prefix)
