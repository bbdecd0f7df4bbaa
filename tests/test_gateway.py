"""Tests for the access-control gateway, independent of git."""

import base64
import io
import threading
from datetime import datetime, timedelta

import pytest

from pygit_mirror import AccessToken, Capability, OperationKind, RepositoryRef, User, Visibility
from pygit_mirror.errors import AuthenticationFailure, AuthorizationFailure, RegistryError, RepositoryNotFound
from pygit_mirror.gateway import (
    AccessPolicy,
    Authenticator,
    GitGateway,
    PrefixMount,
    classify_operation,
    parse_basic_auth,
)
from pygit_mirror.stores import check_password, hash_password

ADMIN = User(id="u-admin", username="root", password_hash=hash_password("rootpw"),
             capabilities=frozenset({Capability.ADMIN}))
DEV = User(id="u-dev", username="dev", password_hash=hash_password("devpw"), email="dev@example.com")


class MemoryUsers:
    def __init__(self, users, tokens=()):
        self.users = {u.id: u for u in users}
        self.tokens = {t.id: t for t in tokens}

    def get_user(self, user_id):
        try:
            return self.users[user_id]
        except KeyError:
            raise RegistryError(f"unknown user {user_id}") from None

    def find_by_username(self, username):
        for user in self.users.values():
            if username in (user.username, user.email):
                return user
        raise RegistryError(f"unknown user {username}")

    def verify_password(self, user, password):
        return check_password(password, user.password_hash)

    def get_token(self, token_id):
        try:
            return self.tokens[token_id]
        except KeyError:
            raise RegistryError(f"unknown token {token_id}") from None


class MemoryRegistry:
    def __init__(self, *repos):
        self.repos = {r.id: r for r in repos}
        self.broken = False

    def get(self, repo_id):
        if self.broken:
            raise RegistryError("registry unavailable")
        try:
            return self.repos[repo_id]
        except KeyError:
            raise RepositoryNotFound(repo_id) from None


class TrackingInput(io.BytesIO):
    def __init__(self, data=b"0000"):
        super().__init__(data)
        self.reads = 0

    def read(self, *args):
        self.reads += 1
        return super().read(*args)


class Downstream:
    """Records whether the wrapped app was reached."""

    def __init__(self):
        self.environ = None
        self.closed = False
        self.status = "200 OK"

    def __call__(self, environ, start_response):
        self.environ = environ
        start_response(self.status, [("Content-Type", "application/x-git-receive-pack-result")])
        downstream = self

        class Body(list):
            def close(self):
                downstream.closed = True

        return Body([b"ok"])


class RecordingNotifier:
    def __init__(self):
        self.repos = []
        self.called = threading.Event()

    def update_repository(self, repo_id):
        self.repos.append(repo_id)
        self.called.set()


def basic(username, password):
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


def environ(path, method="GET", query="", auth=None):
    env = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "wsgi.input": TrackingInput(),
    }
    if auth is not None:
        env["HTTP_AUTHORIZATION"] = auth
    return env


class Call:
    def __init__(self, app, env):
        self.headers = []
        self.env = env
        body = app(env, self._start)
        self.body = b"".join(body)
        if hasattr(body, "close"):
            body.close()

    def _start(self, status, headers):
        self.status = status
        self.headers = headers

    @property
    def code(self):
        return int(self.status.split()[0])


@pytest.fixture
def gateway_parts():
    downstream = Downstream()
    notifier = RecordingNotifier()
    token = AccessToken(id="tok-123", user_id=ADMIN.id, secret="s3cr3t")
    expired = AccessToken(id="tok-old", user_id=ADMIN.id, secret="old",
                          expires_at=datetime.now() - timedelta(days=1))
    users = MemoryUsers([ADMIN, DEV], [token, expired])
    registry = MemoryRegistry(
        RepositoryRef(id="private-repo"),
        RepositoryRef(id="public-repo", visibility=Visibility.PUBLIC),
    )
    gateway = GitGateway(downstream, registry, users, notifier=notifier, notify_delay=0)
    return gateway, downstream, notifier, registry


class TestClassifyOperation:
    @pytest.mark.parametrize("path,query,kind", [
        ("/r/info/refs", "service=git-receive-pack", OperationKind.PUSH),
        ("/r/git-receive-pack", "", OperationKind.PUSH),
        ("/r/info/refs", "service=git-upload-pack", OperationKind.PULL),
        ("/r/git-upload-pack", "", OperationKind.PULL),
        ("/r/HEAD", "", OperationKind.UNKNOWN),
        ("/r/objects/info/packs", "", OperationKind.UNKNOWN),
    ])
    def test_classify(self, path, query, kind):
        assert classify_operation(path, query) is kind


class TestParseBasicAuth:
    def test_valid(self):
        assert parse_basic_auth(basic("alice", "pa:ss")) == ("alice", "pa:ss")

    @pytest.mark.parametrize("header", [
        None,
        "",
        "Bearer abc",
        "Basic !!!not-base64",
        basic("", "pw"),
        basic("alice", ""),
        "Basic " + base64.b64encode(b"no-colon").decode(),
    ])
    def test_rejected(self, header):
        with pytest.raises(AuthenticationFailure):
            parse_basic_auth(header)


class TestAuthenticator:
    def test_token_takes_precedence(self, gateway_parts):
        gateway = gateway_parts[0]
        assert gateway.authenticator.authenticate("tok-123", "s3cr3t") is ADMIN

    def test_password_by_username_or_email(self, gateway_parts):
        auth = gateway_parts[0].authenticator
        assert auth.authenticate("dev", "devpw") is DEV
        assert auth.authenticate("dev@example.com", "devpw") is DEV

    @pytest.mark.parametrize("username,secret", [
        ("tok-123", "wrong"),
        ("tok-old", "old"),
        ("dev", "rootpw"),
        ("nobody", "x"),
        ("", ""),
    ])
    def test_failures(self, gateway_parts, username, secret):
        with pytest.raises(AuthenticationFailure):
            gateway_parts[0].authenticator.authenticate(username, secret)

    def test_token_for_deleted_user(self):
        users = MemoryUsers([], [AccessToken(id="tok-x", user_id="gone", secret="s")])
        with pytest.raises(AuthenticationFailure):
            Authenticator(users).authenticate("tok-x", "s")


class TestAccessPolicy:
    def test_matrix(self):
        policy = AccessPolicy()
        public = RepositoryRef(id="p", visibility=Visibility.PUBLIC)
        private = RepositoryRef(id="q")
        policy.authorize(ADMIN, private, OperationKind.PUSH)
        policy.authorize(ADMIN, private, OperationKind.PULL)
        policy.authorize(DEV, public, OperationKind.PULL)
        for repo, op in [(public, OperationKind.PUSH), (private, OperationKind.PULL), (public, OperationKind.UNKNOWN)]:
            with pytest.raises(AuthorizationFailure):
                policy.authorize(DEV, repo, op)

    def test_narrow_capabilities(self):
        policy = AccessPolicy()
        private = RepositoryRef(id="q")
        pusher = User(id="u-push", username="pusher", capabilities=frozenset({Capability.PUSH}))
        reader = User(id="u-read", username="reader", capabilities=frozenset({Capability.READ_PRIVATE}))
        policy.authorize(pusher, private, OperationKind.PUSH)
        policy.authorize(reader, private, OperationKind.PULL)
        with pytest.raises(AuthorizationFailure):
            policy.authorize(pusher, private, OperationKind.PULL)
        with pytest.raises(AuthorizationFailure):
            policy.authorize(reader, private, OperationKind.PUSH)

    def test_permissive_unknown_is_a_read(self):
        policy = AccessPolicy(strict_operation_kind=False)
        policy.authorize(DEV, RepositoryRef(id="p", visibility=Visibility.PUBLIC), OperationKind.UNKNOWN)


class TestGitGateway:
    def test_token_push_to_private_repo(self, gateway_parts):
        gateway, downstream, notifier, _ = gateway_parts
        call = Call(gateway, environ("/private-repo.git/git-receive-pack", "POST", auth=basic("tok-123", "s3cr3t")))
        assert call.code == 200
        assert downstream.environ["REMOTE_USER"] == "root"
        assert downstream.closed
        assert notifier.called.wait(5)
        assert notifier.repos == ["private-repo"]

    def test_push_advertisement_does_not_notify(self, gateway_parts):
        gateway, downstream, notifier, _ = gateway_parts
        call = Call(gateway, environ("/private-repo/info/refs", query="service=git-receive-pack",
                                     auth=basic("tok-123", "s3cr3t")))
        assert call.code == 200
        assert not notifier.called.wait(0.2)

    def test_failed_push_does_not_notify(self, gateway_parts):
        gateway, downstream, notifier, _ = gateway_parts
        downstream.status = "500 Internal Server Error"
        call = Call(gateway, environ("/private-repo/git-receive-pack", "POST", auth=basic("tok-123", "s3cr3t")))
        assert call.code == 500
        assert downstream.closed
        assert not notifier.called.wait(0.2)

    def test_pull_does_not_notify(self, gateway_parts):
        gateway, _, notifier, _ = gateway_parts
        Call(gateway, environ("/public-repo/git-upload-pack", "POST", auth=basic("dev", "devpw")))
        assert not notifier.called.wait(0.2)

    def test_non_admin_push_denied_without_reading_body(self, gateway_parts):
        gateway, downstream, notifier, _ = gateway_parts
        env = environ("/public-repo/git-receive-pack", "POST", auth=basic("dev", "devpw"))
        call = Call(gateway, env)
        assert call.code == 401
        assert ("WWW-Authenticate", 'Basic realm="pygit-mirror"') in call.headers
        assert downstream.environ is None
        assert env["wsgi.input"].reads == 0
        assert not notifier.repos

    def test_private_pull_requires_admin(self, gateway_parts):
        gateway, downstream, _, _ = gateway_parts
        denied = Call(gateway, environ("/private-repo/info/refs", query="service=git-upload-pack",
                                       auth=basic("dev", "devpw")))
        allowed = Call(gateway, environ("/public-repo/info/refs", query="service=git-upload-pack",
                                        auth=basic("dev", "devpw")))
        assert denied.code == 401
        assert allowed.code == 200

    def test_denials_are_indistinguishable(self, gateway_parts):
        gateway = gateway_parts[0]
        calls = [
            Call(gateway, environ("/public-repo/git-upload-pack", "POST")),
            Call(gateway, environ("/public-repo/git-upload-pack", "POST", auth=basic("dev", "nope"))),
            Call(gateway, environ("/missing/git-upload-pack", "POST", auth=basic("tok-123", "s3cr3t"))),
            Call(gateway, environ("/public-repo/git-receive-pack", "POST", auth=basic("dev", "devpw"))),
            Call(gateway, environ("/public-repo/git-upload-pack", "POST", auth=basic("tok-old", "old"))),
        ]
        assert {(c.status, c.body, tuple(c.headers)) for c in calls} == {
            (calls[0].status, calls[0].body, tuple(calls[0].headers))
        }

    def test_unknown_operation_strict_and_permissive(self, gateway_parts):
        gateway, downstream, _, registry = gateway_parts
        assert Call(gateway, environ("/public-repo/HEAD", auth=basic("dev", "devpw"))).code == 401
        permissive = GitGateway(downstream, registry, gateway.authenticator.users,
                                policy=AccessPolicy(strict_operation_kind=False))
        assert Call(permissive, environ("/public-repo/HEAD", auth=basic("dev", "devpw"))).code == 200

    def test_registry_failure_is_500(self, gateway_parts):
        gateway, downstream, _, registry = gateway_parts
        registry.broken = True
        call = Call(gateway, environ("/public-repo/git-upload-pack", "POST", auth=basic("dev", "devpw")))
        assert call.code == 500
        assert downstream.environ is None

    def test_no_repository_segment(self, gateway_parts):
        assert Call(gateway_parts[0], environ("/")).code == 404


class TestPrefixMount:
    def test_strips_prefix(self, gateway_parts):
        gateway, downstream, _, _ = gateway_parts
        app = PrefixMount(gateway, "/repo/")
        call = Call(app, environ("/repo/public-repo.git/info/refs", query="service=git-upload-pack",
                                 auth=basic("dev", "devpw")))
        assert call.code == 200
        assert downstream.environ["PATH_INFO"] == "/public-repo.git/info/refs"
        assert downstream.environ["SCRIPT_NAME"] == "/repo"

    @pytest.mark.parametrize("path", ["/other/public-repo/info/refs", "/repository/x", "/"])
    def test_outside_prefix(self, gateway_parts, path):
        assert Call(PrefixMount(gateway_parts[0], "/repo/"), environ(path)).code == 404
