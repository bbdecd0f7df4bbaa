"""Remote URL helpers: call-scoped credential injection and redaction."""

from __future__ import annotations

from urllib.parse import quote, urlsplit, urlunsplit

from pygit_mirror.models import Credential

_HTTP_SCHEMES = ('http', 'https')


def is_http_url(url: str) -> bool:
    """Return True for http(s) remotes, the only ones that take URL credentials."""
    return urlsplit(url).scheme.lower() in _HTTP_SCHEMES


def strip_credentials(url: str) -> str:
    """Drop any userinfo from an http(s) URL. Other URLs are returned unchanged."""
    if not is_http_url(url):
        return url
    parts = urlsplit(url)
    if '@' not in parts.netloc:
        return url
    host = parts.netloc.rsplit('@', 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def sanitize_for_log(url: str | None) -> str:
    """Mask embedded credentials so a URL can be logged."""
    if not url:
        return ''
    if '@' in url and '://' in url:
        scheme, rest = url.split('://', 1)
        if '@' in rest.split('/', 1)[0]:
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url


def build_authenticated_url(base_url: str, credential: Credential | None) -> str:
    """Return an ephemeral URL carrying the credential.

    https://host/owner/repo.git -> https://x-access-token:<token>@host/owner/repo.git
    The result must only be handed to a single git subprocess and discarded.
    """
    clean = strip_credentials(base_url)
    if credential is None or not credential.token or not is_http_url(clean):
        return clean
    parts = urlsplit(clean)
    userinfo = f"{quote(credential.username, safe='')}:{quote(credential.token, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{parts.netloc}", parts.path, parts.query, parts.fragment))


def credential_env(base_url: str, credential: Credential | None) -> dict[str, str]:
    """Environment that makes git rewrite base_url to its authenticated form.

    The rewrite is an ``insteadOf`` rule passed through GIT_CONFIG_COUNT, so
    it lives only in the environment of the one git process that gets it.
    """
    clean = strip_credentials(base_url)
    authenticated = build_authenticated_url(clean, credential)
    if authenticated == clean:
        return {}
    return {
        'GIT_CONFIG_COUNT': '1',
        'GIT_CONFIG_KEY_0': f"url.{authenticated}.insteadOf",
        'GIT_CONFIG_VALUE_0': clean,
    }


def redact(text: str, *secrets: str | None) -> str:
    """Replace every occurrence of the given secrets (raw and URL-quoted) with ***."""
    for secret in secrets:
        if not secret:
            continue
        for variant in {secret, quote(secret, safe='')}:
            text = text.replace(variant, '***')
    return text


def host_of(url: str) -> str | None:
    """Hostname of an http(s) or scp-style (git@host:owner/repo) URL."""
    if '://' in url:
        return urlsplit(url).hostname
    if '@' in url and ':' in url:
        return url.split('@', 1)[1].split(':', 1)[0] or None
    return None
