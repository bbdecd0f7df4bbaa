"""Smart-HTTP transport: a WSGI bridge to ``git http-backend``."""

from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path
from typing import Iterable

from git import Git
from git.exc import GitCommandNotFound

CHUNK_SIZE = 64 * 1024

# Request environ keys passed through to the CGI process unchanged.
_CGI_PASSTHROUGH = (
    'REQUEST_METHOD',
    'QUERY_STRING',
    'CONTENT_TYPE',
    'CONTENT_LENGTH',
    'REMOTE_ADDR',
    'REMOTE_USER',
    'SERVER_NAME',
    'SERVER_PORT',
    'SERVER_PROTOCOL',
    'HTTP_CONTENT_ENCODING',
    'HTTP_GIT_PROTOCOL',
)


def parse_repo_path(path_info: str) -> tuple[str | None, str]:
    """Split '/<id>[.git]/<rest>' into (id, '/<rest>').

    Returns (None, path_info) when there is no repository segment.
    """
    stripped = path_info.lstrip('/')
    if not stripped:
        return None, path_info
    head, sep, rest = stripped.partition('/')
    if head.endswith('.git'):
        head = head[:-4]
    if not head or head in ('.', '..'):
        return None, path_info
    return head, f"/{rest}" if sep else '/'


class GitHttpBackend:
    """Serves repositories under project_root by delegating to git's own CGI.

    The request body is streamed into the backend only when this app is
    called, so anything wrapping it decides before a byte is consumed.
    """

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)
        self._logger = logging.getLogger(__name__)

    def cgi_environ(self, environ: dict) -> dict[str, str]:
        """CGI variables for one request, with the repository path normalised."""
        repo_id, rest = parse_repo_path(environ.get('PATH_INFO', ''))
        env = {key: str(environ[key]) for key in _CGI_PASSTHROUGH if environ.get(key)}
        env.update({
            'GIT_PROJECT_ROOT': str(self.project_root),
            'GIT_HTTP_EXPORT_ALL': '1',
            'PATH_INFO': f"/{repo_id}{rest}" if repo_id else environ.get('PATH_INFO', ''),
            'GATEWAY_INTERFACE': 'CGI/1.1',
        })
        if 'HTTP_GIT_PROTOCOL' in env:
            env['GIT_PROTOCOL'] = env['HTTP_GIT_PROTOCOL']
        return env

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        try:
            proc = Git(str(self.project_root)).execute(
                ['git', 'http-backend'],
                as_process=True,
                istream=subprocess.PIPE,
                env=self.cgi_environ(environ),
            )
        except GitCommandNotFound as e:
            self._logger.error("git http-backend unavailable: %s", e)
            start_response('500 Internal Server Error', [('Content-Type', 'text/plain')])
            return [b'git backend unavailable\n']

        feeder = threading.Thread(
            target=self._feed_body, args=(environ, proc.stdin), name='http-backend-stdin', daemon=True
        )
        drainer = threading.Thread(
            target=self._drain_stderr, args=(proc.stderr,), name='http-backend-stderr', daemon=True
        )
        feeder.start()
        drainer.start()

        status, headers = self._read_headers(proc.stdout)
        start_response(status, headers)
        return _BackendBody(proc, [feeder, drainer], self._logger)

    def _feed_body(self, environ, stdin) -> None:
        stream = environ.get('wsgi.input')
        try:
            length = environ.get('CONTENT_LENGTH')
            remaining = int(length) if length else None
            while stream is not None and (remaining is None or remaining > 0):
                chunk = stream.read(CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                stdin.write(chunk)
                if remaining is not None:
                    remaining -= len(chunk)
        except (OSError, ValueError) as e:
            # Backend exited early; its status line reports why.
            self._logger.debug("Request body not fully consumed: %s", e)
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    def _drain_stderr(self, stderr) -> None:
        for line in iter(stderr.readline, b''):
            self._logger.warning("http-backend: %s", line.decode('utf-8', 'replace').rstrip())

    @staticmethod
    def _read_headers(stdout) -> tuple[str, list[tuple[str, str]]]:
        status = '200 OK'
        headers = []
        for raw in iter(stdout.readline, b''):
            line = raw.decode('latin-1').rstrip('\r\n')
            if not line:
                break
            name, _, value = line.partition(':')
            if name.lower() == 'status':
                status = value.strip()
            else:
                headers.append((name.strip(), value.strip()))
        return status, headers


class _BackendBody:
    """Response iterable streaming backend stdout; close() reaps the process."""

    def __init__(self, proc, threads: list[threading.Thread], logger: logging.Logger):
        self._proc = proc
        self._threads = threads
        self._logger = logger

    def __iter__(self):
        return iter(lambda: self._proc.stdout.read1(CHUNK_SIZE), b'')

    def close(self) -> None:
        popen = self._proc.proc
        if popen is None:
            return
        popen.stdout.close()
        status = popen.wait()
        for thread in self._threads:
            thread.join(timeout=5)
        if status != 0:
            self._logger.warning("git http-backend exited with status %d", status)
