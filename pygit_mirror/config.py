"""Configuration: argument parser, config file loader, and MirrorConfig assembly."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Any

from pygit_mirror.models import Capability, MirrorConfig, SyncDirection

try:
    import tomllib
except ModuleNotFoundError:
    try:
        import tomli as tomllib  # type: ignore[no-redef]
    except ImportError:
        tomllib = None  # type: ignore[assignment]

CONFIG_FILENAME = '.pygit-mirror.toml'

# Global flags that override config file values when given on the command line.
_CLI_OVERRIDES = ('data_dir', 'verbose', 'json_output', 'host', 'port', 'parallel', 'max_workers', 'sync_interval')


def create_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with all pygit-mirror subcommands."""
    # Lazy import to avoid circular dependency with __init__.py
    from pygit_mirror import __version__

    parser = argparse.ArgumentParser(
        prog='pygit-mirror',
        description="Git smart-HTTP gateway with GitHub mirroring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s repo-add demo --public
  %(prog)s user-add alice --password s3cret --admin
  %(prog)s connect demo https://github.com/alice/demo.git --token ghp_... --direction both
  %(prog)s serve --port 8080
  %(prog)s status demo
        """
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--data-dir', default=None,
                        help='State directory (default: ~/.pygit-mirror)')
    parser.add_argument('--config', type=str, default=None,
                        help=f'Path to config file (default: {CONFIG_FILENAME} in data dir or home)')
    parser.add_argument('--verbose', action='store_true', default=None,
                        help='Verbose output')
    parser.add_argument('--json', dest='json_output', action='store_true', default=None,
                        help='Output results as JSON (suppresses normal output)')

    sub = parser.add_subparsers(dest='command', required=True, metavar='COMMAND')

    serve = sub.add_parser('serve', help='Serve repositories over smart HTTP')
    serve.add_argument('--host', default=None, help='Bind address (default: 127.0.0.1)')
    serve.add_argument('--port', type=int, default=None, help='Port (default: 8080)')
    serve.add_argument('--interval', dest='sync_interval', type=float, default=None,
                       help='Also auto-sync every N seconds while serving')

    repo_add = sub.add_parser('repo-add', help='Create and register a bare repository')
    repo_add.add_argument('repo_id')
    repo_add.add_argument('--public', action='store_true', help='Readable by any authenticated user')
    repo_add.add_argument('--owner', default=None, help='Owning user (username or ID)')

    user_add = sub.add_parser('user-add', help='Create a user')
    user_add.add_argument('username')
    user_add.add_argument('--password', required=True)
    user_add.add_argument('--email', default='')
    user_add.add_argument('--admin', action='store_true', help='Grant the admin capability')
    user_add.add_argument('--grant', action='append', default=[],
                          choices=[c.value for c in Capability if c is not Capability.ADMIN],
                          help='Grant a narrower capability (repeatable)')

    token = sub.add_parser('token-create', help='Issue a personal access token')
    token.add_argument('username')
    token.add_argument('--days', type=int, default=None, help='Expire after N days (default: never)')

    connect = sub.add_parser('connect', help='Link a repository to GitHub')
    connect.add_argument('repo_id')
    connect.add_argument('url')
    connect.add_argument('--token', default=None, help='Repository-scoped GitHub token')
    connect.add_argument('--direction', choices=[d.value for d in SyncDirection], default=SyncDirection.PUSH.value)
    connect.add_argument('--auto-sync', action='store_true')
    connect.add_argument('--owner', default=None, help='User whose GitHub token is the fallback')

    disconnect = sub.add_parser('disconnect', help='Unlink a repository from GitHub')
    disconnect.add_argument('repo_id')

    remote = sub.add_parser('configure-remote', help='Add or update the github remote only')
    remote.add_argument('repo_id')
    remote.add_argument('url')

    for name, help_text in (('push', 'Push a branch to GitHub'), ('pull', 'Pull a branch from GitHub')):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument('repo_id')
        cmd.add_argument('--branch', default=None, help='Branch (default: HEAD branch)')
        cmd.add_argument('--user', default=None, help='Acting user for credential lookup')

    sync = sub.add_parser('sync', help='Sync a repository following its direction')
    sync.add_argument('repo_id')
    sync.add_argument('--user', default=None, help='Acting user for credential lookup')

    status = sub.add_parser('status', help='Show ahead/behind against GitHub')
    status.add_argument('repo_id')

    sync_all = sub.add_parser('sync-all', help='Sync every auto-sync repository')
    sync_all.add_argument('--parallel', action='store_true', default=None)
    sync_all.add_argument('--max-workers', type=int, default=None,
                          help='Max parallel workers (default: min(cpu_count, 8))')
    sync_all.add_argument('--interval', dest='sync_interval', type=float, default=None,
                          help='Repeat every N seconds until interrupted')

    account = sub.add_parser('account-connect', help="Store a user's GitHub token")
    account.add_argument('user')
    account.add_argument('token')
    account.add_argument('--github-username', default='')

    account_off = sub.add_parser('account-disconnect', help="Delete a user's GitHub token")
    account_off.add_argument('user')

    imp = sub.add_parser('import', help='Clone a GitHub repository as a new hosted repository')
    imp.add_argument('repo_id')
    imp.add_argument('url')
    imp.add_argument('--token', default=None)
    imp.add_argument('--public', action='store_true')
    imp.add_argument('--owner', default=None)

    return parser


def load_config_file(data_dir: Path, config_path: str | None = None) -> dict[str, Any]:
    """Load .pygit-mirror.toml from explicit path, data dir, or home dir.

    Returns empty dict if not found or tomllib is unavailable.
    """
    candidates = [Path(config_path)] if config_path else [data_dir / CONFIG_FILENAME, Path.home() / CONFIG_FILENAME]
    for path in candidates:
        if path.is_file():
            if tomllib is None:
                print(f"Warning: Found {path} but tomllib/tomli not available (Python 3.11+ or pip install tomli). Ignoring.")
                return {}
            try:
                with open(path, 'rb') as f:
                    return tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                print(f"Warning: Failed to parse {path}: {e}")
                return {}
    if config_path:
        print(f"Warning: Config file '{config_path}' not found. Ignoring.")
    return {}


def build_config(args: argparse.Namespace, file_config: dict[str, Any]) -> MirrorConfig:
    """Merge defaults, config file values and explicit CLI flags, in that order."""
    known = {f.name for f in dataclasses.fields(MirrorConfig)}
    values: dict[str, Any] = {}
    for key, value in file_config.items():
        if key in known:
            values[key] = value
        else:
            print(f"Warning: Unknown config key '{key}'. Ignoring.")

    for dest in _CLI_OVERRIDES:
        value = getattr(args, dest, None)
        if value is not None:
            values[dest] = value

    if 'data_dir' in values:
        values['data_dir'] = Path(values['data_dir']).expanduser()
    if 'allowed_remote_hosts' in values:
        values['allowed_remote_hosts'] = list(values['allowed_remote_hosts'])
    return MirrorConfig(**values)
