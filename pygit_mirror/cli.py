"""CLI entry point: main() function and subcommand handlers."""

from __future__ import annotations

import json
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from waitress import serve

from pygit_mirror.config import build_config, create_argument_parser, load_config_file
from pygit_mirror.credentials import CredentialResolver, FallbackSecretStore, FileSecretStore
from pygit_mirror.engine import SyncEngine
from pygit_mirror.errors import MirrorError, RegistryError
from pygit_mirror.gateway import build_app
from pygit_mirror.integration import IntegrationService
from pygit_mirror.models import Capability, MirrorConfig, RepositoryRef, SyncDirection, Visibility
from pygit_mirror.notifier import build_notifier
from pygit_mirror.output import ConsoleOutputHandler, NullOutputHandler
from pygit_mirror.process import init_bare
from pygit_mirror.protocols import OutputHandler
from pygit_mirror.reporter import SummaryReporter
from pygit_mirror.scheduler import SyncScheduler
from pygit_mirror.stores import JsonRepositoryRegistry, JsonUserStore, is_valid_repo_id


@dataclass
class Services:
    """Everything a command needs, wired once per process."""
    config: MirrorConfig
    registry: JsonRepositoryRegistry
    users: JsonUserStore
    credentials: CredentialResolver
    engine: SyncEngine
    integration: IntegrationService

    @classmethod
    def build(cls, config: MirrorConfig) -> Services:
        registry = JsonRepositoryRegistry(config.registry_path)
        users = JsonUserStore(config.users_path)
        credentials = CredentialResolver(FallbackSecretStore(FileSecretStore(config.secrets_path)))
        engine = SyncEngine(config, registry, credentials)
        return cls(config, registry, users, credentials, engine, IntegrationService(engine, registry, credentials))

    def user_id(self, name_or_id: str | None) -> str | None:
        """Accept either a username or a user ID."""
        if not name_or_id:
            return None
        try:
            return self.users.find_by_username(name_or_id).id
        except MirrorError:
            return name_or_id


def _emit(config: MirrorConfig, output: OutputHandler, payload: dict, message: str) -> None:
    if config.json_output:
        print(json.dumps(payload, indent=2))
    else:
        output.success(message)


def cmd_serve(services: Services, args, output: OutputHandler) -> int:
    config = services.config
    config.repos_dir.mkdir(parents=True, exist_ok=True)
    app = build_app(config, services.registry, services.users, build_notifier(config))
    stop = threading.Event()
    if config.sync_interval > 0:
        scheduler = SyncScheduler(services.engine, NullOutputHandler(), show_progress=False)
        threading.Thread(target=scheduler.run_forever, args=(stop,), name='auto-sync', daemon=True).start()
    output.info(f"Serving {config.repos_dir} at http://{config.host}:{config.port}{config.mount_prefix}")
    try:
        serve(app, host=config.host, port=config.port)
    finally:
        stop.set()
    return 0


def cmd_repo_add(services: Services, args, output: OutputHandler) -> int:
    config = services.config
    repo = RepositoryRef(
        id=args.repo_id,
        visibility=Visibility.PUBLIC if args.public else Visibility.PRIVATE,
        owner_id=services.user_id(args.owner),
    )
    if not is_valid_repo_id(repo.id):
        raise RegistryError(f"invalid repository id: {repo.id!r}")
    init_bare(config.repo_path(repo.id), config.default_branch)
    services.registry.add(repo)
    _emit(config, output, repo.to_dict(), f"✓ Created {repo.visibility.value} repository {repo.id}")
    return 0


def cmd_user_add(services: Services, args, output: OutputHandler) -> int:
    capabilities = {Capability(value) for value in args.grant}
    if args.admin:
        capabilities.add(Capability.ADMIN)
    user = services.users.add_user(args.username, args.password, capabilities, args.email)
    payload = {'id': user.id, 'username': user.username, 'capabilities': sorted(c.value for c in capabilities)}
    _emit(services.config, output, payload, f"✓ Created user {user.username} ({user.id})")
    return 0


def cmd_token_create(services: Services, args, output: OutputHandler) -> int:
    user = services.users.find_by_username(args.username)
    token = services.users.create_token(user.id, args.days)
    expires = token.expires_at.isoformat() if token.expires_at else None
    if services.config.json_output:
        print(json.dumps({'id': token.id, 'secret': token.secret, 'expires_at': expires}, indent=2))
    else:
        output.success(f"✓ Token for {user.username}")
        output.info(f"username: {token.id}", indent=1)
        output.info(f"password: {token.secret}", indent=1)
        if expires:
            output.info(f"expires:  {expires}", indent=1)
    return 0


def cmd_connect(services: Services, args, output: OutputHandler) -> int:
    repo = services.integration.connect(
        args.repo_id,
        args.url,
        token=args.token,
        direction=SyncDirection.parse(args.direction),
        auto_sync=args.auto_sync,
        owner_id=services.user_id(args.owner),
    )
    _emit(services.config, output, repo.to_dict(), f"✓ Connected {repo.id} to {repo.remote_url}")
    return 0


def cmd_disconnect(services: Services, args, output: OutputHandler) -> int:
    repo = services.integration.disconnect(args.repo_id)
    _emit(services.config, output, repo.to_dict(), f"✓ Disconnected {repo.id}")
    return 0


def cmd_configure_remote(services: Services, args, output: OutputHandler) -> int:
    repo = services.registry.get(args.repo_id)
    repo = services.engine.configure_remote(repo, services.integration.validate_url(args.url))
    _emit(services.config, output, repo.to_dict(), f"✓ Remote for {repo.id} set to {repo.remote_url}")
    return 0


def _transfer(services: Services, args, output: OutputHandler, push: bool) -> int:
    repo = services.registry.get(args.repo_id)
    credential = services.credentials.resolve(repo, services.user_id(args.user))
    if push:
        repo = services.engine.push_to_remote(repo, args.branch, credential)
    else:
        repo = services.engine.pull_from_remote(repo, args.branch, credential)
    verb = 'Pushed' if push else 'Pulled'
    _emit(services.config, output, repo.to_dict(), f"✓ {verb} {repo.id}")
    return 0


def cmd_push(services: Services, args, output: OutputHandler) -> int:
    return _transfer(services, args, output, push=True)


def cmd_pull(services: Services, args, output: OutputHandler) -> int:
    return _transfer(services, args, output, push=False)


def cmd_sync(services: Services, args, output: OutputHandler) -> int:
    outcome = services.engine.sync_repository(args.repo_id, services.user_id(args.user))
    if services.config.json_output:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        SummaryReporter(output).print_outcome(outcome)
    return 0 if outcome.succeeded else 1


def cmd_status(services: Services, args, output: OutputHandler) -> int:
    repo = services.registry.get(args.repo_id)
    status = services.engine.status.get_sync_status(repo)
    if services.config.json_output:
        ahead, behind, state = status.as_tuple()
        print(json.dumps({'repo': repo.id, 'branch': status.branch, 'ahead': ahead,
                          'behind': behind, 'status': state, 'error': status.error}, indent=2))
    else:
        SummaryReporter(output).print_status(repo.id, status)
    return 0


def cmd_sync_all(services: Services, args, output: OutputHandler) -> int:
    config = services.config
    scheduler = SyncScheduler(services.engine, output, show_progress=not config.json_output)
    if config.sync_interval > 0:
        scheduler.run_forever(threading.Event())
        return 0
    report = scheduler.sync_all()
    if config.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        SummaryReporter(output).print_summary(report)
    return 1 if report.has_failures() else 0


def cmd_account_connect(services: Services, args, output: OutputHandler) -> int:
    user_id = services.user_id(args.user)
    services.integration.connect_account(user_id, args.token, args.github_username)
    _emit(services.config, output, {'user_id': user_id, 'connected': True}, f"✓ GitHub account linked for {args.user}")
    return 0


def cmd_account_disconnect(services: Services, args, output: OutputHandler) -> int:
    user_id = services.user_id(args.user)
    services.integration.disconnect_account(user_id)
    _emit(services.config, output, {'user_id': user_id, 'connected': False}, f"✓ GitHub account unlinked for {args.user}")
    return 0


def cmd_import(services: Services, args, output: OutputHandler) -> int:
    repo = services.integration.import_repository(
        args.repo_id,
        args.url,
        token=args.token,
        visibility=Visibility.PUBLIC if args.public else Visibility.PRIVATE,
        owner_id=services.user_id(args.owner),
    )
    _emit(services.config, output, repo.to_dict(), f"✓ Imported {repo.id} from {repo.remote_url}")
    return 0


COMMANDS = {
    'serve': cmd_serve,
    'repo-add': cmd_repo_add,
    'user-add': cmd_user_add,
    'token-create': cmd_token_create,
    'connect': cmd_connect,
    'disconnect': cmd_disconnect,
    'configure-remote': cmd_configure_remote,
    'push': cmd_push,
    'pull': cmd_pull,
    'sync': cmd_sync,
    'status': cmd_status,
    'sync-all': cmd_sync_all,
    'account-connect': cmd_account_connect,
    'account-disconnect': cmd_account_disconnect,
    'import': cmd_import,
}


def main(argv: list[str] | None = None):
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    data_dir = Path(args.data_dir).expanduser() if args.data_dir else MirrorConfig().data_dir
    config = build_config(args, load_config_file(data_dir, args.config))

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    output = NullOutputHandler() if config.json_output else ConsoleOutputHandler(verbose=config.verbose)

    try:
        services = Services.build(config)
        sys.exit(COMMANDS[args.command](services, args, output))

    except KeyboardInterrupt:
        if not config.json_output:
            output.warning("\n\nInterrupted by user")
        sys.exit(130)
    except MirrorError as e:
        if config.json_output:
            print(json.dumps({'error': str(e)}, indent=2))
        else:
            output.error(f"Error: {getattr(e, 'diagnostic', e)}")
        sys.exit(1)
    except Exception as e:
        if config.json_output:
            print(json.dumps({'error': str(e)}, indent=2))
        else:
            output.error(f"\nUnexpected error: {e}")
            if config.verbose:
                import traceback
                traceback.print_exc()
        sys.exit(1)
