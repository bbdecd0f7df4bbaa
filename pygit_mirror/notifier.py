"""Workspace-refresh collaborators notified after a successful push."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading

from pygit_mirror.models import MirrorConfig
from pygit_mirror.protocols import WorkspaceNotifier

logger = logging.getLogger(__name__)


class NullWorkspaceNotifier:
    """Notifier that does nothing."""

    def update_repository(self, repo_id: str) -> None:
        pass


class CommandWorkspaceNotifier:
    """Runs a configured command, e.g. ``make-workspace {repo_id} {repo_path}``."""

    def __init__(self, command: str, config: MirrorConfig, timeout: float = 60.0):
        self.command = command
        self.config = config
        self.timeout = timeout

    def argv(self, repo_id: str) -> list[str]:
        repo_path = str(self.config.repo_path(repo_id))
        return [part.format(repo_id=repo_id, repo_path=repo_path) for part in shlex.split(self.command)]

    def update_repository(self, repo_id: str) -> None:
        """Run the command; a non-zero exit raises CalledProcessError."""
        argv = self.argv(repo_id)
        logger.debug("Refreshing workspace for %s: %s", repo_id, argv)
        subprocess.run(argv, check=True, capture_output=True, timeout=self.timeout)


def build_notifier(config: MirrorConfig) -> WorkspaceNotifier:
    if config.refresh_command:
        return CommandWorkspaceNotifier(config.refresh_command, config)
    return NullWorkspaceNotifier()


def schedule_notification(notifier: WorkspaceNotifier, repo_id: str, delay: float) -> threading.Timer:
    """Notify after delay seconds on a daemon thread. Failures are only logged."""

    def _notify() -> None:
        try:
            notifier.update_repository(repo_id)
        except Exception:
            logger.exception("Workspace refresh for %s failed", repo_id)

    timer = threading.Timer(delay, _notify)
    timer.daemon = True
    timer.name = f"notify-{repo_id}"
    timer.start()
    return timer
