"""SyncScheduler: runs auto-sync across all registered repositories."""

from __future__ import annotations

import concurrent.futures
import logging
import threading

from tqdm import tqdm

from pygit_mirror.engine import SyncEngine
from pygit_mirror.errors import SyncInProgress
from pygit_mirror.models import RepositoryRef, SyncOutcome, SyncReport, SyncState
from pygit_mirror.output import BufferedOutputHandler
from pygit_mirror.protocols import OutputHandler, SyncHook


class SyncScheduler:
    """Syncs every auto-sync repository, sequentially or on a thread pool.

    Constructed explicitly and handed its engine; it keeps no global state.
    """

    def __init__(
        self,
        engine: SyncEngine,
        output: OutputHandler,
        hooks: list[SyncHook] = None,
        show_progress: bool = True,
    ):
        """Create a scheduler over engine with the given output handler and optional hooks."""
        self.engine = engine
        self.config = engine.config
        self.output = output
        self.hooks = hooks or []
        self.show_progress = show_progress
        self.logger = logging.getLogger(__name__)

    def due_repositories(self) -> list[RepositoryRef]:
        """Repositories with auto-sync enabled and a GitHub remote."""
        return [
            repo for repo in self.engine.registry.list_repositories()
            if repo.auto_sync and (repo.remote_url or repo.remote_configured)
        ]

    def sync_all(self, parallel: bool | None = None) -> SyncReport:
        """Sync all due repositories once and return the combined report."""
        repos = self.due_repositories()
        if not repos:
            self.output.warning("No repositories have auto-sync enabled")
            return SyncReport()

        self.output.info(f"Syncing {len(repos)} repositories")
        if self.config.parallel if parallel is None else parallel:
            return self._sync_parallel(repos)
        return self._sync_sequential(repos)

    def run_forever(self, stop: threading.Event, interval: float | None = None) -> None:
        """Call sync_all every interval seconds until stop is set."""
        interval = interval or self.config.sync_interval
        if interval <= 0:
            raise ValueError("sync interval must be positive")
        self.logger.info("Auto-sync every %ss", interval)
        while not stop.is_set():
            report = self.sync_all()
            if report.has_failures():
                self.logger.warning("%d repositories failed to sync", len(report.failures()))
            stop.wait(interval)

    def _sync_sequential(self, repos: list[RepositoryRef]) -> SyncReport:
        report = SyncReport()
        with tqdm(total=len(repos), desc="Syncing", unit="repo", disable=not self.show_progress) as pbar:
            for repo in repos:
                pbar.set_postfix_str(repo.id, refresh=True)
                self._record(report, repo, self._sync_single_repo(repo))
                pbar.update(1)
        return report

    def _sync_parallel(self, repos: list[RepositoryRef]) -> SyncReport:
        """Sync repositories concurrently with buffered output per thread."""
        report = SyncReport()
        lock = threading.Lock()

        def _sync_with_buffer(repo: RepositoryRef) -> tuple[SyncOutcome | str | None, BufferedOutputHandler]:
            buf = BufferedOutputHandler()
            return self._sync_single_repo(repo, output_override=buf), buf

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {executor.submit(_sync_with_buffer, repo): repo for repo in repos}

            with tqdm(total=len(repos), desc="Syncing repositories", disable=not self.show_progress) as pbar:
                for future in concurrent.futures.as_completed(futures):
                    repo = futures[future]
                    try:
                        result, buf = future.result()
                        with lock:
                            buf.flush_to(self.output)
                            self._record(report, repo, result)
                    except Exception as e:
                        self.output.error(f"Error syncing {repo.id}: {e}")
                        with lock:
                            report.add(SyncOutcome(repo_id=repo.id, push_error=f"Unexpected error: {e}"))
                    finally:
                        pbar.set_postfix_str(repo.id, refresh=True)
                        pbar.update(1)

        return report

    @staticmethod
    def _record(report: SyncReport, repo: RepositoryRef, result: SyncOutcome | str | None) -> None:
        if isinstance(result, SyncOutcome):
            report.add(result)
        elif result is not None:
            report.skip(repo.id, result)

    def _sync_single_repo(
        self, repo: RepositoryRef, output_override: OutputHandler = None
    ) -> SyncOutcome | str | None:
        """Run hooks and sync one repository. Returns the outcome, a skip reason, or None."""
        output = output_override or self.output
        for hook in self.hooks:
            if not hook.before_sync(repo):
                return "skipped by hook"

        output.section(f"Processing: {repo.id}")
        try:
            credential = self.engine.credentials.resolve(repo) if self.engine.credentials else None
            outcome = self.engine.sync_with_remote(repo, credential, wait=False)
        except SyncInProgress:
            output.warning("Sync already in progress, skipping", indent=1)
            return "sync already in progress"
        except Exception as e:
            output.error(f"Unexpected error in {repo.id}: {e}")
            for hook in self.hooks:
                hook.on_error(repo, e)
            return SyncOutcome(repo_id=repo.id, push_error=f"Unexpected error: {e}")

        self._print_outcome(outcome, output)
        for hook in self.hooks:
            hook.after_sync(repo, outcome)
        return outcome

    @staticmethod
    def _print_outcome(outcome: SyncOutcome, output: OutputHandler) -> None:
        if outcome.succeeded:
            marker = "✓" if outcome.status is SyncState.SYNCED else "•"
            output.success(
                f"{marker} {outcome.branch}: {outcome.status.value} "
                f"(ahead {outcome.ahead}, behind {outcome.behind})",
                indent=1,
            )
            return
        for line in (outcome.error or '').splitlines():
            output.error(line, indent=1)
