"""SummaryReporter: renders sync reports and status for the console."""

from __future__ import annotations

from pygit_mirror.models import SyncOutcome, SyncReport, SyncState, SyncStatus
from pygit_mirror.output import SECTION_WIDTH
from pygit_mirror.protocols import OutputHandler

_STATE_TITLES = [
    (SyncState.DIVERGED, "\U0001f500 DIVERGED"),
    (SyncState.BEHIND, "⬇️  BEHIND GITHUB"),
    (SyncState.AHEAD, "⬆️  AHEAD OF GITHUB"),
]


class SummaryReporter:
    """Generates and displays summary reports"""

    def __init__(self, output: OutputHandler):
        """Create a reporter that writes to the given output handler."""
        self.output = output

    def print_summary(self, report: SyncReport):
        """Print the final summary of a multi-repository sync."""
        self.output.section("╔" + "=" * SECTION_WIDTH + "╗")
        self.output.info("║" + "SYNC SUMMARY".center(SECTION_WIDTH) + "║")
        self.output.info("╚" + "=" * SECTION_WIDTH + "╝")
        self.output.info("")
        self.output.info(f"Total repositories processed: {report.repos_processed}")
        self.output.info("")

        failures = report.failures()
        if failures:
            self.output.warning("⚠️  ATTENTION REQUIRED")
            self.output.info("")
            self._print_failures(failures)
        else:
            self.output.success("✅ ALL SYNCS SUCCEEDED")
            self.output.info("")

        for state, title in _STATE_TITLES:
            self._print_state(title, report.by_state(state))

        if report.skipped:
            self.output.info(f"⏭️  SKIPPED ({len(report.skipped)}):")
            for repo_id, reason in report.skipped:
                self.output.info(f"  \U0001f4c1 {repo_id}: {reason}")
            self.output.info("")

        self.output.info("=" * SECTION_WIDTH)

    def _print_failures(self, failures: list[SyncOutcome]):
        self.output.info(f"\U0001f534 FAILED ({len(failures)}):")
        self.output.info("-" * SECTION_WIDTH)
        for outcome in failures:
            self.output.info(f"  \U0001f4c1 {outcome.repo_id}")
            for line in (outcome.error or '').splitlines():
                if line.strip():
                    self.output.info(f"     ↳ {line}")
        self.output.info("")

    def _print_state(self, title: str, outcomes: list[SyncOutcome]):
        if not outcomes:
            return
        self.output.info(f"{title} ({len(outcomes)}):")
        for outcome in outcomes:
            self.output.info(
                f"  \U0001f4c1 {outcome.repo_id} ({outcome.branch}): "
                f"ahead {outcome.ahead}, behind {outcome.behind}"
            )
        self.output.info("")

    def print_outcome(self, outcome: SyncOutcome):
        """One-repository result, used by the sync/push/pull commands."""
        if outcome.succeeded:
            self.output.success(f"✓ {outcome.repo_id} ({outcome.branch}): {outcome.status.value}")
        else:
            self.output.error(f"✗ {outcome.repo_id}: sync failed")
            for line in (outcome.error or '').splitlines():
                self.output.error(line, indent=1)
        if outcome.persist_error:
            self.output.warning(f"Could not record sync time: {outcome.persist_error}", indent=1)

    def print_status(self, repo_id: str, status: SyncStatus):
        ahead, behind, state = status.as_tuple()
        line = f"{repo_id} ({status.branch}): {state}, ahead {ahead}, behind {behind}"
        if status.state is SyncState.SYNCED:
            self.output.success(line)
        elif status.state is SyncState.ERROR:
            self.output.error(line)
            if status.error:
                self.output.error(status.error, indent=1)
        else:
            self.output.info(line)
