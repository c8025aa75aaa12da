"""Progress tracking for migration runs.

Renders a tqdm bar fed by the dispatcher's live counters.
"""

from typing import Any

from tqdm import tqdm

from catalog_migration.migration.dispatcher import RunCounters
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressTracker:
    """Tracks and displays one run's progress in real time.

    Pass ``tracker.update`` as the dispatcher's ``progress_callback``. The
    bar advances per finished batch; item outcomes show in the postfix.
    """

    def __init__(self, phase_name: str, enable: bool = True):
        """Initialize progress tracker.

        Args:
            phase_name: Label shown next to the bar
            enable: Whether to draw the bar (False for CI/automation)
        """
        self.phase_name = phase_name
        self.enable = enable
        self.bar: tqdm | None = None
        self.last: RunCounters | None = None

    def _ensure_bar(self, total: int) -> tqdm | None:
        if not self.enable:
            return None
        if self.bar is None:
            self.bar = tqdm(
                total=total,
                desc=self.phase_name,
                unit="batch",
                leave=True,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}] {postfix}",
            )
        return self.bar

    def update(self, counters: RunCounters) -> None:
        """Refresh the display from the dispatcher's counters."""
        self.last = counters
        bar = self._ensure_bar(counters.batches_total)
        if bar is None:
            return
        if bar.total != counters.batches_total:
            bar.total = counters.batches_total
        bar.update(counters.batches_completed - bar.n)
        bar.set_postfix(
            ok=counters.succeeded,
            failed=counters.failed,
            skipped=counters.skipped,
            refresh=False,
        )
        bar.refresh()

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None
        if self.last is not None:
            logger.info(
                "phase_progress_closed",
                phase_name=self.phase_name,
                processed=self.last.processed,
                succeeded=self.last.succeeded,
                failed=self.last.failed,
            )

    def __enter__(self) -> "ProgressTracker":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
