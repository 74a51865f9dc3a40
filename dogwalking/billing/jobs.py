"""Background reconciliation for walk statuses, balances and earnings."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .system import WalkingSystem

logger = logging.getLogger(__name__)


def run_reconciliation(system: WalkingSystem) -> dict:
    """Run every batch sweep once and report how many records each touched.

    Completion runs before the balance sweep, and both before earnings, so a
    walk that ended since the last run is billed and paid out in one pass.
    """

    counts = {
        "outstanding": system.update_outstanding_walks(),
        "completed": system.update_completed_walks(),
        "balances_applied": system.apply_completed_walks_to_client_balances(),
        "earnings_created": system.apply_walker_earnings_for_completed_walks(),
    }
    logger.info(
        "Reconciliation finished: %(outstanding)d outstanding, %(completed)d completed, "
        "%(balances_applied)d applied to balances, %(earnings_created)d earnings",
        counts,
    )
    return counts


class ReconciliationScheduler:
    """Runs :func:`run_reconciliation` on a fixed interval in a background thread."""

    JOB_ID = "walk-reconciliation"

    def __init__(self, system: WalkingSystem, interval_seconds: int) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.system = system
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=interval_seconds,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
        )

    def _tick(self) -> None:
        try:
            run_reconciliation(self.system)
        except Exception:
            logger.exception("Scheduled reconciliation failed")
            raise

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Reconciliation scheduled every %d seconds", self.interval_seconds)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
