"""
Periodic reconciliation sweep.

Reconciliation is lazy by default: it runs when a booking or balance
lookup touches an account. A sweep walks every known account and calls
the same ``LedgerService.reconcile`` so stale accounts are caught up
without waiting for a request.
"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .exceptions import LedgerServiceError
from .models import SweepReport

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "class_ledger_reconcile_sweep"


def reconcile_all(service) -> SweepReport:
    report = SweepReport()
    for user_id, category in service.storage.list_accounts():
        try:
            result = service.reconcile(user_id, category)
        except LedgerServiceError:
            logger.exception(f"Sweep failed to reconcile ({user_id}, {category.value})")
            report.failed += 1
            continue
        report.reconciled += 1
        report.changed += int(result.changed)
        report.states[result.state] = report.states.get(result.state, 0) + 1

    logger.info(
        f"Reconcile sweep done: {report.reconciled} accounts, "
        f"{report.changed} changed, {report.failed} failed"
    )
    return report


def build_sweep_scheduler(service, interval_minutes: Optional[int] = None) -> BackgroundScheduler:
    """Scheduler with the sweep job registered; the caller starts and stops it."""
    minutes = interval_minutes or service.settings.sweep_interval_minutes
    scheduler = BackgroundScheduler(timezone=service.settings.timezone)
    scheduler.add_job(
        reconcile_all,
        IntervalTrigger(minutes=minutes),
        args=[service],
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
