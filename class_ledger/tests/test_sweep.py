"""
Tests for the periodic reconciliation sweep.
"""

import pytest
from datetime import date, timedelta

from class_ledger.clock import FixedClock
from class_ledger.config import Settings
from class_ledger.exceptions import AccountMismatchError, PersistenceError
from class_ledger.models import AccountState, Category, CreatePackageRequest, PackageStatus
from class_ledger.service import LedgerService
from class_ledger import build_sweep_scheduler, reconcile_all
from class_ledger.sweep import SWEEP_JOB_ID


TODAY = date(2025, 7, 1)


@pytest.fixture
def service():
    clock = FixedClock(TODAY - timedelta(days=30))
    service = LedgerService(clock=clock, settings=Settings(sweep_interval_minutes=15))
    # lapsed, renews
    service.create_package_record(CreatePackageRequest(
        user_id="client-001", category=Category.GROUP, classes_included=4,
        start_date=TODAY - timedelta(days=30), end_date=TODAY - timedelta(days=1),
        auto_renew=True, renewal_months=2,
    ))
    # lapsed, expires
    service.create_package_record(CreatePackageRequest(
        user_id="client-002", category=Category.PRIVATE, classes_included=2,
        start_date=TODAY - timedelta(days=30), end_date=TODAY - timedelta(days=1),
    ))
    # still valid
    service.create_package_record(CreatePackageRequest(
        user_id="client-003", category=Category.GROUP, classes_included=8,
        start_date=TODAY - timedelta(days=5), end_date=TODAY + timedelta(days=25),
    ))
    clock.set(TODAY)
    return service


class TestReconcileAll:
    def test_sweep_reconciles_every_account(self, service):
        report = reconcile_all(service)

        assert report.reconciled == 3
        assert report.changed == 2
        assert report.failed == 0
        assert report.states == {
            AccountState.RENEWED_ACTIVE: 1,
            AccountState.EXHAUSTED_EXPIRED: 1,
            AccountState.VALID_ACTIVE: 1,
        }
        assert service.packages.get_active("client-002", Category.PRIVATE) is None
        assert service.credits.get("client-001", Category.GROUP) == 4

    def test_second_sweep_changes_nothing(self, service):
        reconcile_all(service)

        report = reconcile_all(service)

        assert report.changed == 0
        assert report.states[AccountState.NO_ACTIVE_PACKAGE] == 1

    def test_failed_account_does_not_stop_sweep(self, service, monkeypatch):
        reconcile = service.reconcile

        def flaky(user_id, category):
            if user_id == "client-002":
                raise PersistenceError("database unavailable")
            return reconcile(user_id, category)

        monkeypatch.setattr(service, "reconcile", flaky)

        report = reconcile_all(service)

        assert report.failed == 1
        assert report.reconciled == 2
        history = service.get_package_history("client-002")
        assert history.records[0].status == PackageStatus.ACTIVE


    def test_any_ledger_error_is_counted_as_failed(self, service, monkeypatch):
        """Test that non-storage ledger errors on one account do not stop the sweep."""
        reconcile = service.reconcile
        foreign = service.get_package_history("client-003").records[0]

        def misrouted(user_id, category):
            if user_id == foreign.user_id:
                return reconcile(user_id, category)
            # writes a record through an account it does not belong to
            with service.storage.account(user_id, category) as account:
                account.save_record(foreign)

        with pytest.raises(AccountMismatchError):
            misrouted("client-001", Category.GROUP)

        monkeypatch.setattr(service, "reconcile", misrouted)
        report = reconcile_all(service)

        assert report.failed == 2
        assert report.reconciled == 1
        assert service.get_package(foreign.id).user_id == "client-003"


class TestSweepScheduler:
    def test_job_registered(self, service):
        scheduler = build_sweep_scheduler(service)

        job = scheduler.get_job(SWEEP_JOB_ID)

        assert job is not None
        assert job.trigger.interval == timedelta(minutes=15)
        assert job.max_instances == 1
        assert job.coalesce is True
        assert not scheduler.running

    def test_interval_override(self, service):
        scheduler = build_sweep_scheduler(service, interval_minutes=5)

        assert scheduler.get_job(SWEEP_JOB_ID).trigger.interval == timedelta(minutes=5)
