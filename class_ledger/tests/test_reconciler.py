"""
Unit Tests for the Reconciler

Tests cover:
1. Pure transition planning
2. No active package cleanup
3. Expiry without renewal
4. Auto-renewal and exhaustion
5. Admin policy on carried debt
6. One renewal step per call
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

from class_ledger.clock import FixedClock
from class_ledger.models import (
    AccountState,
    AdminPolicy,
    Category,
    CreatePackageRequest,
    PackageRecord,
    PackageStatus,
)
from class_ledger.reconciler import Reconciler, plan_transition
from class_ledger.service import LedgerService
from class_ledger.storage import InMemoryStorage


# Test constants
CLIENT_ID = "client-001"
TODAY = date(2025, 3, 15)
START = TODAY - timedelta(days=20)
LAPSED_END = TODAY - timedelta(days=1)


def make_record(**overrides) -> PackageRecord:
    data = {
        "id": uuid4(),
        "user_id": CLIENT_ID,
        "category": Category.GROUP,
        "classes_included": 4,
        "start_date": START,
        "end_date": LAPSED_END,
        "auto_renew": True,
        "renewal_months_remaining": 2,
        "created_at": datetime(2025, 2, 23, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return PackageRecord(**data)


def lapsed_service(counter: int, policy: AdminPolicy = AdminPolicy.OVERRIDE, **package) -> LedgerService:
    """Service whose client holds one package that ended yesterday."""
    service = LedgerService(clock=FixedClock(START))
    data = {
        "user_id": CLIENT_ID,
        "category": Category.GROUP,
        "classes_included": 4,
        "start_date": START,
        "end_date": LAPSED_END,
        "auto_renew": True,
        "renewal_months": 2,
    }
    data.update(package)
    service.create_package_record(CreatePackageRequest(**data))
    service.set_credits(CLIENT_ID, Category.GROUP, counter)
    service.set_admin_policy(policy)
    service.clock.set(TODAY)
    return service


class TestPlanTransition:
    """Tests for the pure transition function."""

    def test_no_record_clamps_counter(self):
        transition = plan_transition(None, 5, TODAY, AdminPolicy.OVERRIDE)

        assert transition.state == AccountState.NO_ACTIVE_PACKAGE
        assert transition.counter == 0
        assert transition.counter_changed

    def test_no_record_zero_counter_is_noop(self):
        transition = plan_transition(None, 0, TODAY, AdminPolicy.OVERRIDE)

        assert transition.state == AccountState.NO_ACTIVE_PACKAGE
        assert not transition.changed

    def test_valid_record_untouched(self):
        record = make_record(end_date=TODAY)
        transition = plan_transition(record, 3, TODAY, AdminPolicy.OVERRIDE)

        assert transition.state == AccountState.VALID_ACTIVE
        assert transition.record == record
        assert transition.counter == 3
        assert not transition.changed

    def test_input_record_not_mutated(self):
        record = make_record()
        snapshot = record.model_copy()

        plan_transition(record, 1, TODAY, AdminPolicy.OVERRIDE)

        assert record == snapshot

    def test_renewal_window_measured_from_start(self):
        record = make_record(renewals_applied=2, renewal_months_remaining=3)
        transition = plan_transition(record, 0, TODAY, AdminPolicy.OVERRIDE)

        assert transition.record.renewals_applied == 3
        assert transition.record.end_date == START + timedelta(days=90)


class TestNoActivePackage:
    """Tests for accounts without an active package."""

    @pytest.mark.parametrize("stale_counter", [5, -2])
    def test_stale_counter_is_cleared(self, stale_counter):
        """Test that a nonzero counter with no package is reset to 0."""
        service = LedgerService(clock=FixedClock(TODAY))
        service.set_credits(CLIENT_ID, Category.GROUP, stale_counter)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.NO_ACTIVE_PACKAGE
        assert result.changed
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 0


class TestValidActive:
    """Tests for packages still inside their paid window."""

    def test_reconcile_twice_is_idempotent(self):
        """Test that a second reconcile on a valid package changes nothing."""
        service = LedgerService(clock=FixedClock(TODAY))
        record = service.create_package_record(CreatePackageRequest(
            user_id=CLIENT_ID, category=Category.GROUP, classes_included=8,
            start_date=TODAY, end_date=TODAY + timedelta(days=30),
        ))
        service.deduct(CLIENT_ID, Category.GROUP)

        first = service.reconcile(CLIENT_ID, Category.GROUP)
        second = service.reconcile(CLIENT_ID, Category.GROUP)

        assert first.state == second.state == AccountState.VALID_ACTIVE
        assert not first.changed and not second.changed
        assert service.get_package(record.id) == record
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 7


class TestExpiry:
    """Tests for lapsed packages without renewal."""

    def test_lapsed_without_auto_renew_expires(self):
        """Test that a lapsed package expires and the counter drops to 0."""
        service = lapsed_service(counter=3, auto_renew=False, renewal_months=0)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.EXHAUSTED_EXPIRED
        assert result.record.status == PackageStatus.EXPIRED
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 0
        assert service.packages.get_active(CLIENT_ID, Category.GROUP) is None

    def test_auto_renew_with_no_months_left_expires(self):
        """Test that auto_renew alone does not renew."""
        service = lapsed_service(counter=3, auto_renew=True, renewal_months=0)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.EXHAUSTED_EXPIRED
        assert result.record.renewal_months_remaining == 0
        assert result.record.last_renewal_date is None
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 0

    def test_expired_account_stays_at_zero(self):
        """Test that reconciling after expiry is a no-op."""
        service = lapsed_service(counter=3, auto_renew=False, renewal_months=0)
        service.reconcile(CLIENT_ID, Category.GROUP)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.NO_ACTIVE_PACKAGE
        assert not result.changed


class TestRenewal:
    """Tests for monthly auto-renewal."""

    def test_renewal_resets_counter(self):
        """Test renewal with two months left under the override policy."""
        service = lapsed_service(counter=1)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.RENEWED_ACTIVE
        assert result.record.status == PackageStatus.ACTIVE
        assert result.record.renewal_months_remaining == 1
        assert result.record.end_date == START + timedelta(days=30)
        assert result.record.last_renewal_date == TODAY
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 4

        again = service.reconcile(CLIENT_ID, Category.GROUP)

        assert again.state == AccountState.VALID_ACTIVE
        assert not again.changed
        assert again.record == result.record
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 4

    def test_last_renewal_month_expires(self):
        """Test that using the last renewal month expires without a reset."""
        service = lapsed_service(counter=2, renewal_months=1)

        result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert result.state == AccountState.EXHAUSTED_EXPIRED
        assert result.record.renewal_months_remaining == 0
        assert result.record.status == PackageStatus.EXPIRED
        assert service.credits.get(CLIENT_ID, Category.GROUP) == 0

    @pytest.mark.parametrize("policy,expected", [
        (AdminPolicy.OVERRIDE, 5),
        (AdminPolicy.DEDUCT, 2),
    ])
    def test_policy_on_negative_balance(self, policy, expected):
        """Test that carried debt only reduces the allotment under deduct."""
        service = lapsed_service(counter=-3, policy=policy, classes_included=5)

        service.reconcile(CLIENT_ID, Category.GROUP)

        assert service.credits.get(CLIENT_ID, Category.GROUP) == expected

    def test_deduct_policy_ignores_leftover_credits(self):
        """Test that unused credits do not roll over under deduct."""
        service = lapsed_service(counter=2, policy=AdminPolicy.DEDUCT, classes_included=5)

        service.reconcile(CLIENT_ID, Category.GROUP)

        assert service.credits.get(CLIENT_ID, Category.GROUP) == 5

    def test_policy_is_passed_explicitly(self):
        """Test the reconciler against storage with an explicit policy."""
        storage = InMemoryStorage()
        record = make_record(classes_included=5)
        with storage.account(CLIENT_ID, Category.GROUP) as account:
            account.save_record(record)
            account.set_counter(-3)

        result = Reconciler(storage).reconcile(CLIENT_ID, "group", TODAY, "deduct")

        assert result.counter == 2
        assert storage.get_counter(CLIENT_ID, Category.GROUP) == 2

    def test_long_idle_account_needs_one_call_per_period(self):
        """Test that each call applies one renewal step only."""
        start = TODAY - timedelta(days=100)
        service = lapsed_service(
            counter=0, renewal_months=5,
            start_date=start, end_date=start + timedelta(days=30),
        )

        states = []
        result = service.reconcile(CLIENT_ID, Category.GROUP)
        while result.state == AccountState.RENEWED_ACTIVE:
            states.append(result)
            result = service.reconcile(CLIENT_ID, Category.GROUP)

        assert len(states) == 4
        assert [s.record.end_date for s in states] == [
            start + timedelta(days=30 * n) for n in range(1, 5)
        ]
        assert result.state == AccountState.VALID_ACTIVE
        assert result.record.renewal_months_remaining == 1
