"""
Date-driven reconciliation of a credit account.

Brings the active Package Record and the credit counter for one
(user, category) back into agreement with the calendar:

    no_active_package  -> counter clamped to 0
    valid_active       -> untouched (end_date >= today)
    lapsed_active      -> counter zeroed, then either
        renewed_active     (auto-renew with months left: new 30-day window,
                            counter reset per admin policy)
        exhausted_expired  (no renewal left: status expired, counter 0)

Exactly one renewal step is applied per call. An account left idle for
several periods needs repeated calls to catch up to today.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from .models import (
    AccountState,
    AdminPolicy,
    Category,
    PackageRecord,
    PackageStatus,
    ReconcileResult,
    RENEWAL_PERIOD_DAYS,
)
from .storage import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    state: AccountState
    counter: int
    record: Optional[PackageRecord]
    record_changed: bool = False
    counter_changed: bool = False

    @property
    def changed(self) -> bool:
        return self.record_changed or self.counter_changed


def plan_transition(
    record: Optional[PackageRecord],
    counter: int,
    today: date,
    policy: AdminPolicy,
    period_days: int = RENEWAL_PERIOD_DAYS,
) -> Transition:
    """Compute the next account state. Pure: nothing is read or written."""
    if record is None:
        return Transition(AccountState.NO_ACTIVE_PACKAGE, 0, None, counter_changed=counter != 0)

    if not record.is_lapsed(today):
        return Transition(AccountState.VALID_ACTIVE, counter, record)

    # Entitlement lapses with the date, whether or not a renewal follows.
    if not record.can_renew():
        expired = record.model_copy(update={"status": PackageStatus.EXPIRED})
        return Transition(
            AccountState.EXHAUSTED_EXPIRED, 0, expired,
            record_changed=True, counter_changed=counter != 0,
        )

    renewals = record.renewals_applied + 1
    remaining = record.renewal_months_remaining - 1
    renewed = record.model_copy(update={
        "renewal_months_remaining": remaining,
        "renewals_applied": renewals,
        "end_date": record.renewal_end_date(renewals, period_days),
        "last_renewal_date": today,
    })

    if remaining == 0:
        renewed = renewed.model_copy(update={"status": PackageStatus.EXPIRED})
        return Transition(
            AccountState.EXHAUSTED_EXPIRED, 0, renewed,
            record_changed=True, counter_changed=counter != 0,
        )

    new_counter = policy.renewed_balance(record.classes_included, counter)
    return Transition(
        AccountState.RENEWED_ACTIVE, new_counter, renewed,
        record_changed=True, counter_changed=new_counter != counter,
    )


class Reconciler:
    def __init__(self, storage, period_days: int = RENEWAL_PERIOD_DAYS):
        self.storage = storage
        self.period_days = period_days

    def reconcile(
        self,
        user_id: str,
        category: Union[Category, str],
        today: date,
        policy: Union[AdminPolicy, str],
    ) -> ReconcileResult:
        category = Category.parse(category)
        policy = AdminPolicy(policy)
        with self.storage.account(user_id, category) as account:
            return self.apply(account, today, policy)

    def apply(self, account: Account, today: date, policy: AdminPolicy) -> ReconcileResult:
        """Reconcile inside an already-open account transaction."""
        previous = account.counter
        transition = plan_transition(account.active_record(), previous, today, policy, self.period_days)

        if transition.record_changed:
            account.save_record(transition.record)
        if transition.counter_changed:
            account.set_counter(transition.counter)

        self._log_transition(account, previous, transition, policy)

        return ReconcileResult(
            user_id=account.user_id,
            category=account.category,
            state=transition.state,
            counter=transition.counter,
            record=transition.record,
            changed=transition.changed,
        )

    def _log_transition(self, account: Account, previous: int, transition: Transition, policy: AdminPolicy) -> None:
        key = f"({account.user_id}, {account.category.value})"
        if transition.state == AccountState.NO_ACTIVE_PACKAGE and transition.counter_changed:
            logger.warning(f"No active package for {key}; clamped counter {previous} to 0")
        elif transition.state == AccountState.RENEWED_ACTIVE:
            record = transition.record
            logger.info(
                f"Renewed package {record.id} for {key} until {record.end_date}; "
                f"{record.renewal_months_remaining} renewals left, counter {previous} -> "
                f"{transition.counter} ({policy.value})"
            )
        elif transition.state == AccountState.EXHAUSTED_EXPIRED:
            logger.info(f"Package {transition.record.id} for {key} expired; counter {previous} -> 0")
