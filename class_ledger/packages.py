import logging
from datetime import date, timedelta
from typing import Optional, Union
from uuid import UUID, uuid4

from .exceptions import InvalidStateTransitionError, RecordNotFoundError
from .models import (
    AdminPolicy,
    Category,
    CreatePackageRequest,
    PackageRecord,
    PackageStatus,
    ReactivatePackageRequest,
    UpdateRenewalRequest,
)
from .storage import Account

logger = logging.getLogger(__name__)


class PackageRecordStore:
    """
    Package Records: one purchased entitlement period per (user, category).

    Records are never deleted. Writes keep at most one ACTIVE record per
    (user, category) by expiring the others in the same transaction.
    """

    def __init__(self, storage, clock):
        self.storage = storage
        self.clock = clock

    def create(
        self,
        request: CreatePackageRequest,
        policy: Union[AdminPolicy, str] = AdminPolicy.OVERRIDE,
    ) -> PackageRecord:
        policy = self._creation_policy(request.override_negative_balance, policy)
        record = PackageRecord(
            id=uuid4(),
            user_id=request.user_id,
            category=request.category,
            package_name=request.package_name,
            classes_included=request.classes_included,
            start_date=request.start_date,
            end_date=request.end_date,
            status=PackageStatus.ACTIVE,
            auto_renew=request.auto_renew,
            renewal_months_remaining=request.renewal_months,
            created_at=self.clock.now(),
        )

        with self.storage.account(request.user_id, request.category) as account:
            previous = account.counter
            balance = policy.renewed_balance(record.classes_included, previous)
            replaced = self._expire_others(account, keep=None)
            account.save_record(record)
            account.set_counter(balance)

        logger.info(
            f"Created {record.category.value} package {record.id} for {record.user_id} "
            f"({record.classes_included} classes, {record.start_date}..{record.end_date}); "
            f"replaced {replaced} active, balance {previous} -> {balance}"
        )
        return record

    @staticmethod
    def _creation_policy(override: Optional[bool], policy: Union[AdminPolicy, str]) -> AdminPolicy:
        # An explicit flag from the assign form beats the global policy.
        if override is None:
            return AdminPolicy(policy)
        return AdminPolicy.OVERRIDE if override else AdminPolicy.DEDUCT

    def get(self, record_id: UUID) -> PackageRecord:
        record = self.storage.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"Package record {record_id} not found")
        return record

    def get_active(self, user_id: str, category: Union[Category, str]) -> Optional[PackageRecord]:
        active = self.storage.list_records(user_id, Category.parse(category), PackageStatus.ACTIVE)
        return active[0] if active else None

    def history(self, user_id: str, category: Optional[Union[Category, str]] = None) -> list[PackageRecord]:
        if category is not None:
            category = Category.parse(category)
        return self.storage.list_records(user_id, category)

    def set_status(self, record_id: UUID, status: Union[PackageStatus, str]) -> PackageRecord:
        status = PackageStatus(status)
        record = self.get(record_id)
        with self.storage.account(record.user_id, record.category) as account:
            record = self._load(account, record_id)
            updated = self.apply_status(account, record, status)
        logger.info(f"Package {record_id} status {record.status.value} -> {status.value}")
        return updated

    def apply_status(self, account: Account, record: PackageRecord, status: PackageStatus) -> PackageRecord:
        if status == PackageStatus.ACTIVE:
            self._expire_others(account, keep=record.id)
        updated = record.model_copy(update={"status": status})
        account.save_record(updated)
        if status == PackageStatus.EXPIRED:
            account.set_counter(0)
        return updated

    def update_renewal_months(self, record_id: UUID, request: UpdateRenewalRequest) -> PackageRecord:
        record = self.get(record_id)
        with self.storage.account(record.user_id, record.category) as account:
            record = self._load(account, record_id)
            if record.is_active:
                self._expire_others(account, keep=record.id)
            updated = record.model_copy(update={"renewal_months_remaining": request.months})
            account.save_record(updated)
        logger.info(f"Package {record_id} renewal months {record.renewal_months_remaining} -> {request.months}")
        return updated

    def reactivate(self, record_id: UUID, request: ReactivatePackageRequest) -> PackageRecord:
        record = self.get(record_id)
        today = self.clock.today()
        with self.storage.account(record.user_id, record.category) as account:
            record = self._load(account, record_id)
            if record.status != PackageStatus.EXPIRED:
                raise InvalidStateTransitionError(
                    f"Only expired packages can be reactivated; {record_id} is {record.status.value}"
                )
            self._expire_others(account, keep=record.id)
            updated = record.model_copy(update={
                "status": PackageStatus.ACTIVE,
                "start_date": today,
                "end_date": today + timedelta(days=request.validity_days),
                "renewal_months_remaining": request.months,
                "renewals_applied": 0,
            })
            account.save_record(updated)
            balance = account.increment(record.classes_included)
        logger.info(f"Reactivated package {record_id} until {updated.end_date}; balance {balance}")
        return updated

    def expiring(self, today: date, days_ahead: int) -> list[PackageRecord]:
        horizon = today + timedelta(days=days_ahead)
        soon = [
            r for r in self.storage.list_records(status=PackageStatus.ACTIVE)
            if today <= r.end_date <= horizon
        ]
        return sorted(soon, key=lambda r: (r.end_date, r.user_id))

    def _load(self, account: Account, record_id: UUID) -> PackageRecord:
        record = account.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"Package record {record_id} not found")
        return record

    def _expire_others(self, account: Account, keep: Optional[UUID]) -> int:
        expired = 0
        for other in account.records(PackageStatus.ACTIVE):
            if other.id == keep:
                continue
            self.apply_status(account, other, PackageStatus.EXPIRED)
            expired += 1
        return expired
