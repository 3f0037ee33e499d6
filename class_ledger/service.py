import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Union
from uuid import UUID

from .clock import SystemClock
from .config import Settings, get_settings
from .credits import CreditLedger
from .database import create_db_engine
from .exceptions import InsufficientCreditError
from .models import (
    AdminPolicy,
    Category,
    CreatePackageRequest,
    CreditBalance,
    PackageHistoryResponse,
    PackageRecord,
    PackageStatus,
    ReactivatePackageRequest,
    ReconcileResult,
    UpdateRenewalRequest,
)
from .packages import PackageRecordStore
from .policy import AdminPolicyStore
from .reconciler import Reconciler
from .sql_storage import SqlStorage
from .storage import Account, InMemoryStorage

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Single entry point for every booking, cancellation and admin flow.

    Credit-sensitive calls always run reconcile -> check -> deduct/restore
    inside one account transaction, so callers never sequence the steps
    themselves.
    """

    def __init__(
        self,
        storage=None,
        clock=None,
        settings: Optional[Settings] = None,
        policy_store: Optional[AdminPolicyStore] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock(self.settings.timezone)
        self.policy = policy_store or AdminPolicyStore(self.storage, self.settings.default_admin_policy)
        self.packages = PackageRecordStore(self.storage, self.clock)
        self.credits = CreditLedger(self.storage, max_overdraft=self.settings.max_overdraft)
        self.reconciler = Reconciler(self.storage, period_days=self.settings.renewal_period_days)

    # Admin policy

    @property
    def admin_policy(self) -> AdminPolicy:
        return self.policy.get()

    def set_admin_policy(self, policy: Union[AdminPolicy, str]) -> AdminPolicy:
        return self.policy.set(policy)

    # Booking / cancellation

    def reconcile(self, user_id: str, category: Union[Category, str]) -> ReconcileResult:
        return self.reconciler.reconcile(user_id, category, self.clock.today(), self.policy.get())

    def get_balance(self, user_id: str, category: Union[Category, str]) -> CreditBalance:
        with self._reconciled(user_id, category) as account:
            balance = account.counter
        return CreditBalance(user_id=user_id, category=account.category, balance=balance)

    def get_available_credits(self, user_id: str, category: Union[Category, str]) -> int:
        return self.get_balance(user_id, category).available

    def deduct(
        self,
        user_id: str,
        category: Union[Category, str],
        allow_overdraft: bool = False,
    ) -> CreditBalance:
        with self._reconciled(user_id, category) as account:
            taken = self.credits.take(account, allow_overdraft)
            balance = account.counter
        if not taken:
            raise InsufficientCreditError(user_id, account.category.value, balance)
        return CreditBalance(user_id=user_id, category=account.category, balance=balance)

    def restore(self, user_id: str, category: Union[Category, str]) -> CreditBalance:
        with self._reconciled(user_id, category) as account:
            balance = self.credits.give_back(account)
        return CreditBalance(user_id=user_id, category=account.category, balance=balance)

    # Administration / purchase

    def create_package_record(self, request: CreatePackageRequest) -> PackageRecord:
        return self.packages.create(request, self.policy.get())

    def set_status(self, record_id: UUID, status: Union[PackageStatus, str]) -> PackageRecord:
        return self.packages.set_status(record_id, status)

    def update_renewal_months(self, record_id: UUID, request: UpdateRenewalRequest) -> PackageRecord:
        return self.packages.update_renewal_months(record_id, request)

    def reactivate_package(
        self,
        record_id: UUID,
        request: Optional[ReactivatePackageRequest] = None,
    ) -> PackageRecord:
        return self.packages.reactivate(record_id, request or ReactivatePackageRequest())

    def set_credits(self, user_id: str, category: Union[Category, str], value: int) -> CreditBalance:
        category = Category.parse(category)
        balance = self.credits.set_balance(user_id, category, value)
        return CreditBalance(user_id=user_id, category=category, balance=balance)

    def add_credits(self, user_id: str, category: Union[Category, str], amount: int) -> CreditBalance:
        category = Category.parse(category)
        balance = self.credits.add(user_id, category, amount)
        return CreditBalance(user_id=user_id, category=category, balance=balance)

    # Reporting (read-only, no reconciliation)

    def get_package(self, record_id: UUID) -> PackageRecord:
        return self.packages.get(record_id)

    def get_active_packages(self, user_id: str) -> dict[Category, Optional[PackageRecord]]:
        return {category: self.packages.get_active(user_id, category) for category in Category}

    def get_package_history(self, user_id: str) -> PackageHistoryResponse:
        records = self.packages.history(user_id)
        return PackageHistoryResponse(
            user_id=user_id,
            records=records,
            total_count=len(records),
            active=self.get_active_packages(user_id),
        )

    def get_expiring_packages(self, days_ahead: Optional[int] = None) -> list[PackageRecord]:
        if days_ahead is None:
            days_ahead = self.settings.expiring_window_days
        return self.packages.expiring(self.clock.today(), days_ahead)

    def get_low_credit_accounts(self, threshold: Optional[int] = None) -> list[CreditBalance]:
        if threshold is None:
            threshold = self.settings.low_credit_threshold
        return self.credits.low_balance(threshold)

    @contextmanager
    def _reconciled(self, user_id: str, category: Union[Category, str]) -> Iterator[Account]:
        category = Category.parse(category)
        # Read before the account transaction opens; it may need its own session.
        policy = self.policy.get()
        with self.storage.account(user_id, category) as account:
            self.reconciler.apply(account, self.clock.today(), policy)
            yield account


def build_service(settings: Optional[Settings] = None, clock=None) -> LedgerService:
    """LedgerService backed by the relational store named in settings."""
    settings = settings or get_settings()
    engine = create_db_engine(settings.database_url, echo=settings.database_echo)
    storage = SqlStorage(engine)
    storage.create_tables()
    logger.info(f"Ledger service using {engine.url.render_as_string(hide_password=True)}")
    return LedgerService(storage=storage, clock=clock, settings=settings)
