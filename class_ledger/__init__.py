"""
Class Credit Ledger for Studio Packages

This module provides:
- Package records per client and class category (group / private)
- Credit counters with deduct-on-booking and restore-on-cancellation
- Lazy reconciliation: expiry and monthly auto-renewal as dates pass
- Admin policy for negative balances across a renewal (override / deduct)
- In-memory and SQLAlchemy storage with per-account transactions
- Optional periodic reconcile sweep (APScheduler) and logging setup
"""

from .models import (
    AccountState,
    AdminPolicy,
    Category,
    CreatePackageRequest,
    CreditBalance,
    PackageRecord,
    PackageStatus,
    ReconcileResult,
    UNLIMITED_CLASSES,
)
from .exceptions import (
    AccountMismatchError,
    InsufficientCreditError,
    InvalidCategoryError,
    InvalidStateTransitionError,
    LedgerServiceError,
    PersistenceError,
    RecordNotFoundError,
)
from .service import LedgerService, build_service
from .sweep import build_sweep_scheduler, reconcile_all
from .logging_config import configure_logging

__all__ = [
    "AccountState",
    "AdminPolicy",
    "Category",
    "CreatePackageRequest",
    "CreditBalance",
    "PackageRecord",
    "PackageStatus",
    "ReconcileResult",
    "UNLIMITED_CLASSES",
    "AccountMismatchError",
    "InsufficientCreditError",
    "InvalidCategoryError",
    "InvalidStateTransitionError",
    "LedgerServiceError",
    "PersistenceError",
    "RecordNotFoundError",
    "LedgerService",
    "build_service",
    "build_sweep_scheduler",
    "reconcile_all",
    "configure_logging",
]
